"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from burn_sync.ingestor.models import BurnEvent, BurnEventKind, ParseFailure
from burn_sync.storage.models import ProcessedSignatureModel
from burn_sync.storage.repos import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    BurnDeliveryRepository,
    ParseFailureRepository,
    ProcessedSignatureRepository,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_session(session_factory) -> AsyncSession:
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def sample_event() -> BurnEvent:
    return BurnEvent(
        kind=BurnEventKind.PREDICTION_BET,
        actor="W1",
        subject_id="M1",
        burn_amount=100,
        source_signature="abc123",
        option_index=1,
    )


# ============================================================================
# ProcessedSignatureRepository Tests
# ============================================================================


class TestProcessedSignatureRepository:
    """Tests for ProcessedSignatureRepository."""

    async def test_mark_and_exists(self, async_session: AsyncSession) -> None:
        repo = ProcessedSignatureRepository(async_session)

        assert await repo.exists("abc123") is False
        assert await repo.mark("abc123", event_count=1, outcome="completed") is True
        assert await repo.exists("abc123") is True

        dto = await repo.get("abc123")
        assert dto is not None
        assert dto.event_count == 1
        assert dto.outcome == "completed"

    async def test_mark_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = ProcessedSignatureRepository(async_session)

        assert await repo.mark("abc123", event_count=1, outcome="completed") is True
        assert await repo.mark("abc123", event_count=5, outcome="no_events") is False

        dto = await repo.get("abc123")
        assert dto is not None
        assert dto.event_count == 1
        assert await repo.count() == 1

    async def test_processed_among(self, async_session: AsyncSession) -> None:
        repo = ProcessedSignatureRepository(async_session)
        await repo.mark("a", event_count=0, outcome="no_events")
        await repo.mark("c", event_count=0, outcome="no_events")

        assert await repo.processed_among(["a", "b", "c"]) == {"a", "c"}
        assert await repo.processed_among([]) == set()

    async def test_prune_before(self, async_session: AsyncSession) -> None:
        repo = ProcessedSignatureRepository(async_session)
        await repo.mark("old", event_count=0, outcome="completed")
        await repo.mark("new", event_count=0, outcome="completed")
        await async_session.execute(
            update(ProcessedSignatureModel)
            .where(ProcessedSignatureModel.signature == "old")
            .values(processed_at=datetime.now(UTC) - timedelta(days=90))
        )

        removed = await repo.prune_before(datetime.now(UTC) - timedelta(days=30))

        assert removed == 1
        assert await repo.exists("old") is False
        assert await repo.exists("new") is True


# ============================================================================
# BurnDeliveryRepository Tests
# ============================================================================


class TestBurnDeliveryRepository:
    """Tests for BurnDeliveryRepository."""

    async def test_get_or_create_pending(
        self, async_session: AsyncSession, sample_event: BurnEvent
    ) -> None:
        repo = BurnDeliveryRepository(async_session)

        dto = await repo.get_or_create_pending(sample_event, idempotency_key="key-1")

        assert dto.status == DELIVERY_PENDING
        assert dto.idempotency_key == "key-1"
        assert dto.attempts == 0
        assert dto.burn_amount == 100
        assert dto.option_index == 1
        assert dto.is_final is False

    async def test_existing_record_keeps_its_key(
        self, async_session: AsyncSession, sample_event: BurnEvent
    ) -> None:
        repo = BurnDeliveryRepository(async_session)

        first = await repo.get_or_create_pending(sample_event, idempotency_key="key-1")
        second = await repo.get_or_create_pending(sample_event, idempotency_key="key-2")

        assert second.id == first.id
        assert second.idempotency_key == "key-1"

    async def test_update_status(
        self, async_session: AsyncSession, sample_event: BurnEvent
    ) -> None:
        repo = BurnDeliveryRepository(async_session)
        dto = await repo.get_or_create_pending(sample_event, idempotency_key="key-1")

        await repo.update_status(dto.id, status=DELIVERY_FAILED, attempts=5, error_message="503")
        failed = await repo.get_by_natural_key(*sample_event.natural_key)
        assert failed is not None
        assert failed.status == DELIVERY_FAILED
        assert failed.attempts == 5
        assert failed.is_final is False

        await repo.update_status(dto.id, status=DELIVERY_DELIVERED, attempts=6, tx_hash="5xTx")
        delivered = await repo.get_by_natural_key(*sample_event.natural_key)
        assert delivered is not None
        assert delivered.status == DELIVERY_DELIVERED
        assert delivered.tx_hash == "5xTx"
        assert delivered.error_message is None
        assert delivered.is_final is True

    async def test_list_by_signature_and_status(
        self, async_session: AsyncSession, sample_event: BurnEvent
    ) -> None:
        repo = BurnDeliveryRepository(async_session)
        other = BurnEvent(BurnEventKind.REWARD_CLAIM, "W2", "M1", 5, "abc123")
        await repo.get_or_create_pending(sample_event, idempotency_key="key-1")
        await repo.get_or_create_pending(other, idempotency_key="key-2")

        rows = await repo.list_by_signature("abc123")
        assert [r.kind for r in rows] == ["PREDICTION_BET", "REWARD_CLAIM"]
        assert len(await repo.list_by_status(DELIVERY_PENDING)) == 2
        assert await repo.list_by_status(DELIVERY_DELIVERED) == []

    @pytest.mark.parametrize("amount", [2**63, 2**64 - 1])
    async def test_full_u64_amount_round_trips(
        self, async_session: AsyncSession, amount: int
    ) -> None:
        repo = BurnDeliveryRepository(async_session)
        event = BurnEvent(BurnEventKind.MARKET_CREATION, "C1", "M1", amount, "abc123")

        await repo.get_or_create_pending(event, idempotency_key="key-1")
        async_session.expunge_all()
        dto = await repo.get_by_natural_key(*event.natural_key)

        assert dto is not None
        assert dto.burn_amount == amount
        assert isinstance(dto.burn_amount, int)


# ============================================================================
# ParseFailureRepository Tests
# ============================================================================


class TestParseFailureRepository:
    """Tests for ParseFailureRepository."""

    async def test_insert_many_ignores_duplicates(self, async_session: AsyncSession) -> None:
        repo = ParseFailureRepository(async_session)
        failure = ParseFailure("abc123", 2, "Burn event emitted: PREDICTION_BET", "missing field user")

        assert await repo.insert_many([failure]) == 1
        await repo.insert_many([failure])

        rows = await repo.list_by_signature("abc123")
        assert len(rows) == 1
        assert rows[0].reason == "missing field user"
        assert rows[0].line_index == 2

    async def test_insert_nothing(self, async_session: AsyncSession) -> None:
        assert await ParseFailureRepository(async_session).insert_many([]) == 0
