"""Repository pattern implementations for data access.

This module provides data access abstractions for processed signatures,
burn deliveries and parse failures.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from burn_sync.storage.models import (
    BurnDeliveryModel,
    ParseFailureModel,
    ProcessedSignatureModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from burn_sync.ingestor.models import BurnEvent, ParseFailure

logger = logging.getLogger(__name__)

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"
DELIVERY_REJECTED = "rejected"
DELIVERY_FAILED = "failed"
DELIVERY_INVALID = "invalid"

# Statuses that never get another submission.
FINAL_DELIVERY_STATUSES = frozenset({DELIVERY_DELIVERED, DELIVERY_REJECTED, DELIVERY_INVALID})

_NATURAL_KEY = ["signature", "kind", "subject_id", "actor"]


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class ProcessedSignatureDTO:
    """Data transfer object for processed signatures."""

    signature: str
    processed_at: datetime
    event_count: int
    outcome: str

    @classmethod
    def from_model(cls, model: ProcessedSignatureModel) -> ProcessedSignatureDTO:
        return cls(
            signature=model.signature,
            processed_at=model.processed_at,
            event_count=model.event_count,
            outcome=model.outcome,
        )


@dataclass
class BurnDeliveryDTO:
    """Data transfer object for burn deliveries."""

    id: int
    signature: str
    kind: str
    subject_id: str
    actor: str
    burn_amount: int
    idempotency_key: str
    status: str
    attempts: int
    option_index: int | None = None
    tx_hash: str | None = None
    date_burned: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_DELIVERY_STATUSES

    @classmethod
    def from_model(cls, model: BurnDeliveryModel) -> BurnDeliveryDTO:
        return cls(
            id=model.id,
            signature=model.signature,
            kind=model.kind,
            subject_id=model.subject_id,
            actor=model.actor,
            burn_amount=model.burn_amount,
            idempotency_key=model.idempotency_key,
            status=model.status,
            attempts=model.attempts,
            option_index=model.option_index,
            tx_hash=model.tx_hash,
            date_burned=model.date_burned,
            error_message=model.error_message,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class ParseFailureDTO:
    signature: str
    line_index: int
    line: str
    reason: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ParseFailureModel) -> ParseFailureDTO:
        return cls(
            signature=model.signature,
            line_index=model.line_index,
            line=model.line,
            reason=model.reason,
            created_at=model.created_at,
        )


class ProcessedSignatureRepository:
    """Repository for the append-only processed signature set."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, signature: str) -> bool:
        result = await self.session.execute(
            select(ProcessedSignatureModel.signature).where(
                ProcessedSignatureModel.signature == signature
            )
        )
        return result.scalar_one_or_none() is not None

    async def get(self, signature: str) -> ProcessedSignatureDTO | None:
        result = await self.session.execute(
            select(ProcessedSignatureModel).where(ProcessedSignatureModel.signature == signature)
        )
        model = result.scalar_one_or_none()
        return ProcessedSignatureDTO.from_model(model) if model else None

    async def processed_among(self, signatures: Sequence[str]) -> set[str]:
        """Return the subset of ``signatures`` already recorded."""
        if not signatures:
            return set()
        result = await self.session.execute(
            select(ProcessedSignatureModel.signature).where(
                ProcessedSignatureModel.signature.in_(list(signatures))
            )
        )
        return set(result.scalars().all())

    async def mark(self, signature: str, *, event_count: int, outcome: str) -> bool:
        """Record a signature. Idempotent.

        Returns:
            True if a row was inserted, False if it already existed.
        """
        stmt = (
            _insert_for(self.session, ProcessedSignatureModel)
            .values(
                signature=signature,
                processed_at=datetime.now(UTC),
                event_count=event_count,
                outcome=outcome,
            )
            .on_conflict_do_nothing(index_elements=["signature"])
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def prune_before(self, cutoff: datetime) -> int:
        """Delete records processed before ``cutoff``. Returns rows removed."""
        result = await self.session.execute(
            delete(ProcessedSignatureModel).where(ProcessedSignatureModel.processed_at < cutoff)
        )
        return int(result.rowcount or 0)

    async def count(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(ProcessedSignatureModel)
        )
        return int(result.scalar_one())


class BurnDeliveryRepository:
    """Repository for per-event delivery records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_natural_key(
        self, signature: str, kind: str, subject_id: str, actor: str
    ) -> BurnDeliveryDTO | None:
        result = await self.session.execute(
            select(BurnDeliveryModel).where(
                BurnDeliveryModel.signature == signature,
                BurnDeliveryModel.kind == kind,
                BurnDeliveryModel.subject_id == subject_id,
                BurnDeliveryModel.actor == actor,
            )
        )
        model = result.scalar_one_or_none()
        return BurnDeliveryDTO.from_model(model) if model else None

    async def get_or_create_pending(
        self, event: BurnEvent, *, idempotency_key: str
    ) -> BurnDeliveryDTO:
        """Return the event's record, inserting a pending one if absent.

        ``idempotency_key`` is only used when the row is created; an existing
        record keeps the key it was first given.
        """
        now = datetime.now(UTC)
        stmt = (
            _insert_for(self.session, BurnDeliveryModel)
            .values(
                signature=event.source_signature,
                kind=event.kind.value,
                subject_id=event.subject_id,
                actor=event.actor,
                burn_amount=event.burn_amount,
                option_index=event.option_index,
                idempotency_key=idempotency_key,
                status=DELIVERY_PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=_NATURAL_KEY)
        )
        await self.session.execute(stmt)
        await self.session.flush()

        dto = await self.get_by_natural_key(*event.natural_key)
        if dto is None:  # pragma: no cover
            raise LookupError(f"delivery record vanished for {event.natural_key}")
        return dto

    async def update_status(
        self,
        delivery_id: int,
        *,
        status: str,
        attempts: int | None = None,
        tx_hash: str | None = None,
        date_burned: str | None = None,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status,
            "updated_at": datetime.now(UTC),
            "error_message": error_message,
        }
        if attempts is not None:
            values["attempts"] = attempts
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        if date_burned is not None:
            values["date_burned"] = date_burned
        await self.session.execute(
            update(BurnDeliveryModel).where(BurnDeliveryModel.id == delivery_id).values(**values)
        )
        await self.session.flush()

    async def list_by_signature(self, signature: str) -> list[BurnDeliveryDTO]:
        result = await self.session.execute(
            select(BurnDeliveryModel)
            .where(BurnDeliveryModel.signature == signature)
            .order_by(BurnDeliveryModel.id)
        )
        return [BurnDeliveryDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_status(self, status: str, *, limit: int = 100) -> list[BurnDeliveryDTO]:
        result = await self.session.execute(
            select(BurnDeliveryModel)
            .where(BurnDeliveryModel.status == status)
            .order_by(BurnDeliveryModel.updated_at.desc())
            .limit(limit)
        )
        return [BurnDeliveryDTO.from_model(m) for m in result.scalars().all()]


class ParseFailureRepository:
    """Repository for recorded parse failures."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, failures: Iterable[ParseFailure]) -> int:
        """Insert failures, ignoring lines already recorded. Returns rows written."""
        now = datetime.now(UTC)
        rows = [
            {
                "signature": f.signature,
                "line_index": f.line_index,
                "line": f.line,
                "reason": f.reason[:256],
                "created_at": now,
            }
            for f in failures
        ]
        if not rows:
            return 0
        stmt = (
            _insert_for(self.session, ParseFailureModel)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["signature", "line_index"])
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return int(result.rowcount or 0)

    async def list_by_signature(self, signature: str) -> list[ParseFailureDTO]:
        result = await self.session.execute(
            select(ParseFailureModel)
            .where(ParseFailureModel.signature == signature)
            .order_by(ParseFailureModel.line_index)
        )
        return [ParseFailureDTO.from_model(m) for m in result.scalars().all()]
