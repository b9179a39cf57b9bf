"""Durable record of processed transactions and event deliveries.

Every write runs in its own committed session scope, so once a call returns
the effect is visible to every other worker and survives a restart.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from burn_sync.ingestor.models import BurnEvent, ParseFailure
from burn_sync.storage.repos import (
    BurnDeliveryDTO,
    BurnDeliveryRepository,
    ParseFailureRepository,
    ProcessedSignatureRepository,
)

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]

OUTCOME_COMPLETED = "completed"
OUTCOME_CHAIN_FAILED = "chain_failed"
OUTCOME_NO_EVENTS = "no_events"


class StorageError(Exception):
    """Raised when the ledger store cannot be read or written."""


class SignatureLedger:
    """Processed-signature set plus per-event delivery state.

    Args:
        session_scope: Zero-arg callable returning an async context manager
            that yields a session and commits on clean exit
            (``DatabaseManager.get_async_session`` or ``async_sessionmaker.begin``).
    """

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def has(self, signature: str) -> bool:
        try:
            async with self._session_scope() as session:
                return await ProcessedSignatureRepository(session).exists(signature)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to look up signature {signature}: {e}") from e

    async def processed_among(self, signatures: Sequence[str]) -> set[str]:
        try:
            async with self._session_scope() as session:
                return await ProcessedSignatureRepository(session).processed_among(signatures)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to look up {len(signatures)} signatures: {e}") from e

    async def mark_processed(
        self,
        signature: str,
        *,
        event_count: int = 0,
        outcome: str = OUTCOME_COMPLETED,
    ) -> bool:
        """Record ``signature`` as processed.

        Returns:
            True if this call recorded it, False if it was already recorded.

        Raises:
            StorageError: If the write did not commit.
        """
        try:
            async with self._session_scope() as session:
                inserted = await ProcessedSignatureRepository(session).mark(
                    signature, event_count=event_count, outcome=outcome
                )
        except SQLAlchemyError as e:
            raise StorageError(f"failed to mark signature {signature} processed: {e}") from e
        if inserted:
            logger.debug("Marked %s processed (%s, events=%d)", signature, outcome, event_count)
        return inserted

    async def prune(self, older_than: timedelta) -> int:
        """Drop processed records older than ``older_than``."""
        cutoff = datetime.now(UTC) - older_than
        try:
            async with self._session_scope() as session:
                removed = await ProcessedSignatureRepository(session).prune_before(cutoff)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to prune processed signatures: {e}") from e
        logger.info("Pruned %d processed signatures older than %s", removed, cutoff.isoformat())
        return removed

    async def delivery_for(self, event: BurnEvent) -> BurnDeliveryDTO:
        """Load the event's delivery record, creating it with a fresh key if new."""
        try:
            async with self._session_scope() as session:
                return await BurnDeliveryRepository(session).get_or_create_pending(
                    event, idempotency_key=str(uuid.uuid4())
                )
        except SQLAlchemyError as e:
            raise StorageError(f"failed to load delivery for {event.natural_key}: {e}") from e

    async def record_delivery(
        self,
        delivery: BurnDeliveryDTO,
        *,
        status: str,
        attempts: int | None = None,
        tx_hash: str | None = None,
        date_burned: str | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            async with self._session_scope() as session:
                await BurnDeliveryRepository(session).update_status(
                    delivery.id,
                    status=status,
                    attempts=attempts,
                    tx_hash=tx_hash,
                    date_burned=date_burned,
                    error_message=error_message,
                )
        except SQLAlchemyError as e:
            raise StorageError(f"failed to update delivery {delivery.id}: {e}") from e

    async def deliveries(self, signature: str) -> list[BurnDeliveryDTO]:
        try:
            async with self._session_scope() as session:
                return await BurnDeliveryRepository(session).list_by_signature(signature)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to list deliveries for {signature}: {e}") from e

    async def record_parse_failures(self, failures: Iterable[ParseFailure]) -> int:
        failures = list(failures)
        if not failures:
            return 0
        try:
            async with self._session_scope() as session:
                return await ParseFailureRepository(session).insert_many(failures)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to record {len(failures)} parse failures: {e}") from e
