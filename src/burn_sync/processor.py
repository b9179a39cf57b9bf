"""Dispatch chain shared by the live subscriber and the backfiller.

For one transaction: ledger check, claim, parse, then deliver each burn event
to the ledger in log order. The signature is marked processed only once every
event has reached a final state (delivered, rejected or invalid), so a crash
or retry exhaustion leaves it for a later pass.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from redis.exceptions import RedisError

from burn_sync.ingestor.models import BurnEvent, LogNotification
from burn_sync.ingestor.parser import BurnEventParser
from burn_sync.ledger.client import (
    LedgerClient,
    LedgerRejectedError,
    LedgerRetryExhaustedError,
)
from burn_sync.ledger.proofs import BurnRequest, ProofBuildError, build_burn_request
from burn_sync.storage.claims import SignatureClaims
from burn_sync.storage.repos import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_INVALID,
    DELIVERY_REJECTED,
    BurnDeliveryDTO,
)
from burn_sync.storage.signature_ledger import (
    OUTCOME_CHAIN_FAILED,
    OUTCOME_COMPLETED,
    OUTCOME_NO_EVENTS,
    SignatureLedger,
    StorageError,
)

logger = logging.getLogger(__name__)


class ProcessStatus(Enum):
    ALREADY_PROCESSED = "already_processed"
    CLAIMED_ELSEWHERE = "claimed_elsewhere"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    DRY_RUN = "dry_run"


@dataclass
class ProcessOutcome:
    """Result of processing one transaction."""

    signature: str
    status: ProcessStatus
    events: int = 0
    delivered: int = 0
    rejected: int = 0
    invalid: int = 0
    pending: int = 0
    parse_failures: int = 0

    @property
    def completed(self) -> bool:
        return self.status == ProcessStatus.COMPLETED


@dataclass
class ProcessorStats:
    transactions_seen: int = 0
    transactions_skipped: int = 0
    transactions_completed: int = 0
    transactions_incomplete: int = 0
    events_parsed: int = 0
    parse_failures: int = 0
    events_delivered: int = 0
    events_rejected: int = 0
    events_invalid: int = 0
    retry_exhaustions: int = 0
    storage_errors: int = 0
    claim_errors: int = 0


class BurnEventProcessor:
    """Processes transaction notifications into ledger deliveries.

    Example:
        ```python
        processor = BurnEventProcessor(ledger, client, claims=claims)
        outcome = await processor.process(notification)
        if outcome.completed:
            ...
        ```
    """

    def __init__(
        self,
        ledger: SignatureLedger,
        client: LedgerClient | None,
        *,
        parser: BurnEventParser | None = None,
        claims: SignatureClaims | None = None,
        persist_onchain: bool = True,
        batch_enabled: bool = False,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            ledger: Signature ledger and delivery store.
            client: Ledger API client. May be None only in dry-run mode.
            parser: Log parser (default grammar when omitted).
            claims: Optional cross-worker claim markers.
            persist_onchain: Forwarded into every burn request.
            batch_enabled: Send a transaction's pending events in one batch call.
            dry_run: Parse and log only; never call the ledger or mark.
            clock: Source of proof timestamps.
        """
        if client is None and not dry_run:
            raise ValueError("a LedgerClient is required unless dry_run is set")
        self._ledger = ledger
        self._client = client
        self._parser = parser or BurnEventParser()
        self._claims = claims
        self._persist_onchain = persist_onchain
        self._batch_enabled = batch_enabled
        self._dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stats = ProcessorStats()

    @property
    def stats(self) -> ProcessorStats:
        return self._stats

    async def process(self, notification: LogNotification) -> ProcessOutcome:
        """Run the dispatch chain for one transaction."""
        signature = notification.signature
        self._stats.transactions_seen += 1

        try:
            if await self._ledger.has(signature):
                self._stats.transactions_skipped += 1
                logger.debug("Skipping already processed transaction %s", signature)
                return ProcessOutcome(signature, ProcessStatus.ALREADY_PROCESSED)
        except StorageError as e:
            return self._storage_failure(signature, e)

        if self._claims is not None:
            try:
                claimed = await self._claims.claim(signature)
            except RedisError as e:
                self._stats.claim_errors += 1
                self._stats.transactions_incomplete += 1
                logger.error("Could not claim %s, leaving it for a later pass: %s", signature, e)
                return ProcessOutcome(signature, ProcessStatus.INCOMPLETE)
            if not claimed:
                self._stats.transactions_skipped += 1
                return ProcessOutcome(signature, ProcessStatus.CLAIMED_ELSEWHERE)

        try:
            return await self._process_claimed(notification)
        except StorageError as e:
            return self._storage_failure(signature, e)
        finally:
            if self._claims is not None:
                try:
                    await self._claims.release(signature)
                except RedisError as e:
                    logger.warning("Failed to release claim on %s: %s", signature, e)

    def _storage_failure(self, signature: str, error: StorageError) -> ProcessOutcome:
        self._stats.storage_errors += 1
        self._stats.transactions_incomplete += 1
        logger.error("Storage error while processing %s: %s", signature, error)
        return ProcessOutcome(signature, ProcessStatus.INCOMPLETE)

    async def _process_claimed(self, notification: LogNotification) -> ProcessOutcome:
        signature = notification.signature

        # Another worker may have finished between the first check and the claim.
        if self._claims is not None and await self._ledger.has(signature):
            self._stats.transactions_skipped += 1
            return ProcessOutcome(signature, ProcessStatus.ALREADY_PROCESSED)

        if notification.failed:
            logger.info("Transaction %s failed on chain (%s); no burn to record", signature, notification.err)
            if not self._dry_run:
                await self._ledger.mark_processed(signature, event_count=0, outcome=OUTCOME_CHAIN_FAILED)
            return self._finish(ProcessOutcome(signature, ProcessStatus.COMPLETED))

        parsed = self._parser.parse(signature, notification.logs)
        outcome = ProcessOutcome(
            signature,
            ProcessStatus.INCOMPLETE,
            events=len(parsed.events),
            parse_failures=len(parsed.failures),
        )
        self._stats.events_parsed += len(parsed.events)
        self._stats.parse_failures += len(parsed.failures)

        if self._dry_run:
            for event in parsed.events:
                logger.info(
                    "[dry-run] %s market=%s actor=%s amount=%d tx=%s",
                    event.kind.value,
                    event.subject_id,
                    event.actor,
                    event.burn_amount,
                    signature,
                )
            outcome.status = ProcessStatus.DRY_RUN
            return outcome

        if parsed.failures:
            await self._ledger.record_parse_failures(parsed.failures)

        if self._batch_enabled and len(parsed.events) > 1:
            await self._deliver_batch(parsed.events, outcome)
        else:
            for event in parsed.events:
                await self._deliver(event, outcome)

        if outcome.pending:
            outcome.status = ProcessStatus.INCOMPLETE
            return self._finish(outcome)

        await self._ledger.mark_processed(
            signature,
            event_count=outcome.events,
            outcome=OUTCOME_COMPLETED if outcome.events else OUTCOME_NO_EVENTS,
        )
        outcome.status = ProcessStatus.COMPLETED
        return self._finish(outcome)

    def _finish(self, outcome: ProcessOutcome) -> ProcessOutcome:
        if outcome.status == ProcessStatus.COMPLETED:
            self._stats.transactions_completed += 1
        else:
            self._stats.transactions_incomplete += 1
            logger.info(
                "Transaction %s left incomplete: %d of %d events pending",
                outcome.signature,
                outcome.pending,
                outcome.events,
            )
        return outcome

    def _count_final(self, delivery: BurnDeliveryDTO, outcome: ProcessOutcome) -> None:
        if delivery.status == DELIVERY_DELIVERED:
            outcome.delivered += 1
        elif delivery.status == DELIVERY_REJECTED:
            outcome.rejected += 1
        else:
            outcome.invalid += 1

    async def _prepare(
        self, event: BurnEvent, outcome: ProcessOutcome
    ) -> tuple[BurnDeliveryDTO, BurnRequest | None]:
        """Load the delivery record and build the request.

        Returns a None request when nothing should be sent: the record is
        already final, or the proof could not be built (recorded invalid).
        """
        delivery = await self._ledger.delivery_for(event)
        if delivery.is_final:
            logger.debug(
                "Event %s already %s; not resubmitting", event.natural_key, delivery.status
            )
            self._count_final(delivery, outcome)
            return delivery, None

        try:
            request = build_burn_request(
                event,
                timestamp=self._clock(),
                persist_onchain=self._persist_onchain,
            )
        except ProofBuildError as e:
            logger.critical("Cannot build proof for %s: %s", event.natural_key, e)
            await self._ledger.record_delivery(delivery, status=DELIVERY_INVALID, error_message=str(e))
            self._stats.events_invalid += 1
            outcome.invalid += 1
            return delivery, None

        return delivery, request

    def _require_client(self) -> LedgerClient:
        if self._client is None:
            raise RuntimeError("no LedgerClient configured; only dry-run processing is possible")
        return self._client

    async def _refresh_claim(self, signature: str) -> None:
        if self._claims is None:
            return
        try:
            held = await self._claims.refresh(signature)
        except RedisError as e:
            self._stats.claim_errors += 1
            logger.warning("Failed to refresh claim on %s: %s", signature, e)
            return
        if not held:
            logger.warning("Claim on %s lapsed before delivery", signature)

    async def _deliver(self, event: BurnEvent, outcome: ProcessOutcome) -> None:
        delivery, request = await self._prepare(event, outcome)
        if request is None:
            return

        client = self._require_client()
        await self._refresh_claim(event.source_signature)
        try:
            receipt = await client.submit(request, idempotency_key=delivery.idempotency_key)
        except LedgerRejectedError as e:
            await self._record_rejected(event, delivery, outcome, e, attempts=e.attempts)
            return
        except LedgerRetryExhaustedError as e:
            await self._record_exhausted(event, delivery, outcome, e, attempts=e.attempts)
            return

        await self._ledger.record_delivery(
            delivery,
            status=DELIVERY_DELIVERED,
            attempts=delivery.attempts + receipt.attempts,
            tx_hash=receipt.tx_hash,
            date_burned=receipt.date_burned,
        )
        self._stats.events_delivered += 1
        outcome.delivered += 1
        logger.info(
            "Delivered %s burn of %d for market %s (tx=%s)",
            event.kind.value,
            event.burn_amount,
            event.subject_id,
            receipt.tx_hash,
        )

    async def _deliver_batch(self, events: list[BurnEvent], outcome: ProcessOutcome) -> None:
        prepared: list[tuple[BurnEvent, BurnDeliveryDTO, BurnRequest]] = []
        for event in events:
            delivery, request = await self._prepare(event, outcome)
            if request is not None:
                prepared.append((event, delivery, request))
        if not prepared:
            return

        client = self._require_client()
        await self._refresh_claim(prepared[0][0].source_signature)
        try:
            result = await client.submit_batch(
                [(request, delivery.idempotency_key) for _, delivery, request in prepared]
            )
        except LedgerRejectedError as e:
            for event, delivery, _ in prepared:
                await self._record_rejected(event, delivery, outcome, e, attempts=e.attempts)
            return
        except LedgerRetryExhaustedError as e:
            for event, delivery, _ in prepared:
                await self._record_exhausted(event, delivery, outcome, e, attempts=e.attempts)
            return

        for item in result.items:
            event, delivery, _ = prepared[item.index]
            if item.receipt is not None:
                await self._ledger.record_delivery(
                    delivery,
                    status=DELIVERY_DELIVERED,
                    attempts=delivery.attempts + result.attempts,
                    tx_hash=item.receipt.tx_hash,
                    date_burned=item.receipt.date_burned,
                )
                self._stats.events_delivered += 1
                outcome.delivered += 1
            elif isinstance(item.error, LedgerRejectedError):
                await self._record_rejected(event, delivery, outcome, item.error, attempts=result.attempts)
            else:
                await self._record_exhausted(event, delivery, outcome, item.error, attempts=result.attempts)

    async def _record_rejected(
        self,
        event: BurnEvent,
        delivery: BurnDeliveryDTO,
        outcome: ProcessOutcome,
        error: Exception,
        *,
        attempts: int,
    ) -> None:
        logger.error("Ledger rejected %s: %s", event.natural_key, error)
        await self._ledger.record_delivery(
            delivery,
            status=DELIVERY_REJECTED,
            attempts=delivery.attempts + attempts,
            error_message=str(error),
        )
        self._stats.events_rejected += 1
        outcome.rejected += 1

    async def _record_exhausted(
        self,
        event: BurnEvent,
        delivery: BurnDeliveryDTO,
        outcome: ProcessOutcome,
        error: Exception | None,
        *,
        attempts: int,
    ) -> None:
        logger.error(
            "Delivery of %s failed after retries; will retry with key %s: %s",
            event.natural_key,
            delivery.idempotency_key,
            error,
        )
        await self._ledger.record_delivery(
            delivery,
            status=DELIVERY_FAILED,
            attempts=delivery.attempts + attempts,
            error_message=str(error),
        )
        self._stats.retry_exhaustions += 1
        outcome.pending += 1
