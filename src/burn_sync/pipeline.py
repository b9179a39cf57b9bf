"""Main pipeline orchestrator for Burn Sync.

This module provides the Pipeline class that wires together the log
subscription, the dispatch worker pool and the periodic backfill, and manages
their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from burn_sync.backfill import BackfillResult, HistoricalBackfiller
from burn_sync.config import Settings, get_settings
from burn_sync.ingestor.log_stream import LogSubscriptionHandler
from burn_sync.ingestor.models import LogNotification
from burn_sync.ingestor.solana_client import SolanaRpcClient
from burn_sync.ledger.client import LedgerClient
from burn_sync.processor import BurnEventProcessor, ProcessStatus
from burn_sync.storage.claims import SignatureClaims
from burn_sync.storage.database import DatabaseManager
from burn_sync.storage.signature_ledger import SignatureLedger

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when the pipeline cannot be wired or run."""


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    notifications_received: int = 0
    transactions_completed: int = 0
    transactions_incomplete: int = 0
    backfill_runs: int = 0
    backfill_processed: int = 0
    errors: int = 0
    last_notification_time: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator.

    Pipeline flow:
        logsSubscribe → bounded queue → dispatch workers → Processor → Ledger API
        getSignaturesForAddress (periodic) → Backfiller → Processor

    Example:
        ```python
        from burn_sync.config import get_settings
        from burn_sync.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, never call the ledger or mark signatures.
                Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._signature_ledger: SignatureLedger | None = None
        self._rpc_client: SolanaRpcClient | None = None
        self._ledger_client: LedgerClient | None = None
        self._processor: BurnEventProcessor | None = None
        self._backfiller: HistoricalBackfiller | None = None
        self._log_stream: LogSubscriptionHandler | None = None

        # Synchronization
        self._queue: asyncio.Queue[LogNotification] | None = None
        self._stop_event: asyncio.Event | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._backfill_task: asyncio.Task[None] | None = None
        self._worker_tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def processor(self) -> BurnEventProcessor | None:
        return self._processor

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components, starts the worker pool, the log
        subscription and the backfill loop.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        The subscription stops first so no new work is accepted, then the
        workers get the grace period to drain the queue before being
        cancelled. Work cut off by cancellation stays unmarked and is picked
        up by the next backfill.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings
        program_id = settings.solana.program_id
        if not program_id:
            raise PipelineError("SOLANA_PROGRAM_ID is not configured")

        # Initialize Database Manager
        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        self._signature_ledger = SignatureLedger(self._db_manager.get_async_session)

        # Initialize Redis claim markers
        claims: SignatureClaims | None = None
        if settings.redis.claims_enabled:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
            claims = SignatureClaims(self._redis, ttl_seconds=settings.redis.claim_ttl_seconds)

        # Initialize Solana RPC client
        logger.debug("Initializing Solana RPC client...")
        self._rpc_client = SolanaRpcClient(
            settings.solana.rpc_url,
            program_id=program_id,
            commitment=settings.solana.commitment,
            max_requests_per_second=settings.solana.max_requests_per_second,
        )

        # Initialize ledger API client
        if not self._dry_run:
            if settings.ledger.api_key is None:
                raise PipelineError("LEDGER_API_KEY is not configured")
            logger.debug("Initializing ledger client...")
            self._ledger_client = LedgerClient(
                settings.ledger.base_url,
                api_key=settings.ledger.api_key.get_secret_value(),
                max_attempts=settings.ledger.max_attempts,
                retry_base_delay=settings.ledger.retry_base_delay_seconds,
                retry_max_delay=settings.ledger.retry_max_delay_seconds,
                timeout=settings.ledger.timeout_seconds,
            )

        self._processor = BurnEventProcessor(
            self._signature_ledger,
            self._ledger_client,
            claims=claims,
            persist_onchain=settings.ledger.persist_onchain,
            batch_enabled=settings.ledger.batch_enabled,
            dry_run=self._dry_run,
        )

        self._backfiller = HistoricalBackfiller(
            self._rpc_client,
            self._signature_ledger,
            self._processor,
            concurrency=settings.backfill.concurrency,
        )

        self._queue = asyncio.Queue(maxsize=settings.dispatch.queue_size)
        self._log_stream = LogSubscriptionHandler(
            ws_url=settings.solana.resolved_ws_url,
            program_id=program_id,
            commitment=settings.solana.commitment,
            on_notification=self._on_notification,
        )

        if self._dry_run:
            logger.info("Dry run mode: the ledger will not be called and nothing will be marked")

    async def _start_background_services(self) -> None:
        """Start background services."""
        for i in range(self._settings.dispatch.workers):
            self._worker_tasks.append(asyncio.create_task(self._run_worker(i)))
        logger.debug("Started %d dispatch workers", len(self._worker_tasks))

        if self._log_stream:
            logger.debug("Starting log stream...")
            self._stream_task = asyncio.create_task(self._run_log_stream())

        backfill = self._settings.backfill
        if self._backfiller and (backfill.on_start or backfill.interval_seconds > 0):
            logger.debug("Starting backfill loop...")
            self._backfill_task = asyncio.create_task(self._run_backfill_loop())

    async def _on_notification(self, notification: LogNotification) -> None:
        """Hand a notification to the workers; waits while the queue is full."""
        if self._queue is None:
            return
        self._stats.notifications_received += 1
        self._stats.last_notification_time = datetime.now(UTC)
        await self._queue.put(notification)

    async def _run_log_stream(self) -> None:
        """Run the log stream in a task."""
        if not self._log_stream:
            return

        try:
            await self._log_stream.start()
        except asyncio.CancelledError:
            logger.debug("Log stream task cancelled")
        except Exception as e:
            logger.error("Log stream error: %s", e)
            self._stats.last_error = str(e)
            self._stats.errors += 1

    async def _run_worker(self, worker_id: int) -> None:
        if not self._queue or not self._processor:
            return

        while True:
            notification = await self._queue.get()
            try:
                outcome = await self._processor.process(notification)
                if outcome.status == ProcessStatus.COMPLETED:
                    self._stats.transactions_completed += 1
                elif outcome.status == ProcessStatus.INCOMPLETE:
                    self._stats.transactions_incomplete += 1
            except asyncio.CancelledError:
                logger.debug("Worker %d cancelled while processing %s", worker_id, notification.signature)
                raise
            except Exception as e:
                logger.exception("Worker %d failed on %s: %s", worker_id, notification.signature, e)
                self._stats.errors += 1
                self._stats.last_error = str(e)
            finally:
                self._queue.task_done()

    async def _run_backfill_loop(self) -> None:
        if not self._stop_event or not self._backfiller:
            return

        settings = self._settings.backfill
        if settings.on_start:
            await self._backfill_once()

        if settings.interval_seconds <= 0:
            return

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=settings.interval_seconds)
                break
            except TimeoutError:
                pass
            await self._backfill_once()

    async def _backfill_once(self) -> BackfillResult | None:
        if not self._backfiller:
            return None
        try:
            result = await self._backfiller.backfill(limit=self._settings.backfill.limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Backfill pass failed: %s", e)
            self._stats.errors += 1
            self._stats.last_error = str(e)
            return None
        self._stats.backfill_runs += 1
        self._stats.backfill_processed += result.processed
        return result

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        # Stop accepting notifications
        if self._log_stream:
            logger.debug("Stopping log stream...")
            await self._log_stream.stop()

        if self._stream_task:
            try:
                await asyncio.wait_for(self._stream_task, timeout=5)
            except TimeoutError:
                self._stream_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._stream_task
            self._stream_task = None

        if self._backfill_task:
            self._backfill_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._backfill_task
            self._backfill_task = None

        # Let workers drain what was already accepted
        if self._queue and self._worker_tasks:
            grace = self._settings.dispatch.shutdown_grace_seconds
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "Shutdown grace period (%ss) elapsed with %d notifications queued; "
                    "they will be recovered by backfill",
                    grace,
                    self._queue.qsize(),
                )

        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._worker_tasks = []

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._ledger_client:
            await self._ledger_client.close()
            self._ledger_client = None

        if self._rpc_client:
            await self._rpc_client.close()
            self._rpc_client = None

        # Close database connections
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        # Close Redis connection
        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run_backfill(self, *, before: str | None = None, limit: int | None = None) -> BackfillResult:
        """Run a single backfill pass without starting the subscription.

        Used by the ``backfill`` CLI command.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot run a standalone backfill in state {self._state}")

        try:
            await self._initialize_components()
            if not self._backfiller:
                raise PipelineError("backfiller was not initialized")
            return await self._backfiller.backfill(
                before=before,
                limit=limit if limit is not None else self._settings.backfill.limit,
            )
        finally:
            await self._cleanup()

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask ``run()`` to return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
