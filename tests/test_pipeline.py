"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

import asyncio
import contextlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from burn_sync.backfill import BackfillResult
from burn_sync.config import Settings
from burn_sync.ingestor.models import LogNotification
from burn_sync.pipeline import Pipeline, PipelineError, PipelineState
from burn_sync.processor import ProcessOutcome, ProcessStatus

PROGRAM_ID = "PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu"


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    # Create nested mock objects
    database = MagicMock()
    database.url = "sqlite+aiosqlite:///:memory:"

    redis = MagicMock()
    redis.url = "redis://localhost:6379"
    redis.claims_enabled = False
    redis.claim_ttl_seconds = 300

    solana = MagicMock()
    solana.rpc_url = "https://api.devnet.solana.com"
    solana.resolved_ws_url = "wss://api.devnet.solana.com"
    solana.program_id = PROGRAM_ID
    solana.commitment = "confirmed"
    solana.max_requests_per_second = 10.0

    ledger = MagicMock()
    ledger.base_url = "https://ledger.test/v1"
    ledger.api_key = None
    ledger.persist_onchain = True
    ledger.max_attempts = 5
    ledger.retry_base_delay_seconds = 1.0
    ledger.retry_max_delay_seconds = 30.0
    ledger.timeout_seconds = 15.0
    ledger.batch_enabled = False

    dispatch = MagicMock()
    dispatch.workers = 2
    dispatch.queue_size = 10
    dispatch.shutdown_grace_seconds = 1.0

    backfill = MagicMock()
    backfill.on_start = False
    backfill.interval_seconds = 0
    backfill.limit = 100
    backfill.concurrency = 2

    settings = MagicMock(spec=Settings)
    settings.database = database
    settings.redis = redis
    settings.solana = solana
    settings.ledger = ledger
    settings.dispatch = dispatch
    settings.backfill = backfill
    settings.dry_run = True
    return settings


@pytest.fixture
def sample_notification() -> LogNotification:
    return LogNotification(signature="abc123", logs=("Program log: hello",))


def completed(notification: LogNotification) -> ProcessOutcome:
    return ProcessOutcome(notification.signature, ProcessStatus.COMPLETED)


class TestPipelineState:
    """Tests for pipeline state management."""

    def test_initial_state_is_stopped(self, mock_settings):
        """Pipeline should start in stopped state."""
        pipeline = Pipeline(mock_settings)
        assert pipeline.state == PipelineState.STOPPED

    def test_is_running_property(self, mock_settings):
        """is_running property should reflect state."""
        pipeline = Pipeline(mock_settings)
        assert not pipeline.is_running

        pipeline._state = PipelineState.RUNNING
        assert pipeline.is_running


class TestPipelineStats:
    """Tests for pipeline statistics."""

    def test_initial_stats(self, mock_settings):
        """Pipeline should have zero stats initially."""
        pipeline = Pipeline(mock_settings)
        stats = pipeline.stats

        assert stats.started_at is None
        assert stats.notifications_received == 0
        assert stats.transactions_completed == 0
        assert stats.backfill_runs == 0
        assert stats.errors == 0
        assert pipeline.queue_depth == 0


class TestPipelineInitialization:
    """Tests for pipeline initialization."""

    def test_dry_run_from_settings(self, mock_settings):
        """Pipeline should use dry_run from settings by default."""
        mock_settings.dry_run = True
        pipeline = Pipeline(mock_settings)
        assert pipeline._dry_run is True

        mock_settings.dry_run = False
        pipeline = Pipeline(mock_settings)
        assert pipeline._dry_run is False

    def test_dry_run_override(self, mock_settings):
        """Pipeline should allow overriding dry_run."""
        mock_settings.dry_run = False
        pipeline = Pipeline(mock_settings, dry_run=True)
        assert pipeline._dry_run is True

    def test_uses_get_settings_when_none_provided(self):
        """Pipeline should call get_settings if no settings provided."""
        with patch("burn_sync.pipeline.get_settings") as mock_get:
            mock_get.return_value = MagicMock(spec=Settings)
            mock_get.return_value.dry_run = False
            Pipeline()
            mock_get.assert_called_once()


class TestInitializeComponents:
    """Tests for component wiring."""

    @pytest.fixture
    def patched(self):
        with (
            patch("burn_sync.pipeline.DatabaseManager") as db,
            patch("burn_sync.pipeline.Redis") as redis,
            patch("burn_sync.pipeline.SolanaRpcClient") as rpc,
            patch("burn_sync.pipeline.LedgerClient") as ledger,
            patch("burn_sync.pipeline.LogSubscriptionHandler") as stream,
        ):
            yield {"db": db, "redis": redis, "rpc": rpc, "ledger": ledger, "stream": stream}

    async def test_dry_run_skips_ledger_client(self, mock_settings, patched):
        pipeline = Pipeline(mock_settings)

        await pipeline._initialize_components()

        patched["ledger"].assert_not_called()
        patched["redis"].from_url.assert_not_called()
        assert pipeline.processor is not None
        patched["stream"].assert_called_once()
        assert patched["stream"].call_args.kwargs["program_id"] == PROGRAM_ID

    async def test_claims_enabled_connects_redis(self, mock_settings, patched):
        mock_settings.redis.claims_enabled = True
        pipeline = Pipeline(mock_settings)

        await pipeline._initialize_components()

        patched["redis"].from_url.assert_called_once_with("redis://localhost:6379")

    async def test_live_mode_requires_api_key(self, mock_settings, patched):
        pipeline = Pipeline(mock_settings, dry_run=False)

        with pytest.raises(PipelineError, match="LEDGER_API_KEY"):
            await pipeline._initialize_components()

    async def test_live_mode_builds_ledger_client(self, mock_settings, patched):
        mock_settings.ledger.api_key = MagicMock()
        mock_settings.ledger.api_key.get_secret_value.return_value = "secret"
        pipeline = Pipeline(mock_settings, dry_run=False)

        await pipeline._initialize_components()

        patched["ledger"].assert_called_once()
        assert patched["ledger"].call_args.kwargs["api_key"] == "secret"

    async def test_missing_program_id(self, mock_settings, patched):
        mock_settings.solana.program_id = None
        pipeline = Pipeline(mock_settings)

        with pytest.raises(PipelineError, match="SOLANA_PROGRAM_ID"):
            await pipeline._initialize_components()


class TestDispatch:
    """Tests for the notification queue and dispatch workers."""

    async def test_on_notification_enqueues(self, mock_settings, sample_notification):
        pipeline = Pipeline(mock_settings)
        pipeline._queue = asyncio.Queue(maxsize=10)

        await pipeline._on_notification(sample_notification)

        assert pipeline.queue_depth == 1
        assert pipeline.stats.notifications_received == 1
        assert pipeline.stats.last_notification_time is not None

    async def test_worker_processes_queue(self, mock_settings, sample_notification):
        pipeline = Pipeline(mock_settings)
        pipeline._queue = asyncio.Queue()
        pipeline._processor = MagicMock()
        pipeline._processor.process = AsyncMock(side_effect=completed)

        await pipeline._queue.put(sample_notification)
        worker = asyncio.create_task(pipeline._run_worker(0))
        await asyncio.wait_for(pipeline._queue.join(), timeout=1)
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

        pipeline._processor.process.assert_awaited_once_with(sample_notification)
        assert pipeline.stats.transactions_completed == 1

    async def test_worker_survives_errors(self, mock_settings, sample_notification):
        pipeline = Pipeline(mock_settings)
        pipeline._queue = asyncio.Queue()
        pipeline._processor = MagicMock()
        pipeline._processor.process = AsyncMock(
            side_effect=[RuntimeError("boom"), completed(sample_notification)]
        )

        await pipeline._queue.put(sample_notification)
        await pipeline._queue.put(sample_notification)
        worker = asyncio.create_task(pipeline._run_worker(0))
        await asyncio.wait_for(pipeline._queue.join(), timeout=1)
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

        assert pipeline.stats.errors == 1
        assert pipeline.stats.last_error == "boom"
        assert pipeline.stats.transactions_completed == 1

    async def test_stop_drains_accepted_work(self, mock_settings, sample_notification):
        pipeline = Pipeline(mock_settings)
        pipeline._queue = asyncio.Queue()
        pipeline._processor = MagicMock()
        pipeline._processor.process = AsyncMock(side_effect=completed)
        await pipeline._queue.put(sample_notification)

        await pipeline._start_background_services()
        await pipeline._stop_background_services()

        pipeline._processor.process.assert_awaited_once()
        assert pipeline._worker_tasks == []


class TestBackfillLoop:
    """Tests for periodic backfill."""

    async def test_backfill_once_updates_stats(self, mock_settings):
        pipeline = Pipeline(mock_settings)
        pipeline._backfiller = MagicMock()
        pipeline._backfiller.backfill = AsyncMock(return_value=BackfillResult(processed=3))

        result = await pipeline._backfill_once()

        assert result is not None
        assert pipeline.stats.backfill_runs == 1
        assert pipeline.stats.backfill_processed == 3
        pipeline._backfiller.backfill.assert_awaited_once_with(limit=100)

    async def test_backfill_failure_is_counted(self, mock_settings):
        pipeline = Pipeline(mock_settings)
        pipeline._backfiller = MagicMock()
        pipeline._backfiller.backfill = AsyncMock(side_effect=RuntimeError("rpc down"))

        assert await pipeline._backfill_once() is None
        assert pipeline.stats.errors == 1

    async def test_backfill_on_start(self, mock_settings):
        mock_settings.backfill.on_start = True
        pipeline = Pipeline(mock_settings)
        pipeline._stop_event = asyncio.Event()
        pipeline._backfiller = MagicMock()
        pipeline._backfiller.backfill = AsyncMock(return_value=BackfillResult())

        await pipeline._run_backfill_loop()

        pipeline._backfiller.backfill.assert_awaited_once()

    async def test_run_backfill_always_cleans_up(self, mock_settings):
        pipeline = Pipeline(mock_settings)
        pipeline._initialize_components = AsyncMock(side_effect=PipelineError("no db"))
        pipeline._cleanup = AsyncMock()

        with pytest.raises(PipelineError):
            await pipeline.run_backfill(limit=10)

        pipeline._cleanup.assert_awaited_once()


class TestPipelineLifecycle:
    """Tests for pipeline lifecycle methods."""

    async def test_cannot_start_when_not_stopped(self, mock_settings):
        """Should raise error when starting non-stopped pipeline."""
        pipeline = Pipeline(mock_settings)
        pipeline._state = PipelineState.RUNNING

        with pytest.raises(RuntimeError, match="Cannot start pipeline"):
            await pipeline.start()

    async def test_stop_when_already_stopped(self, mock_settings):
        """Stop should be no-op when already stopped."""
        pipeline = Pipeline(mock_settings)
        assert pipeline.state == PipelineState.STOPPED

        # Should not raise
        await pipeline.stop()
        assert pipeline.state == PipelineState.STOPPED

    async def test_failed_start_enters_error_state(self, mock_settings):
        pipeline = Pipeline(mock_settings)
        pipeline._initialize_components = AsyncMock(side_effect=PipelineError("bad config"))
        pipeline._cleanup = AsyncMock()

        with pytest.raises(PipelineError):
            await pipeline.start()

        assert pipeline.state == PipelineState.ERROR
        assert pipeline.stats.last_error == "bad config"
        pipeline._cleanup.assert_awaited_once()

    async def test_request_stop_ends_run(self, mock_settings):
        pipeline = Pipeline(mock_settings)
        pipeline._initialize_components = AsyncMock()
        pipeline._start_background_services = AsyncMock()
        pipeline._stop_background_services = AsyncMock()
        pipeline._cleanup = AsyncMock()

        task = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)
        assert pipeline.is_running
        pipeline.request_stop()
        await asyncio.wait_for(task, timeout=1)

        assert pipeline.state == PipelineState.STOPPED
        pipeline._stop_background_services.assert_awaited_once()


class TestPipelineContextManager:
    """Tests for async context manager."""

    async def test_context_manager_calls_start_and_stop(self, mock_settings):
        """Context manager should call start and stop."""
        pipeline = Pipeline(mock_settings)
        pipeline.start = AsyncMock()
        pipeline.stop = AsyncMock()

        async with pipeline:
            pipeline.start.assert_called_once()

        pipeline.stop.assert_called_once()
