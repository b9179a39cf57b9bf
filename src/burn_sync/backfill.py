"""Historical backfill over the program's transaction history.

Pages backward through ``getSignaturesForAddress`` and runs every
unprocessed transaction through the same processor the live subscriber uses.
Already-processed signatures are filtered per page before any transaction
detail is fetched, so re-running over a covered range costs one ledger query
per page.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from burn_sync.ingestor.models import LogNotification, SignatureInfo
from burn_sync.ingestor.solana_client import MAX_SIGNATURES_PAGE, SolanaRpcClient, SolanaRpcError
from burn_sync.processor import BurnEventProcessor, ProcessStatus
from burn_sync.storage.signature_ledger import SignatureLedger

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_LIMIT = 100
DEFAULT_BACKFILL_CONCURRENCY = 4


@dataclass
class BackfillResult:
    """Summary of one backfill pass."""

    processed: int = 0
    pages: int = 0
    signatures_seen: int = 0
    already_processed: int = 0
    chain_failed: int = 0
    incomplete: int = 0
    missing: int = 0
    errors: int = 0
    oldest_signature: str | None = None


class HistoricalBackfiller:
    """Replays missed transactions through the shared processor.

    Example:
        ```python
        backfiller = HistoricalBackfiller(rpc, ledger, processor)
        result = await backfiller.backfill(limit=500)
        print(result.processed)
        ```
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        ledger: SignatureLedger,
        processor: BurnEventProcessor,
        *,
        concurrency: int = DEFAULT_BACKFILL_CONCURRENCY,
    ) -> None:
        self._rpc = rpc
        self._ledger = ledger
        self._processor = processor
        self._concurrency = max(1, concurrency)

    async def backfill(
        self,
        before: str | None = None,
        limit: int = DEFAULT_BACKFILL_LIMIT,
    ) -> BackfillResult:
        """Process up to ``limit`` of the program's most recent signatures.

        Args:
            before: Start paging below this signature (newest when None).
            limit: Maximum number of signatures to examine.

        Returns:
            BackfillResult; ``processed`` counts signatures completed in this pass.

        Raises:
            SolanaRpcError: If a signature page cannot be fetched.
        """
        result = BackfillResult()
        semaphore = asyncio.Semaphore(self._concurrency)
        cursor = before
        remaining = max(0, limit)

        logger.info("Backfill starting (before=%s, limit=%d)", before or "latest", limit)

        while remaining > 0:
            page_size = min(remaining, MAX_SIGNATURES_PAGE)
            page = await self._rpc.get_signatures(before=cursor, limit=page_size)
            if not page:
                break

            result.pages += 1
            result.signatures_seen += len(page)
            remaining -= len(page)
            cursor = page[-1].signature
            result.oldest_signature = cursor

            done = await self._ledger.processed_among([info.signature for info in page])
            result.already_processed += len(done)

            # Pages arrive newest first; replay oldest first.
            todo = [info for info in reversed(page) if info.signature not in done]
            if todo:
                await asyncio.gather(
                    *(self._process_one(info, semaphore, result) for info in todo)
                )

            if len(page) < page_size:
                break

        logger.info(
            "Backfill finished: processed=%d seen=%d already_processed=%d "
            "incomplete=%d missing=%d errors=%d",
            result.processed,
            result.signatures_seen,
            result.already_processed,
            result.incomplete,
            result.missing,
            result.errors,
        )
        return result

    async def _process_one(
        self,
        info: SignatureInfo,
        semaphore: asyncio.Semaphore,
        result: BackfillResult,
    ) -> None:
        async with semaphore:
            if info.failed:
                notification: LogNotification | None = LogNotification(
                    signature=info.signature,
                    logs=(),
                    err=info.err,
                    slot=info.slot,
                    source="backfill",
                )
            else:
                try:
                    notification = await self._rpc.get_transaction_logs(info.signature)
                except SolanaRpcError as e:
                    result.errors += 1
                    logger.error("Failed to fetch transaction %s: %s", info.signature, e)
                    return
                if notification is None:
                    result.missing += 1
                    logger.warning("Transaction %s not available from RPC node", info.signature)
                    return

            try:
                outcome = await self._processor.process(notification)
            except Exception:
                result.errors += 1
                logger.exception("Failed to process transaction %s", info.signature)
                return

        if outcome.status == ProcessStatus.COMPLETED:
            result.processed += 1
            if info.failed:
                result.chain_failed += 1
        elif outcome.status == ProcessStatus.ALREADY_PROCESSED:
            result.already_processed += 1
        elif outcome.status != ProcessStatus.DRY_RUN:
            result.incomplete += 1
