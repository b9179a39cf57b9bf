"""Solana RPC client for transaction history queries.

This module wraps ``solana.rpc.async_api.AsyncClient`` for the two calls the
backfiller needs:
- Signature pagination for the program account
- Transaction detail fetch (log messages)

with token-bucket rate limiting and retry with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from solders.signature import Signature

from burn_sync.ingestor.models import LogNotification, SignatureInfo

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30
MAX_SIGNATURES_PAGE = 1000

_RETRYABLE = (SolanaRpcException, RPCException, httpx.HTTPError, asyncio.TimeoutError)


class SolanaClientError(Exception):
    """Base exception for Solana client errors."""


class SolanaRpcError(SolanaClientError):
    """Raised when an RPC call fails after all retries."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class SolanaRpcClient:
    """Solana HTTP RPC client with rate limiting and retries.

    Example:
        ```python
        client = SolanaRpcClient("https://api.devnet.solana.com", program_id="Prog...")

        page = await client.get_signatures(limit=100)
        tx = await client.get_transaction_logs(page[0].signature)

        await client.close()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        program_id: str,
        commitment: str = "confirmed",
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the Solana client.

        Args:
            rpc_url: HTTP JSON-RPC endpoint.
            program_id: Program account whose history is paged.
            commitment: Commitment level for queries.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per call.
            retry_delay_seconds: Initial delay between retries.
            timeout: Per-request timeout in seconds.
        """
        self._rpc_url = rpc_url
        self._program = Pubkey.from_string(program_id)
        self._commitment = Commitment(commitment)
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._client = AsyncClient(rpc_url, commitment=self._commitment, timeout=timeout)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

    @property
    def program_id(self) -> str:
        return str(self._program)

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Execute an RPC call with retry logic.

        Raises:
            SolanaRpcError: If all retries fail.
        """
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            try:
                method = getattr(self._client, func_name)
                return await method(*args, **kwargs)
            except _RETRYABLE as e:
                last_error = e
                logger.warning(
                    "Solana RPC %s failed (attempt %d/%d): %s",
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        raise SolanaRpcError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_signatures(
        self,
        *,
        before: str | None = None,
        limit: int = MAX_SIGNATURES_PAGE,
    ) -> list[SignatureInfo]:
        """Fetch one page of the program's signatures, newest first.

        Args:
            before: Only return signatures older than this one.
            limit: Page size (capped at 1000 by the RPC).
        """
        limit = max(1, min(limit, MAX_SIGNATURES_PAGE))
        resp = await self._execute_with_retry(
            "get_signatures_for_address",
            self._program,
            before=Signature.from_string(before) if before else None,
            limit=limit,
            commitment=self._commitment,
        )
        return [
            SignatureInfo(
                signature=str(item.signature),
                slot=int(item.slot),
                err=item.err,
                block_time=item.block_time,
            )
            for item in (resp.value or [])
        ]

    async def get_transaction_logs(self, signature: str) -> LogNotification | None:
        """Fetch a transaction's log messages.

        Returns:
            A LogNotification, or None if the node does not know the
            transaction (or has no status meta for it).
        """
        resp = await self._execute_with_retry(
            "get_transaction",
            Signature.from_string(signature),
            encoding="json",
            commitment=self._commitment,
            max_supported_transaction_version=0,
        )
        tx = resp.value
        if tx is None or tx.transaction.meta is None:
            return None
        meta = tx.transaction.meta
        return LogNotification(
            signature=signature,
            logs=tuple(meta.log_messages or ()),
            err=meta.err,
            slot=int(tx.slot),
            source="backfill",
        )

    async def close(self) -> None:
        await self._client.close()
