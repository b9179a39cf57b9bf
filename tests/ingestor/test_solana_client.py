"""Tests for the Solana RPC client wrapper."""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from solders.signature import Signature

from burn_sync.ingestor.solana_client import (
    MAX_SIGNATURES_PAGE,
    RateLimiter,
    SolanaRpcClient,
    SolanaRpcError,
)

PROGRAM_ID = "PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu"


@pytest.fixture
def mock_async_client():
    with patch("burn_sync.ingestor.solana_client.AsyncClient") as cls:
        instance = MagicMock()
        instance.get_signatures_for_address = AsyncMock()
        instance.get_transaction = AsyncMock()
        instance.close = AsyncMock()
        cls.return_value = instance
        yield instance


@pytest.fixture
def client(mock_async_client: MagicMock) -> SolanaRpcClient:
    return SolanaRpcClient(
        "https://api.devnet.solana.com",
        program_id=PROGRAM_ID,
        max_requests_per_second=1000,
        retry_delay_seconds=0,
    )


def signature_entry(signature: str, slot: int, err=None):
    return SimpleNamespace(signature=signature, slot=slot, err=err, block_time=1_700_000_000)


class TestRateLimiter:
    """Tests for RateLimiter."""

    async def test_acquire_no_wait_first_call(self) -> None:
        limiter = RateLimiter.create(10)
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start < 0.05

    async def test_acquire_waits_when_empty(self) -> None:
        limiter = RateLimiter.create(20)
        limiter.tokens = 0
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start >= 0.03


class TestSolanaRpcClient:
    """Tests for SolanaRpcClient."""

    def test_program_id(self, client: SolanaRpcClient) -> None:
        assert client.program_id == PROGRAM_ID

    async def test_get_signatures(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        mock_async_client.get_signatures_for_address.return_value = SimpleNamespace(
            value=[signature_entry("sigB", 11), signature_entry("sigA", 10, err={"x": 1})]
        )

        page = await client.get_signatures(limit=2)

        assert [info.signature for info in page] == ["sigB", "sigA"]
        assert page[0].slot == 11
        assert page[1].failed is True
        kwargs = mock_async_client.get_signatures_for_address.call_args.kwargs
        assert kwargs["limit"] == 2
        assert kwargs["before"] is None

    async def test_get_signatures_caps_limit_and_passes_cursor(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        cursor = Signature.new_unique()
        mock_async_client.get_signatures_for_address.return_value = SimpleNamespace(value=[])

        page = await client.get_signatures(before=str(cursor), limit=5000)

        assert page == []
        kwargs = mock_async_client.get_signatures_for_address.call_args.kwargs
        assert kwargs["limit"] == MAX_SIGNATURES_PAGE
        assert kwargs["before"] == cursor

    async def test_get_transaction_logs(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        sig = str(Signature.new_unique())
        meta = SimpleNamespace(log_messages=["Program log: hello"], err=None)
        mock_async_client.get_transaction.return_value = SimpleNamespace(
            value=SimpleNamespace(slot=99, transaction=SimpleNamespace(meta=meta))
        )

        notification = await client.get_transaction_logs(sig)

        assert notification is not None
        assert notification.signature == sig
        assert notification.logs == ("Program log: hello",)
        assert notification.slot == 99
        assert notification.source == "backfill"
        kwargs = mock_async_client.get_transaction.call_args.kwargs
        assert kwargs["max_supported_transaction_version"] == 0

    async def test_get_transaction_logs_unknown(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        mock_async_client.get_transaction.return_value = SimpleNamespace(value=None)
        assert await client.get_transaction_logs(str(Signature.new_unique())) is None

    async def test_retries_transient_errors(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        mock_async_client.get_signatures_for_address.side_effect = [
            httpx.ConnectError("connection refused"),
            SimpleNamespace(value=[signature_entry("sigA", 10)]),
        ]

        page = await client.get_signatures(limit=1)

        assert len(page) == 1
        assert mock_async_client.get_signatures_for_address.call_count == 2

    async def test_raises_after_all_retries(
        self, client: SolanaRpcClient, mock_async_client: MagicMock
    ) -> None:
        mock_async_client.get_signatures_for_address.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(SolanaRpcError):
            await client.get_signatures(limit=1)
        assert mock_async_client.get_signatures_for_address.call_count == 3

    async def test_close(self, client: SolanaRpcClient, mock_async_client: MagicMock) -> None:
        await client.close()
        mock_async_client.close.assert_awaited_once()
