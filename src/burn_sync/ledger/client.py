"""HTTP client for the external tokenomics ledger with retry logic."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from burn_sync.ledger.proofs import BurnRequest

logger = logging.getLogger(__name__)

BURN_PATH = "/tokenomics/burn"
BURN_BATCH_PATH = "/tokenomics/burn-batch"
API_KEY_HEADER = "x-believe-api-key"
IDEMPOTENCY_HEADER = "x-idempotency-key"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_TIMEOUT = 15.0


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""


class LedgerRejectedError(LedgerClientError):
    """The ledger rejected the request as invalid (4xx other than 429)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str = "",
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.attempts = attempts


class LedgerRetryExhaustedError(LedgerClientError):
    """Raised when all attempts failed with retryable errors."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        status_code: int | None = None,
        last_exception: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code
        self.last_exception = last_exception


class _TransientResponse(LedgerClientError):
    def __init__(self, status_code: int, retry_after: float | None) -> None:
        super().__init__(f"ledger returned {status_code}")
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(frozen=True)
class BurnReceipt:
    """Ledger acknowledgement of a burn."""

    tx_hash: str | None
    date_burned: str | None
    attempts: int = 1

    @property
    def retries(self) -> int:
        return self.attempts - 1

    @classmethod
    def from_response(cls, data: Any, *, attempts: int) -> BurnReceipt:
        if not isinstance(data, dict):
            data = {}
        tx_hash = data.get("txHash") or data.get("transactionHash")
        date_burned = data.get("dateBurned")
        return cls(
            tx_hash=str(tx_hash) if tx_hash is not None else None,
            date_burned=str(date_burned) if date_burned is not None else None,
            attempts=attempts,
        )


@dataclass(frozen=True)
class BatchItemResult:
    index: int
    idempotency_key: str
    receipt: BurnReceipt | None = None
    error: LedgerClientError | None = None

    @property
    def delivered(self) -> bool:
        return self.receipt is not None


@dataclass
class BatchResult:
    """Per-item outcome of a batch submission."""

    items: list[BatchItemResult] = field(default_factory=list)
    attempts: int = 1

    @property
    def delivered_count(self) -> int:
        return sum(1 for item in self.items if item.delivered)

    @property
    def failed_count(self) -> int:
        return len(self.items) - self.delivered_count


def _parse_retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(data, dict):
        for key in ("message", "error", "detail", "code"):
            if data.get(key):
                return str(data[key])
    return str(data)[:500]


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def batch_idempotency_key(item_keys: Sequence[str]) -> str:
    """Batch header key derived from the item keys (stable across retries)."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, "burn-batch:" + ",".join(item_keys)))


class LedgerClient:
    """Async client for the tokenomics burn API.

    Every request carries an idempotency key chosen by the caller, so a retry
    of the same event (in this process or after a restart) is recognisable
    server-side. 429, 5xx and transport failures are retried with exponential
    backoff; other 4xx responses are final.

    Example:
        ```python
        async with LedgerClient("https://public.believe.app/v1", api_key="...") as client:
            receipt = await client.submit(request, idempotency_key=str(uuid.uuid4()))
            print(receipt.tx_hash)
        ```
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the ledger client.

        Args:
            base_url: API base URL (e.g. ``https://public.believe.app/v1``).
            api_key: Key sent as ``x-believe-api-key``.
            max_attempts: Attempts per request before giving up.
            retry_base_delay: First backoff delay in seconds (doubles per retry).
            retry_max_delay: Cap for a single backoff delay.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests).
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        logger.info(
            "Initialized LedgerClient with base_url=%s, max_attempts=%d",
            self._base_url,
            max_attempts,
        )

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        delay = min(self._retry_max_delay, self._retry_base_delay * (2 ** (attempt - 1)))
        if retry_after is not None and retry_after <= self._retry_max_delay:
            delay = max(delay, retry_after)
        return delay

    async def _post_with_retry(
        self,
        path: str,
        payload: Any,
        *,
        idempotency_key: str,
    ) -> tuple[Any, int]:
        """POST with bounded exponential backoff.

        Returns:
            Decoded response body and the number of attempts made.

        Raises:
            LedgerRejectedError: On a non-retryable 4xx.
            LedgerRetryExhaustedError: When every attempt failed transiently.
        """
        last_exception: Exception | None = None
        last_status: int | None = None

        for attempt in range(1, self._max_attempts + 1):
            retry_after: float | None = None
            try:
                response = await self._client.post(
                    path,
                    json=payload,
                    headers={IDEMPOTENCY_HEADER: idempotency_key},
                )
            except httpx.TransportError as e:
                last_exception = e
                last_status = None
            else:
                if response.is_success:
                    try:
                        return response.json(), attempt
                    except ValueError:
                        logger.warning("Ledger returned a non-JSON success body for %s", path)
                        return {}, attempt

                if not _is_retryable_status(response.status_code):
                    detail = _error_detail(response)
                    raise LedgerRejectedError(
                        f"Ledger rejected {path} with {response.status_code}: {detail}",
                        status_code=response.status_code,
                        detail=detail,
                        attempts=attempt,
                    )

                retry_after = _parse_retry_after(response)
                last_status = response.status_code
                last_exception = _TransientResponse(response.status_code, retry_after)

            if attempt == self._max_attempts:
                break

            delay = self._backoff_delay(attempt, retry_after)
            logger.warning(
                "Attempt %d/%d for %s (key=%s) failed: %s. Retrying in %.1f seconds...",
                attempt,
                self._max_attempts,
                path,
                idempotency_key,
                last_exception,
                delay,
            )
            await asyncio.sleep(delay)

        raise LedgerRetryExhaustedError(
            f"All {self._max_attempts} attempts failed for {path}: {last_exception}",
            attempts=self._max_attempts,
            status_code=last_status,
            last_exception=last_exception,
        )

    async def submit(self, request: BurnRequest, *, idempotency_key: str) -> BurnReceipt:
        """Submit one burn proof.

        Args:
            request: The burn request body.
            idempotency_key: Stable key for this event.

        Returns:
            Receipt with the ledger's transaction hash.
        """
        data, attempts = await self._post_with_retry(
            BURN_PATH,
            request.to_payload(),
            idempotency_key=idempotency_key,
        )
        receipt = BurnReceipt.from_response(data, attempts=attempts)
        logger.info(
            "Token burn successful: %s amount=%d tx=%s attempts=%d",
            request.type,
            request.burn_amount,
            receipt.tx_hash,
            attempts,
        )
        return receipt

    async def submit_batch(self, items: Sequence[tuple[BurnRequest, str]]) -> BatchResult:
        """Submit several burn proofs in one call.

        The response is decomposed per item: a batch is never treated as
        all-or-nothing. Items the response does not mention count as
        retryable failures.

        Args:
            items: (request, idempotency key) pairs.

        Raises:
            LedgerRejectedError: If the whole batch was rejected.
            LedgerRetryExhaustedError: If the batch call itself kept failing.
        """
        if not items:
            return BatchResult(items=[], attempts=0)

        keys = [key for _, key in items]
        payload = [
            {**request.to_payload(), "idempotencyKey": key} for request, key in items
        ]
        data, attempts = await self._post_with_retry(
            BURN_BATCH_PATH,
            payload,
            idempotency_key=batch_idempotency_key(keys),
        )

        successes: dict[int, Any] = {}
        errors: dict[int, Any] = {}
        if isinstance(data, dict):
            for entry in data.get("success") or []:
                if isinstance(entry, dict) and isinstance(entry.get("index"), int):
                    successes[entry["index"]] = entry
            for entry in data.get("errors") or []:
                if isinstance(entry, dict) and isinstance(entry.get("index"), int):
                    errors[entry["index"]] = entry

        result = BatchResult(attempts=attempts)
        for index, key in enumerate(keys):
            if index in successes:
                result.items.append(
                    BatchItemResult(
                        index=index,
                        idempotency_key=key,
                        receipt=BurnReceipt.from_response(successes[index], attempts=attempts),
                    )
                )
            elif index in errors:
                result.items.append(
                    BatchItemResult(
                        index=index,
                        idempotency_key=key,
                        error=self._batch_error(errors[index], attempts=attempts),
                    )
                )
            else:
                result.items.append(
                    BatchItemResult(
                        index=index,
                        idempotency_key=key,
                        error=LedgerRetryExhaustedError(
                            "batch response did not mention item", attempts=attempts
                        ),
                    )
                )

        logger.info(
            "Batch burn results: successful=%d failed=%d",
            result.delivered_count,
            result.failed_count,
        )
        return result

    @staticmethod
    def _batch_error(entry: dict[str, Any], *, attempts: int) -> LedgerClientError:
        message = str(entry.get("error") or entry.get("message") or entry.get("code") or "unknown error")
        status = entry.get("status") or entry.get("statusCode")
        retryable = entry.get("retryable")
        if retryable is None and isinstance(status, int):
            retryable = _is_retryable_status(status)
        if retryable is False:
            return LedgerRejectedError(
                f"Ledger rejected batch item: {message}",
                status_code=status if isinstance(status, int) else None,
                detail=message,
                attempts=attempts,
            )
        return LedgerRetryExhaustedError(
            f"Batch item failed transiently: {message}",
            attempts=attempts,
            status_code=status if isinstance(status, int) else None,
        )
