"""External ledger integration - Proof payloads and the burn API client."""

from burn_sync.ledger.client import (
    BatchItemResult,
    BatchResult,
    BurnReceipt,
    LedgerClient,
    LedgerClientError,
    LedgerRejectedError,
    LedgerRetryExhaustedError,
)
from burn_sync.ledger.proofs import (
    BurnRequest,
    ProofBuildError,
    build_burn_request,
    format_timestamp,
)

__all__ = [
    "BatchItemResult",
    "BatchResult",
    "BurnReceipt",
    "BurnRequest",
    "LedgerClient",
    "LedgerClientError",
    "LedgerRejectedError",
    "LedgerRetryExhaustedError",
    "ProofBuildError",
    "build_burn_request",
    "format_timestamp",
]
