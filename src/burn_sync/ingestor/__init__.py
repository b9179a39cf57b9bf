"""Data ingestion layer - Program log streaming, history paging and parsing."""

from burn_sync.ingestor.log_stream import (
    ConnectionState,
    LogStreamError,
    LogSubscriptionHandler,
)
from burn_sync.ingestor.models import (
    BurnEvent,
    BurnEventKind,
    LogNotification,
    ParseFailure,
    ParseResult,
    SignatureInfo,
)
from burn_sync.ingestor.parser import DEFAULT_RULES, BurnEventParser, EventRule
from burn_sync.ingestor.solana_client import SolanaRpcClient, SolanaRpcError

__all__ = [
    "DEFAULT_RULES",
    "BurnEvent",
    "BurnEventKind",
    "BurnEventParser",
    "ConnectionState",
    "EventRule",
    "LogNotification",
    "LogStreamError",
    "LogSubscriptionHandler",
    "ParseFailure",
    "ParseResult",
    "SignatureInfo",
    "SolanaRpcClient",
    "SolanaRpcError",
]
