"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BurnEventKind(str, Enum):
    """Burn event kinds emitted by the market program.

    The value doubles as the log tag and as the ledger's ``type`` string.
    """

    PREDICTION_BET = "PREDICTION_BET"
    REWARD_CLAIM = "REWARD_CLAIM"
    MARKET_CREATION = "MARKET_CREATION"


@dataclass(frozen=True)
class BurnEvent:
    """A normalized burn occurrence extracted from transaction logs."""

    kind: BurnEventKind
    actor: str
    subject_id: str
    burn_amount: int
    source_signature: str
    option_index: int | None = None
    line_index: int = 0

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        """(signature, kind, subject, actor) identifies the event."""
        return (self.source_signature, self.kind.value, self.subject_id, self.actor)


@dataclass(frozen=True)
class ParseFailure:
    """A log line that carried the event marker but could not be extracted."""

    signature: str
    line_index: int
    line: str
    reason: str


@dataclass(frozen=True)
class LogNotification:
    """Log lines of a single transaction involving the program.

    Produced by the live subscription (``logsNotification``) and by the
    backfiller (``getTransaction`` meta).
    """

    signature: str
    logs: tuple[str, ...]
    err: Any = None
    slot: int | None = None
    source: str = "live"

    @property
    def failed(self) -> bool:
        """True when the transaction failed on chain (no burn took place)."""
        return self.err is not None

    @classmethod
    def from_websocket_message(cls, data: dict[str, Any]) -> LogNotification:
        """Create a LogNotification from a ``logsNotification`` message.

        Args:
            data: Decoded JSON-RPC notification.

        Raises:
            KeyError/TypeError: If the message lacks a signature.
        """
        result = data["params"]["result"]
        value = result["value"]
        context = result.get("context") or {}
        slot = context.get("slot")
        return cls(
            signature=str(value["signature"]),
            logs=tuple(str(line) for line in (value.get("logs") or [])),
            err=value.get("err"),
            slot=int(slot) if slot is not None else None,
            source="live",
        )


@dataclass(frozen=True)
class SignatureInfo:
    """One entry of a ``getSignaturesForAddress`` page."""

    signature: str
    slot: int
    err: Any = None
    block_time: int | None = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass
class ParseResult:
    """Events and failures extracted from one transaction."""

    events: list[BurnEvent] = field(default_factory=list)
    failures: list[ParseFailure] = field(default_factory=list)
