"""Proof payloads for the tokenomics burn API."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from burn_sync.ingestor.models import BurnEvent, BurnEventKind


class ProofBuildError(ValueError):
    """Raised when an event cannot be mapped to a proof.

    The parser guarantees the required fields, so this signals a defect
    rather than bad input.
    """


@dataclass(frozen=True)
class BurnRequest:
    """One ``POST /tokenomics/burn`` body."""

    type: str
    proof: Mapping[str, str]
    burn_amount: int
    persist_onchain: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "proof": dict(self.proof),
            "burnAmount": self.burn_amount,
            "persistOnchain": self.persist_onchain,
        }


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    if ts.tzinfo is None:
        raise ProofBuildError("proof timestamp must be timezone-aware")
    return ts.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _prediction_bet(event: BurnEvent) -> dict[str, str]:
    proof = {"marketId": event.subject_id, "userId": event.actor}
    if event.option_index is not None:
        proof["optionIndex"] = str(event.option_index)
    proof["betAmount"] = str(event.burn_amount)
    return proof


def _reward_claim(event: BurnEvent) -> dict[str, str]:
    return {
        "marketId": event.subject_id,
        "userId": event.actor,
        "rewardAmount": str(event.burn_amount),
    }


def _market_creation(event: BurnEvent) -> dict[str, str]:
    return {
        "marketId": event.subject_id,
        "creatorId": event.actor,
        "stakeAmount": str(event.burn_amount),
    }


_PROOF_FIELDS = {
    BurnEventKind.PREDICTION_BET: _prediction_bet,
    BurnEventKind.REWARD_CLAIM: _reward_claim,
    BurnEventKind.MARKET_CREATION: _market_creation,
}


def build_burn_request(
    event: BurnEvent,
    *,
    timestamp: datetime,
    persist_onchain: bool = True,
) -> BurnRequest:
    """Map a burn event to the ledger's request body.

    Args:
        event: Parsed burn event.
        timestamp: Time stamped into the proof.
        persist_onchain: Forwarded as ``persistOnchain``.

    Raises:
        ProofBuildError: If the event lacks data every proof needs.
    """
    build = _PROOF_FIELDS.get(event.kind)
    if build is None:
        raise ProofBuildError(f"no proof mapping for kind {event.kind!r}")
    if not event.subject_id or not event.actor or not event.source_signature:
        raise ProofBuildError(f"event is missing identifiers: {event.natural_key}")
    if event.burn_amount <= 0:
        raise ProofBuildError(f"burn amount must be > 0, got {event.burn_amount}")

    proof = build(event)
    proof["transactionSignature"] = event.source_signature
    proof["timestamp"] = format_timestamp(timestamp)
    return BurnRequest(
        type=event.kind.value,
        proof=MappingProxyType(proof),
        burn_amount=event.burn_amount,
        persist_onchain=persist_onchain,
    )
