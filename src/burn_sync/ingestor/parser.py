"""Burn event log grammar.

The market program emits one log line per burn, e.g.::

    Program log: Burn event emitted: PREDICTION_BET, user: W1, market: M1, burn_amount: 100

A line is recognised by the marker, dispatched on the kind tag that follows
it, and its ``key: value`` fields are extracted according to the rule for that
kind. Adding a kind means adding an ``EventRule`` to ``DEFAULT_RULES``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from burn_sync.ingestor.models import BurnEvent, BurnEventKind, ParseFailure, ParseResult

logger = logging.getLogger(__name__)

EVENT_MARKER = "Burn event emitted:"

_UINT_RE = re.compile(r"^\d+$", re.ASCII)

# Field widths of the on-chain event struct.
U64_MAX = 2**64 - 1
U8_MAX = 2**8 - 1
_IDENT_RE = re.compile(r"^\w+$", re.ASCII)

FailureSink = Callable[[ParseFailure], None]


@dataclass(frozen=True)
class EventRule:
    """Field extraction rule for one event kind."""

    kind: BurnEventKind
    actor_field: str
    subject_field: str = "market"
    amount_field: str = "burn_amount"
    option_field: str | None = None

    @property
    def tag(self) -> str:
        return self.kind.value


DEFAULT_RULES: tuple[EventRule, ...] = (
    EventRule(BurnEventKind.PREDICTION_BET, actor_field="user", option_field="option"),
    EventRule(BurnEventKind.REWARD_CLAIM, actor_field="user"),
    EventRule(BurnEventKind.MARKET_CREATION, actor_field="creator"),
)


class _LineError(ValueError):
    """Structured extraction failed for a marker line."""


def _split_fields(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for piece in text.split(","):
        key, sep, value = piece.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        if key and key not in fields:
            fields[key] = value.strip()
    return fields


def _parse_uint(name: str, raw: str, *, max_value: int = U64_MAX) -> int:
    if not _UINT_RE.match(raw):
        raise _LineError(f"{name} is not an unsigned integer: {raw!r}")
    value = int(raw)
    if value > max_value:
        raise _LineError(f"{name} is out of range: {raw!r} > {max_value}")
    return value


class BurnEventParser:
    """Converts a transaction's log lines into ``BurnEvent`` records.

    Lines without the marker are unrelated program output and are skipped.
    Marker lines that fail extraction are reported as ``ParseFailure`` and do
    not affect sibling lines.
    """

    def __init__(self, rules: Iterable[EventRule] = DEFAULT_RULES, *, marker: str = EVENT_MARKER) -> None:
        self._marker = marker
        self._rules = {rule.tag: rule for rule in rules}

    @property
    def kinds(self) -> tuple[BurnEventKind, ...]:
        return tuple(rule.kind for rule in self._rules.values())

    def iter_events(
        self,
        signature: str,
        log_lines: Iterable[str],
        *,
        on_failure: FailureSink | None = None,
    ) -> Iterator[BurnEvent]:
        """Lazily yield burn events found in ``log_lines``.

        Args:
            signature: Transaction signature the lines belong to.
            log_lines: Ordered log messages of the transaction.
            on_failure: Called once per marker line that fails extraction.
        """
        seen: set[tuple[str, str, str, str]] = set()
        for index, line in enumerate(log_lines):
            if self._marker not in line:
                continue
            try:
                event = self._extract(signature, index, line)
            except _LineError as e:
                failure = ParseFailure(signature=signature, line_index=index, line=line, reason=str(e))
                logger.warning("Parse failure in %s line %d: %s", signature, index, failure.reason)
                if on_failure is not None:
                    on_failure(failure)
                continue

            if event.natural_key in seen:
                logger.warning(
                    "Duplicate %s event for market=%s actor=%s in %s (line %d); keeping first",
                    event.kind.value,
                    event.subject_id,
                    event.actor,
                    signature,
                    index,
                )
                continue
            seen.add(event.natural_key)
            yield event

    def parse(self, signature: str, log_lines: Iterable[str]) -> ParseResult:
        """Eagerly parse a transaction, collecting events and failures."""
        result = ParseResult()
        result.events.extend(
            self.iter_events(signature, log_lines, on_failure=result.failures.append)
        )
        return result

    def _extract(self, signature: str, index: int, line: str) -> BurnEvent:
        body = line.split(self._marker, 1)[1].strip()
        tag, _, rest = body.partition(" ")
        tag = tag.strip().rstrip(":,")
        rule = self._rules.get(tag)
        if rule is None:
            raise _LineError(f"unrecognized event kind: {tag!r}")

        fields = _split_fields(rest)

        def required(name: str) -> str:
            value = fields.get(name)
            if not value:
                raise _LineError(f"missing field {name}")
            return value

        actor = required(rule.actor_field)
        subject_id = required(rule.subject_field)
        for name, value in ((rule.actor_field, actor), (rule.subject_field, subject_id)):
            if not _IDENT_RE.match(value):
                raise _LineError(f"{name} is not a valid identifier: {value!r}")

        burn_amount = _parse_uint(rule.amount_field, required(rule.amount_field))
        if burn_amount == 0:
            raise _LineError(f"{rule.amount_field} must be > 0")

        option_index: int | None = None
        if rule.option_field and rule.option_field in fields:
            option_index = _parse_uint(
                rule.option_field, fields[rule.option_field], max_value=U8_MAX
            )

        return BurnEvent(
            kind=rule.kind,
            actor=actor,
            subject_id=subject_id,
            burn_amount=burn_amount,
            source_signature=signature,
            option_index=option_index,
            line_index=index,
        )
