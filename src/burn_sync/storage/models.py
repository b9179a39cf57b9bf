"""SQLAlchemy models for persistent storage.

This module defines the schema for processed transaction signatures, the
per-event delivery audit trail and recorded parse failures.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator, TypeEngine


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class U64Amount(TypeDecorator[int]):
    """Unsigned 64-bit token amount, loaded as a Python int.

    NUMERIC(20, 0) on PostgreSQL. SQLite has no exact type wide enough
    (INTEGER is signed 64-bit, NUMERIC falls back to REAL), so the decimal
    string is stored instead.
    """

    impl = Numeric(20, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(20))
        return dialect.type_descriptor(Numeric(20, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value: Any, dialect: Dialect) -> int | None:
        return None if value is None else int(value)


class ProcessedSignatureModel(Base):
    """A transaction whose burn events have all reached a final state."""

    __tablename__ = "processed_signatures"

    signature: Mapped[str] = mapped_column(String(128), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # completed | chain_failed | no_events
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")

    __table_args__ = (Index("idx_processed_signatures_processed_at", "processed_at"),)


class BurnDeliveryModel(Base):
    """Delivery state of one burn event, keyed by its natural key."""

    __tablename__ = "burn_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)

    # Raw token units (u64).
    burn_amount: Mapped[int] = mapped_column(U64Amount(), nullable=False)
    option_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # pending | delivered | rejected | failed | invalid
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    date_burned: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "signature", "kind", "subject_id", "actor", name="uq_burn_deliveries_natural_key"
        ),
        Index("idx_burn_deliveries_signature", "signature"),
        Index("idx_burn_deliveries_status", "status"),
    )


class ParseFailureModel(Base):
    """A marker-bearing log line that could not be extracted."""

    __tablename__ = "parse_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    line: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("signature", "line_index", name="uq_parse_failures_signature_line"),
        Index("idx_parse_failures_signature", "signature"),
    )
