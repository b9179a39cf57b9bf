"""Initial schema for processed signatures, burn deliveries and parse failures.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Processed signatures (append-only)
    op.create_table(
        "processed_signatures",
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_count", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.PrimaryKeyConstraint("signature"),
    )
    op.create_index(
        "idx_processed_signatures_processed_at", "processed_signatures", ["processed_at"]
    )

    # Per-event delivery state
    op.create_table(
        "burn_deliveries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("subject_id", sa.String(128), nullable=False),
        sa.Column("actor", sa.String(128), nullable=False),
        sa.Column(
            "burn_amount",
            sa.Numeric(20, 0).with_variant(sa.String(20), "sqlite"),
            nullable=False,
        ),
        sa.Column("option_index", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column("date_burned", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
        sa.UniqueConstraint(
            "signature", "kind", "subject_id", "actor", name="uq_burn_deliveries_natural_key"
        ),
    )
    op.create_index("idx_burn_deliveries_signature", "burn_deliveries", ["signature"])
    op.create_index("idx_burn_deliveries_status", "burn_deliveries", ["status"])

    # Marker lines that could not be extracted
    op.create_table(
        "parse_failures",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("line_index", sa.Integer(), nullable=False),
        sa.Column("line", sa.Text(), nullable=False),
        sa.Column("reason", sa.String(256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("signature", "line_index", name="uq_parse_failures_signature_line"),
    )
    op.create_index("idx_parse_failures_signature", "parse_failures", ["signature"])


def downgrade() -> None:
    op.drop_index("idx_parse_failures_signature", table_name="parse_failures")
    op.drop_table("parse_failures")

    op.drop_index("idx_burn_deliveries_status", table_name="burn_deliveries")
    op.drop_index("idx_burn_deliveries_signature", table_name="burn_deliveries")
    op.drop_table("burn_deliveries")

    op.drop_index(
        "idx_processed_signatures_processed_at", table_name="processed_signatures"
    )
    op.drop_table("processed_signatures")
