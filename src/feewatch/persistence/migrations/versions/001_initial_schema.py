"""Initial schema

Revision ID: 001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""
from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create initial database schema."""

    # Scan progress table
    op.create_table(
        "scan_progress",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_id", sa.String(length=100), nullable=False),
        sa.Column("last_scanned_height", sa.BigInteger(), nullable=False),
        sa.Column("known_head_height", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="idle"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_scan_time", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scan_progress_source_id", "scan_progress", ["source_id"], unique=True)

    # Fee collected events table
    op.create_table(
        "fee_collected_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_id", sa.String(length=100), nullable=False),
        sa.Column("token", sa.String(length=42), nullable=False),
        sa.Column("integrator", sa.String(length=42), nullable=False),
        sa.Column("integrator_fee", sa.String(length=78), nullable=False),
        sa.Column("protocol_fee", sa.String(length=78), nullable=False),
        sa.Column("block_height", sa.BigInteger(), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "tx_hash", "log_index", name="uq_event_identity"),
    )
    op.create_index("ix_fee_collected_events_integrator", "fee_collected_events", ["integrator"])
    op.create_index("ix_fee_collected_events_block_height", "fee_collected_events", ["block_height"])
    op.create_index("ix_event_source_height", "fee_collected_events", ["source_id", "block_height"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("fee_collected_events")
    op.drop_table("scan_progress")
