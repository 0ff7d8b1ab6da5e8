"""
SQLAlchemy ORM models for FeeWatch.

Defines the database schema:
- ScanProgress: per-source scanning watermark and status
- FeeCollectedEvent: decoded FeesCollected events, insert-only
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Base Class
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all ORM models."""


# =============================================================================
# Mixins
# =============================================================================


class TimestampMixin:
    """Mixin providing created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        default=None,
        onupdate=utcnow,
        nullable=True,
    )


# =============================================================================
# Scan Progress Model
# =============================================================================


class ScanProgress(Base, TimestampMixin):
    """Scanning watermark for one source. One row per source, never deleted."""

    __tablename__ = "scan_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    # Watermark: last block whose events are durably stored
    last_scanned_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    known_head_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_scan_time: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )

    @property
    def blocks_behind(self) -> int | None:
        """Distance from the watermark to the last known head."""
        if self.known_head_height is None:
            return None
        return max(0, self.known_head_height - self.last_scanned_height)

    def __repr__(self) -> str:
        return (
            f"<ScanProgress(source_id='{self.source_id}', "
            f"last_scanned_height={self.last_scanned_height}, status='{self.status}')>"
        )


# =============================================================================
# Fee Collected Event Model
# =============================================================================


class FeeCollectedEvent(Base):
    """A stored FeesCollected event. Written once, never updated."""

    __tablename__ = "fee_collected_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Event arguments (addresses lower-cased, fees as decimal strings)
    token: Mapped[str] = mapped_column(String(42), nullable=False)
    integrator: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    integrator_fee: Mapped[str] = mapped_column(String(78), nullable=False)
    protocol_fee: Mapped[str] = mapped_column(String(78), nullable=False)

    # Log position
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("source_id", "tx_hash", "log_index", name="uq_event_identity"),
        Index("ix_event_source_height", "source_id", "block_height"),
    )

    def __repr__(self) -> str:
        return (
            f"<FeeCollectedEvent(source_id='{self.source_id}', "
            f"tx_hash='{self.tx_hash}', log_index={self.log_index})>"
        )
