"""
Repository pattern for database operations.

Provides the two stores the scanner needs:
- ProgressRepository: per-source watermark and status
- EventRepository: insert-if-absent event storage and read queries
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import and_, func, select, tuple_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from feewatch.core.config.models import ScanStatus
from feewatch.core.source.base import EventRecord

from .models import FeeCollectedEvent, ScanProgress, utcnow

logger = logging.getLogger(__name__)

IDENTITY_COLUMNS = ("source_id", "tx_hash", "log_index")

# Ten bound parameters per row; older SQLite builds allow 999 per statement
INSERT_CHUNK_SIZE = 90


# =============================================================================
# Progress Repository
# =============================================================================


class ProgressRepository:
    """Repository for ScanProgress rows."""

    def __init__(self, session: Session):
        self.session = session

    def find(self, source_id: str) -> ScanProgress | None:
        """Get the progress row for a source, if any."""
        stmt = select(ScanProgress).where(ScanProgress.source_id == source_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_all(self) -> Sequence[ScanProgress]:
        stmt = select(ScanProgress).order_by(ScanProgress.source_id)
        return self.session.execute(stmt).scalars().all()

    def get_or_create(self, source_id: str, floor_height: int) -> tuple[ScanProgress, bool]:
        """Load progress, creating it just below the floor height when absent.

        Returns:
            Tuple of (progress, created) where created is True if new
        """
        existing = self.find(source_id)
        if existing is not None:
            return existing, False

        progress = ScanProgress(
            source_id=source_id,
            last_scanned_height=floor_height - 1,
            status=ScanStatus.IDLE.value,
            last_scan_time=utcnow(),
        )
        self.session.add(progress)
        self.session.flush()
        logger.info(
            "Created scan progress at height %d",
            progress.last_scanned_height,
            extra={"source": source_id},
        )
        return progress, True

    def upsert(self, source_id: str, **fields: Any) -> ScanProgress:
        """Write progress fields, creating the row if needed.

        ``last_scan_time`` is refreshed on every write. A new row requires
        ``last_scanned_height`` among the fields.
        """
        if isinstance(fields.get("status"), ScanStatus):
            fields["status"] = fields["status"].value
        fields.setdefault("last_scan_time", utcnow())

        progress = self.find(source_id)
        if progress is None:
            if "last_scanned_height" not in fields:
                raise ValueError(f"No progress for '{source_id}' and no height given")
            fields.setdefault("status", ScanStatus.IDLE.value)
            progress = ScanProgress(source_id=source_id, **fields)
            self.session.add(progress)
        else:
            for key, value in fields.items():
                setattr(progress, key, value)

        self.session.flush()
        return progress

    def reset(self, source_id: str, floor_height: int) -> ScanProgress:
        """Move the watermark back to just below the floor height."""
        progress = self.upsert(
            source_id,
            last_scanned_height=floor_height - 1,
            status=ScanStatus.IDLE,
            last_error=None,
        )
        logger.info(
            "Scan progress reset to height %d",
            progress.last_scanned_height,
            extra={"source": source_id, "last_scanned_height": progress.last_scanned_height},
        )
        return progress


# =============================================================================
# Event Repository
# =============================================================================


class EventRepository:
    """Repository for FeeCollectedEvent rows.

    Events are insert-only: a record whose identity is already stored is
    left untouched, so the first write wins.
    """

    def __init__(self, session: Session):
        self.session = session

    def insert_if_absent(self, records: Sequence[EventRecord]) -> int:
        """Store records whose identity is not yet present.

        Returns:
            Number of rows actually inserted
        """
        if not records:
            return 0

        # Duplicates inside the batch collapse to the first occurrence
        unique: dict[tuple[str, str, int], EventRecord] = {}
        for record in records:
            unique.setdefault(record.identity, record)

        now = utcnow()
        rows = [{**record.to_row(), "created_at": now} for record in unique.values()]

        dialect = self.session.get_bind().dialect.name
        inserted = 0
        for start in range(0, len(rows), INSERT_CHUNK_SIZE):
            chunk = rows[start:start + INSERT_CHUNK_SIZE]
            if dialect == "sqlite":
                inserted += self._insert_on_conflict(sqlite_insert, chunk)
            elif dialect == "postgresql":
                inserted += self._insert_on_conflict(postgresql_insert, chunk)
            else:
                inserted += self._insert_missing(chunk)

        logger.info(
            "Stored %d new events, %d duplicates skipped (%d submitted)",
            inserted,
            len(records) - inserted,
            len(records),
            extra={"new_events": inserted},
        )
        return inserted

    def _insert_on_conflict(self, insert_fn, rows: list[dict[str, Any]]) -> int:
        stmt = (
            insert_fn(FeeCollectedEvent)
            .values(rows)
            .on_conflict_do_nothing(index_elements=list(IDENTITY_COLUMNS))
        )
        result = self.session.execute(stmt)
        return max(result.rowcount or 0, 0)

    def _insert_missing(self, rows: list[dict[str, Any]]) -> int:
        """Portable path: look up existing identities, add the rest."""
        keys = [tuple(row[col] for col in IDENTITY_COLUMNS) for row in rows]
        stmt = select(
            FeeCollectedEvent.source_id,
            FeeCollectedEvent.tx_hash,
            FeeCollectedEvent.log_index,
        ).where(
            tuple_(
                FeeCollectedEvent.source_id,
                FeeCollectedEvent.tx_hash,
                FeeCollectedEvent.log_index,
            ).in_(keys)
        )
        existing = {tuple(row) for row in self.session.execute(stmt).all()}

        missing = [
            FeeCollectedEvent(**row)
            for row, key in zip(rows, keys)
            if key not in existing
        ]
        self.session.add_all(missing)
        self.session.flush()
        return len(missing)

    def _filters(
        self,
        source_id: str | None,
        integrator: str | None,
        token: str | None,
        from_height: int | None,
        to_height: int | None,
    ) -> list:
        conditions = []
        if source_id is not None:
            conditions.append(FeeCollectedEvent.source_id == source_id)
        if integrator is not None:
            conditions.append(FeeCollectedEvent.integrator == integrator.lower())
        if token is not None:
            conditions.append(FeeCollectedEvent.token == token.lower())
        if from_height is not None:
            conditions.append(FeeCollectedEvent.block_height >= from_height)
        if to_height is not None:
            conditions.append(FeeCollectedEvent.block_height <= to_height)
        return conditions

    def list_events(
        self,
        source_id: str | None = None,
        integrator: str | None = None,
        token: str | None = None,
        from_height: int | None = None,
        to_height: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[FeeCollectedEvent]:
        """List events with filters, ordered by block height then log index."""
        stmt = select(FeeCollectedEvent)

        conditions = self._filters(source_id, integrator, token, from_height, to_height)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(
            FeeCollectedEvent.block_height.asc(),
            FeeCollectedEvent.log_index.asc(),
        )
        stmt = stmt.limit(limit).offset(offset)

        return self.session.execute(stmt).scalars().all()

    def count(
        self,
        source_id: str | None = None,
        integrator: str | None = None,
        token: str | None = None,
        from_height: int | None = None,
        to_height: int | None = None,
    ) -> int:
        stmt = select(func.count(FeeCollectedEvent.id))
        conditions = self._filters(source_id, integrator, token, from_height, to_height)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return self.session.execute(stmt).scalar_one()
