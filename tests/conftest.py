"""
Shared fixtures: in-memory database, fake chain feed, sleep recorder.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from feewatch.core.source.base import DecodedLog, EventRecord, UpstreamFeed
from feewatch.persistence.models import Base

BASE_TIMESTAMP = 1_700_000_000

INTEGRATOR = "0x1111111111111111111111111111111111111111"
TOKEN = "0x2222222222222222222222222222222222222222"


def block_time(height: int) -> datetime:
    return datetime.fromtimestamp(BASE_TIMESTAMP + height, tz=timezone.utc)


def make_log(
    height: int,
    log_index: int = 0,
    tx_hash: str | None = None,
    integrator: str = INTEGRATOR,
    token: str = TOKEN,
    integrator_fee: int = 1_000,
    protocol_fee: int = 100,
) -> dict[str, Any]:
    """Raw log in the shape FakeFeed.decode_log understands."""
    return {
        "token": token,
        "integrator": integrator,
        "integrator_fee": integrator_fee,
        "protocol_fee": protocol_fee,
        "block_height": height,
        "tx_hash": tx_hash or f"0x{height:064x}",
        "log_index": log_index,
    }


def make_record(height: int, log_index: int = 0, source_id: str = "test", **kwargs: Any) -> EventRecord:
    raw = make_log(height, log_index, **kwargs)
    return EventRecord(
        source_id=source_id,
        token=raw["token"],
        integrator=raw["integrator"],
        integrator_fee=str(raw["integrator_fee"]),
        protocol_fee=str(raw["protocol_fee"]),
        block_height=height,
        tx_hash=raw["tx_hash"],
        log_index=log_index,
        block_timestamp=block_time(height),
    )


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(float(seconds))

    @property
    def delays_ms(self) -> list[int]:
        return [round(s * 1000) for s in self.calls]


class FakeFeed(UpstreamFeed):
    """Scriptable in-memory chain feed.

    Queued errors are raised by the matching call, in order, before it
    starts answering normally.
    """

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.logs: list[dict[str, Any]] = []
        self.missing_blocks: set[int] = set()
        self.head_errors: list[Exception] = []
        self.range_errors: list[Exception] = []
        self.calls: list[tuple] = []
        self.reconnects = 0
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def current_height(self) -> int:
        self.calls.append(("current_height",))
        if self.head_errors:
            raise self.head_errors.pop(0)
        return self.head

    async def range_query(self, from_height: int, to_height: int) -> list[dict[str, Any]]:
        self.calls.append(("range_query", from_height, to_height))
        if self.range_errors:
            raise self.range_errors.pop(0)
        return [log for log in self.logs if from_height <= log["block_height"] <= to_height]

    async def resolve_timestamp(self, height: int) -> datetime | None:
        self.calls.append(("resolve_timestamp", height))
        if height in self.missing_blocks:
            return None
        return block_time(height)

    def decode_log(self, raw) -> DecodedLog:
        return DecodedLog(**raw)

    async def reconnect(self) -> None:
        self.reconnects += 1

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def engine():
    """In-memory SQLite shared across sessions via a single connection."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Commit-on-exit session scope, same contract as persistence.db.get_session."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def scope():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def log_factory():
    return make_log


@pytest.fixture
def record_factory():
    return make_record
