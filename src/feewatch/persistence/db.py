"""
Database engine and session handling.

One process-wide engine is bound at startup from DatabaseConfig; scanners,
the CLI and migrations all draw sessions from it. SQLite files get WAL
journaling so `feewatch status` can read while `feewatch scan run` writes.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

if TYPE_CHECKING:
    from feewatch.core.config.models import DatabaseConfig

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/feewatch.db"

# Milliseconds a writer waits on a locked SQLite file before failing
SQLITE_BUSY_TIMEOUT_MS = 5_000

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_file(url: str) -> Path | None:
    """Database file for a file-backed SQLite URL, else None."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return None
    if not parsed.database or parsed.database == ":memory:":
        return None
    return Path(parsed.database)


def _install_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def _build_engine(url: str, echo: bool, pool_size: int) -> Engine:
    if make_url(url).get_backend_name() == "sqlite":
        db_file = _sqlite_file(url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
        _install_sqlite_pragmas(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=pool_size * 2,
        pool_pre_ping=True,
    )


def configure_database(config: DatabaseConfig) -> Engine:
    """Bind the process-wide engine from configuration.

    Rebinding to a different URL disposes the previous engine.
    """
    global _engine, _session_factory

    if _engine is not None:
        if _engine.url.render_as_string(hide_password=False) == config.url:
            return _engine
        dispose_engines()

    _engine = _build_engine(config.url, config.echo, config.pool_size)
    _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.debug("Database engine bound to %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_engine() -> Engine:
    """The bound engine, falling back to the default SQLite file."""
    if _engine is None:
        from feewatch.core.config.models import DatabaseConfig

        return configure_database(DatabaseConfig(url=DEFAULT_DATABASE_URL))
    return _engine


@contextmanager
def get_session() -> Iterator[Session]:
    """Transactional session scope: commit on success, rollback on error."""
    get_engine()
    assert _session_factory is not None

    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def schema_ready(engine: Engine | None = None) -> bool:
    """True when both feewatch tables exist."""
    names = set(inspect(engine or get_engine()).get_table_names())
    return {"scan_progress", "fee_collected_events"} <= names


def init_db(config: DatabaseConfig) -> None:
    """Create missing tables. Migrations are the path for schema changes."""
    engine = configure_database(config)
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready")


def drop_db(config: DatabaseConfig) -> None:
    """Drop every feewatch table, stored events included."""
    engine = configure_database(config)
    Base.metadata.drop_all(bind=engine)
    logger.warning("All feewatch tables dropped")


def dispose_engines() -> None:
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
