"""Database persistence layer."""

from .db import configure_database, get_engine, get_session, init_db
from .models import Base, FeeCollectedEvent, ScanProgress
from .repo import EventRepository, ProgressRepository

__all__ = [
    "configure_database",
    "get_engine",
    "get_session",
    "init_db",
    "Base",
    "FeeCollectedEvent",
    "ScanProgress",
    "EventRepository",
    "ProgressRepository",
]
