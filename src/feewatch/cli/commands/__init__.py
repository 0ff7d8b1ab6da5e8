"""CLI command modules."""

from . import db, events, scan

__all__ = [
    "db",
    "events",
    "scan",
]
