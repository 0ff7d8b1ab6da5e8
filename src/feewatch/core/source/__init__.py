"""Upstream sources - feed contract, web3 feed, retry-wrapped event source."""

from .base import (
    DecodedLog,
    DecodeError,
    EventRecord,
    RawLog,
    SourceError,
    UpstreamFeed,
)
from .event_source import EventSource
from .web3_feed import Web3Feed

__all__ = [
    # Base classes
    "DecodedLog",
    "EventRecord",
    "RawLog",
    "UpstreamFeed",
    # Errors
    "DecodeError",
    "SourceError",
    # Implementations
    "EventSource",
    "Web3Feed",
]
