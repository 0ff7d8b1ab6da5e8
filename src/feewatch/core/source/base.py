"""
Upstream feed base classes and data structures.

Defines the interface contract for chain feeds and the decoded record
shape handed to the event store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping


RawLog = Mapping[str, Any]


@dataclass(frozen=True)
class EventRecord:
    """A decoded FeesCollected event.

    Fee amounts are decimal strings so arbitrarily large uint256 values
    survive storage untouched. Identity is (source_id, tx_hash, log_index).
    """

    source_id: str
    token: str
    integrator: str
    integrator_fee: str
    protocol_fee: str
    block_height: int
    tx_hash: str
    log_index: int
    block_timestamp: datetime

    @property
    def identity(self) -> tuple[str, str, int]:
        return (self.source_id, self.tx_hash, self.log_index)

    def to_row(self) -> dict[str, Any]:
        """Column mapping for the event store (timestamps as naive UTC)."""
        block_timestamp = self.block_timestamp
        if block_timestamp.tzinfo is not None:
            block_timestamp = block_timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        return {
            "source_id": self.source_id,
            "token": self.token,
            "integrator": self.integrator,
            "integrator_fee": self.integrator_fee,
            "protocol_fee": self.protocol_fee,
            "block_height": self.block_height,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_timestamp": block_timestamp,
        }


@dataclass(frozen=True)
class DecodedLog:
    """Event arguments and log position, before timestamp enrichment."""

    token: str
    integrator: str
    integrator_fee: int
    protocol_fee: int
    block_height: int
    tx_hash: str
    log_index: int


class UpstreamFeed(ABC):
    """Abstract chain feed.

    Implementations raise whatever their transport raises; failures are
    classified by the caller, never here.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Feed identifier."""
        pass

    @abstractmethod
    async def current_height(self) -> int:
        """Latest block height known to the upstream."""
        pass

    @abstractmethod
    async def range_query(self, from_height: int, to_height: int) -> list[RawLog]:
        """Raw fee events in the inclusive block range."""
        pass

    @abstractmethod
    async def resolve_timestamp(self, height: int) -> datetime | None:
        """Block timestamp (UTC) or None when the block is unknown."""
        pass

    @abstractmethod
    def decode_log(self, raw: RawLog) -> DecodedLog:
        """Decode one raw log into event arguments.

        Raises:
            DecodeError: If the log is not a well-formed fee event
        """
        pass

    async def reconnect(self) -> None:
        """Replace the transport with a fresh one."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass

    async def __aenter__(self) -> "UpstreamFeed":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class SourceError(Exception):
    """Base exception for upstream source errors."""

    def __init__(
        self,
        message: str,
        from_height: int | None = None,
        to_height: int | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.from_height = from_height
        self.to_height = to_height
        self.cause = cause


class DecodeError(SourceError):
    """A raw log could not be decoded into an EventRecord."""
    pass
