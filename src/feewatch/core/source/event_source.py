"""
Retry-wrapped access to an upstream feed.

Every network-facing call goes through UpstreamRetrier; decoding enriches
each event with its block timestamp using a lookup cache that lives only
for the duration of one decode call.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Sequence

from feewatch.core.fetch.ratelimit import RateLimitClassifier
from feewatch.core.fetch.retries import BackoffPolicy, SleepFunc, UpstreamRetrier

from .base import EventRecord, RawLog, UpstreamFeed

logger = logging.getLogger(__name__)


class EventSource:
    """Upstream feed access for one source.

    Coordinates:
    - head height queries
    - ranged raw log fetches
    - decoding and timestamp enrichment
    """

    def __init__(
        self,
        feed: UpstreamFeed,
        source_id: str,
        *,
        policy: BackoffPolicy | None = None,
        classifier: RateLimitClassifier | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.feed = feed
        self.source_id = source_id
        self._retrier = UpstreamRetrier(
            policy,
            classifier,
            reconnect=feed.reconnect,
            sleep=sleep,
        )

    async def current_height(self) -> int:
        return await self._retrier.call("current_height", self.feed.current_height)

    async def fetch_range(self, from_height: int, to_height: int) -> list[RawLog]:
        logger.info(
            "Loading events for block range",
            extra={"source": self.source_id, "from_height": from_height, "to_height": to_height},
        )
        return await self._retrier.call(
            "fetch_range",
            self.feed.range_query,
            from_height,
            to_height,
        )

    async def decode(self, raw_logs: Sequence[RawLog]) -> list[EventRecord]:
        """Decode raw logs into EventRecords.

        Events whose block the upstream no longer knows are skipped with a
        warning. Any other failure aborts the whole batch.

        Raises:
            DecodeError: If a log cannot be decoded
        """
        timestamps: dict[int, datetime | None] = {}
        records: list[EventRecord] = []

        for raw in raw_logs:
            decoded = self.feed.decode_log(raw)

            height = decoded.block_height
            if height not in timestamps:
                timestamps[height] = await self._retrier.call(
                    "resolve_timestamp",
                    self.feed.resolve_timestamp,
                    height,
                )

            block_timestamp = timestamps[height]
            if block_timestamp is None:
                logger.warning(
                    "Block not found for event %s, skipping",
                    decoded.tx_hash,
                    extra={"source": self.source_id, "from_height": height},
                )
                continue

            records.append(EventRecord(
                source_id=self.source_id,
                token=decoded.token,
                integrator=decoded.integrator,
                integrator_fee=str(decoded.integrator_fee),
                protocol_fee=str(decoded.protocol_fee),
                block_height=height,
                tx_hash=decoded.tx_hash,
                log_index=decoded.log_index,
                block_timestamp=block_timestamp,
            ))

        logger.debug(
            "Decoded %d of %d logs (%d block lookups)",
            len(records),
            len(raw_logs),
            len(timestamps),
        )
        return records

    async def fetch_and_decode(self, from_height: int, to_height: int) -> list[EventRecord]:
        raw_logs = await self.fetch_range(from_height, to_height)
        return await self.decode(raw_logs)

    async def validate_connection(self) -> int:
        """Check the upstream answers; returns the head height."""
        height = await self.current_height()
        logger.info(
            "Upstream connection validated",
            extra={"source": self.source_id, "head_height": height},
        )
        return height
