"""
Scan orchestrator.

Coordinates one source's ingestion cycle: head → range → fetch → decode →
store → advance watermark. Runs once on demand or continuously as an
asyncio task with adaptive pacing.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from feewatch.core.config.models import ScanStatus
from feewatch.core.fetch.ratelimit import RateLimitClassifier, extract_error_message
from feewatch.core.fetch.retries import BackoffPolicy
from feewatch.core.logging import get_contextual_logger
from feewatch.core.source.event_source import EventSource
from feewatch.core.source.web3_feed import Web3Feed
from feewatch.persistence.db import get_session
from feewatch.persistence.models import ScanProgress
from feewatch.persistence.repo import EventRepository, ProgressRepository

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from feewatch.core.config.models import AppConfig, SourceConfig


SessionFactory = Callable[[], AbstractContextManager["Session"]]


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan cycle."""

    scanned: int = 0
    new_events: int = 0
    from_height: int = 0
    to_height: int = 0
    head_height: int = 0

    @property
    def blocks_behind(self) -> int:
        return max(0, self.head_height - self.to_height)

    def to_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "new_events": self.new_events,
            "from_height": self.from_height,
            "to_height": self.to_height,
            "head_height": self.head_height,
        }


class ScanOrchestrator:
    """Drives scanning for a single source.

    At most one cycle runs at a time per instance; a concurrent request
    returns an empty result without touching upstream or store. The
    watermark advances only after a batch is committed.
    """

    def __init__(
        self,
        source: EventSource,
        *,
        floor_height: int,
        batch_size: int = 10_000,
        maintenance_interval_ms: int = 60_000,
        catch_up_pacing_ms: int = 2_000,
        session_factory: SessionFactory = get_session,
        classifier: RateLimitClassifier | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source: Retry-wrapped upstream access for this source
            floor_height: Oldest block to scan
            batch_size: Maximum blocks per cycle
            maintenance_interval_ms: Delay between cycles once caught up
            catch_up_pacing_ms: Delay between cycles while far behind
            session_factory: Context manager yielding a committed Session
            classifier: Failure classifier for loop pacing
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.source = source
        self.source_id = source.source_id
        self.floor_height = floor_height
        self.batch_size = batch_size
        self.maintenance_interval_ms = maintenance_interval_ms
        self.catch_up_pacing_ms = catch_up_pacing_ms
        self.classifier = classifier or RateLimitClassifier()

        self._session_factory = session_factory
        self._guard = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.log = get_contextual_logger("scanner", source=self.source_id)

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def get_progress(self) -> ScanProgress:
        """Current progress, created just below the floor height if absent."""
        with self._session_factory() as session:
            progress, _ = ProgressRepository(session).get_or_create(
                self.source_id, self.floor_height
            )
        return progress

    def reset_progress(self) -> ScanProgress:
        """Rewind the watermark to the floor. Stored events are kept."""
        with self._session_factory() as session:
            return ProgressRepository(session).reset(self.source_id, self.floor_height)

    def _update_progress(self, **fields) -> ScanProgress:
        with self._session_factory() as session:
            return ProgressRepository(session).upsert(self.source_id, **fields)

    def _store(self, records) -> int:
        with self._session_factory() as session:
            return EventRepository(session).insert_if_absent(records)

    # -------------------------------------------------------------------------
    # Single cycle
    # -------------------------------------------------------------------------

    async def scan_once(self) -> ScanResult:
        """Run one scan cycle.

        Returns:
            ScanResult for the covered range, or an empty result when
            already caught up or another cycle is in flight

        Raises:
            Exception: Whatever failed upstream or in the store, after the
                progress row has been marked as errored
        """
        if self._guard.locked():
            self.log.warning("Scan already in progress, skipping")
            return ScanResult()

        async with self._guard:
            return await self._scan_cycle()

    async def _scan_cycle(self) -> ScanResult:
        progress = self.get_progress()
        head: int | None = None

        try:
            head = await self.source.current_height()
            from_height = progress.last_scanned_height + 1

            if from_height > head:
                self._update_progress(
                    status=ScanStatus.IDLE,
                    known_head_height=head,
                    last_error=None,
                )
                self.log.debug(
                    "Already caught up at height %d",
                    progress.last_scanned_height,
                    extra={"head_height": head},
                )
                return ScanResult(head_height=head)

            to_height = min(from_height + self.batch_size - 1, head)
            self.log.info(
                "Scanning blocks %d-%d (%d behind head)",
                from_height,
                to_height,
                head - progress.last_scanned_height,
                extra={"from_height": from_height, "to_height": to_height, "head_height": head},
            )

            self._update_progress(
                status=ScanStatus.SCANNING,
                known_head_height=head,
                last_error=None,
            )

            records = await self.source.fetch_and_decode(from_height, to_height)
            new_events = self._store(records)

            self._update_progress(
                last_scanned_height=to_height,
                known_head_height=head,
                status=ScanStatus.IDLE,
                last_error=None,
            )

        except Exception as e:
            message = extract_error_message(e)
            self.log.error("Scan cycle failed: %s", message)
            fields = {"status": ScanStatus.ERROR, "last_error": message}
            if head is not None:
                fields["known_head_height"] = head
            self._update_progress(**fields)
            raise

        result = ScanResult(
            scanned=to_height - from_height + 1,
            new_events=new_events,
            from_height=from_height,
            to_height=to_height,
            head_height=head,
        )
        self.log.info(
            "Scanned %d blocks, %d new events",
            result.scanned,
            result.new_events,
            extra={
                "from_height": from_height,
                "to_height": to_height,
                "new_events": new_events,
                "last_scanned_height": to_height,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Continuous scanning
    # -------------------------------------------------------------------------

    def next_delay_ms(
        self,
        result: ScanResult | None = None,
        error: BaseException | None = None,
    ) -> int:
        """Delay before the next cycle given the last outcome."""
        if error is not None:
            info = self.classifier.analyze(error)
            if info.is_rate_limit and info.retry_delay_ms is not None:
                self.classifier.log_rate_limit(info, source=self.source_id)
                return info.retry_delay_ms
            return self.maintenance_interval_ms

        if result is None or result.scanned == 0:
            return self.maintenance_interval_ms

        if result.blocks_behind <= self.batch_size:
            return self.maintenance_interval_ms

        return self.catch_up_pacing_ms

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Spawn the continuous loop as a background task.

        Starting again after ``stop()`` while the previous loop is still
        finishing its cycle queues a fresh loop behind it.
        """
        if self.is_running and not self._stop_event.is_set():
            assert self._task is not None
            return self._task

        previous = self._task if self.is_running else None

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run_after(previous, self._stop_event),
            name=f"feewatch-scanner-{self.source_id}",
        )
        return self._task

    async def run_forever(self) -> None:
        """Run the continuous loop in the foreground until stopped."""
        self._stop_event = asyncio.Event()
        await self._loop(self._stop_event)

    def stop(self) -> None:
        """Request the loop to exit. A cycle in flight completes first."""
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    async def _run_after(self, previous: asyncio.Task[None] | None, stop_event: asyncio.Event) -> None:
        if previous is not None:
            await previous
        await self._loop(stop_event)

    async def _loop(self, stop_event: asyncio.Event) -> None:
        self.log.info("Starting continuous scanning")

        while not stop_event.is_set():
            try:
                result = await self.scan_once()
            except Exception as e:
                delay_ms = self.next_delay_ms(error=e)
            else:
                delay_ms = self.next_delay_ms(result)

            if stop_event.is_set():
                break

            self.log.debug("Next scan in %d ms", delay_ms, extra={"retry_delay_ms": delay_ms})
            await self._wait(stop_event, delay_ms)

        self.log.info("Continuous scanning stopped")

    async def _wait(self, stop_event: asyncio.Event, delay_ms: int) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass

    async def close(self) -> None:
        await self.source.feed.close()


def build_orchestrator(
    app_config: AppConfig,
    source_config: SourceConfig,
    *,
    session_factory: SessionFactory = get_session,
) -> ScanOrchestrator:
    """Wire a Web3 feed, retry policy and orchestrator for one source."""
    chain = app_config.chain
    feed = Web3Feed(
        source_config.rpc_url or chain.rpc_url,
        source_config.contract_address or chain.contract_address,
        timeout=chain.request_timeout_seconds,
    )
    classifier = RateLimitClassifier()
    source = EventSource(
        feed,
        source_config.source_id,
        policy=BackoffPolicy.from_config(app_config.retry),
        classifier=classifier,
    )
    scanner = app_config.scanner
    return ScanOrchestrator(
        source,
        floor_height=source_config.floor_height,
        batch_size=source_config.batch_size or scanner.batch_size,
        maintenance_interval_ms=scanner.maintenance_interval_ms,
        catch_up_pacing_ms=scanner.catch_up_pacing_ms,
        session_factory=session_factory,
        classifier=classifier,
    )
