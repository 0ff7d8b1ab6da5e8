"""
Integration tests for ScanOrchestrator against a fake feed and in-memory SQLite.
"""

import asyncio

import pytest

from feewatch.core.config.models import AppConfig, ChainConfig, ScannerConfig, SourceConfig
from feewatch.core.fetch.retries import BackoffPolicy
from feewatch.core.orchestrator import ScanOrchestrator, ScanResult, build_orchestrator
from feewatch.core.source.base import DecodeError
from feewatch.core.source.event_source import EventSource
from feewatch.core.source.web3_feed import Web3Feed
from feewatch.persistence.repo import EventRepository, ProgressRepository

pytestmark = pytest.mark.integration


def gate_range_queries(feed):
    """Make range queries block until the returned gate is set."""
    gate = asyncio.Event()
    entered = asyncio.Event()
    original = feed.range_query

    async def gated(from_height, to_height):
        entered.set()
        await gate.wait()
        return await original(from_height, to_height)

    feed.range_query = gated
    return gate, entered


def stop_after_range_queries(feed, orchestrator, count):
    """Ask the orchestrator to stop once `count` range queries have run."""
    original = feed.range_query

    async def stopping(from_height, to_height):
        logs = await original(from_height, to_height)
        if feed.call_names().count("range_query") >= count:
            orchestrator.stop()
        return logs

    feed.range_query = stopping


@pytest.fixture
def make_orchestrator(sleep_recorder, session_factory):
    def factory(feed, **kwargs):
        source = EventSource(
            feed,
            "polygon",
            policy=BackoffPolicy(max_retries=3, base_delay_ms=1000),
            sleep=sleep_recorder,
        )
        params = {
            "floor_height": 100,
            "batch_size": 100,
            "maintenance_interval_ms": 60_000,
            "catch_up_pacing_ms": 2_000,
        }
        params.update(kwargs)
        return ScanOrchestrator(source, session_factory=session_factory, **params)

    return factory


def _progress(session_factory):
    with session_factory() as session:
        return ProgressRepository(session).find("polygon")


def _event_count(session_factory):
    with session_factory() as session:
        return EventRepository(session).count()


class TestScanOnce:
    @pytest.mark.asyncio
    async def test_first_cycle_scans_one_batch_from_floor(self, feed, make_orchestrator, session_factory):
        feed.head = 1_000
        orchestrator = make_orchestrator(feed)

        result = await orchestrator.scan_once()

        assert result == ScanResult(scanned=100, new_events=0, from_height=100, to_height=199, head_height=1_000)
        assert ("range_query", 100, 199) in feed.calls

        progress = _progress(session_factory)
        assert progress.last_scanned_height == 199
        assert progress.known_head_height == 1_000
        assert progress.status == "idle"
        assert progress.last_error is None

    @pytest.mark.asyncio
    async def test_range_is_clamped_to_head(self, feed, make_orchestrator, session_factory):
        feed.head = 150
        result = await make_orchestrator(feed).scan_once()

        assert (result.from_height, result.to_height, result.scanned) == (100, 150, 51)
        assert _progress(session_factory).last_scanned_height == 150

    @pytest.mark.asyncio
    async def test_consecutive_cycles_are_contiguous(self, feed, make_orchestrator, log_factory, session_factory):
        feed.head = 1_000
        feed.logs = [log_factory(h) for h in (100, 150, 250)]
        orchestrator = make_orchestrator(feed)

        first = await orchestrator.scan_once()
        second = await orchestrator.scan_once()

        assert (first.from_height, first.to_height, first.new_events) == (100, 199, 2)
        assert (second.from_height, second.to_height, second.new_events) == (200, 299, 1)
        assert _event_count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_caught_up_touches_only_head(self, feed, make_orchestrator, session_factory):
        feed.head = 1_000
        with session_factory() as session:
            ProgressRepository(session).upsert("polygon", last_scanned_height=1_000)

        result = await make_orchestrator(feed).scan_once()

        assert result.scanned == 0
        assert result.new_events == 0
        assert feed.call_names() == ["current_height"]
        progress = _progress(session_factory)
        assert progress.last_scanned_height == 1_000
        assert progress.known_head_height == 1_000
        assert progress.status == "idle"

    @pytest.mark.asyncio
    async def test_rescan_after_reset_stores_no_duplicates(self, feed, make_orchestrator, log_factory, session_factory):
        feed.head = 1_000
        feed.logs = [log_factory(120, 0), log_factory(120, 1), log_factory(180)]
        orchestrator = make_orchestrator(feed)

        first = await orchestrator.scan_once()
        reset = orchestrator.reset_progress()
        second = await orchestrator.scan_once()

        assert first.new_events == 3
        assert reset.last_scanned_height == 99
        assert second.new_events == 0
        assert second.to_height == 199
        assert _event_count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_event_in_missing_block_does_not_stall(self, feed, make_orchestrator, log_factory, session_factory):
        feed.head = 1_000
        feed.logs = [log_factory(110), log_factory(120)]
        feed.missing_blocks.add(110)

        result = await make_orchestrator(feed).scan_once()

        assert result.new_events == 1
        assert _progress(session_factory).last_scanned_height == 199

    @pytest.mark.asyncio
    async def test_get_progress_creates_below_floor(self, feed, make_orchestrator):
        progress = make_orchestrator(feed, floor_height=5_000).get_progress()
        assert progress.last_scanned_height == 4_999
        assert progress.status == "idle"


class TestFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_marks_error_and_keeps_watermark(self, feed, make_orchestrator, session_factory):
        feed.head = 1_000
        feed.range_errors = [ValueError("invalid block range")]
        orchestrator = make_orchestrator(feed)

        with pytest.raises(ValueError, match="invalid block range"):
            await orchestrator.scan_once()

        progress = _progress(session_factory)
        assert progress.status == "error"
        assert progress.last_error == "invalid block range"
        assert progress.last_scanned_height == 99
        assert _event_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_recovery_clears_error(self, feed, make_orchestrator, session_factory):
        feed.head = 1_000
        feed.range_errors = [ValueError("invalid block range")]
        orchestrator = make_orchestrator(feed)

        with pytest.raises(ValueError):
            await orchestrator.scan_once()
        result = await orchestrator.scan_once()

        assert (result.from_height, result.to_height) == (100, 199)
        progress = _progress(session_factory)
        assert progress.status == "idle"
        assert progress.last_error is None

    @pytest.mark.asyncio
    async def test_head_failure_marks_error(self, feed, make_orchestrator, session_factory):
        feed.head_errors = [ValueError("upstream unavailable")]

        with pytest.raises(ValueError):
            await make_orchestrator(feed).scan_once()

        progress = _progress(session_factory)
        assert progress.status == "error"
        assert progress.last_scanned_height == 99
        assert progress.known_head_height is None

    @pytest.mark.asyncio
    async def test_decode_failure_aborts_batch(self, feed, make_orchestrator, log_factory, session_factory):
        feed.head = 1_000
        feed.logs = [log_factory(110), log_factory(120)]

        def broken_decode(raw):
            raise DecodeError("bad log")

        feed.decode_log = broken_decode

        with pytest.raises(DecodeError):
            await make_orchestrator(feed).scan_once()

        progress = _progress(session_factory)
        assert (progress.status, progress.last_scanned_height, progress.last_error) == ("error", 99, "bad log")
        assert _event_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, feed, make_orchestrator, log_factory, session_factory, monkeypatch):
        feed.head = 1_000
        feed.logs = [log_factory(110)]

        def failing_insert(self, records):
            raise OSError("disk full")

        monkeypatch.setattr(EventRepository, "insert_if_absent", failing_insert)

        with pytest.raises(OSError, match="disk full"):
            await make_orchestrator(feed).scan_once()

        progress = _progress(session_factory)
        assert (progress.status, progress.last_scanned_height, progress.last_error) == ("error", 99, "disk full")

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried_inside_the_cycle(self, feed, make_orchestrator, sleep_recorder, session_factory):
        feed.head = 1_000
        feed.range_errors = [Exception("429 Too Many Requests, retry in 1m")]

        result = await make_orchestrator(feed).scan_once()

        assert result.to_height == 199
        assert sleep_recorder.delays_ms == [60_000]
        assert _progress(session_factory).status == "idle"


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_concurrent_scan_returns_empty_result(self, feed, make_orchestrator, session_factory):
        feed.head = 1_000
        gate, entered = gate_range_queries(feed)
        orchestrator = make_orchestrator(feed)

        first = asyncio.create_task(orchestrator.scan_once())
        await entered.wait()
        calls_before = list(feed.calls)

        second = await orchestrator.scan_once()

        assert second == ScanResult()
        assert feed.calls == calls_before

        gate.set()
        result = await first
        assert result.to_height == 199
        assert _progress(session_factory).last_scanned_height == 199


class TestNextDelay:
    def test_rate_limited_failure_uses_classified_delay(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        assert orchestrator.next_delay_ms(error=Exception("rate limit, retry in 30s")) == 30_000

    def test_rate_limit_without_delay_uses_default(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        assert orchestrator.next_delay_ms(error=Exception("Too Many Requests")) == 300_000

    def test_other_failure_uses_maintenance_interval(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        assert orchestrator.next_delay_ms(error=ValueError("boom")) == 60_000

    def test_nothing_scanned_uses_maintenance_interval(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        assert orchestrator.next_delay_ms(ScanResult()) == 60_000
        assert orchestrator.next_delay_ms() == 60_000

    def test_close_to_head_uses_maintenance_interval(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        result = ScanResult(scanned=100, from_height=100, to_height=199, head_height=299)
        assert orchestrator.next_delay_ms(result) == 60_000

    def test_far_behind_uses_catch_up_pacing(self, feed, make_orchestrator):
        orchestrator = make_orchestrator(feed)
        result = ScanResult(scanned=100, from_height=100, to_height=199, head_height=300)
        assert orchestrator.next_delay_ms(result) == 2_000


class TestContinuousLoop:
    @pytest.mark.asyncio
    async def test_stop_lets_cycle_in_flight_finish(self, feed, make_orchestrator, session_factory):
        feed.head = 100_000
        orchestrator = make_orchestrator(feed, catch_up_pacing_ms=0)
        stop_after_range_queries(feed, orchestrator, 3)

        orchestrator.start()
        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=5)

        assert feed.call_names().count("range_query") == 3
        assert _progress(session_factory).last_scanned_height == 399
        assert not orchestrator.is_running

        calls = len(feed.calls)
        await asyncio.sleep(0.05)
        assert len(feed.calls) == calls

    @pytest.mark.asyncio
    async def test_stop_interrupts_idle_wait(self, feed, make_orchestrator):
        feed.head = 50
        orchestrator = make_orchestrator(feed, maintenance_interval_ms=600_000)

        orchestrator.start()
        while "current_height" not in feed.call_names():
            await asyncio.sleep(0)
        orchestrator.stop()

        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=1)
        assert feed.call_names().count("current_height") == 1

    @pytest.mark.asyncio
    async def test_loop_continues_after_failure(self, feed, make_orchestrator, session_factory):
        feed.head = 100_000
        feed.head_errors = [ValueError("temporary outage")]
        orchestrator = make_orchestrator(feed, maintenance_interval_ms=10, catch_up_pacing_ms=0)
        stop_after_range_queries(feed, orchestrator, 1)

        await asyncio.wait_for(orchestrator.run_forever(), timeout=5)

        progress = _progress(session_factory)
        assert progress.status == "idle"
        assert progress.last_scanned_height == 199
        assert feed.call_names().count("current_height") == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self, feed, make_orchestrator):
        feed.head = 50
        orchestrator = make_orchestrator(feed, maintenance_interval_ms=600_000)

        task = orchestrator.start()
        assert orchestrator.start() is task

        orchestrator.stop()
        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=1)

    @pytest.mark.asyncio
    async def test_restart_while_stopping_runs_a_new_loop(self, feed, make_orchestrator, session_factory):
        feed.head = 100_000
        gate, entered = gate_range_queries(feed)
        orchestrator = make_orchestrator(feed, catch_up_pacing_ms=0)

        first = orchestrator.start()
        await entered.wait()
        orchestrator.stop()
        second = orchestrator.start()

        assert second is not first
        assert orchestrator.is_running

        gate.set()
        await asyncio.wait_for(first, timeout=5)
        assert not second.done()

        while feed.call_names().count("range_query") < 2:
            await asyncio.sleep(0)
        orchestrator.stop()
        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=5)

        assert _progress(session_factory).last_scanned_height >= 299

    @pytest.mark.asyncio
    async def test_close_closes_feed(self, feed, make_orchestrator):
        await make_orchestrator(feed).close()
        assert feed.closed is True


class TestBuildOrchestrator:
    def test_source_overrides_take_precedence(self, session_factory):
        config = AppConfig(
            chain=ChainConfig(rpc_url="https://chain.example"),
            scanner=ScannerConfig(batch_size=5_000, maintenance_interval_ms=30_000),
            sources=[
                SourceConfig(
                    source_id="polygon",
                    floor_height=61_500_000,
                    rpc_url="https://override.example",
                    batch_size=250,
                ),
            ],
        )

        orchestrator = build_orchestrator(config, config.sources[0], session_factory=session_factory)

        assert orchestrator.source_id == "polygon"
        assert orchestrator.floor_height == 61_500_000
        assert orchestrator.batch_size == 250
        assert orchestrator.maintenance_interval_ms == 30_000
        assert isinstance(orchestrator.source.feed, Web3Feed)
        assert orchestrator.source.feed.rpc_url == "https://override.example"

    def test_falls_back_to_shared_settings(self, session_factory):
        config = AppConfig(scanner=ScannerConfig(batch_size=5_000))

        orchestrator = build_orchestrator(config, config.get_source(), session_factory=session_factory)

        assert orchestrator.batch_size == 5_000
        assert orchestrator.source.feed.rpc_url == config.chain.rpc_url
