"""Tests for the polling stream scheduler.

**Feature: live-chart-streaming**

Scenarios run on a real event loop via ``asyncio.run`` with millisecond
cycle delays and a scripted source.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from livechart.errors import InvalidSampleError, SampleSourceError, StreamTerminatedError
from livechart.models import Candle
from livechart.series import CandleSeries
from livechart.sources.base import SampleSource
from livechart.streaming import StreamScheduler, backoff_delay_ms

MINUTE = 60_000
NOW = datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)


def make_candle(timestamp_ms: int, close: float = 100.0, **overrides) -> Candle:
    fields = dict(timestamp=timestamp_ms, open=close, high=close + 1, low=close - 1, close=close, volume=1.0)
    fields.update(overrides)
    return Candle(**fields)


class ScriptedSource(SampleSource):
    """Returns the scripted responses in order, repeating the last one."""

    name = "scripted"

    def __init__(self, responses, price: Optional[float] = None, delay_s: float = 0.0):
        self._responses = list(responses)
        self._price = price
        self.delay_s = delay_s
        self.latest_calls = 0
        self.price_calls = 0

    async def fetch_latest(self, symbol: str, interval: str, limit: int = 1) -> list[Candle]:
        self.latest_calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        item = self._responses[min(self.latest_calls, len(self._responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return [item]

    async def fetch_price(self, symbol: str) -> float:
        self.price_calls += 1
        if self._price is None:
            raise SampleSourceError("ticker unavailable")
        return self._price


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)


def make_scheduler(source: SampleSource, **kwargs) -> StreamScheduler:
    kwargs.setdefault("default_cycle_delay_ms", 1.0)
    kwargs.setdefault("max_delay_ms", 5.0)
    kwargs.setdefault("clock", lambda: NOW)
    return StreamScheduler(source, **kwargs)


# ============================================================================
# Property 6: Backoff Monotonicity
# ============================================================================

class TestBackoff:
    """
    **Feature: live-chart-streaming, Property 6: Backoff Monotonicity**

    *For any* base delay and error count, the next delay never shrinks as
    errors grow, never exceeds the cap (unless the base already does) and
    equals the base when there are no errors.
    """

    @given(
        base=st.floats(min_value=1, max_value=5000),
        errors=st.integers(min_value=0, max_value=40),
        cap=st.floats(min_value=1, max_value=10_000),
    )
    @settings(max_examples=200)
    def test_backoff_is_monotonic_and_capped(self, base: float, errors: int, cap: float):
        current = backoff_delay_ms(base, errors, max_delay_ms=cap)
        following = backoff_delay_ms(base, errors + 1, max_delay_ms=cap)

        assert following >= current
        assert current <= max(cap, base)
        assert current >= base

    def test_no_errors_uses_base_delay(self):
        assert backoff_delay_ms(10.0, 0) == 10.0

    def test_growth_by_multiplier(self):
        assert backoff_delay_ms(10.0, 2, multiplier=1.5) == pytest.approx(22.5)

    def test_cap_applies(self):
        assert backoff_delay_ms(10.0, 50) == 1000.0

    def test_delay_floor(self):
        assert backoff_delay_ms(0.0, 0) == 1.0


# ============================================================================
# Stream lifecycle
# ============================================================================

class TestStreamLifecycle:
    """Starting, replacing, stopping and restarting streams."""

    def test_updates_flow_into_series(self):
        async def scenario():
            source = ScriptedSource([
                make_candle(0, close=100.0),
                make_candle(30_000, close=101.0),
                make_candle(MINUTE, close=102.0),
            ])
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append)

            await wait_until(lambda: len(updates) >= 3)
            series = scheduler.series_for("BTCUSDT", "1m")
            state = scheduler.state_for("BTCUSDT", "1m")
            await scheduler.shutdown()
            return updates, series, state

        updates, series, state = asyncio.run(scenario())

        candles = series.snapshot()
        assert len(candles) == 2
        assert candles[0].close == 101.0
        assert candles[1].close == 102.0
        assert updates[1].close == 101.0
        assert state.error_count == 0
        assert state.last_valid_sample is not None
        assert state.last_update == NOW
        assert len(state.response_times) >= 3

    def test_stop_is_idempotent(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            scheduler.start("BTCUSDT", "1m", lambda c: None)
            await wait_until(lambda: source.latest_calls >= 1)

            first = scheduler.stop("BTCUSDT", "1m")
            second = scheduler.stop("BTCUSDT", "1m")
            calls = source.latest_calls
            await asyncio.sleep(0.03)
            await scheduler.shutdown()
            return first, second, calls, source.latest_calls, scheduler.is_active("BTCUSDT", "1m")

        first, second, calls_at_stop, calls_later, active = asyncio.run(scenario())

        assert first is True
        assert second is False
        assert calls_later == calls_at_stop
        assert active is False

    def test_starting_same_key_replaces_stream(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            old_updates: list[Candle] = []
            new_updates: list[Candle] = []

            old_handle = scheduler.start("BTCUSDT", "1m", old_updates.append)
            new_handle = scheduler.start("BTCUSDT", "1m", new_updates.append)
            await wait_until(lambda: len(new_updates) >= 3)

            result = (
                scheduler.active_count,
                old_handle.active,
                new_handle.active,
                len(old_updates),
            )
            await scheduler.shutdown()
            return result

        active_count, old_active, new_active, old_count = asyncio.run(scenario())

        assert active_count == 1
        assert old_active is False
        assert new_active is True
        assert old_count == 0

    def test_handle_stop_only_affects_its_stream(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            old_handle = scheduler.start("BTCUSDT", "1m", lambda c: None)
            scheduler.start("BTCUSDT", "1m", lambda c: None)
            old_handle.stop()
            active = scheduler.is_active("BTCUSDT", "1m")
            await scheduler.shutdown()
            return active

        assert asyncio.run(scenario()) is True

    def test_independent_keys_run_together(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            scheduler.start("BTCUSDT", "1m", lambda c: None)
            scheduler.start("BTCUSDT", "5m", lambda c: None)
            scheduler.start("ETHUSDT", "1m", lambda c: None)
            count = scheduler.active_count
            stopped = scheduler.stop_all()
            await scheduler.shutdown()
            return count, stopped, scheduler.active_count

        assert asyncio.run(scenario()) == (3, 3, 0)

    def test_stop_during_inflight_fetch_discards_result(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)], delay_s=0.05)
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            series = CandleSeries("BTCUSDT", "1m")
            scheduler.start("BTCUSDT", "1m", updates.append, series=series)

            await wait_until(lambda: source.latest_calls >= 1)
            scheduler.stop("BTCUSDT", "1m")
            await scheduler.shutdown()
            return updates, len(series), source.latest_calls

        updates, series_len, calls = asyncio.run(scenario())

        assert updates == []
        assert series_len == 0
        assert calls == 1

    def test_restart_keeps_series(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append, cycle_delay_ms=2.0)
            await wait_until(lambda: len(updates) >= 1)
            series = scheduler.series_for("BTCUSDT", "1m")

            restarted = scheduler.restart("BTCUSDT", "1m")
            stopped_meanwhile = scheduler.active_count == 0
            await wait_until(lambda: scheduler.active_count == 1, timeout=1.0)

            result = (
                restarted,
                stopped_meanwhile,
                scheduler.series_for("BTCUSDT", "1m") is series,
                scheduler.state_for("BTCUSDT", "1m").cycle_delay_ms,
                scheduler.restart("ETHUSDT", "1m"),
            )
            await scheduler.shutdown()
            return result

        restarted, stopped_meanwhile, same_series, delay, missing = asyncio.run(scenario())

        assert restarted is True
        assert stopped_meanwhile is True
        assert same_series is True
        assert delay == 2.0
        assert missing is False

    def test_stop_cancels_pending_restart(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            scheduler.start("BTCUSDT", "1m", lambda c: None)
            await wait_until(lambda: source.latest_calls >= 1)

            scheduler.restart("BTCUSDT", "1m")
            stopped = scheduler.stop("BTCUSDT", "1m")
            await asyncio.sleep(0.15)
            result = (stopped, scheduler.active_count, scheduler.is_active("BTCUSDT", "1m"))
            await scheduler.shutdown()
            return result

        assert asyncio.run(scenario()) == (True, 0, False)

    def test_shutdown_cancels_pending_restart(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            scheduler.start("BTCUSDT", "1m", lambda c: None)
            scheduler.start("ETHUSDT", "1m", lambda c: None)
            await wait_until(lambda: source.latest_calls >= 2)

            scheduler.restart("BTCUSDT", "1m")
            stopped = scheduler.stop_all()
            await scheduler.shutdown()
            await asyncio.sleep(0.15)
            return stopped, scheduler.active_count

        assert asyncio.run(scenario()) == (2, 0)

    def test_start_during_restart_wins(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            old_updates: list[Candle] = []
            new_updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", old_updates.append)
            await wait_until(lambda: len(old_updates) >= 1)

            scheduler.restart("BTCUSDT", "1m")
            handle = scheduler.start("BTCUSDT", "1m", new_updates.append, cycle_delay_ms=3.0)
            await asyncio.sleep(0.15)
            old_count = len(old_updates)
            await asyncio.sleep(0.02)
            result = (
                handle.active,
                scheduler.active_count,
                scheduler.state_for("BTCUSDT", "1m").cycle_delay_ms,
                len(old_updates) == old_count,
                len(new_updates) > 0,
            )
            await scheduler.shutdown()
            return result

        assert asyncio.run(scenario()) == (True, 1, 3.0, True, True)

    def test_keys_do_not_collide_on_separator(self):
        async def scenario():
            scheduler = make_scheduler(ScriptedSource([make_candle(0)]))
            scheduler.start("BTC_USDT", "1m", lambda c: None)
            scheduler.start("BTC", "USDT_1m", lambda c: None)
            result = (
                scheduler.active_count,
                scheduler.is_active("BTC_USDT", "1m"),
                scheduler.is_active("BTC", "USDT_1m"),
                sorted(scheduler.stats()),
            )
            await scheduler.shutdown()
            return result

        count, first, second, keys = asyncio.run(scenario())

        assert count == 2
        assert first is True
        assert second is True
        assert keys == [("BTC", "USDT_1m"), ("BTC_USDT", "1m")]

    def test_cycle_skipped_while_request_in_flight(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append, cycle_delay_ms=10_000.0)
            await wait_until(lambda: len(updates) >= 1)

            state = scheduler.state_for("BTCUSDT", "1m")
            state.request_in_progress = True
            await scheduler._run_cycle(state.key, state.generation)
            result = (
                source.latest_calls,
                state.cycle_count,
                len(updates),
                scheduler._streams[state.key].timer is not None,
            )
            await scheduler.shutdown()
            return result

        assert asyncio.run(scenario()) == (1, 1, 1, True)

    def test_change_delay(self):
        async def scenario():
            scheduler = make_scheduler(ScriptedSource([make_candle(0)]))
            scheduler.start("BTCUSDT", "1m", lambda c: None, cycle_delay_ms=50.0)
            changed = scheduler.change_delay("BTCUSDT", "1m", 250.0)
            delay = scheduler.state_for("BTCUSDT", "1m").cycle_delay_ms
            scheduler.change_delay("BTCUSDT", "1m", 0.0)
            floored = scheduler.state_for("BTCUSDT", "1m").cycle_delay_ms
            missing = scheduler.change_delay("ETHUSDT", "1m", 10.0)
            await scheduler.shutdown()
            return changed, delay, floored, missing

        assert asyncio.run(scenario()) == (True, 250.0, 1.0, False)

    def test_stats_report_active_streams(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append)
            await wait_until(lambda: len(updates) >= 2)
            stats = scheduler.stats()
            await scheduler.shutdown()
            return stats

        stats = asyncio.run(scenario())

        assert list(stats) == [("BTCUSDT", "1m")]
        entry = stats[("BTCUSDT", "1m")]
        assert entry.symbol == "BTCUSDT"
        assert entry.cycle_count >= 2
        assert entry.is_running is True
        assert entry.average_response_time_ms >= 0


# ============================================================================
# Property 7: Error Ceiling
# ============================================================================

class TestErrorHandling:
    """
    **Feature: live-chart-streaming, Property 7: Error Ceiling**

    *For any* stream whose source keeps failing, the stream stops after
    exactly ``max_errors`` consecutive failures and reports termination.
    """

    @pytest.mark.parametrize("max_errors", [1, 3, 5])
    def test_stream_stops_at_error_ceiling(self, max_errors: int):
        async def scenario():
            source = ScriptedSource([SampleSourceError("klines down")])
            scheduler = make_scheduler(source, max_errors=max_errors, synthesize_on_failure=False)
            errors: list[Exception] = []
            scheduler.start("BTCUSDT", "1m", lambda c: None, on_error=errors.append)

            await wait_until(lambda: any(isinstance(e, StreamTerminatedError) for e in errors))
            await asyncio.sleep(0.02)
            await scheduler.shutdown()
            return errors, source.latest_calls, scheduler.active_count

        errors, calls, active = asyncio.run(scenario())

        assert calls == max_errors
        assert active == 0
        assert len(errors) == max_errors + 1
        assert all(isinstance(e, SampleSourceError) for e in errors[:-1])
        terminal = errors[-1]
        assert isinstance(terminal, StreamTerminatedError)
        assert terminal.key == "BTCUSDT_1m"
        assert terminal.error_count == max_errors

    def test_success_resets_error_count(self):
        async def scenario():
            source = ScriptedSource([
                SampleSourceError("blip"),
                SampleSourceError("blip"),
                make_candle(0),
            ])
            scheduler = make_scheduler(source, max_errors=3, synthesize_on_failure=False)
            updates: list[Candle] = []
            errors: list[Exception] = []
            scheduler.start("BTCUSDT", "1m", updates.append, on_error=errors.append)
            await wait_until(lambda: len(updates) >= 1)
            state = scheduler.state_for("BTCUSDT", "1m")
            await scheduler.shutdown()
            return state.error_count, len(errors)

        assert asyncio.run(scenario()) == (0, 2)

    def test_invalid_candle_is_repaired_from_last_close(self):
        async def scenario():
            broken = make_candle(MINUTE, close=101.0, open=float("nan"), volume=-3.0)
            source = ScriptedSource([broken])
            scheduler = make_scheduler(source)
            series = CandleSeries("BTCUSDT", "1m")
            series.load([make_candle(0, close=100.5)])
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append, series=series)
            await wait_until(lambda: len(updates) >= 1)
            state = scheduler.state_for("BTCUSDT", "1m")
            await scheduler.shutdown()
            return updates[0], state.error_count

        repaired, error_count = asyncio.run(scenario())

        assert repaired.open == 100.5
        assert repaired.volume == 0.0
        assert error_count == 0

    def test_unrepairable_candle_counts_as_error(self):
        async def scenario():
            inverted = make_candle(0, high=90.0, low=110.0)
            source = ScriptedSource([inverted])
            scheduler = make_scheduler(source, max_errors=100)
            errors: list[Exception] = []
            series = CandleSeries("BTCUSDT", "1m")
            scheduler.start("BTCUSDT", "1m", lambda c: None, on_error=errors.append, series=series)
            await wait_until(lambda: len(errors) >= 2)
            running = scheduler.is_active("BTCUSDT", "1m")
            await scheduler.shutdown()
            return errors, running, len(series)

        errors, running, series_len = asyncio.run(scenario())

        assert isinstance(errors[0], InvalidSampleError)
        assert errors[0].candle is not None
        assert running is True
        assert series_len == 0

    def test_failed_fetch_synthesizes_from_price(self):
        async def scenario():
            source = ScriptedSource([SampleSourceError("klines down")], price=123.0)
            scheduler = make_scheduler(source)
            updates: list[Candle] = []
            scheduler.start("BTCUSDT", "1m", updates.append)
            await wait_until(lambda: len(updates) >= 1)
            state = scheduler.state_for("BTCUSDT", "1m")
            await scheduler.shutdown()
            return updates[0], state.error_count

        candle, error_count = asyncio.run(scenario())

        assert candle.close == 123.0
        assert candle.open == candle.high == candle.low == 123.0
        assert candle.volume == 0.0
        assert candle.timestamp == NOW
        assert error_count == 0

    def test_failed_synthesis_reports_original_error(self):
        async def scenario():
            source = ScriptedSource([SampleSourceError("klines down")], price=None)
            scheduler = make_scheduler(source, max_errors=1)
            errors: list[Exception] = []
            scheduler.start("BTCUSDT", "1m", lambda c: None, on_error=errors.append)
            await wait_until(lambda: len(errors) >= 2)
            await scheduler.shutdown()
            return errors, source.price_calls

        errors, price_calls = asyncio.run(scenario())

        assert str(errors[0]) == "klines down"
        assert price_calls == 1
        assert isinstance(errors[1], StreamTerminatedError)

    def test_raising_callback_does_not_stop_stream(self):
        async def scenario():
            source = ScriptedSource([make_candle(0)])
            scheduler = make_scheduler(source)

            def explode(candle):
                raise RuntimeError("renderer crashed")

            scheduler.start("BTCUSDT", "1m", explode)
            await wait_until(lambda: source.latest_calls >= 3)
            state = scheduler.state_for("BTCUSDT", "1m")
            await scheduler.shutdown()
            return state.error_count

        assert asyncio.run(scenario()) == 0
