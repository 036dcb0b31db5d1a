"""Polling stream scheduler.

Emulates a push feed over a request/response API. Each ``(symbol,
interval)`` stream runs a self-rescheduling cycle on the asyncio event loop:

    fetch latest candle -> validate/repair -> upsert into series
    -> notify -> wait -> repeat

Failed cycles back off exponentially, and a stream that fails
``max_errors`` times in a row stops itself and reports a
:class:`~livechart.errors.StreamTerminatedError`.

Everything runs on one event loop. Timer callbacks and in-flight fetches
carry the generation number of the stream that scheduled them; once that
stream is stopped or replaced they find no matching entry and do nothing.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from livechart.errors import InvalidSampleError, StreamTerminatedError
from livechart.models import Candle, StreamKey, StreamState, StreamStats, stream_key
from livechart.series import DEFAULT_MAX_CANDLES, CandleSeries
from livechart.sources.base import SampleSource
from livechart.validation import is_valid, repair

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Candle], None]
ErrorCallback = Callable[[Exception], None]

DEFAULT_CYCLE_DELAY_MS = 10.0
BACKOFF_MULTIPLIER = 1.5
MAX_DELAY_MS = 1000.0
MAX_ERRORS = 10
MIN_DELAY_MS = 1.0
RESTART_DELAY_MS = 100.0

# Log latency once every this many cycles
_LOG_EVERY = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay_ms(
    base_delay_ms: float,
    error_count: int,
    multiplier: float = BACKOFF_MULTIPLIER,
    max_delay_ms: float = MAX_DELAY_MS,
) -> float:
    """Compute the delay before the next cycle.

    Successful streams (no errors) wait the configured delay. Failing
    streams wait ``base * multiplier ** errors``, capped at ``max_delay_ms``
    but never shorter than the configured delay itself.

    Args:
        base_delay_ms: Configured cycle delay.
        error_count: Consecutive errors so far.
        multiplier: Growth factor per error.
        max_delay_ms: Backoff cap.

    Returns:
        Delay in milliseconds, at least 1.
    """
    delay = base_delay_ms
    if error_count > 0:
        cap = max(max_delay_ms, base_delay_ms)
        delay = min(base_delay_ms * multiplier ** error_count, cap)
    return max(MIN_DELAY_MS, delay)


class _ActiveStream:
    """Registry entry: state plus the things the state model doesn't carry."""

    def __init__(
        self,
        state: StreamState,
        series: CandleSeries,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback],
    ):
        self.state = state
        self.series = series
        self.on_update = on_update
        self.on_error = on_error
        self.timer: Optional[asyncio.TimerHandle] = None


class StreamHandle:
    """Returned by :meth:`StreamScheduler.start`; stops exactly that stream."""

    def __init__(self, scheduler: "StreamScheduler", symbol: str, interval: str, generation: int):
        self._scheduler = scheduler
        self.symbol = symbol
        self.interval = interval
        self.generation = generation

    @property
    def active(self) -> bool:
        return self._scheduler._lookup(stream_key(self.symbol, self.interval), self.generation) is not None

    def stop(self) -> None:
        """Stop the stream if it is still the one this handle started."""
        if self.active:
            self._scheduler.stop(self.symbol, self.interval)


class StreamScheduler:
    """Registry of polling streams sharing one sample source.

    Create one per application (or per test) and pass it to whoever needs to
    start or stop streams. Streams must be started from inside a running
    event loop.
    """

    def __init__(
        self,
        source: SampleSource,
        default_cycle_delay_ms: float = DEFAULT_CYCLE_DELAY_MS,
        max_errors: int = MAX_ERRORS,
        backoff_multiplier: float = BACKOFF_MULTIPLIER,
        max_delay_ms: float = MAX_DELAY_MS,
        max_candles: int = DEFAULT_MAX_CANDLES,
        synthesize_on_failure: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize the scheduler.

        Args:
            source: Where candles come from.
            default_cycle_delay_ms: Delay used when ``start`` gets none.
            max_errors: Consecutive failures before a stream stops itself.
            backoff_multiplier: Delay growth per consecutive failure.
            max_delay_ms: Backoff cap.
            max_candles: Capacity of series created by the scheduler.
            synthesize_on_failure: On a failed candle fetch, build a
                zero-volume candle from the last traded price instead.
            clock: Current time, for synthesized candles and bookkeeping.
        """
        self._source = source
        self.default_cycle_delay_ms = max(MIN_DELAY_MS, default_cycle_delay_ms)
        self.max_errors = max(1, max_errors)
        self.backoff_multiplier = backoff_multiplier
        self.max_delay_ms = max_delay_ms
        self.max_candles = max_candles
        self.synthesize_on_failure = synthesize_on_failure
        self._clock = clock
        self._streams: dict[StreamKey, _ActiveStream] = {}
        self._pending_restarts: dict[StreamKey, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._generation = 0

    # ==================== Lifecycle ====================

    def start(
        self,
        symbol: str,
        interval: str,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback] = None,
        cycle_delay_ms: Optional[float] = None,
        series: Optional[CandleSeries] = None,
    ) -> StreamHandle:
        """Start (or replace) the stream for a symbol and interval.

        The first cycle is scheduled immediately.

        Args:
            symbol: Trading symbol.
            interval: Interval code.
            on_update: Called with the series' latest candle after every
                successful cycle.
            on_error: Called with every failure, and once more with a
                StreamTerminatedError if the stream gives up.
            cycle_delay_ms: Delay between cycles; defaults to
                ``default_cycle_delay_ms``.
            series: Series to feed; a new empty one is created if omitted.

        Returns:
            StreamHandle that stops this stream.
        """
        self.stop(symbol, interval)

        self._generation += 1
        delay = self.default_cycle_delay_ms if cycle_delay_ms is None else cycle_delay_ms
        state = StreamState(
            symbol=symbol,
            interval=interval,
            cycle_delay_ms=max(MIN_DELAY_MS, delay),
            generation=self._generation,
        )
        if series is None:
            series = CandleSeries(symbol, interval, max_candles=self.max_candles)

        key = state.key
        self._streams[key] = _ActiveStream(state, series, on_update, on_error)
        logger.info("Starting stream %s (cycle: %.0fms)", state.label, state.cycle_delay_ms)

        self._spawn_cycle(key, state.generation)
        return StreamHandle(self, symbol, interval, state.generation)

    def stop(self, symbol: str, interval: str) -> bool:
        """Stop a stream. Safe to call on streams that aren't running.

        A restart still waiting to fire for this stream is cancelled too.

        Returns:
            True if a stream (or a pending restart) was stopped.
        """
        key = stream_key(symbol, interval)
        removed = self._remove(key)
        cancelled = self._cancel_restart(key)
        return removed or cancelled

    def stop_all(self) -> int:
        """Stop every stream, including ones waiting to restart.

        Returns:
            Number of streams stopped.
        """
        keys = set(self._streams) | set(self._pending_restarts)
        for key in keys:
            self._remove(key)
            self._cancel_restart(key)
        if keys:
            logger.info("Stopped all streams (%d)", len(keys))
        return len(keys)

    def restart(self, symbol: str, interval: str) -> bool:
        """Stop a stream and start it again shortly after with the same setup.

        The series is kept, so already collected candles survive. Stopping
        or starting the same stream before the restart fires cancels it.

        Returns:
            True if the stream existed.
        """
        key = stream_key(symbol, interval)
        stream = self._streams.get(key)
        if stream is None:
            return False

        self.stop(symbol, interval)
        self._pending_restarts[key] = asyncio.get_running_loop().call_later(
            RESTART_DELAY_MS / 1000, self._finish_restart, key, stream
        )
        logger.info("Restarting stream %s in %.0fms", stream.state.label, RESTART_DELAY_MS)
        return True

    async def shutdown(self) -> None:
        """Stop all streams and wait for in-flight cycles to finish."""
        self.stop_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== Inspection and tuning ====================

    def change_delay(self, symbol: str, interval: str, new_delay_ms: float) -> bool:
        """Change the cycle delay of a running stream.

        Takes effect when the next cycle is scheduled.

        Returns:
            True if the stream exists.
        """
        stream = self._streams.get(stream_key(symbol, interval))
        if stream is None:
            return False
        stream.state.cycle_delay_ms = max(MIN_DELAY_MS, new_delay_ms)
        logger.info("Cycle delay for %s changed to %.0fms", stream.state.label, stream.state.cycle_delay_ms)
        return True

    def is_active(self, symbol: str, interval: str) -> bool:
        stream = self._streams.get(stream_key(symbol, interval))
        return stream is not None and stream.state.is_running

    @property
    def active_count(self) -> int:
        return len(self._streams)

    def state_for(self, symbol: str, interval: str) -> Optional[StreamState]:
        stream = self._streams.get(stream_key(symbol, interval))
        return stream.state if stream else None

    def series_for(self, symbol: str, interval: str) -> Optional[CandleSeries]:
        stream = self._streams.get(stream_key(symbol, interval))
        return stream.series if stream else None

    def stats(self) -> dict[StreamKey, StreamStats]:
        """Statistics for every active stream, keyed by ``(symbol, interval)``."""
        return {
            key: StreamStats(
                symbol=s.state.symbol,
                interval=s.state.interval,
                cycle_count=s.state.cycle_count,
                error_count=s.state.error_count,
                is_running=s.state.is_running,
                cycle_delay_ms=s.state.cycle_delay_ms,
                last_update=s.state.last_update,
                average_response_time_ms=s.state.average_response_time_ms,
            )
            for key, s in self._streams.items()
        }

    # ==================== Cycle machinery ====================

    def _lookup(self, key: StreamKey, generation: int) -> Optional[_ActiveStream]:
        stream = self._streams.get(key)
        if stream is None or stream.state.generation != generation or not stream.state.is_running:
            return None
        return stream

    def _remove(self, key: StreamKey) -> bool:
        stream = self._streams.pop(key, None)
        if stream is None:
            return False
        stream.state.is_running = False
        if stream.timer is not None:
            stream.timer.cancel()
            stream.timer = None
        logger.info("Stream stopped: %s (%d cycles)", stream.state.label, stream.state.cycle_count)
        return True

    def _cancel_restart(self, key: StreamKey) -> bool:
        handle = self._pending_restarts.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _finish_restart(self, key: StreamKey, stream: _ActiveStream) -> None:
        if self._pending_restarts.pop(key, None) is None:
            return
        state = stream.state
        self.start(
            state.symbol,
            state.interval,
            stream.on_update,
            stream.on_error,
            cycle_delay_ms=state.cycle_delay_ms,
            series=stream.series,
        )

    def _spawn_cycle(self, key: StreamKey, generation: int) -> None:
        stream = self._lookup(key, generation)
        if stream is None:
            return
        stream.timer = None
        task = asyncio.get_running_loop().create_task(self._run_cycle(key, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_next(self, key: StreamKey, generation: int) -> None:
        stream = self._lookup(key, generation)
        if stream is None:
            return
        delay_ms = backoff_delay_ms(
            stream.state.cycle_delay_ms,
            stream.state.error_count,
            multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
        )
        stream.timer = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._spawn_cycle, key, generation
        )

    async def _run_cycle(self, key: StreamKey, generation: int) -> None:
        stream = self._lookup(key, generation)
        if stream is None:
            return
        state = stream.state

        # Each stream runs one cycle at a time, so this only trips if a cycle
        # is spawned by hand while a fetch is still in flight
        if state.request_in_progress:
            self._schedule_next(key, generation)
            return

        state.request_in_progress = True
        state.cycle_count += 1
        started = time.perf_counter()
        try:
            candles = await self._fetch(state.symbol, state.interval)
            elapsed_ms = (time.perf_counter() - started) * 1000

            if self._lookup(key, generation) is None:
                return

            state.record_response_time(elapsed_ms)
            if candles:
                self._accept(stream, candles[-1])

            if state.cycle_count % _LOG_EVERY == 0:
                logger.debug("Cycle %d - %s: %.1fms request time", state.cycle_count, state.label, elapsed_ms)

        except Exception as e:
            if self._lookup(key, generation) is None:
                return
            if self._fail(stream, e):
                return
        finally:
            state.request_in_progress = False

        self._schedule_next(key, generation)

    async def _fetch(self, symbol: str, interval: str) -> list[Candle]:
        try:
            return await self._source.fetch_latest(symbol, interval, limit=1)
        except Exception as e:
            if not self.synthesize_on_failure:
                raise
            try:
                price = await self._source.fetch_price(symbol)
            except Exception:
                raise e
            logger.debug("Candle fetch failed for %s, using last price %s", symbol, price)
            return [
                Candle(
                    timestamp=self._clock(),
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    volume=0.0,
                )
            ]

    def _accept(self, stream: _ActiveStream, candle: Candle) -> None:
        state = stream.state
        if not is_valid(candle):
            reference = None
            if state.last_valid_sample is not None:
                reference = state.last_valid_sample.close
            elif stream.series.latest is not None:
                reference = stream.series.latest.close
            logger.warning("Invalid candle for %s, repairing: %s", state.label, candle)
            candle = repair(candle, reference)
            if not is_valid(candle):
                raise InvalidSampleError(f"Unrepairable candle for {state.label}", candle=candle)

        stream.series.upsert(candle)
        state.error_count = 0
        state.last_valid_sample = candle
        state.last_update = self._clock()

        latest = stream.series.latest
        if latest is not None:
            self._notify(stream.on_update, latest, "update")

    def _fail(self, stream: _ActiveStream, error: Exception) -> bool:
        """Record a failed cycle. Returns True if the stream was stopped."""
        state = stream.state
        state.error_count += 1
        logger.warning("Error in cycle %d - %s: %s", state.cycle_count, state.label, error)
        self._notify(stream.on_error, error, "error")

        if state.error_count < self.max_errors:
            return False

        logger.error("Too many errors for %s, stopping stream", state.label)
        self._remove(state.key)
        self._notify(stream.on_error, StreamTerminatedError(state.label, state.error_count), "error")
        return True

    @staticmethod
    def _notify(callback: Optional[Callable], value, kind: str) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Stream %s callback raised", kind)
