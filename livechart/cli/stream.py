"""Streaming command for LiveChart CLI.

Starts a polling stream for one symbol, keeps its candle series up to date
and renders the visible window of the series as a live table.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import click
from pydantic import BaseModel, Field
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from livechart.chart import Viewport
from livechart.config import Settings, load_settings
from livechart.errors import ConfigError, StreamTerminatedError
from livechart.series import CandleSeries, optimal_price_range
from livechart.sources import BinanceSource, PaperSource, SampleSource
from livechart.streaming import StreamScheduler, calculate_streaming_metrics
from livechart.timeframes import INTERVAL_MS

console = Console()
logger = logging.getLogger(__name__)

# Rows shown in the live table
DISPLAY_ROWS = 20


class StreamSummary(BaseModel):
    """What a finished streaming session did."""

    symbol: str
    interval: str
    candles: int = Field(..., ge=0, description="Candles in the series at the end")
    updates: int = Field(..., ge=0, description="Successful cycles")
    cycles: int = Field(..., ge=0)
    terminal_error: Optional[str] = Field(default=None)


def _get_source(settings: Settings, name: str) -> SampleSource:
    """Build the sample source named in config or on the command line."""
    if name == "binance":
        return BinanceSource(
            base_url=settings.binance.base_url,
            timeout_s=settings.binance.timeout_s,
        )
    return PaperSource(
        start_price=settings.paper.start_price,
        volatility=settings.paper.volatility,
        seed=settings.paper.seed,
    )


def render_view(
    symbol: str,
    interval: str,
    series: CandleSeries,
    viewport: Viewport,
    status: str = "",
) -> Group:
    """Render the visible part of a series.

    Args:
        symbol: Trading symbol.
        interval: Interval code.
        series: Series to draw from.
        viewport: Camera selecting the visible window; its price range is
            refitted to the visible candles.
        status: Footer line.

    Returns:
        Renderable table plus footer.
    """
    visible = viewport.visible_slice(series.snapshot())
    price = optimal_price_range(visible)
    viewport.fit_price_range(price.min_price, price.max_price)
    window = viewport.visible_range()

    table = Table(
        title=f"{symbol} - {interval} ({window.count} of {len(series)} candles)",
        show_header=True,
        header_style="bold cyan",
    )

    table.add_column("Date/Time", style="dim")
    table.add_column("Open", justify="right")
    table.add_column("High", justify="right", style="green")
    table.add_column("Low", justify="right", style="red")
    table.add_column("Close", justify="right")
    table.add_column("Volume", justify="right", style="dim")
    table.add_column("Change", justify="right")

    rows = list(visible[-DISPLAY_ROWS:])
    offset = len(visible) - len(rows)
    for i, candle in enumerate(rows):
        prev_index = offset + i - 1
        if prev_index >= 0:
            prev_close = visible[prev_index].close
            change = candle.close - prev_close
            change_pct = (change / prev_close * 100) if prev_close > 0 else 0
            change_style = "green" if change >= 0 else "red"
            change_str = f"[{change_style}]{change:+.2f} ({change_pct:+.2f}%)[/{change_style}]"
        else:
            change_str = "[dim]-[/dim]"

        if interval in ("1d", "3d", "1w", "1M"):
            ts_str = candle.timestamp.strftime("%Y-%m-%d")
        else:
            ts_str = candle.timestamp.strftime("%Y-%m-%d %H:%M")

        table.add_row(
            ts_str,
            f"{candle.open:.2f}",
            f"{candle.high:.2f}",
            f"{candle.low:.2f}",
            f"{candle.close:.2f}",
            f"{candle.volume:,.2f}",
            change_str,
        )

    footer = Text.from_markup(
        f"[dim]Price axis {price.min_price:.2f} - {price.max_price:.2f} "
        f"(tick {price.tick_size:g}) | zoom {viewport.position.zoom_level:.2f}x[/dim]"
    )
    if status:
        footer.append("\n")
        footer.append(Text.from_markup(status))
    return Group(table, footer)


async def run_stream(
    symbol: str,
    interval: str,
    settings: Settings,
    source: SampleSource,
    duration: Optional[float] = None,
    zoom: Optional[float] = None,
    on_render: Optional[Callable[[Group], None]] = None,
) -> StreamSummary:
    """Stream one symbol until the duration elapses or the stream gives up.

    Args:
        symbol: Trading symbol.
        interval: Interval code.
        settings: Loaded settings.
        source: Sample source.
        duration: Seconds to stream; None streams until terminated.
        zoom: Initial zoom level.
        on_render: Receives a fresh rendering after every update.

    Returns:
        StreamSummary for the session.
    """
    stream_settings = settings.stream
    scheduler = StreamScheduler(
        source,
        default_cycle_delay_ms=stream_settings.cycle_delay_ms,
        max_errors=stream_settings.max_errors,
        backoff_multiplier=stream_settings.backoff_multiplier,
        max_delay_ms=stream_settings.max_backoff_ms,
        max_candles=stream_settings.max_candles,
        synthesize_on_failure=stream_settings.synthesize_on_failure,
    )
    series = CandleSeries(symbol, interval, max_candles=stream_settings.max_candles)

    if stream_settings.history > 0:
        try:
            history = await source.fetch_history(symbol, interval, stream_settings.history)
            loaded = series.load(history)
            logger.info("Loaded %d historical candles for %s", loaded, symbol)
        except Exception as e:
            # Live data may still work
            logger.warning("Could not load history for %s: %s", symbol, e)

    vs = settings.viewport
    viewport = Viewport(
        candle_count=len(series),
        chart_width=vs.chart_width,
        chart_height=vs.chart_height,
        min_candle_width=vs.min_candle_width,
        max_candle_width=vs.max_candle_width,
        default_zoom=vs.default_zoom,
    )
    if zoom is not None:
        viewport.set_zoom(zoom)

    done = asyncio.Event()
    terminal: list[StreamTerminatedError] = []
    updates = 0
    started = time.monotonic()

    def status_line() -> str:
        state = scheduler.state_for(symbol, interval)
        if state is None:
            return "[dim]stopped[/dim]"
        metrics = calculate_streaming_metrics(
            updates, time.monotonic() - started, state.response_times
        )
        errors = f" | [red]{state.error_count} errors[/red]" if state.error_count else ""
        return (
            f"[dim]cycles {state.cycle_count} | {metrics.updates_per_second:.1f} upd/s | "
            f"avg {metrics.average_response_time_ms:.0f}ms[/dim]{errors}"
        )

    def on_update(candle) -> None:
        nonlocal updates
        updates += 1
        if on_render is not None:
            on_render(render_view(symbol, interval, series, viewport, status_line()))

    def on_error(error: Exception) -> None:
        if isinstance(error, StreamTerminatedError):
            terminal.append(error)
            done.set()

    scheduler.start(
        symbol,
        interval,
        on_update,
        on_error,
        cycle_delay_ms=stream_settings.cycle_delay_ms,
        series=series,
    )

    cycles = 0
    try:
        if duration is None:
            await done.wait()
        else:
            try:
                await asyncio.wait_for(done.wait(), timeout=duration)
            except asyncio.TimeoutError:
                pass
    finally:
        state = scheduler.state_for(symbol, interval)
        if state is not None:
            cycles = state.cycle_count
        await scheduler.shutdown()
        await source.close()

    return StreamSummary(
        symbol=symbol,
        interval=interval,
        candles=len(series),
        updates=updates,
        cycles=max(cycles, updates),
        terminal_error=str(terminal[0]) if terminal else None,
    )


@click.command()
@click.argument("symbol")
@click.option(
    "-i", "--interval",
    default=None,
    type=click.Choice(list(INTERVAL_MS)),
    help="Candle interval (default from config, usually 1m)",
)
@click.option(
    "-d", "--delay",
    default=None,
    type=float,
    help="Milliseconds between polls (default from config)",
)
@click.option(
    "-s", "--source",
    "source_name",
    default=None,
    type=click.Choice(["binance", "paper"]),
    help="Data source (default from config, usually paper)",
)
@click.option(
    "-n", "--max-candles",
    default=None,
    type=click.IntRange(min=1),
    help="Candles kept in memory",
)
@click.option(
    "-z", "--zoom",
    default=None,
    type=float,
    help="Initial zoom level (1 = fit all)",
)
@click.option(
    "-t", "--duration",
    default=None,
    type=float,
    help="Stop after this many seconds",
)
def stream(
    symbol: str,
    interval: Optional[str],
    delay: Optional[float],
    source_name: Optional[str],
    max_candles: Optional[int],
    zoom: Optional[float],
    duration: Optional[float],
) -> None:
    """Stream live candles for a symbol.

    SYMBOL is the trading pair (e.g., BTCUSDT, ETHUSDT).

    Press Ctrl+C to stop.

    \b
    Examples:
      livechart stream BTCUSDT
      livechart stream ETHUSDT --source binance --interval 5m
      livechart stream BTCUSDT --delay 500 --zoom 2 --duration 60
    """
    try:
        settings = load_settings()
    except ConfigError as e:
        console.print(Panel(
            f"[red]{e}[/red]",
            title="[bold red]Configuration Error[/bold red]",
            border_style="red",
        ))
        raise SystemExit(1)

    overrides = {}
    if delay is not None:
        overrides["cycle_delay_ms"] = max(1.0, delay)
    if max_candles is not None:
        overrides["max_candles"] = max_candles
    if overrides:
        settings = settings.model_copy(
            update={"stream": settings.stream.model_copy(update=overrides)}
        )

    symbol = symbol.upper()
    interval = interval or settings.stream.interval
    source = _get_source(settings, source_name or settings.stream.source)

    console.print(
        f"[dim]Streaming {interval} candles for {symbol} from {source.name}, "
        f"polling every {settings.stream.cycle_delay_ms:.0f}ms...[/dim]\n"
    )

    try:
        with Live(Text("Waiting for data..."), refresh_per_second=4, console=console) as live_display:
            summary = asyncio.run(
                run_stream(
                    symbol,
                    interval,
                    settings,
                    source,
                    duration=duration,
                    zoom=zoom,
                    on_render=live_display.update,
                )
            )
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped streaming.[/dim]")
        return

    if summary.terminal_error:
        console.print(Panel(
            f"[red]Stream stopped after repeated failures:[/red]\n\n{summary.terminal_error}",
            title="[bold red]Error[/bold red]",
            border_style="red",
        ))
        raise SystemExit(1)

    console.print(
        f"[dim]Stream finished: {summary.updates} updates over {summary.cycles} cycles, "
        f"{summary.candles} candles in memory[/dim]"
    )
