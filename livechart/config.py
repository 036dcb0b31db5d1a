"""Configuration for LiveChart.

Settings live in a TOML file at ``~/.config/livechart/config.toml``
(``LIVECHART_CONFIG`` points elsewhere). Every key is optional; missing
ones take the defaults below.
"""

import os
from pathlib import Path
from typing import Literal, Optional

import toml
from pydantic import BaseModel, Field, ValidationError

from livechart.errors import ConfigError

CONFIG_ENV_VAR = "LIVECHART_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "livechart" / "config.toml"


class StreamSettings(BaseModel):
    """Streaming loop settings."""

    source: Literal["binance", "paper"] = Field(default="paper", description="Sample source")
    interval: str = Field(default="1m", description="Default candle interval")
    cycle_delay_ms: float = Field(default=100.0, ge=1, description="Delay between cycles")
    max_candles: int = Field(default=500, ge=1, description="Series capacity")
    history: int = Field(default=100, ge=0, description="Candles to preload")
    max_errors: int = Field(default=10, ge=1, description="Consecutive errors before stopping")
    backoff_multiplier: float = Field(default=1.5, ge=1, description="Delay growth per error")
    max_backoff_ms: float = Field(default=1000.0, ge=1, description="Backoff cap")
    synthesize_on_failure: bool = Field(
        default=True, description="Build a candle from the last price when klines fail"
    )


class BinanceSettings(BaseModel):
    """Binance REST settings."""

    base_url: str = Field(default="https://api.binance.com")
    timeout_s: float = Field(default=5.0, gt=0)


class PaperSettings(BaseModel):
    """Simulated feed settings."""

    start_price: float = Field(default=100.0, gt=0)
    volatility: float = Field(default=0.001, ge=0)
    seed: Optional[int] = Field(default=None)


class ViewportSettings(BaseModel):
    """Chart camera settings."""

    chart_width: float = Field(default=80.0, gt=0, description="Chart width (pixels or columns)")
    chart_height: float = Field(default=20.0, gt=0)
    min_candle_width: float = Field(default=1.0, ge=0)
    max_candle_width: float = Field(default=50.0, gt=0)
    default_zoom: float = Field(default=1.0, gt=0)


class Settings(BaseModel):
    """All LiveChart settings."""

    stream: StreamSettings = Field(default_factory=StreamSettings)
    binance: BinanceSettings = Field(default_factory=BinanceSettings)
    paper: PaperSettings = Field(default_factory=PaperSettings)
    viewport: ViewportSettings = Field(default_factory=ViewportSettings)


def config_path() -> Path:
    """Resolve the config file location."""
    override = os.environ.get(CONFIG_ENV_VAR)
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from TOML.

    Args:
        path: Config file; defaults to :func:`config_path`.

    Returns:
        Settings. Defaults if the file doesn't exist.

    Raises:
        ConfigError: If the file can't be parsed or has invalid values.
    """
    path = path or config_path()
    if not path.exists():
        return Settings()

    try:
        data = toml.load(path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e


def create_template_config(path: Optional[Path] = None) -> Path:
    """Write a config file containing every default.

    Args:
        path: Where to write; defaults to :func:`config_path`.

    Returns:
        Path of the written file.
    """
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    template = Settings().model_dump(exclude_none=True)
    with open(path, "w") as f:
        toml.dump(template, f)

    return path
