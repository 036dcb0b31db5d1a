"""Exception types for LiveChart."""


class LiveChartError(Exception):
    """Base class for all LiveChart errors."""


class SampleSourceError(LiveChartError):
    """A sample source failed to deliver data (network, HTTP or parse error).

    Transient: the scheduler counts it and backs off.
    """


class InvalidSampleError(LiveChartError):
    """A fetched candle failed validation and could not be repaired."""

    def __init__(self, message: str, candle=None):
        super().__init__(message)
        self.candle = candle


class StreamTerminatedError(LiveChartError):
    """A stream hit its consecutive-error ceiling and stopped itself."""

    def __init__(self, key: str, error_count: int):
        super().__init__(f"Max errors reached for {key} ({error_count} consecutive failures)")
        self.key = key
        self.error_count = error_count


class ConfigError(LiveChartError):
    """The configuration file exists but cannot be used."""
