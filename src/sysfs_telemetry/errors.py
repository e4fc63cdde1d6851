"""Exception hierarchy shared by discovery, sampling and configuration."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(TelemetryError, ValueError):
    """Invalid collector configuration."""


class DiscoveryIOError(TelemetryError, OSError):
    """A discovery root could not be traversed.

    Fatal at startup: it means the configured sysfs root is unusable, as
    opposed to a single zone or CPU lacking a file (which is skipped).
    """


class UpdateIOError(TelemetryError, OSError):
    """An already-open counter handle could not be read on a tick."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"error reading {path}: {reason}")
        self.path = path
        self.reason = reason


class ParseError(TelemetryError, ValueError):
    """Counter file content is not an unsigned 64-bit decimal integer."""

    def __init__(self, path: str, text: str) -> None:
        super().__init__(f"invalid unsigned integer in {path}: {text!r}")
        self.path = path
        self.text = text
