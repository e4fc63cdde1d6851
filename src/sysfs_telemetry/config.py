"""Configuration for the telemetry collector."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_HOST_SYS = "/sys"
HOST_SYS_ENV = "HOST_SYS"

CPU_METRICS = ("cpufreq", "thermal")


@dataclass
class CollectorConfig:
    """Runtime configuration for the telemetry collector."""

    # sysfs mount point; None = $HOST_SYS, then /sys
    host_sys: str | None = None

    # powercap control type to monitor
    control_type: str = "intel-rapl"

    # Per-core metric groups for the linux_cpu collector
    cpu_metrics: list[str] = field(default_factory=lambda: ["cpufreq"])

    # Which collectors to run
    enable_powercap: bool = True
    enable_linux_cpu: bool = False

    # Sampling interval in seconds
    interval: float = 1.0

    # Maximum run duration in seconds (0 = unlimited)
    duration: int = 0

    # Output directory for CSV and metadata files
    output_dir: Path = field(default_factory=lambda: Path.home() / "sysfs_telemetry")

    # CSV flush interval (flush every N ticks)
    flush_every: int = 60

    # Prometheus exposition port (0 = disabled)
    prometheus_port: int = 0

    def __post_init__(self) -> None:
        self._check_types()
        self.interval = float(self.interval)
        self.cpu_metrics = list(self.cpu_metrics)
        self.output_dir = Path(self.output_dir)
        if self.interval <= 0:
            raise ConfigError(f"interval must be positive, got {self.interval}")
        if self.flush_every <= 0:
            raise ConfigError(f"flush_every must be positive, got {self.flush_every}")
        unknown = [m for m in self.cpu_metrics if m not in CPU_METRICS]
        if unknown:
            raise ConfigError(
                f"unknown cpu metric(s) {unknown}; supported: {list(CPU_METRICS)}"
            )

    def _check_types(self) -> None:
        # bool is an int subclass, so it is rejected explicitly for numbers.
        for name in ("duration", "flush_every", "prometheus_port"):
            _expect(name, getattr(self, name), int)
        _expect("interval", self.interval, (int, float))
        for name in ("enable_powercap", "enable_linux_cpu"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be true or false, got {value!r}")
        _expect("control_type", self.control_type, str)
        if self.host_sys is not None:
            _expect("host_sys", self.host_sys, str)
        if not isinstance(self.output_dir, (str, os.PathLike)):
            raise ConfigError(f"output_dir must be a path, got {self.output_dir!r}")
        if isinstance(self.cpu_metrics, str) or not isinstance(
            self.cpu_metrics, (list, tuple)
        ):
            raise ConfigError(
                f"cpu_metrics must be a list of names, got {self.cpu_metrics!r}"
            )
        for metric in self.cpu_metrics:
            _expect("cpu_metrics entry", metric, str)

    def resolve_host_sys(self) -> str:
        """Return the sysfs root: explicit setting, then $HOST_SYS, then /sys."""
        if self.host_sys:
            return self.host_sys
        return os.environ.get(HOST_SYS_ENV) or DEFAULT_HOST_SYS


def _expect(name: str, value: Any, types: type | tuple[type, ...]) -> None:
    if isinstance(value, bool) or not isinstance(value, types):
        raise ConfigError(f"{name} has the wrong type: {value!r}")


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load collector settings from a YAML mapping.

    Keys must be CollectorConfig field names.  The result is meant to be
    passed as keyword arguments, with command-line flags layered on top.

    Raises:
        ConfigError: unreadable file, invalid YAML, or unknown keys.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    known = {f.name for f in fields(CollectorConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"{path}: unknown setting(s) {unknown}")
    return data
