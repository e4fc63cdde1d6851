"""Per-core frequency and thermal-throttle counters from sysfs.

Reads ``<host_sys>/devices/system/cpu/cpu{N}/cpufreq/*`` (kHz) and
``.../thermal_throttle/core_throttle_*`` through handles opened once at
startup.  Each CPU produces one ``linux_cpu`` observation per tick tagged
with ``cpu``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

from ..config import CPU_METRICS
from ..errors import ConfigError, DiscoveryIOError
from ..fileio import ScalarFile

if TYPE_CHECKING:
    from ..sink import Accumulator

logger = logging.getLogger(__name__)

MEASUREMENT = "linux_cpu"


class CpuProperty(NamedTuple):
    name: str  # field name reported
    path: str  # relative to the cpu{N} directory
    optional: bool


PROPERTIES: dict[str, list[CpuProperty]] = {
    "cpufreq": [
        CpuProperty("scaling_cur_freq", "cpufreq/scaling_cur_freq", False),
        CpuProperty("scaling_min_freq", "cpufreq/scaling_min_freq", False),
        CpuProperty("scaling_max_freq", "cpufreq/scaling_max_freq", False),
        CpuProperty("cpuinfo_cur_freq", "cpufreq/cpuinfo_cur_freq", True),
        CpuProperty("cpuinfo_min_freq", "cpufreq/cpuinfo_min_freq", True),
        CpuProperty("cpuinfo_max_freq", "cpufreq/cpuinfo_max_freq", True),
    ],
    "thermal": [
        CpuProperty(
            "throttle_count", "thermal_throttle/core_throttle_count", False
        ),
        CpuProperty(
            "throttle_max_time", "thermal_throttle/core_throttle_max_time_ms", False
        ),
        CpuProperty(
            "throttle_total_time",
            "thermal_throttle/core_throttle_total_time_ms",
            False,
        ),
    ],
}


@dataclass(eq=False)
class Cpu:
    """A logical CPU and its open property handles."""

    id: str  # e.g. "3" for cpu3
    path: str
    props: dict[str, ScalarFile] = field(default_factory=dict, repr=False)

    def close(self) -> None:
        for fd in self.props.values():
            fd.close()
        self.props.clear()


class LinuxCpuCollector:
    """Collect cpufreq and/or thermal-throttle counters for every CPU."""

    def __init__(
        self,
        host_sys: str | Path = "/sys",
        metrics: list[str] | None = None,
    ) -> None:
        metrics = ["cpufreq"] if metrics is None else list(metrics)
        if not metrics:
            raise ConfigError("no cpu metrics selected")
        unknown = [m for m in metrics if m not in CPU_METRICS]
        if unknown:
            raise ConfigError(f"unknown cpu metric(s): {unknown}")

        self._metrics = metrics
        self._root = Path(host_sys) / "devices" / "system" / "cpu"
        self.cpus = self._discover_cpus()
        if not self.cpus:
            raise DiscoveryIOError(f"no CPUs detected to track under {self._root}")
        logger.info(
            "Tracking %d CPU(s) for metrics %s", len(self.cpus), ", ".join(metrics)
        )

    @property
    def metrics(self) -> list[str]:
        return list(self._metrics)

    def _discover_cpus(self) -> list[Cpu]:
        cpu_dirs = sorted(
            (p for p in self._root.glob("cpu[0-9]*") if p.name[3:].isdigit()),
            key=lambda p: int(p.name[3:]),
        )
        if not cpu_dirs:
            raise DiscoveryIOError(f"no CPUs detected at {self._root / 'cpu[0-9]*'}")

        props = [p for metric in self._metrics for p in PROPERTIES[metric]]
        cpus: list[Cpu] = []
        for cpu_dir in cpu_dirs:
            cpu = Cpu(id=cpu_dir.name[3:], path=str(cpu_dir))
            if self._open_properties(cpu, props):
                cpus.append(cpu)
        return cpus

    def _open_properties(self, cpu: Cpu, props: list[CpuProperty]) -> bool:
        """Open ``props`` for ``cpu``; on failure release its handles and return False."""
        for prop in props:
            path = Path(cpu.path) / prop.path
            try:
                cpu.props[prop.name] = ScalarFile(path)
            except OSError as e:
                if prop.optional:
                    continue
                logger.warning("Failed to load property %s: %s", path, e)
                cpu.close()
                return False

        if not cpu.props:
            logger.warning("No properties enabled for CPU %s", cpu.id)
            return False
        return True

    def gather(self, acc: Accumulator) -> None:
        """Read every CPU; a CPU with any unreadable property emits nothing."""
        for cpu in self.cpus:
            values: dict[str, int] = {}
            try:
                for name, fd in cpu.props.items():
                    values[name] = fd.read_uint()
            except (OSError, ValueError) as e:
                acc.add_error(e)
                continue
            acc.add_fields(MEASUREMENT, values, {"cpu": cpu.id})

    def close(self) -> None:
        for cpu in self.cpus:
            cpu.close()

    def __enter__(self) -> LinuxCpuCollector:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
