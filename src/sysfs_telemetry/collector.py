"""Main collection loop with signal handling.

Builds the enabled collectors, runs discovery once, then samples every
``interval`` seconds until shutdown or the duration limit.  Handles
SIGTERM/SIGINT for graceful shutdown.
"""

from __future__ import annotations

import logging
import signal
import time
from typing import TYPE_CHECKING, Protocol

from .sensors.linux_cpu import LinuxCpuCollector
from .sensors.powercap import PowercapCollector
from .sink import Accumulator, CsvWriter

if TYPE_CHECKING:
    from .config import CollectorConfig

logger = logging.getLogger(__name__)


class Collector(Protocol):
    """Protocol for all collectors driven by the loop."""

    def gather(self, acc: Accumulator) -> None: ...

    def close(self) -> None: ...


_shutdown_requested = False


def _signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global _shutdown_requested
    _shutdown_requested = True


def build_collectors(config: CollectorConfig) -> list[Collector]:
    """Construct, discover and prime every enabled collector.

    Raises:
        DiscoveryIOError: a sysfs root could not be traversed.
        ConfigError: invalid collector settings.
    """
    host_sys = config.resolve_host_sys()
    collectors: list[Collector] = []
    try:
        if config.enable_powercap:
            powercap = PowercapCollector(host_sys, config.control_type)
            collectors.append(powercap)
            powercap.discover()
            powercap.prime()

        if config.enable_linux_cpu:
            collectors.append(LinuxCpuCollector(host_sys, config.cpu_metrics))
    except Exception:
        close_collectors(collectors)
        raise
    return collectors


def collect_once(collectors: list[Collector], acc: Accumulator) -> None:
    """Run one tick over all collectors.

    A collector that fails outright is reported as an error; the others
    still run.
    """
    for collector in collectors:
        try:
            collector.gather(acc)
        except (OSError, ValueError) as e:
            acc.add_error(e)


def close_collectors(collectors: list[Collector]) -> None:
    for collector in collectors:
        try:
            collector.close()
        except OSError as e:
            logger.warning("Failed to close %s: %s", type(collector).__name__, e)


def run_collector(config: CollectorConfig) -> None:
    """Run the main collection loop."""
    global _shutdown_requested
    _shutdown_requested = False

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info("Discovering sensors under %s", config.resolve_host_sys())
    collectors = build_collectors(config)
    if not collectors:
        logger.warning("No collectors enabled; nothing to do")
        return

    exporter = None
    writer: CsvWriter | None = None
    acc = Accumulator()

    start_mono = time.monotonic()
    try:
        if config.prometheus_port:
            from .prometheus import PrometheusExporter

            exporter = PrometheusExporter()
            exporter.serve(config.prometheus_port)

        writer = CsvWriter(config=config)
        with writer:
            logger.info(
                "Collecting to %s every %ss (flush every %d ticks)",
                writer.csv_path,
                config.interval,
                config.flush_every,
            )
            if config.duration > 0:
                logger.info("Duration: %ss", config.duration)

            next_tick = time.monotonic()

            while not _shutdown_requested:
                if config.duration > 0:
                    elapsed = time.monotonic() - start_mono
                    if elapsed >= config.duration:
                        logger.info("Duration limit reached (%ss)", config.duration)
                        break

                collect_once(collectors, acc)
                observations, errors = acc.drain()
                for error in errors:
                    logger.warning("Collection error: %s", error)

                rows = writer.write_tick(observations)
                if exporter is not None:
                    exporter.update(observations)
                logger.debug(
                    "Tick %d: %d observation(s), %d row(s), %d error(s)",
                    writer.tick_count,
                    len(observations),
                    rows,
                    len(errors),
                )

                if writer.tick_count % 60 == 0:
                    logger.info(
                        "%d ticks, %.0fs elapsed",
                        writer.tick_count,
                        time.monotonic() - start_mono,
                    )

                # Sleep until next tick (compensate for read time)
                next_tick += config.interval
                sleep_time = next_tick - time.monotonic()
                if sleep_time > 0:
                    time.sleep(sleep_time)
                else:
                    missed = int(-sleep_time / config.interval)
                    if missed > 0:
                        logger.warning("Missed %d tick(s), resynchronizing", missed)
                    next_tick = time.monotonic()

    finally:
        close_collectors(collectors)
        if writer is not None:
            total_elapsed = time.monotonic() - start_mono
            logger.info(
                "Done. %d ticks, %d rows in %.1fs (%s)",
                writer.tick_count,
                writer.row_count,
                total_elapsed,
                writer.csv_path,
            )
