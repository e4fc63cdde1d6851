"""Command-line interface for the telemetry collector."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from .config import CPU_METRICS, CollectorConfig, load_config_file
from .errors import TelemetryError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sysfs-telemetry",
        description="Sample powercap and per-core CPU telemetry from sysfs",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="YAML file with collector settings (flags override it)",
    )
    parser.add_argument(
        "--host-sys",
        default=None,
        help="sysfs mount point (default: $HOST_SYS or /sys)",
    )
    parser.add_argument(
        "--control-type",
        default=None,
        help="powercap control type to monitor (default: intel-rapl)",
    )
    parser.add_argument(
        "--no-powercap",
        action="store_true",
        help="Skip powercap zones",
    )
    parser.add_argument(
        "--linux-cpu",
        action="store_true",
        help="Also collect per-core cpufreq/thermal counters",
    )
    parser.add_argument(
        "--cpu-metrics",
        nargs="+",
        choices=CPU_METRICS,
        default=None,
        help="Per-core metric groups (default: cpufreq)",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Output directory for CSV and metadata files "
        "(default: ~/sysfs_telemetry)",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        default=None,
        help="Sampling interval in seconds (default: 1.0)",
    )
    parser.add_argument(
        "--flush-every",
        type=int,
        default=None,
        help="Flush CSV every N ticks (default: 60)",
    )
    parser.add_argument(
        "-d",
        "--duration",
        type=int,
        default=None,
        help="Run duration in seconds, 0 for unlimited (default: 0)",
    )
    parser.add_argument(
        "--prometheus-port",
        type=int,
        default=None,
        help="Serve Prometheus metrics on this port (default: off)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every tick",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> tuple[CollectorConfig, bool]:
    """Parse command-line arguments.

    Returns:
        The CollectorConfig and whether verbose logging was requested.
    """
    args = build_parser().parse_args(argv)

    settings: dict[str, Any] = {}
    if args.config is not None:
        settings.update(load_config_file(args.config))

    overrides = {
        "host_sys": args.host_sys,
        "control_type": args.control_type,
        "cpu_metrics": args.cpu_metrics,
        "output_dir": args.output_dir,
        "interval": args.interval,
        "flush_every": args.flush_every,
        "duration": args.duration,
        "prometheus_port": args.prometheus_port,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_powercap:
        settings["enable_powercap"] = False
    if args.linux_cpu:
        settings["enable_linux_cpu"] = True

    return CollectorConfig(**settings), args.verbose


def main(argv: list[str] | None = None) -> None:
    """Entry point for the telemetry collector CLI."""
    try:
        config, verbose = parse_args(argv)
    except TelemetryError as e:
        print(f"sysfs-telemetry: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    # Import here so --help works on any platform
    from .collector import run_collector

    try:
        run_collector(config)
    except (TelemetryError, OSError) as e:
        logging.getLogger(__name__).error("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    main()
