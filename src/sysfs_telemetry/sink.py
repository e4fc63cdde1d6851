"""Per-tick observation accumulator and a buffered CSV writer.

Collectors report into an :class:`Accumulator` during a tick; the
collection loop drains it and hands the observations to the CSV writer
(and optionally the Prometheus exporter).  The CSV is long-format, one row
per field, with a metadata JSON sidecar written alongside it.
"""

from __future__ import annotations

import csv
import io
import json
import os
import platform
import socket
import time
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from .config import CollectorConfig

FieldValue = bool | int | float | str
Kind = Literal["gauge", "counter", "untyped"]

CSV_COLUMNS = ["timestamp_ns", "measurement", "kind", "tags", "field", "value"]


@dataclass(frozen=True)
class Observation:
    """A set of fields reported together by one collector for one entity."""

    measurement: str
    kind: Kind
    fields: Mapping[str, FieldValue]
    tags: Mapping[str, str]
    timestamp_ns: int


@dataclass
class Accumulator:
    """Collects the observations and errors produced during one tick."""

    observations: list[Observation] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    def _add(
        self,
        kind: Kind,
        measurement: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None,
    ) -> None:
        self.observations.append(
            Observation(
                measurement=measurement,
                kind=kind,
                fields=dict(fields),
                tags=dict(tags or {}),
                timestamp_ns=time.time_ns(),
            )
        )

    def add_gauge(
        self,
        measurement: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Record point-in-time values."""
        self._add("gauge", measurement, fields, tags)

    def add_counter(
        self,
        measurement: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Record monotonically increasing values."""
        self._add("counter", measurement, fields, tags)

    def add_fields(
        self,
        measurement: str,
        fields: Mapping[str, FieldValue],
        tags: Mapping[str, str] | None = None,
    ) -> None:
        """Record values without a declared metric kind."""
        self._add("untyped", measurement, fields, tags)

    def add_error(self, error: Exception) -> None:
        """Record a per-entity failure without interrupting the tick."""
        self.errors.append(error)

    def drain(self) -> tuple[list[Observation], list[Exception]]:
        """Return everything recorded so far and start afresh."""
        observations, errors = self.observations, self.errors
        self.observations = []
        self.errors = []
        return observations, errors


def format_tags(tags: Mapping[str, str]) -> str:
    """Render tags as ``k=v`` pairs sorted by key, e.g. ``zone_id=0;zone_name=core``."""
    return ";".join(f"{k}={tags[k]}" for k in sorted(tags))


def _format_value(value: FieldValue) -> int | float | str:
    # Booleans as 0/1 so the value column stays numeric.
    if isinstance(value, bool):
        return int(value)
    return value


def _generate_filename() -> str:
    """Generate a CSV filename from hostname and start timestamp."""
    hostname = socket.gethostname()
    ts = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    return f"telemetry_{hostname}_{ts}"


class CsvWriter:
    """Buffered long-format CSV writer with metadata JSON sidecar."""

    def __init__(self, config: CollectorConfig) -> None:
        self._config = config
        self._flush_every = config.flush_every

        config.output_dir.mkdir(parents=True, exist_ok=True)

        base = _generate_filename()
        self._csv_path = config.output_dir / f"{base}.csv"
        self._meta_path = config.output_dir / f"{base}.meta.json"

        self._file: io.TextIOWrapper | None = None
        self._writer: csv.DictWriter[str] | None = None
        self._row_count = 0
        self._tick_count = 0

    @property
    def csv_path(self) -> Path:
        """Path to the CSV output file."""
        return self._csv_path

    @property
    def meta_path(self) -> Path:
        """Path to the metadata JSON file."""
        return self._meta_path

    @property
    def row_count(self) -> int:
        """Number of rows written so far."""
        return self._row_count

    @property
    def tick_count(self) -> int:
        """Number of ticks written so far."""
        return self._tick_count

    def open(self) -> None:
        """Open the CSV file and write headers. Write metadata JSON."""
        self._file = open(  # noqa: SIM115
            self._csv_path, "w", newline="", buffering=1
        )
        self._writer = csv.DictWriter(self._file, fieldnames=CSV_COLUMNS)
        self._writer.writeheader()

        self._write_metadata()

    def _write_metadata(self) -> None:
        """Write metadata JSON sidecar file."""
        config = asdict(self._config)
        config["output_dir"] = str(config["output_dir"])
        meta = {
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "kernel": platform.release(),
            "python_version": platform.python_version(),
            "start_time_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "csv_file": self._csv_path.name,
            "columns": CSV_COLUMNS,
            "interval_s": self._config.interval,
            "flush_every": self._flush_every,
            "config": config,
            "pid": os.getpid(),
        }
        with open(self._meta_path, "w") as f:
            json.dump(meta, f, indent=2)

    def write_tick(self, observations: Iterable[Observation]) -> int:
        """Write one row per field of every observation. Flushes periodically.

        Returns:
            Number of rows written for this tick.
        """
        if self._writer is None:
            raise RuntimeError("CsvWriter not opened; call open() first")

        written = 0
        for obs in observations:
            tags = format_tags(obs.tags)
            for name, value in obs.fields.items():
                self._writer.writerow(
                    {
                        "timestamp_ns": obs.timestamp_ns,
                        "measurement": obs.measurement,
                        "kind": obs.kind,
                        "tags": tags,
                        "field": name,
                        "value": _format_value(value),
                    }
                )
                written += 1

        self._row_count += written
        self._tick_count += 1
        if self._tick_count % self._flush_every == 0:
            self.flush()
        return written

    def flush(self) -> None:
        """Flush the CSV file to disk."""
        if self._file is not None:
            self._file.flush()
            os.fsync(self._file.fileno())

    def close(self) -> None:
        """Flush and close the CSV file. Update metadata with final stats."""
        if self._file is not None:
            self.flush()
            self._file.close()
            self._file = None
            self._writer = None

        if self._meta_path.exists():
            with open(self._meta_path) as f:
                meta = json.load(f)
            meta["end_time_utc"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            meta["total_rows"] = self._row_count
            meta["total_ticks"] = self._tick_count
            with open(self._meta_path, "w") as f:
                json.dump(meta, f, indent=2)

    def __enter__(self) -> CsvWriter:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
