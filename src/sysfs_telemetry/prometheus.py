"""Expose the latest tick over HTTP in the Prometheus text format.

The collection loop pushes each tick's observations with :meth:`update`;
scrapes are served from that snapshot and never touch sysfs themselves.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator

from prometheus_client import CollectorRegistry, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .sink import Observation

logger = logging.getLogger(__name__)


def metric_name(measurement: str, field_name: str) -> str:
    """Prometheus name for a field, e.g. ``powercap_power_uw``."""
    return f"{measurement}_{field_name}".replace("-", "_").replace(" ", "_")


class PrometheusExporter:
    """Custom collector serving the most recent observations."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._lock = threading.Lock()
        self._observations: list[Observation] = []
        self.registry = registry if registry is not None else CollectorRegistry()
        self.registry.register(self)

    def update(self, observations: Iterable[Observation]) -> None:
        """Replace the served snapshot with one tick's observations."""
        snapshot = list(observations)
        with self._lock:
            self._observations = snapshot

    def collect(self) -> Iterator[Metric]:
        with self._lock:
            observations = list(self._observations)

        # (name, kind) -> [(tags, value)]
        samples: dict[tuple[str, str], list[tuple[dict[str, str], float]]] = {}
        for obs in observations:
            for field_name, value in obs.fields.items():
                if isinstance(value, str):
                    continue
                key = (metric_name(obs.measurement, field_name), obs.kind)
                samples.setdefault(key, []).append((dict(obs.tags), float(value)))

        for (name, kind), values in samples.items():
            labels = sorted({k for tags, _ in values for k in tags})
            family: Metric
            if kind == "counter":
                family = CounterMetricFamily(name, f"{name} counter", labels=labels)
            else:
                family = GaugeMetricFamily(name, f"{name} gauge", labels=labels)
            for tags, value in values:
                family.add_metric([tags.get(label, "") for label in labels], value)
            yield family

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Start the HTTP exposition server in a background thread."""
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info("Serving Prometheus metrics on %s:%d", addr, port)
