"""Power-capping zones from the sysfs powercap interface.

Walks ``<host_sys>/devices/virtual/powercap/<control_type>`` for zone
directories named ``<control_type>:<id>`` (nested zones live inside their
parent, e.g. ``intel-rapl:0/intel-rapl:0:1``), keeps their ``enabled`` and
``energy_uj`` files open, and on every tick turns the cumulative energy
counter into an instantaneous power estimate.
"""

from __future__ import annotations

import logging
import os
import time
import weakref
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import DiscoveryIOError
from ..fileio import UINT64_MAX, ScalarFile, read_string

if TYPE_CHECKING:
    from ..sink import Accumulator

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_TYPE = "intel-rapl"
POWERCAP_PATH = Path("devices") / "virtual" / "powercap"
MEASUREMENT = "powercap"

# Counter files every zone must expose to be collected.
ZONE_PROPERTIES = ("enabled", "energy_uj")

NS_PER_SECOND = 1_000_000_000


def convert_to_power(energy_uj: int, duration_ns: int) -> int:
    """Convert microjoules accumulated over ``duration_ns`` to microwatts.

    Rounded down. A non-positive duration (first sample on a stepped clock,
    two reads within the same nanosecond) yields 0.

    This is energy divided by elapsed time. Collectors that instead multiply
    by the elapsed seconds agree with it only at one-second intervals
    (2000 uJ over 2 s is 1000 uW here, 4000 when multiplying).
    """
    if duration_ns <= 0:
        return 0
    return energy_uj * NS_PER_SECOND // duration_ns


@dataclass(eq=False)
class Zone:
    """One node of the powercap domain tree.

    The parent owns its children through ``children``; ``parent`` is a weak
    back-reference used only for context such as :attr:`qualified_name`.
    """

    path: str
    id: str
    name: str
    parent_ref: weakref.ReferenceType[Zone] | None = field(default=None, repr=False)
    children: dict[str, Zone] = field(default_factory=dict, repr=False)
    fds: dict[str, ScalarFile] = field(default_factory=dict, repr=False)
    enabled: bool = False
    energy_uj: int = 0
    power_uw: int = 0
    tsc: int = 0

    @property
    def parent(self) -> Zone | None:
        if self.parent_ref is None:
            return None
        return self.parent_ref()

    @property
    def qualified_name(self) -> str:
        """Names from the root down, e.g. ``package-0/core``."""
        parent = self.parent
        if parent is None:
            return self.name
        return f"{parent.qualified_name}/{self.name}"

    def open_properties(self) -> None:
        """Open every required counter file, or none of them.

        Raises:
            OSError: if any file cannot be opened; handles opened so far
                are released before re-raising.
        """
        try:
            for prop in ZONE_PROPERTIES:
                self.fds[prop] = ScalarFile(Path(self.path) / prop)
        except OSError:
            self.close()
            raise

    def update(self, now_ns: int | None = None) -> None:
        """Refresh state from the open handles and recompute ``power_uw``.

        The energy delta uses 64-bit unsigned subtraction, so a counter that
        wrapped (or went backwards) since the last sample yields a large
        delta rather than a negative one.  Nothing is modified if either
        read fails.

        Raises:
            UpdateIOError: a handle could not be read.
            ParseError: a file did not contain an unsigned integer.
        """
        now = time.time_ns() if now_ns is None else now_ns

        enabled = self.fds["enabled"].read_uint() != 0
        value = self.fds["energy_uj"].read_uint()

        delta = (value - self.energy_uj) & UINT64_MAX
        self.power_uw = convert_to_power(delta, now - self.tsc)
        self.enabled = enabled
        self.energy_uj = value
        self.tsc = now

    def walk(self) -> Iterator[Zone]:
        """Yield this zone and then its descendants, depth first."""
        yield self
        for child in self.children.values():
            yield from child.walk()

    def close(self) -> None:
        """Close this zone's handles and those of its whole subtree."""
        for child in self.children.values():
            child.close()
        for fd in self.fds.values():
            fd.close()
        self.fds.clear()


@dataclass(frozen=True)
class ZoneSkipped:
    """A zone directory that matched but could not be fully initialised."""

    path: str
    zone_id: str
    reason: str


def discover_zones(
    prefix: str | Path,
    control_type: str = DEFAULT_CONTROL_TYPE,
    parent: Zone | None = None,
) -> dict[str, Zone]:
    """Discover ``<control_type>:*`` zones directly below ``prefix``.

    Each match is fully built (name read, children discovered recursively,
    counter files opened) before it is added.  Zones that fail any of
    those steps are logged and left out together with their subtree;
    their siblings are unaffected.

    Args:
        prefix: Directory to scan.
        control_type: Zone family, e.g. ``intel-rapl``.
        parent: Zone owning ``prefix``, or None for the discovery root.

    Returns:
        Mapping of zone id (the directory name minus ``<control_type>:``)
        to Zone.  Empty if ``prefix`` does not exist.

    Raises:
        DiscoveryIOError: ``prefix`` exists but cannot be listed.
    """
    zones: dict[str, Zone] = {}
    for zone_dir, zone_id in _match_zone_dirs(Path(prefix), control_type):
        try:
            result = _discover_zone(zone_dir, zone_id, control_type, parent)
        except BaseException:
            for zone in zones.values():
                zone.close()
            raise
        if isinstance(result, ZoneSkipped):
            logger.warning(
                "Skipping %s zone %s (%s): %s",
                control_type,
                result.zone_id,
                result.path,
                result.reason,
            )
            continue
        zones[zone_id] = result
    return zones


def _match_zone_dirs(prefix: Path, control_type: str) -> list[tuple[Path, str]]:
    """Return sorted ``(directory, zone_id)`` pairs matching the control type."""
    marker = f"{control_type}:"
    try:
        with os.scandir(prefix) as it:
            entries = sorted(it, key=lambda e: e.name)
    except FileNotFoundError:
        return []
    except OSError as e:
        raise DiscoveryIOError(e.errno, f"cannot list {prefix}: {e.strerror}") from e

    matches: list[tuple[Path, str]] = []
    for entry in entries:
        if not entry.name.startswith(marker) or len(entry.name) == len(marker):
            continue
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        matches.append((Path(entry.path), entry.name[len(marker) :]))
    return matches


def _discover_zone(
    zone_dir: Path,
    zone_id: str,
    control_type: str,
    parent: Zone | None,
) -> Zone | ZoneSkipped:
    try:
        name = read_string(zone_dir / "name")
    except (OSError, UnicodeDecodeError) as e:
        return ZoneSkipped(str(zone_dir), zone_id, f"unreadable name: {e}")

    zone = Zone(
        path=str(zone_dir),
        id=zone_id,
        name=name,
        parent_ref=weakref.ref(parent) if parent is not None else None,
    )
    # Children first, so the zone is complete once it is returned.
    zone.children = discover_zones(zone_dir, control_type, zone)

    try:
        zone.open_properties()
    except OSError as e:
        zone.close()
        return ZoneSkipped(str(zone_dir), zone_id, f"cannot open counter: {e}")
    return zone


class PowercapCollector:
    """Collect power and energy for every zone of one control type.

    Emits, per zone and tick, a gauge ``powercap`` with ``enabled`` and
    ``power_uw`` and a counter ``powercap`` with ``energy_uj``, both tagged
    with ``zone_id`` and ``zone_name``.
    """

    def __init__(
        self,
        host_sys: str | Path = "/sys",
        control_type: str = DEFAULT_CONTROL_TYPE,
    ) -> None:
        self._control_type = control_type
        self._root = Path(host_sys) / POWERCAP_PATH / control_type
        self.zones: dict[str, Zone] = {}

    @property
    def control_type(self) -> str:
        return self._control_type

    @property
    def discovery_root(self) -> Path:
        return self._root

    def discover(self) -> dict[str, Zone]:
        """Build the zone tree once. Replaces (and closes) any previous tree."""
        self.close()
        self.zones = discover_zones(self._root, self._control_type)
        logger.info(
            "Discovered %d %s zone(s) (%d top-level) under %s",
            sum(1 for _ in self.walk()),
            self._control_type,
            len(self.zones),
            self._root,
        )
        return self.zones

    def prime(self) -> None:
        """Take the first sample of every zone so the next tick has a rate."""
        for zone in self.walk():
            try:
                zone.update()
            except (OSError, ValueError) as e:
                logger.warning("Initial read of zone %s failed: %s", zone.id, e)

    def walk(self) -> Iterator[Zone]:
        """Yield every zone, parents before their children."""
        for zone in self.zones.values():
            yield from zone.walk()

    def gather(self, acc: Accumulator) -> None:
        """Update every zone and report its readings to ``acc``."""
        for zone in self.zones.values():
            self._gather_zone(acc, zone)

    def _gather_zone(self, acc: Accumulator, zone: Zone) -> None:
        try:
            zone.update()
        except (OSError, ValueError) as e:
            logger.debug("Zone %s (%s) update failed: %s", zone.id, zone.name, e)
            acc.add_error(e)
        else:
            tags = {"zone_id": zone.id, "zone_name": zone.name}
            acc.add_gauge(
                MEASUREMENT,
                {"enabled": zone.enabled, "power_uw": zone.power_uw},
                tags,
            )
            acc.add_counter(MEASUREMENT, {"energy_uj": zone.energy_uj}, tags)

        # Descendants are independent counters; collect them regardless.
        for child in zone.children.values():
            self._gather_zone(acc, child)

    def close(self) -> None:
        """Release every open handle in the tree."""
        for zone in self.zones.values():
            zone.close()

    def __enter__(self) -> PowercapCollector:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
