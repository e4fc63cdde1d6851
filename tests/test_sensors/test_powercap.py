"""Tests for powercap zone discovery, rate computation and collection.

The powercap sysfs directory names contain colons (e.g. ``intel-rapl:0``)
which are invalid in Windows paths, so the whole module is skipped there.
"""

from __future__ import annotations

import gc
import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from sysfs_telemetry.errors import DiscoveryIOError, ParseError, UpdateIOError
from sysfs_telemetry.fileio import UINT64_MAX
from sysfs_telemetry.sensors import powercap
from sysfs_telemetry.sensors.powercap import (
    POWERCAP_PATH,
    PowercapCollector,
    Zone,
    convert_to_power,
    discover_zones,
)
from sysfs_telemetry.sink import Accumulator

pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="Colons not allowed in Windows paths"
)

_TIME_NS = "sysfs_telemetry.sensors.powercap.time.time_ns"


def _make_zone_dir(
    parent: Path,
    dirname: str,
    name: str,
    energy: int = 0,
    enabled: str = "1",
    *,
    with_energy: bool = True,
    with_name: bool = True,
) -> Path:
    zone_dir = parent / dirname
    zone_dir.mkdir()
    if with_name:
        (zone_dir / "name").write_text(f"{name}\n")
    (zone_dir / "enabled").write_text(f"{enabled}\n")
    if with_energy:
        (zone_dir / "energy_uj").write_text(f"{energy}\n")
    return zone_dir


@pytest.fixture()
def host_sys(tmp_path: Path) -> Path:
    """Create a fake sysfs root with a two-package intel-rapl tree.

    intel-rapl:0 (package-0)
        intel-rapl:0:0 (core)
        intel-rapl:0:1 (uncore)
    intel-rapl:1 (package-1)
        intel-rapl:1:0 (dram)
    """
    root = tmp_path / POWERCAP_PATH / "intel-rapl"
    root.mkdir(parents=True)

    pkg0 = _make_zone_dir(root, "intel-rapl:0", "package-0", 1000)
    _make_zone_dir(pkg0, "intel-rapl:0:0", "core", 600)
    _make_zone_dir(pkg0, "intel-rapl:0:1", "uncore", 100, enabled="0")

    pkg1 = _make_zone_dir(root, "intel-rapl:1", "package-1", 2000)
    _make_zone_dir(pkg1, "intel-rapl:1:0", "dram", 300)

    # Unrelated entries must be ignored
    (root / "power").mkdir()
    (root / "uevent").write_text("\n")
    (root / "enabled").write_text("1\n")

    return tmp_path


@pytest.fixture()
def collector(host_sys: Path) -> Iterator[PowercapCollector]:
    col = PowercapCollector(host_sys)
    col.discover()
    yield col
    col.close()


def _shape(zones: dict[str, Zone]) -> dict[str, tuple[str, dict]]:
    return {zid: (z.name, _shape(z.children)) for zid, z in zones.items()}


class TestConvertToPower:
    """Tests for convert_to_power()."""

    def test_one_second(self) -> None:
        assert convert_to_power(1000, 1_000_000_000) == 1000

    def test_half_second_doubles(self) -> None:
        assert convert_to_power(1000, 500_000_000) == 2000

    def test_rounds_down(self) -> None:
        assert convert_to_power(1, 3_000_000_000) == 0
        assert convert_to_power(10, 3_000_000_000) == 3

    def test_zero_duration(self) -> None:
        assert convert_to_power(1000, 0) == 0

    def test_negative_duration(self) -> None:
        assert convert_to_power(1000, -5) == 0

    def test_large_delta_is_exact(self) -> None:
        assert convert_to_power(UINT64_MAX, 1_000_000_000) == UINT64_MAX

    def test_two_seconds_is_energy_over_time(self) -> None:
        assert convert_to_power(2000, 2_000_000_000) == 1000


class TestDiscoverZones:
    """Tests for discover_zones()."""

    def test_top_level_zones(self, host_sys: Path) -> None:
        zones = discover_zones(host_sys / POWERCAP_PATH / "intel-rapl")
        try:
            assert sorted(zones) == ["0", "1"]
            assert zones["0"].name == "package-0"
            assert zones["1"].name == "package-1"
        finally:
            for z in zones.values():
                z.close()

    def test_nested_children(self, collector: PowercapCollector) -> None:
        pkg0 = collector.zones["0"]
        assert sorted(pkg0.children) == ["0:0", "0:1"]
        assert pkg0.children["0:0"].name == "core"
        assert pkg0.children["0:1"].name == "uncore"
        assert sorted(collector.zones["1"].children) == ["1:0"]
        assert collector.zones["1"].children["1:0"].children == {}

    def test_path_and_parent(self, collector: PowercapCollector) -> None:
        pkg0 = collector.zones["0"]
        core = pkg0.children["0:0"]
        assert core.path.endswith("intel-rapl:0/intel-rapl:0:0")
        assert core.parent is pkg0
        assert pkg0.parent is None
        assert core.qualified_name == "package-0/core"

    def test_handles_opened(self, collector: PowercapCollector) -> None:
        for zone in collector.walk():
            assert set(zone.fds) == {"enabled", "energy_uj"}

    def test_missing_root_is_empty(self, tmp_path: Path) -> None:
        assert discover_zones(tmp_path / "nonexistent") == {}

    def test_no_matching_dirs(self, tmp_path: Path) -> None:
        (tmp_path / "other:0").mkdir()
        (tmp_path / "intel-rapl:").mkdir()
        assert discover_zones(tmp_path) == {}

    def test_other_control_type(self, tmp_path: Path) -> None:
        _make_zone_dir(tmp_path, "intel-rapl:0", "package-0")
        _make_zone_dir(tmp_path, "dtpm:0", "soc")
        zones = discover_zones(tmp_path, control_type="dtpm")
        assert list(zones) == ["0"]
        assert zones["0"].name == "soc"
        zones["0"].close()

    def test_unlistable_root_is_fatal(self, tmp_path: Path) -> None:
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        with pytest.raises(DiscoveryIOError):
            discover_zones(not_a_dir)

    def test_missing_energy_skips_zone(self, host_sys: Path) -> None:
        root = host_sys / POWERCAP_PATH / "intel-rapl"
        _make_zone_dir(root, "intel-rapl:2", "psys", with_energy=False)
        zones = discover_zones(root)
        try:
            assert sorted(zones) == ["0", "1"]
            assert sorted(zones["0"].children) == ["0:0", "0:1"]
            assert zones["1"].name == "package-1"
        finally:
            for z in zones.values():
                z.close()

    def test_missing_child_energy_keeps_siblings(self, tmp_path: Path) -> None:
        pkg = _make_zone_dir(tmp_path, "intel-rapl:0", "package-0")
        _make_zone_dir(pkg, "intel-rapl:0:0", "core")
        _make_zone_dir(pkg, "intel-rapl:0:1", "uncore", with_energy=False)
        zones = discover_zones(tmp_path)
        assert list(zones) == ["0"]
        assert list(zones["0"].children) == ["0:0"]
        zones["0"].close()

    def test_missing_name_skips_subtree(self, tmp_path: Path) -> None:
        pkg = _make_zone_dir(tmp_path, "intel-rapl:0", "package-0", with_name=False)
        _make_zone_dir(pkg, "intel-rapl:0:0", "core")
        _make_zone_dir(tmp_path, "intel-rapl:1", "package-1")
        zones = discover_zones(tmp_path)
        assert list(zones) == ["1"]
        zones["1"].close()

    def test_skipped_parent_releases_child_handles(self, tmp_path: Path) -> None:
        pkg = _make_zone_dir(tmp_path, "intel-rapl:0", "package-0", with_energy=False)
        _make_zone_dir(pkg, "intel-rapl:0:0", "core")

        opened: list[powercap.ScalarFile] = []
        real = powercap.ScalarFile

        def _tracking(path: Path) -> object:
            fd = real(path)
            opened.append(fd)
            return fd

        with patch.object(powercap, "ScalarFile", side_effect=_tracking):
            zones = discover_zones(tmp_path)

        assert zones == {}
        assert opened
        assert all(fd.closed for fd in opened)

    def test_discovery_is_deterministic(self, host_sys: Path) -> None:
        first = PowercapCollector(host_sys)
        second = PowercapCollector(host_sys)
        with first, second:
            assert _shape(first.discover()) == _shape(second.discover())

    def test_name_trailing_newline_stripped(self, tmp_path: Path) -> None:
        _make_zone_dir(tmp_path, "intel-rapl:0", "package-0")
        zones = discover_zones(tmp_path)
        assert zones["0"].name == "package-0"
        zones["0"].close()

    def test_undecodable_name_skips_only_that_zone(self, tmp_path: Path) -> None:
        _make_zone_dir(tmp_path, "intel-rapl:0", "package-0")
        bad = _make_zone_dir(tmp_path, "intel-rapl:1", "package-1")
        (bad / "name").write_bytes(b"\xff\xfe\n")
        zones = discover_zones(tmp_path)
        assert list(zones) == ["0"]
        assert zones["0"].fds
        zones["0"].close()

    def test_unexpected_error_releases_built_siblings(self, tmp_path: Path) -> None:
        _make_zone_dir(tmp_path, "intel-rapl:0", "package-0")
        _make_zone_dir(tmp_path, "intel-rapl:1", "package-1")

        built: list[Zone] = []
        real = powercap._discover_zone

        def _fail_second(*args: object) -> object:
            if built:
                raise RuntimeError("boom")
            zone = real(*args)
            built.append(zone)
            return zone

        with patch.object(powercap, "_discover_zone", side_effect=_fail_second):
            with pytest.raises(RuntimeError, match="boom"):
                discover_zones(tmp_path)

        assert len(built) == 1
        assert built[0].fds == {}


class TestZoneUpdate:
    """Tests for Zone.update()."""

    def _zone(self, tmp_path: Path, energy: int = 0) -> tuple[Zone, Path]:
        zone_dir = _make_zone_dir(tmp_path, "intel-rapl:0", "package-0", energy)
        zone = discover_zones(tmp_path)["0"]
        return zone, zone_dir

    def test_power_from_two_samples(self, tmp_path: Path) -> None:
        zone, zone_dir = self._zone(tmp_path, 1000)
        zone.update(now_ns=5_000_000_000)
        (zone_dir / "energy_uj").write_text("2000\n")
        zone.update(now_ns=6_000_000_000)
        assert zone.power_uw == 1000
        assert zone.energy_uj == 2000
        assert zone.tsc == 6_000_000_000
        zone.close()

    def test_enabled_flag(self, tmp_path: Path) -> None:
        zone, zone_dir = self._zone(tmp_path)
        zone.update(now_ns=1)
        assert zone.enabled is True
        (zone_dir / "enabled").write_text("0\n")
        zone.update(now_ns=2)
        assert zone.enabled is False
        (zone_dir / "enabled").write_text("7\n")
        zone.update(now_ns=3)
        assert zone.enabled is True
        zone.close()

    def test_counter_decrease_wraps(self, tmp_path: Path) -> None:
        zone, zone_dir = self._zone(tmp_path, 1000)
        zone.update(now_ns=1_000_000_000)
        (zone_dir / "energy_uj").write_text("500\n")
        zone.update(now_ns=2_000_000_000)
        assert zone.power_uw == 2**64 - 500
        assert zone.power_uw > 0
        assert zone.energy_uj == 500
        zone.close()

    def test_first_update_from_zero_state(self, tmp_path: Path) -> None:
        zone, _ = self._zone(tmp_path, 1000)
        assert zone.tsc == 0
        assert zone.energy_uj == 0
        zone.update(now_ns=2_000_000_000)
        assert zone.energy_uj == 1000
        assert zone.power_uw == 500
        zone.close()

    def test_uses_wall_clock_by_default(self, tmp_path: Path) -> None:
        zone, _ = self._zone(tmp_path, 1000)
        with patch(_TIME_NS, return_value=42):
            zone.update()
        assert zone.tsc == 42
        zone.close()

    def test_parse_error_leaves_state(self, tmp_path: Path) -> None:
        zone, zone_dir = self._zone(tmp_path, 1000)
        zone.update(now_ns=1_000_000_000)
        (zone_dir / "energy_uj").write_text("garbage\n")
        with pytest.raises(ParseError):
            zone.update(now_ns=2_000_000_000)
        assert zone.energy_uj == 1000
        assert zone.tsc == 1_000_000_000
        zone.close()

    def test_io_error_leaves_state(self, tmp_path: Path) -> None:
        zone, zone_dir = self._zone(tmp_path, 1000)
        zone.update(now_ns=1_000_000_000)
        power = zone.power_uw
        (zone_dir / "enabled").write_text("0\n")
        zone.fds["energy_uj"].close()
        with pytest.raises(UpdateIOError):
            zone.update(now_ns=2_000_000_000)
        assert zone.enabled is True
        assert zone.power_uw == power
        assert zone.tsc == 1_000_000_000
        zone.close()


class TestZoneLifecycle:
    """Tests for handle ownership and the weak parent link."""

    def test_close_closes_subtree(self, collector: PowercapCollector) -> None:
        handles = [fd for z in collector.walk() for fd in z.fds.values()]
        collector.close()
        assert handles
        assert all(fd.closed for fd in handles)

    def test_close_twice(self, collector: PowercapCollector) -> None:
        collector.close()
        collector.close()

    def test_parent_is_not_owned_by_child(self, host_sys: Path) -> None:
        col = PowercapCollector(host_sys)
        col.discover()
        core = col.zones["0"].children["0:0"]
        col.close()
        col.zones = {}
        gc.collect()
        assert core.parent is None

    def test_walk_parent_before_children(self, collector: PowercapCollector) -> None:
        ids = [z.id for z in collector.walk()]
        assert ids == ["0", "0:0", "0:1", "1", "1:0"]


class TestPowercapCollector:
    """Tests for PowercapCollector discovery and gather()."""

    def test_discovery_root(self, tmp_path: Path) -> None:
        col = PowercapCollector(tmp_path, control_type="dtpm")
        assert col.discovery_root == tmp_path / "devices/virtual/powercap/dtpm"

    def test_no_powercap_hardware(self, tmp_path: Path) -> None:
        col = PowercapCollector(tmp_path)
        assert col.discover() == {}
        acc = Accumulator()
        col.gather(acc)
        assert acc.observations == []
        assert acc.errors == []

    def test_gather_emits_per_zone(self, collector: PowercapCollector) -> None:
        acc = Accumulator()
        with patch(_TIME_NS, return_value=1_000_000_000):
            collector.gather(acc)

        assert acc.errors == []
        assert len(acc.observations) == 10
        gauges = [o for o in acc.observations if o.kind == "gauge"]
        counters = [o for o in acc.observations if o.kind == "counter"]
        assert len(gauges) == 5
        assert len(counters) == 5
        assert {o.measurement for o in acc.observations} == {"powercap"}

        by_id = {o.tags["zone_id"]: o for o in counters}
        assert by_id["0"].fields == {"energy_uj": 1000}
        assert by_id["0:0"].tags == {"zone_id": "0:0", "zone_name": "core"}
        assert by_id["1:0"].fields == {"energy_uj": 300}

        uncore = [g for g in gauges if g.tags["zone_name"] == "uncore"][0]
        assert uncore.fields["enabled"] is False
        assert set(uncore.fields) == {"enabled", "power_uw"}

    def test_gather_power_after_prime(self, host_sys: Path) -> None:
        root = host_sys / POWERCAP_PATH / "intel-rapl"
        with PowercapCollector(host_sys) as col:
            col.discover()
            with patch(_TIME_NS, return_value=10_000_000_000):
                col.prime()
            (root / "intel-rapl:0" / "energy_uj").write_text("3000\n")

            acc = Accumulator()
            with patch(_TIME_NS, return_value=12_000_000_000):
                col.gather(acc)

        gauges = {
            o.tags["zone_id"]: o.fields for o in acc.observations if o.kind == "gauge"
        }
        assert gauges["0"]["power_uw"] == 1000
        assert gauges["1"]["power_uw"] == 0

    def test_failing_child_reported_once(self, collector: PowercapCollector) -> None:
        core = collector.zones["0"].children["0:0"]
        failure = UpdateIOError(core.path + "/energy_uj", "No such device")
        acc = Accumulator()
        with patch.object(
            core.fds["energy_uj"], "read_uint", side_effect=failure
        ), patch(_TIME_NS, return_value=1_000_000_000):
            collector.gather(acc)

        assert acc.errors == [failure]
        ids = {o.tags["zone_id"] for o in acc.observations}
        assert ids == {"0", "0:1", "1", "1:0"}
        assert len(acc.observations) == 8

    def test_failing_parent_still_collects_children(
        self, collector: PowercapCollector
    ) -> None:
        pkg0 = collector.zones["0"]
        acc = Accumulator()
        with patch.object(
            pkg0.fds["enabled"],
            "read_uint",
            side_effect=UpdateIOError(pkg0.path + "/enabled", "gone"),
        ):
            collector.gather(acc)

        assert len(acc.errors) == 1
        ids = {o.tags["zone_id"] for o in acc.observations}
        assert ids == {"0:0", "0:1", "1", "1:0"}

    def test_prime_tolerates_failures(self, collector: PowercapCollector) -> None:
        pkg1 = collector.zones["1"]
        with patch.object(
            pkg1.fds["energy_uj"],
            "read_uint",
            side_effect=ParseError(pkg1.path + "/energy_uj", "x"),
        ):
            collector.prime()
        assert pkg1.tsc == 0
        assert collector.zones["0"].tsc > 0

    def test_rediscover_closes_old_tree(self, collector: PowercapCollector) -> None:
        old = [fd for z in collector.walk() for fd in z.fds.values()]
        collector.discover()
        assert all(fd.closed for fd in old)
        assert sorted(collector.zones) == ["0", "1"]
