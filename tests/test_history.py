"""Tests for per-metric history buffers."""

import pytest
from conftest import make_derived

from perfwatch.history import GapPolicy, MetricHistory
from perfwatch.snapshot import Flag


def test_capacity_bounds_every_series():
    """A series never holds more than capacity values."""
    history = MetricHistory(capacity=5)
    for i in range(12):
        history.push("cpu.busy_pct", float(i))

    assert history.snapshot("cpu.busy_pct") == (7.0, 8.0, 9.0, 10.0, 11.0)


def test_invalid_capacity():
    """Capacity must be positive."""
    with pytest.raises(ValueError):
        MetricHistory(capacity=0)


def test_record_tracked_series_only():
    """record() pushes only the configured keys."""
    history = MetricHistory(capacity=10, series=["cpu.busy_pct"])
    history.record(make_derived({"cpu.busy_pct": 42.0, "mem.used_pct": 10.0}))

    assert history.keys() == ["cpu.busy_pct"]
    assert history.snapshot("cpu.busy_pct") == (42.0,)


def test_skip_policy_drops_unavailable_ticks():
    """With SKIP a flagged value adds nothing."""
    history = MetricHistory(capacity=10, series=["disk.total.read_bytes"])
    history.record(make_derived({"disk.total.read_bytes": 100.0}))
    history.record(
        make_derived(
            {"disk.total.read_bytes": 0},
            flags={"disk.total.read_bytes": Flag.DISCONTINUITY},
        )
    )
    history.record(make_derived({}))

    assert history.snapshot("disk.total.read_bytes") == (100.0,)


def test_gap_policy_records_none():
    """With GAP a missing value keeps tick alignment as None."""
    history = MetricHistory(capacity=10, series=["cpu.busy_pct"], gap_policy=GapPolicy.GAP)
    history.record(make_derived({"cpu.busy_pct": 1.0}))
    history.record(make_derived({}))
    history.record(make_derived({"cpu.busy_pct": 3.0}))

    assert history.snapshot("cpu.busy_pct") == (1.0, None, 3.0)


def test_gap_policy_accepts_string():
    """Config values are plain strings."""
    history = MetricHistory(capacity=3, series=["x"], gap_policy="gap")
    history.record(make_derived({}))

    assert history.snapshot("x") == (None,)


class TestHistoryView:
    """Tests for the frozen copy handed to consumers."""

    def test_view_is_detached(self):
        """Later pushes do not change an earlier view."""
        history = MetricHistory(capacity=4)
        history.push("mem.used_pct", 1.0)
        view = history.freeze()
        history.push("mem.used_pct", 2.0)

        assert view.get("mem.used_pct") == (1.0,)
        assert view.capacity == 4

    def test_unknown_key_is_empty(self):
        """Missing series read as empty."""
        assert MetricHistory().freeze().get("nope") == ()

    def test_view_mapping_read_only(self):
        """The series mapping cannot be modified."""
        view = MetricHistory().freeze()
        with pytest.raises(TypeError):
            view.series["x"] = (1.0,)  # type: ignore[index]


def test_clear():
    """clear() drops every series."""
    history = MetricHistory()
    history.push("a", 1.0)
    history.clear()

    assert len(history) == 0
