"""Tests for the dashboard and its sparkline widget."""

import pytest
from conftest import make_config

from perfwatch.config import Config
from perfwatch.formatting import NO_DATA
from perfwatch.tui.sparkline import GradientColor, Sparkline, SparklineMode


class TestSparklineLevels:
    """Tests for value to level scaling."""

    def test_zero_is_level_zero(self) -> None:
        """Zero value scales to level 0."""
        assert Sparkline(height=1, max_value=100)._level(0, 100) == 0

    def test_max_is_full(self) -> None:
        """Max value fills every row."""
        assert Sparkline(height=2, max_value=100)._level(100, 100) == 16

    def test_mid_value(self) -> None:
        """50% is half the levels."""
        assert Sparkline(height=2, max_value=100)._level(50, 100) == 8

    def test_clamps_above_max(self) -> None:
        """Values above the scale clamp to full."""
        assert Sparkline(height=1, max_value=100)._level(150, 100) == 8

    def test_tiny_value_still_visible(self) -> None:
        """Any non-zero value shows at least one dot."""
        assert Sparkline(height=1, max_value=100)._level(0.01, 100) == 1

    def test_autoscale(self) -> None:
        """Without max_value the largest visible value sets the scale."""
        sparkline = Sparkline(max_value=None)

        assert sparkline._scale([10.0, None, 40.0]) == 40.0
        assert sparkline._scale([None, 0.0]) == 1.0

    def test_height_clamped(self) -> None:
        """Height is limited to 1-4 rows."""
        assert Sparkline(height=9).column(0) == [" "] * 4


class TestSparklineColumns:
    """Tests for single column rendering."""

    def test_empty(self) -> None:
        """Level 0 renders as spaces."""
        assert Sparkline(height=2, mode=SparklineMode.BLOCKS).column(0) == [" ", " "]

    def test_bottom_full(self) -> None:
        """Level 8 fills the bottom row only."""
        assert Sparkline(height=2, mode=SparklineMode.BLOCKS).column(8) == ["█", " "]

    def test_overflow_to_top(self) -> None:
        """Levels past one row continue in the next."""
        assert Sparkline(height=2, mode=SparklineMode.BLOCKS).column(12) == ["█", "▄"]

    def test_braille(self) -> None:
        """Braille mode uses dot characters."""
        assert Sparkline(height=1, mode=SparklineMode.BRAILLE).column(8) == ["⣿"]


class TestGradientColor:
    """Tests for threshold color interpolation."""

    def test_endpoints(self) -> None:
        """Values outside the stops clamp to the end colors."""
        gradient = GradientColor([(0, "#000000"), (100, "#ffffff")])

        assert gradient(-5) == "#000000"
        assert gradient(200) == "#ffffff"

    def test_interpolates(self) -> None:
        """Midway between two stops is the midway color."""
        gradient = GradientColor([(0, "#000000"), (100, "#ff0000")])

        assert gradient(50) == "#7f0000"

    def test_short_hex(self) -> None:
        """#RGB colors are accepted."""
        assert GradientColor([(0, "#f00"), (1, "#f00")])(0.5) == "#ff0000"

    def test_needs_two_stops(self) -> None:
        """One stop is not a gradient."""
        with pytest.raises(ValueError):
            GradientColor([(0, "#000000")])


@pytest.mark.parametrize(
    "value,renderer,expected",
    [
        (None, "pct", NO_DATA),
        (12.345, "pct", "12.3%"),
        (2048.0, "rate", "2K/s"),
        (3 * 1024 * 1024, "bytes", "3.0M"),
        (1500, "count", "1.5k"),
    ],
)
def test_render_value(value, renderer, expected):
    """Dashboard values use the shared formatters."""
    from perfwatch.tui.app import render_value

    assert render_value(value, renderer) == expected


def test_app_instantiates():
    """The app can be built without running it."""
    from perfwatch.tui.app import PerfwatchApp

    app = PerfwatchApp(config=Config())
    assert app.sampler.config is app.config


@pytest.mark.asyncio
async def test_dashboard_split_keys(fake_host, tmp_path):
    """s requests a split, y confirms it, and the sampler rotates."""
    from perfwatch.tui.app import HeaderBar, PerfwatchApp

    config = make_config(fake_host, tmp_path)
    config.tui.refresh_interval = 0.05
    app = PerfwatchApp(config)

    async with app.run_test() as pilot:
        for _ in range(100):
            await pilot.pause(0.02)
            if app.sampler.state.sample_count >= 2:
                break
        assert app.query_one("#header", HeaderBar) is not None

        await pilot.press("s")
        for _ in range(100):
            await pilot.pause(0.02)
            if app.sampler.state.segments.split_pending:
                break
        assert app.sampler.state.segments.split_pending

        await pilot.press("y")
        for _ in range(100):
            await pilot.pause(0.02)
            if app.sampler.state.segments.index == 1:
                break
        assert app.sampler.state.segments.index == 1

    assert app.sampler.stopping
