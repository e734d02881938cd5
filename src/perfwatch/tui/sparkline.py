"""Sparkline widget for metric history.

Each history value becomes one column, oldest on the left. A column is
1-4 rows tall and every row holds eight levels of block or braille
glyphs, so a two-row sparkline resolves sixteen steps. None in the history
draws as a blank column: a missing sample must not look like a zero.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING

from rich.text import Text
from textual.color import Color
from textual.reactive import reactive
from textual.widgets import Static

if TYPE_CHECKING:
    from textual.app import RenderResult

Stop = tuple[float, tuple[int, int, int]]


class GradientColor:
    """Callable mapping a value onto colors pinned at threshold stops.

    Colors are anything textual can parse (#RGB, #RRGGBB, names). Between two
    stops the RGB channels are interpolated linearly; outside the first and
    last stop the end color is used.
    """

    def __init__(self, stops: list[tuple[float, str]]) -> None:
        if len(stops) < 2:
            raise ValueError(f"need at least two gradient stops, got {len(stops)}")
        parsed: list[Stop] = []
        for threshold, value in sorted(stops, key=lambda stop: stop[0]):
            color = Color.parse(value)
            parsed.append((threshold, (color.r, color.g, color.b)))
        self._stops = parsed

    @staticmethod
    def _hex(rgb: tuple[int, int, int]) -> str:
        return "#" + "".join(f"{channel:02x}" for channel in rgb)

    def __call__(self, value: float) -> str:
        lower = self._stops[0]
        if value <= lower[0]:
            return self._hex(lower[1])
        for upper in self._stops[1:]:
            if value <= upper[0]:
                span = upper[0] - lower[0]
                frac = (value - lower[0]) / span if span else 0.0
                mixed = tuple(
                    int(a + (b - a) * frac) for a, b in zip(lower[1], upper[1])
                )
                return self._hex(mixed)  # type: ignore[arg-type]
            lower = upper
        return self._hex(lower[1])


class SparklineMode(Enum):
    """Glyph set used to draw levels."""

    BLOCKS = "blocks"
    BRAILLE = "braille"


# Index 0 is empty, index 8 is a full cell
_GLYPHS = {
    SparklineMode.BLOCKS: " ▁▂▃▄▅▆▇█",
    SparklineMode.BRAILLE: " ⡀⣀⣄⣤⣦⣶⣷⣿",
}
_STEPS = 8


class Sparkline(Static):
    """Trend line over a metric's recent values.

    max_value fixes the top of the scale (100 for percentages). With None the
    largest value on screen sets it, which suits byte rates.
    """

    DEFAULT_CSS = """
    Sparkline {
        width: 1fr;
        height: auto;
    }
    """

    data: reactive[list[float | None]] = reactive(list, always_update=True)

    def __init__(
        self,
        height: int = 1,
        max_value: float | None = 100,
        mode: SparklineMode = SparklineMode.BRAILLE,
        color_func: Callable[[float], str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._rows = min(max(height, 1), 4)
        self._ceiling = max_value
        self._glyphs = _GLYPHS[mode]
        self._color_func = color_func

    def set_history(self, values: Sequence[float | None]) -> None:
        """Show the newest values that fit in the widget's width."""
        width = self.size.width
        self.data = list(values[-width:] if width > 0 else values)

    def _scale(self, values: Sequence[float | None]) -> float:
        if self._ceiling is not None:
            return self._ceiling if self._ceiling > 0 else 1.0
        peak = max((v for v in values if v is not None), default=0.0)
        return peak if peak > 0 else 1.0

    def _level(self, value: float, scale: float) -> int:
        """Level 0..rows*8 for value on the given scale."""
        if value <= 0:
            return 0
        levels = self._rows * _STEPS
        # Small positive values still get one dot
        return max(1, int(min(value / scale, 1.0) * levels))

    def column(self, level: int) -> list[str]:
        """Glyphs for one column, bottom row first."""
        return [
            self._glyphs[min(max(level - row * _STEPS, 0), _STEPS)] for row in range(self._rows)
        ]

    def render(self) -> RenderResult:
        lines = [Text() for _ in range(self._rows)]
        scale = self._scale(self.data)
        for value in self.data:
            if value is None:
                glyphs, style = [" "] * self._rows, ""
            else:
                glyphs = self.column(self._level(value, scale))
                style = self._color_func(value) if self._color_func else ""
            for line, glyph in zip(lines, glyphs):
                line.append(glyph, style=style)
        # Top row first on screen
        return Text("\n").join(reversed(lines))

    def watch_data(self, new_data: list[float | None]) -> None:
        self.refresh()
