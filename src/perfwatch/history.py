"""Fixed-capacity history per metric series, feeding live trend display.

Each series is a deque(maxlen=capacity): push is O(1) and evicts the
oldest value once full. Nothing here is persisted.
"""

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from perfwatch.snapshot import DerivedSnapshot


class GapPolicy(str, Enum):
    """What to record for a series on a tick where its value is unavailable."""

    SKIP = "skip"  # push nothing
    GAP = "gap"  # push None so the series keeps tick alignment


@dataclass(frozen=True)
class HistoryView:
    """Immutable copy of every series, oldest value first."""

    series: Mapping[str, tuple[float | None, ...]]
    capacity: int

    def get(self, key: str) -> tuple[float | None, ...]:
        return self.series.get(key, ())


class MetricHistory:
    """Ring buffers keyed by metric key.

    Stores up to capacity values per series (default 120 = two minutes at 1Hz).
    """

    def __init__(
        self,
        capacity: int = 120,
        series: Iterable[str] = (),
        gap_policy: GapPolicy = GapPolicy.SKIP,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._series_keys = tuple(series)
        self._gap_policy = GapPolicy(gap_policy)
        self._buffers: dict[str, deque[float | None]] = {}

    @property
    def capacity(self) -> int:
        """Return maximum number of values each series can hold."""
        return self._capacity

    def keys(self) -> list[str]:
        return list(self._buffers)

    def __len__(self) -> int:
        """Return number of series with at least one push."""
        return len(self._buffers)

    def push(self, key: str, value: float | None) -> None:
        """Append a value to a series, evicting the oldest when full."""
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = self._buffers[key] = deque(maxlen=self._capacity)
        buffer.append(value)

    def snapshot(self, key: str) -> tuple[float | None, ...]:
        """Return a copy of one series, oldest first."""
        return tuple(self._buffers.get(key, ()))

    def record(self, derived: DerivedSnapshot) -> None:
        """Push the tracked series from one derived snapshot."""
        for key in self._series_keys:
            value = derived.get(key)
            if value is None and self._gap_policy is GapPolicy.SKIP:
                continue
            self.push(key, value)

    def clear(self) -> None:
        """Empty every series."""
        self._buffers.clear()

    def freeze(self) -> HistoryView:
        """Return immutable copy of all series."""
        return HistoryView(
            series=MappingProxyType({k: tuple(v) for k, v in self._buffers.items()}),
            capacity=self._capacity,
        )
