"""Snapshot data model shared by readers, rate derivation and consumers.

Raw snapshots hold what the kernel reported on one tick. Derived snapshots
hold finished values (percentages, per-second rates, gauges) plus per-key
flags. Both are immutable once built.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from perfwatch.alerts import AlertNotification
    from perfwatch.resolver import LifecycleEvent, ResolvedProcess


class _Unavailable:
    """Sentinel for a value that could not be read or derived."""

    _instance: _Unavailable | None = None

    def __new__(cls) -> _Unavailable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE = _Unavailable()

Value = int | float | _Unavailable


def is_number(value: object) -> bool:
    """Return True for a usable numeric value (not the sentinel, not None)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Flag(str, Enum):
    """Per-key quality flag on a derived value."""

    UNAVAILABLE = "unavailable"
    DISCONTINUITY = "discontinuity"


class Domain(str, Enum):
    """Closed set of metric domains, one reader each."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    NETWORK = "network"
    PRESSURE = "pressure"
    CGROUP = "cgroup"
    PROCESS = "process"


@dataclass(frozen=True)
class DomainReading:
    """Best-effort raw values from one domain on one tick.

    gauges are instantaneous values, counters are cumulative. identity names
    the counter source; when it changes between ticks the counters were
    recreated and no delta can be taken.
    """

    domain: Domain
    gauges: Mapping[str, Value] = field(default_factory=dict)
    counters: Mapping[str, Value] = field(default_factory=dict)
    info: Mapping[str, str] = field(default_factory=dict)
    available: bool = True
    identity: str | None = None
    reason: str = ""

    @classmethod
    def unavailable(cls, domain: Domain, reason: str = "") -> DomainReading:
        """Reading for a domain whose primary source could not be opened."""
        return cls(domain=domain, available=False, reason=reason)


@dataclass(frozen=True)
class RawSnapshot:
    """All domain readings taken on one tick."""

    timestamp: float  # wall clock, time.time()
    monotonic: float  # time.monotonic(), used for deltas
    domains: Mapping[Domain, DomainReading]

    def reading(self, domain: Domain) -> DomainReading | None:
        return self.domains.get(domain)


@dataclass(frozen=True)
class DerivedSnapshot:
    """Finished values for one tick, read-only to every consumer."""

    timestamp: float
    values: Mapping[str, Value]
    flags: Mapping[str, Flag] = field(default_factory=lambda: MappingProxyType({}))
    rate_keys: frozenset[str] = frozenset()
    unavailable_domains: frozenset[Domain] = frozenset()
    info: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    interval: float = 0.0
    process: ResolvedProcess | None = None
    alerts: tuple[AlertNotification, ...] = ()
    events: tuple[LifecycleEvent, ...] = ()

    def get(self, key: str) -> float | None:
        """Return the value for key, or None when there is no usable data."""
        value = self.values.get(key, UNAVAILABLE)
        if not is_number(value) or key in self.flags:
            return None
        return value  # type: ignore[return-value]

    def flag(self, key: str) -> Flag | None:
        if key not in self.values:
            return Flag.UNAVAILABLE
        return self.flags.get(key)

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(k for k in self.values if k.startswith(prefix))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the detailed log. Unavailable values become null."""
        return {
            "timestamp": datetime.fromtimestamp(self.timestamp).isoformat(),
            "interval": round(self.interval, 6),
            "values": {
                key: (value if is_number(value) else None)
                for key, value in sorted(self.values.items())
            },
            "flags": {key: flag.value for key, flag in sorted(self.flags.items())},
            "unavailable_domains": sorted(d.value for d in self.unavailable_domains),
            "info": dict(self.info),
            "process": self.process.to_dict() if self.process else None,
            "alerts": [a.to_dict() for a in self.alerts],
            "events": [e.to_dict() for e in self.events],
        }
