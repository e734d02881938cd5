"""Rate calculator: two raw snapshots in, one derived snapshot out.

Gauges pass through. Counters become per-second rates over the measured
monotonic interval. A counter that went backwards yields 0 flagged
DISCONTINUITY, never a negative or huge rate. A domain seen for the first
time, seen after an unavailable tick, or whose identity changed (process
restart with a reused pid) has every rate UNAVAILABLE for one tick.

Per-domain finishers then build composite values (CPU percentages, disk
utilization, memory used) from the rates and gauges.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from types import MappingProxyType

from perfwatch.boottime import clock_ticks
from perfwatch.snapshot import (
    UNAVAILABLE,
    DerivedSnapshot,
    Domain,
    DomainReading,
    Flag,
    RawSnapshot,
    Value,
    is_number,
)

# Aggregate CPU percentages; each entry sums jiffy columns
CPU_SHARES = {
    "user_pct": ("user", "nice"),
    "system_pct": ("system", "irq", "softirq"),
    "iowait_pct": ("iowait",),
    "steal_pct": ("steal",),
    "idle_pct": ("idle",),
}
CPU_JIFFIES = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")
_CORE_KEY = re.compile(r"^cpu\.core(\d+)\.")


class _Frame:
    """Mutable accumulator for one derivation; frozen into a DerivedSnapshot."""

    def __init__(self) -> None:
        self.values: dict[str, Value] = {}
        self.flags: dict[str, Flag] = {}
        self.rate_keys: set[str] = set()
        self.info: dict[str, str] = {}

    def put(self, key: str, value: Value, *, rate: bool = False) -> None:
        self.values[key] = value
        if rate:
            self.rate_keys.add(key)
        if is_number(value):
            self.flags.pop(key, None)
        else:
            self.flags[key] = Flag.UNAVAILABLE

    def discontinuity(self, key: str, *, rate: bool = True) -> None:
        self.values[key] = 0
        self.flags[key] = Flag.DISCONTINUITY
        if rate:
            self.rate_keys.add(key)

    def drop(self, key: str) -> None:
        self.values.pop(key, None)
        self.flags.pop(key, None)
        self.rate_keys.discard(key)

    def number(self, key: str) -> float | None:
        if key in self.flags:
            return None
        value = self.values.get(key)
        return value if is_number(value) else None  # type: ignore[return-value]

    def combine(
        self,
        key: str,
        inputs: tuple[str, ...],
        fn: Callable[..., float | None],
        *,
        rate: bool = True,
    ) -> None:
        """Set key = fn(*inputs), propagating input flags.

        A DISCONTINUITY input makes the result 0 with DISCONTINUITY; a
        missing or UNAVAILABLE input makes it UNAVAILABLE; fn returning None
        (division by zero) also makes it UNAVAILABLE.
        """
        flags = [self.flags.get(k) for k in inputs]
        if Flag.DISCONTINUITY in flags:
            self.discontinuity(key, rate=rate)
            return
        args = [self.number(k) for k in inputs]
        if any(a is None for a in args):
            self.put(key, UNAVAILABLE, rate=rate)
            return
        result = fn(*args)
        self.put(key, UNAVAILABLE if result is None else result, rate=rate)


def _ratio(numerator: float, denominator: float, scale: float = 100.0) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator * scale


# ─────────────────────────────────────────────────────────────────────────────
# Per-domain finishers
# ─────────────────────────────────────────────────────────────────────────────


def _cpu_prefixes(frame: _Frame) -> list[str]:
    cores = {int(m.group(1)) for k in frame.values if (m := _CORE_KEY.match(k))}
    return ["cpu"] + [f"cpu.core{n}" for n in sorted(cores)]


def _finish_cpu(frame: _Frame, dt: float) -> None:
    """Jiffy rates become shares of the total; raw jiffy rates are dropped."""
    for prefix in _cpu_prefixes(frame):
        jiffies = tuple(f"{prefix}.{name}" for name in CPU_JIFFIES)
        if not all(k in frame.values for k in jiffies):
            continue
        for pct_key, columns in CPU_SHARES.items():
            idx = tuple(CPU_JIFFIES.index(c) for c in columns)
            frame.combine(
                f"{prefix}.{pct_key}",
                jiffies,
                lambda *v, idx=idx: _ratio(sum(v[i] for i in idx), sum(v)),
            )
        frame.combine(
            f"{prefix}.busy_pct",
            (f"{prefix}.idle_pct", f"{prefix}.iowait_pct"),
            lambda idle, iowait: max(0.0, 100.0 - idle - iowait),
        )
        for key in jiffies:
            frame.drop(key)


def _finish_memory(frame: _Frame, dt: float) -> None:
    frame.combine(
        "mem.used",
        ("mem.total", "mem.free", "mem.buffers", "mem.cached"),
        lambda total, free, buffers, cached: max(0, total - free - buffers - cached),
        rate=False,
    )
    frame.combine("mem.used_pct", ("mem.used", "mem.total"), _ratio, rate=False)
    frame.combine(
        "mem.swap_used",
        ("mem.swap_total", "mem.swap_free"),
        lambda total, free: max(0, total - free),
        rate=False,
    )
    frame.combine("mem.swap_pct", ("mem.swap_used", "mem.swap_total"), _ratio, rate=False)


def _finish_disk(frame: _Frame, dt: float) -> None:
    devices = {
        k.split(".")[1]
        for k in frame.values
        if k.startswith("disk.") and k.endswith(".io_time_ms") and not k.startswith("disk.total.")
    }
    for dev in sorted(devices):
        p = f"disk.{dev}"
        # io_time_ms rate is busy milliseconds per second
        frame.combine(f"{p}.util_pct", (f"{p}.io_time_ms",), lambda busy: min(100.0, busy / 10.0))
        frame.combine(
            f"{p}.read_latency_ms",
            (f"{p}.read_time_ms", f"{p}.reads"),
            lambda t, n: t / n if n > 0 else 0.0,
        )
        frame.combine(
            f"{p}.write_latency_ms",
            (f"{p}.write_time_ms", f"{p}.writes"),
            lambda t, n: t / n if n > 0 else 0.0,
        )
        frame.combine(f"{p}.queue_depth", (f"{p}.weighted_io_ms",), lambda w: w / 1000.0)


def _finish_pressure(frame: _Frame, dt: float) -> None:
    totals = [k for k in frame.values if k.startswith("psi.") and k.endswith(".total")]
    for key in totals:
        # total is stall microseconds; rate / 1e6 * 100 is percent of wall time
        frame.combine(
            key[: -len(".total")] + ".stall_pct",
            (key,),
            lambda us: min(100.0, us / 10_000.0),
        )


def _finish_cgroup(frame: _Frame, dt: float) -> None:
    frame.combine(
        "cgroup.memory_usage_pct",
        ("cgroup.memory_current", "cgroup.memory_max"),
        _ratio,
        rate=False,
    )
    if "cgroup.cpu_usage_usec" in frame.values:
        frame.combine("cgroup.cpu_pct", ("cgroup.cpu_usage_usec",), lambda us: us / 10_000.0)


def _finish_process(frame: _Frame, dt: float) -> None:
    ticks = clock_ticks()
    frame.combine(
        "proc.cpu_pct",
        ("proc.utime", "proc.stime"),
        lambda utime, stime: (utime + stime) / ticks * 100.0,
    )


FINISHERS: dict[Domain, Callable[[_Frame, float], None]] = {
    Domain.CPU: _finish_cpu,
    Domain.MEMORY: _finish_memory,
    Domain.DISK: _finish_disk,
    Domain.PRESSURE: _finish_pressure,
    Domain.CGROUP: _finish_cgroup,
    Domain.PROCESS: _finish_process,
}


# ─────────────────────────────────────────────────────────────────────────────
# Derivation
# ─────────────────────────────────────────────────────────────────────────────


def _needs_warmup(prev: DomainReading | None, curr: DomainReading, dt: float) -> bool:
    return (
        dt <= 0
        or prev is None
        or not prev.available
        or prev.identity != curr.identity
    )


def _derive_domain(
    frame: _Frame, prev: DomainReading | None, curr: DomainReading, dt: float
) -> None:
    for key, value in curr.gauges.items():
        frame.put(key, value)

    warmup = _needs_warmup(prev, curr, dt)
    for key, value in curr.counters.items():
        before = None if warmup or prev is None else prev.counters.get(key)
        if before is None or not is_number(before) or not is_number(value):
            frame.put(key, UNAVAILABLE, rate=True)
        elif value < before:  # type: ignore[operator]
            frame.discontinuity(key)
        else:
            frame.put(key, (value - before) / dt, rate=True)  # type: ignore[operator]

    frame.info.update(curr.info)


def derive(
    prev: RawSnapshot | None,
    curr: RawSnapshot,
    dt: float | None = None,
) -> DerivedSnapshot:
    """Derive rates and composites from two consecutive raw snapshots.

    Args:
        prev: Previous tick's snapshot, or None on the first tick
        curr: Current tick's snapshot
        dt: Interval in seconds; defaults to the measured monotonic delta

    Returns:
        DerivedSnapshot with read-only values and per-key flags.
    """
    if dt is None:
        dt = curr.monotonic - prev.monotonic if prev is not None else 0.0

    frame = _Frame()
    unavailable: set[Domain] = set()
    for domain, reading in curr.domains.items():
        if not reading.available:
            unavailable.add(domain)
            continue
        before = prev.domains.get(domain) if prev is not None else None
        _derive_domain(frame, before, reading, dt)
        finisher = FINISHERS.get(domain)
        if finisher is not None:
            finisher(frame, dt)

    return DerivedSnapshot(
        timestamp=curr.timestamp,
        values=MappingProxyType(frame.values),
        flags=MappingProxyType(frame.flags),
        rate_keys=frozenset(frame.rate_keys),
        unavailable_domains=frozenset(unavailable),
        info=MappingProxyType(frame.info),
        interval=max(0.0, dt),
    )
