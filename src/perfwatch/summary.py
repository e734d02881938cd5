"""End-of-run statistics and bottleneck indicators.

Accumulates incrementally so a long run does not keep every snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from perfwatch.formatting import (
    NO_DATA,
    format_bytes,
    format_duration,
    format_pct,
    format_rate,
)
from perfwatch.snapshot import DerivedSnapshot


@dataclass
class _Stat:
    """Running count, sum and max of one metric."""

    count: int = 0
    total: float = 0.0
    peak: float | None = None

    def add(self, value: float | None) -> None:
        if value is None:
            return
        self.count += 1
        self.total += value
        if self.peak is None or value > self.peak:
            self.peak = value

    @property
    def avg(self) -> float | None:
        return self.total / self.count if self.count else None


@dataclass
class RunSummary:
    """Statistics over every snapshot offered to add()."""

    samples: int = 0
    first_timestamp: float | None = None
    last_timestamp: float | None = None
    cpu_busy: _Stat = field(default_factory=_Stat)
    cpu_iowait: _Stat = field(default_factory=_Stat)
    mem_used_pct: _Stat = field(default_factory=_Stat)
    mem_used: _Stat = field(default_factory=_Stat)
    cgroup_pct: _Stat = field(default_factory=_Stat)
    swap_used: _Stat = field(default_factory=_Stat)
    disk_read: _Stat = field(default_factory=_Stat)
    disk_write: _Stat = field(default_factory=_Stat)
    disk_util: _Stat = field(default_factory=_Stat)
    net_rx: _Stat = field(default_factory=_Stat)
    net_tx: _Stat = field(default_factory=_Stat)
    net_rx_bytes: float = 0.0
    net_tx_bytes: float = 0.0
    proc_cpu: _Stat = field(default_factory=_Stat)
    proc_rss: _Stat = field(default_factory=_Stat)
    proc_fds: _Stat = field(default_factory=_Stat)

    def add(self, snapshot: DerivedSnapshot) -> None:
        self.samples += 1
        if self.first_timestamp is None:
            self.first_timestamp = snapshot.timestamp
        self.last_timestamp = snapshot.timestamp

        get = snapshot.get
        self.cpu_busy.add(get("cpu.busy_pct"))
        self.cpu_iowait.add(get("cpu.iowait_pct"))
        self.mem_used_pct.add(get("mem.used_pct"))
        self.mem_used.add(get("mem.used"))
        self.cgroup_pct.add(get("cgroup.memory_usage_pct"))
        self.swap_used.add(get("mem.swap_used"))
        self.disk_read.add(get("disk.total.read_bytes"))
        self.disk_write.add(get("disk.total.write_bytes"))
        for key in snapshot.keys_with_prefix("disk."):
            if key.endswith(".util_pct"):
                self.disk_util.add(get(key))

        rx, tx = get("net.total.rx_bytes"), get("net.total.tx_bytes")
        self.net_rx.add(rx)
        self.net_tx.add(tx)
        # Rates times the measured interval approximate bytes moved
        if rx is not None:
            self.net_rx_bytes += rx * snapshot.interval
        if tx is not None:
            self.net_tx_bytes += tx * snapshot.interval

        self.proc_cpu.add(get("proc.cpu_pct"))
        self.proc_rss.add(get("proc.rss"))
        self.proc_fds.add(get("proc.fds"))

    @property
    def duration(self) -> float:
        if self.first_timestamp is None or self.last_timestamp is None:
            return 0.0
        return self.last_timestamp - self.first_timestamp

    @property
    def bottlenecks(self) -> list[str]:
        """Human-readable indicators of what limited the host during the run."""
        found = []
        if (self.cpu_busy.avg or 0.0) > 90.0:
            found.append("CPU-bound: high average CPU utilization (>90%)")
        if (self.cpu_iowait.peak or 0.0) > 50.0:
            found.append("I/O-bound: high CPU iowait observed (>50%)")
        if (self.cgroup_pct.peak or 0.0) > 90.0:
            found.append("Memory-bound: cgroup memory near limit (>90%)")
        if (self.swap_used.peak or 0.0) > 0:
            found.append("Memory pressure: swap usage detected")
        if (self.disk_util.peak or 0.0) > 80.0:
            found.append("Disk I/O-bound: high disk utilization (>80%)")
        return found

    def to_dict(self) -> dict[str, Any]:
        return {
            "samples": self.samples,
            "duration": round(self.duration, 3),
            "cpu": {
                "avg_busy_pct": self.cpu_busy.avg,
                "max_busy_pct": self.cpu_busy.peak,
                "avg_iowait_pct": self.cpu_iowait.avg,
                "max_iowait_pct": self.cpu_iowait.peak,
            },
            "memory": {
                "avg_used_pct": self.mem_used_pct.avg,
                "max_used_pct": self.mem_used_pct.peak,
                "max_used_bytes": self.mem_used.peak,
                "max_cgroup_pct": self.cgroup_pct.peak,
                "max_swap_used": self.swap_used.peak,
            },
            "disk": {
                "max_read_rate": self.disk_read.peak,
                "max_write_rate": self.disk_write.peak,
                "max_util_pct": self.disk_util.peak,
            },
            "network": {
                "rx_bytes": self.net_rx_bytes,
                "tx_bytes": self.net_tx_bytes,
                "max_rx_rate": self.net_rx.peak,
                "max_tx_rate": self.net_tx.peak,
            },
            "process": {
                "max_cpu_pct": self.proc_cpu.peak,
                "max_rss": self.proc_rss.peak,
                "max_fds": self.proc_fds.peak,
            },
            "bottlenecks": self.bottlenecks,
        }

    def report_lines(self) -> list[str]:
        """Plain-text report for the terminal."""
        if not self.samples:
            return ["No samples collected."]

        lines = [
            "=" * 60,
            "Performance Summary",
            "=" * 60,
            f"Duration: {format_duration(self.duration)} ({self.samples} samples)",
            "",
            "CPU:",
            f"  Avg utilization: {format_pct(self.cpu_busy.avg)}%",
            f"  Max utilization: {format_pct(self.cpu_busy.peak)}%",
            f"  Avg iowait: {format_pct(self.cpu_iowait.avg)}%",
            f"  Max iowait: {format_pct(self.cpu_iowait.peak)}%",
            "",
            "Memory:",
            f"  Avg used: {format_pct(self.mem_used_pct.avg)}%",
            f"  Max used: {format_pct(self.mem_used_pct.peak)}% "
            f"({format_bytes(self.mem_used.peak)})",
        ]
        if self.cgroup_pct.peak is not None:
            lines.append(f"  Max cgroup usage: {format_pct(self.cgroup_pct.peak)}%")
        lines.extend(
            [
                f"  Max swap used: {format_bytes(self.swap_used.peak)}",
                "",
                "Disk:",
                f"  Max read throughput: {format_rate(self.disk_read.peak)}",
                f"  Max write throughput: {format_rate(self.disk_write.peak)}",
                f"  Max utilization: {format_pct(self.disk_util.peak)}%",
                "",
                "Network:",
                f"  Total RX: {format_bytes(self.net_rx_bytes)}",
                f"  Total TX: {format_bytes(self.net_tx_bytes)}",
                f"  Max RX throughput: {format_rate(self.net_rx.peak)}",
                f"  Max TX throughput: {format_rate(self.net_tx.peak)}",
            ]
        )
        if self.proc_cpu.peak is not None:
            fds = self.proc_fds.peak
            lines.extend(
                [
                    "",
                    "Process:",
                    f"  Max CPU: {format_pct(self.proc_cpu.peak)}%",
                    f"  Max RSS: {format_bytes(self.proc_rss.peak)}",
                    f"  Max FDs: {NO_DATA if fds is None else int(fds)}",
                ]
            )
        if self.bottlenecks:
            lines.extend(["", "Bottleneck Analysis:"])
            lines.extend(f"  - {b}" for b in self.bottlenecks)
        lines.append("=" * 60)
        return lines
