"""Raw readers for kernel text interfaces.

One reader per Domain, each turning procfs/sysfs pseudo-files into a
DomainReading. Readers never raise for missing or malformed data:

- primary source missing: the whole domain is marked unavailable
- secondary source missing: only its keys are UNAVAILABLE
- malformed field: only that key is UNAVAILABLE, logged once per run

All paths are relative to a configurable proc root and sys root so tests
can point the readers at a fake tree.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from perfwatch.boottime import page_size
from perfwatch.errors import SourceUnavailable
from perfwatch.snapshot import UNAVAILABLE, Domain, DomainReading, Value, is_number

log = structlog.get_logger()

SECTOR_SIZE = 512

# /proc/stat cpu line columns, in kernel order
CPU_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")

# /proc/meminfo names -> gauge keys (values are kB)
MEMINFO_KEYS = {
    "MemTotal": "mem.total",
    "MemFree": "mem.free",
    "MemAvailable": "mem.available",
    "Buffers": "mem.buffers",
    "Cached": "mem.cached",
    "Dirty": "mem.dirty",
    "Writeback": "mem.writeback",
    "Active(file)": "mem.active_file",
    "Inactive(file)": "mem.inactive_file",
    "SwapTotal": "mem.swap_total",
    "SwapFree": "mem.swap_free",
}

VMSTAT_KEYS = {"pgfault": "mem.pgfault", "pgmajfault": "mem.pgmajfault"}

# /proc/diskstats columns 3..13 (0-based) -> (suffix, kind, scale)
DISKSTAT_FIELDS = {
    3: ("reads", "counter", 1),
    5: ("read_bytes", "counter", SECTOR_SIZE),
    6: ("read_time_ms", "counter", 1),
    7: ("writes", "counter", 1),
    9: ("write_bytes", "counter", SECTOR_SIZE),
    10: ("write_time_ms", "counter", 1),
    11: ("in_flight", "gauge", 1),
    12: ("io_time_ms", "counter", 1),
    13: ("weighted_io_ms", "counter", 1),
}
DISK_TOTAL_COUNTERS = ("reads", "writes", "read_bytes", "write_bytes")

# /proc/net/dev value columns (after "iface:") -> suffix
NETDEV_FIELDS = {
    0: "rx_bytes",
    1: "rx_packets",
    2: "rx_errors",
    3: "rx_drops",
    8: "tx_bytes",
    9: "tx_packets",
    10: "tx_errors",
    11: "tx_drops",
}

PSI_RESOURCES = ("cpu", "memory", "io")
PSI_GAUGES = ("avg10", "avg60", "avg300")

TCP_ESTABLISHED = "01"

# cgroup v1 reports "no limit" as a huge number near 2**63
CGROUP_V1_UNLIMITED = 10**18

_NVME_LIKE = re.compile(r"^(nvme\d+n\d+|mmcblk\d+)(p\d+)?$")


@dataclass
class Sources:
    """Where readers look, plus per-run parse failure bookkeeping."""

    proc_root: Path = Path("/proc")
    sys_root: Path = Path("/sys")
    pid: int | None = None
    max_bytes: int = 1024 * 1024
    _reported: set[tuple[str, str]] = field(default_factory=set, repr=False)

    def proc(self, *parts: str) -> Path:
        return self.proc_root.joinpath(*parts)

    def sys(self, *parts: str) -> Path:
        return self.sys_root.joinpath(*parts)

    def for_pid(self, pid: int | None) -> Sources:
        """Same roots and failure memory, different tracked pid."""
        clone = Sources(self.proc_root, self.sys_root, pid, self.max_bytes)
        clone._reported = self._reported
        return clone

    def parse_failed(self, source: str, key: str, raw: object) -> None:
        """Log a malformed field, once per (source, key) for the run."""
        marker = (source, key)
        if marker in self._reported:
            return
        self._reported.add(marker)
        log.warning("parse_failed", source=source, key=key, raw=repr(raw)[:80])


def read_text(path: Path, max_bytes: int) -> str:
    """Read at most max_bytes of a pseudo-file.

    Raises:
        SourceUnavailable: If the file cannot be opened or read.
    """
    try:
        with open(path, "rb") as f:
            data = f.read(max_bytes)
    except OSError as e:
        raise SourceUnavailable(str(path), e.strerror or type(e).__name__) from e
    return data.decode("utf-8", errors="replace")


def _read_optional(path: Path, sources: Sources) -> str | None:
    try:
        return read_text(path, sources.max_bytes)
    except SourceUnavailable:
        return None


def _number(raw: object) -> int | float:
    """Parse an int, falling back to float. Raises ValueError/TypeError."""
    if isinstance(raw, (int, float)):
        return raw
    text = str(raw).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _field(parts: list[str], index: int) -> str | None:
    return parts[index] if index < len(parts) else None


class _ReadingBuilder:
    """Accumulates one domain's values, flagging bad fields individually."""

    def __init__(self, domain: Domain, sources: Sources) -> None:
        self.domain = domain
        self.sources = sources
        self.gauges: dict[str, Value] = {}
        self.counters: dict[str, Value] = {}
        self.info: dict[str, str] = {}
        self.identity: str | None = None

    def _parse(self, source: str, key: str, raw: object, scale: int) -> Value:
        if raw is None:
            self.sources.parse_failed(source, key, "<missing>")
            return UNAVAILABLE
        try:
            value = _number(raw)
        except (TypeError, ValueError):
            self.sources.parse_failed(source, key, raw)
            return UNAVAILABLE
        if value < 0:
            self.sources.parse_failed(source, key, raw)
            return UNAVAILABLE
        return value * scale

    def gauge(self, source: str, key: str, raw: object, scale: int = 1) -> None:
        self.gauges[key] = self._parse(source, key, raw, scale)

    def counter(self, source: str, key: str, raw: object, scale: int = 1) -> None:
        self.counters[key] = self._parse(source, key, raw, scale)

    def missing(self, keys: Iterable[str], *, counters: bool = False) -> None:
        """Mark keys whose secondary source is absent."""
        target = self.counters if counters else self.gauges
        for key in keys:
            target[key] = UNAVAILABLE

    def build(self) -> DomainReading:
        return DomainReading(
            domain=self.domain,
            gauges=dict(self.gauges),
            counters=dict(self.counters),
            info=dict(self.info),
            identity=self.identity,
        )


def _sum_or_unavailable(values: Iterable[Value]) -> Value:
    total: int | float = 0
    for value in values:
        if not is_number(value):
            return UNAVAILABLE
        total += value  # type: ignore[operator]
    return total


# ─────────────────────────────────────────────────────────────────────────────
# CPU
# ─────────────────────────────────────────────────────────────────────────────


def read_cpu(sources: Sources) -> DomainReading:
    """Aggregate and per-core jiffies, context switches, load average."""
    b = _ReadingBuilder(Domain.CPU, sources)
    text = read_text(sources.proc("stat"), sources.max_bytes)

    cores = 0
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        name = parts[0]
        if name == "cpu":
            prefix = "cpu"
        elif name.startswith("cpu") and name[3:].isdigit():
            prefix = f"cpu.core{name[3:]}"
            cores += 1
        elif name == "ctxt":
            b.counter("stat", "cpu.ctxt", _field(parts, 1))
            continue
        elif name == "intr":
            b.counter("stat", "cpu.intr", _field(parts, 1))
            continue
        elif name == "processes":
            b.counter("stat", "cpu.forks", _field(parts, 1))
            continue
        elif name in ("procs_running", "procs_blocked"):
            b.gauge("stat", f"cpu.{name}", _field(parts, 1))
            continue
        else:
            continue

        for offset, column in enumerate(CPU_FIELDS, start=1):
            b.counter("stat", f"{prefix}.{column}", _field(parts, offset))

    b.gauges["cpu.cores"] = cores

    loadavg = _read_optional(sources.proc("loadavg"), sources)
    if loadavg is None:
        b.missing(["cpu.load1", "cpu.load5", "cpu.load15"])
    else:
        parts = loadavg.split()
        b.gauge("loadavg", "cpu.load1", _field(parts, 0))
        b.gauge("loadavg", "cpu.load5", _field(parts, 1))
        b.gauge("loadavg", "cpu.load15", _field(parts, 2))

    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────────────────────


def _key_value_lines(text: str, sep: str | None = None) -> dict[str, str]:
    """Parse "Name: value [unit]" or "name value" lines into name -> value."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        if sep is not None:
            name, found, rest = line.partition(sep)
            if not found:
                continue
            parts = rest.split()
        else:
            parts = line.split()
            if not parts:
                continue
            name, parts = parts[0], parts[1:]
        if parts:
            result[name.strip()] = parts[0]
    return result


def read_memory(sources: Sources) -> DomainReading:
    """meminfo gauges in bytes plus page fault counters."""
    b = _ReadingBuilder(Domain.MEMORY, sources)
    raw = _key_value_lines(read_text(sources.proc("meminfo"), sources.max_bytes), sep=":")
    for name, key in MEMINFO_KEYS.items():
        b.gauge("meminfo", key, raw.get(name), scale=1024)

    vmstat = _read_optional(sources.proc("vmstat"), sources)
    if vmstat is None:
        b.missing(VMSTAT_KEYS.values(), counters=True)
    else:
        values = _key_value_lines(vmstat)
        for name, key in VMSTAT_KEYS.items():
            b.counter("vmstat", key, values.get(name))

    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Disk
# ─────────────────────────────────────────────────────────────────────────────


def is_whole_disk(name: str) -> bool:
    """True for physical whole devices; False for partitions and virtual devices."""
    if name.startswith(("loop", "ram", "dm-", "zram")):
        return False
    match = _NVME_LIKE.match(name)
    if match:
        return match.group(2) is None
    return not name[-1:].isdigit()


def read_disk(sources: Sources) -> DomainReading:
    """Per-device diskstats counters plus disk.total aggregates."""
    b = _ReadingBuilder(Domain.DISK, sources)
    text = read_text(sources.proc("diskstats"), sources.max_bytes)

    devices: list[str] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 14:
            continue
        name = parts[2]
        if not is_whole_disk(name):
            continue
        devices.append(name)
        for index, (suffix, kind, scale) in DISKSTAT_FIELDS.items():
            key = f"disk.{name}.{suffix}"
            if kind == "counter":
                b.counter("diskstats", key, parts[index], scale=scale)
            else:
                b.gauge("diskstats", key, parts[index], scale=scale)

    for suffix in DISK_TOTAL_COUNTERS:
        b.counters[f"disk.total.{suffix}"] = _sum_or_unavailable(
            b.counters[f"disk.{d}.{suffix}"] for d in devices
        )
    b.gauges["disk.total.in_flight"] = _sum_or_unavailable(
        b.gauges[f"disk.{d}.in_flight"] for d in devices
    )
    b.gauges["disk.devices"] = len(devices)
    b.info["disk.devices"] = ",".join(devices)
    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Network
# ─────────────────────────────────────────────────────────────────────────────


def _count_established(text: str) -> int:
    count = 0
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) > 3 and parts[3] == TCP_ESTABLISHED:
            count += 1
    return count


def _snmp_value(text: str, section: str, name: str) -> str | None:
    """Look up a value in /proc/net/snmp's header/value line pairs."""
    lines = [line.split() for line in text.splitlines()]
    prefix = f"{section}:"
    for header, values in zip(lines, lines[1:]):
        if header and values and header[0] == prefix and values[0] == prefix:
            if name in header:
                index = header.index(name)
                return values[index] if index < len(values) else None
    return None


def read_network(sources: Sources) -> DomainReading:
    """Per-interface counters (loopback excluded), TCP connection stats."""
    b = _ReadingBuilder(Domain.NETWORK, sources)
    text = read_text(sources.proc("net", "dev"), sources.max_bytes)

    interfaces: list[str] = []
    for line in text.splitlines()[2:]:
        name, found, rest = line.partition(":")
        if not found:
            continue
        name = name.strip()
        values = rest.split()
        if name == "lo" or len(values) < 16:
            continue
        interfaces.append(name)
        for index, suffix in NETDEV_FIELDS.items():
            b.counter("net/dev", f"net.{name}.{suffix}", values[index])

    for suffix in NETDEV_FIELDS.values():
        b.counters[f"net.total.{suffix}"] = _sum_or_unavailable(
            b.counters[f"net.{i}.{suffix}"] for i in interfaces
        )
    b.gauges["net.interfaces"] = len(interfaces)

    tcp_texts = [
        t
        for t in (
            _read_optional(sources.proc("net", "tcp"), sources),
            _read_optional(sources.proc("net", "tcp6"), sources),
        )
        if t is not None
    ]
    if tcp_texts:
        b.gauges["net.tcp_established"] = sum(_count_established(t) for t in tcp_texts)
    else:
        b.missing(["net.tcp_established"])

    snmp = _read_optional(sources.proc("net", "snmp"), sources)
    if snmp is None:
        b.missing(["net.tcp_retrans"], counters=True)
    else:
        b.counter("net/snmp", "net.tcp_retrans", _snmp_value(snmp, "Tcp", "RetransSegs"))

    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Pressure (PSI)
# ─────────────────────────────────────────────────────────────────────────────


def _psi_keys(resource: str, kind: str) -> tuple[list[str], str]:
    prefix = f"psi.{resource}.{kind}"
    return [f"{prefix}.{g}" for g in PSI_GAUGES], f"{prefix}.total"


def read_pressure(sources: Sources) -> DomainReading:
    """some/full stall averages and totals per resource.

    The domain is unavailable only when no pressure file exists at all
    (kernel built without PSI); a single missing resource marks its keys.
    """
    b = _ReadingBuilder(Domain.PRESSURE, sources)
    found = 0
    for resource in PSI_RESOURCES:
        source = f"pressure/{resource}"
        text = _read_optional(sources.proc("pressure", resource), sources)
        if text is None:
            gauges, total = _psi_keys(resource, "some")
            b.missing(gauges)
            b.missing([total], counters=True)
            continue
        found += 1
        for line in text.splitlines():
            parts = line.split()
            if not parts or parts[0] not in ("some", "full"):
                continue
            pairs = dict(p.split("=", 1) for p in parts[1:] if "=" in p)
            gauges, total = _psi_keys(resource, parts[0])
            for name, key in zip(PSI_GAUGES, gauges):
                b.gauge(source, key, pairs.get(name))
            b.counter(source, total, pairs.get("total"))

    if not found:
        raise SourceUnavailable(str(sources.proc("pressure")), "no PSI support")
    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Cgroup
# ─────────────────────────────────────────────────────────────────────────────


def _limit(b: _ReadingBuilder, source: str, key: str, text: str | None, unlimited: int) -> None:
    """Record a memory limit; "max" or absurdly large values mean no limit."""
    if text is None:
        b.missing([key])
        return
    raw = text.strip()
    if raw == "max":
        b.gauges[key] = UNAVAILABLE
        return
    b.gauge(source, key, raw)
    if is_number(b.gauges[key]) and b.gauges[key] > unlimited:  # type: ignore[operator]
        b.gauges[key] = UNAVAILABLE


def read_cgroup(sources: Sources) -> DomainReading:
    """Container memory usage and limit, v2 with v1 fallback."""
    b = _ReadingBuilder(Domain.CGROUP, sources)
    v2 = sources.sys("fs", "cgroup")
    current = _read_optional(v2 / "memory.current", sources)

    if current is not None:
        b.identity = "v2"
        b.info["cgroup.version"] = "v2"
        b.gauge("memory.current", "cgroup.memory_current", current.strip())
        max_text = _read_optional(v2 / "memory.max", sources)
        high_text = _read_optional(v2 / "memory.high", sources)
        _limit(b, "memory.max", "cgroup.memory_max", max_text, CGROUP_V1_UNLIMITED)
        _limit(b, "memory.high", "cgroup.memory_high", high_text, CGROUP_V1_UNLIMITED)

        cpu_stat = _read_optional(v2 / "cpu.stat", sources)
        cpu_keys = {
            "usage_usec": "cgroup.cpu_usage_usec",
            "nr_throttled": "cgroup.nr_throttled",
            "throttled_usec": "cgroup.throttled_usec",
        }
        if cpu_stat is None:
            b.missing(cpu_keys.values(), counters=True)
        else:
            values = _key_value_lines(cpu_stat)
            for name, key in cpu_keys.items():
                b.counter("cpu.stat", key, values.get(name))

        events = _read_optional(v2 / "memory.events", sources)
        if events is None:
            b.missing(["cgroup.oom_kill"], counters=True)
        else:
            b.counter("memory.events", "cgroup.oom_kill", _key_value_lines(events).get("oom_kill"))
        return b.build()

    v1 = v2 / "memory"
    usage = _read_optional(v1 / "memory.usage_in_bytes", sources)
    if usage is None:
        raise SourceUnavailable(str(v2), "no cgroup memory controller")

    b.identity = "v1"
    b.info["cgroup.version"] = "v1"
    b.gauge("memory.usage_in_bytes", "cgroup.memory_current", usage.strip())
    limit_text = _read_optional(v1 / "memory.limit_in_bytes", sources)
    _limit(b, "memory.limit_in_bytes", "cgroup.memory_max", limit_text, CGROUP_V1_UNLIMITED)
    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Process
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PidStat:
    """Fields of /proc/<pid>/stat used by the readers and the resolver."""

    pid: int
    comm: str
    state: str
    utime: str | None
    stime: str | None
    num_threads: str | None
    start_time: int
    vsize: str | None
    rss_pages: str | None


def parse_pid_stat(pid: int, text: str) -> PidStat:
    """Parse /proc/<pid>/stat. The comm field may contain spaces and parens.

    Raises:
        ValueError: If the line has no comm field or start time.
    """
    open_paren = text.find("(")
    close_paren = text.rfind(")")
    if open_paren < 0 or close_paren < open_paren:
        raise ValueError(f"malformed stat for pid {pid}")
    comm = text[open_paren + 1 : close_paren]
    rest = text[close_paren + 1 :].split()
    # rest[0] is field 3 (state); field N lives at rest[N - 3]
    if len(rest) < 20:
        raise ValueError(f"short stat for pid {pid}")
    return PidStat(
        pid=pid,
        comm=comm,
        state=rest[0],
        utime=_field(rest, 11),
        stime=_field(rest, 12),
        num_threads=_field(rest, 17),
        start_time=int(rest[19]),
        vsize=_field(rest, 20),
        rss_pages=_field(rest, 21),
    )


def read_pid_stat(proc_root: Path, pid: int, max_bytes: int = 64 * 1024) -> PidStat:
    """Read and parse /proc/<pid>/stat.

    Raises:
        SourceUnavailable: If the process is gone or unreadable.
        ValueError: If the stat line is malformed.
    """
    return parse_pid_stat(pid, read_text(proc_root / str(pid) / "stat", max_bytes))


def read_cmdline(proc_root: Path, pid: int, max_bytes: int = 64 * 1024) -> str:
    """Full command line with NULs as spaces; "[comm]" for kernel threads.

    Raises:
        SourceUnavailable: If the process is gone or unreadable.
    """
    raw = read_text(proc_root / str(pid) / "cmdline", max_bytes)
    cmdline = raw.replace("\x00", " ").strip()
    if cmdline:
        return cmdline
    comm = read_text(proc_root / str(pid) / "comm", max_bytes).strip()
    return f"[{comm}]" if comm else ""


def read_process(sources: Sources) -> DomainReading:
    """CPU ticks, memory, I/O and descriptors of the tracked process."""
    if sources.pid is None:
        raise SourceUnavailable(str(sources.proc_root), "no tracked process")

    pid = sources.pid
    b = _ReadingBuilder(Domain.PROCESS, sources)
    base = sources.proc(str(pid))
    try:
        stat = read_pid_stat(sources.proc_root, pid, sources.max_bytes)
    except ValueError as e:
        raise SourceUnavailable(str(base / "stat"), str(e)) from e

    b.identity = f"{pid}:{stat.start_time}"
    b.info["proc.state"] = stat.state
    b.info["proc.comm"] = stat.comm
    b.counter("stat", "proc.utime", stat.utime)
    b.counter("stat", "proc.stime", stat.stime)
    b.gauge("stat", "proc.threads", stat.num_threads)
    b.gauge("stat", "proc.vsize", stat.vsize)
    b.gauge("stat", "proc.rss", stat.rss_pages, scale=page_size())
    b.gauges["proc.pid"] = pid

    status = _read_optional(base / "status", sources)
    status_keys = {"RssAnon": "proc.rss_anon", "RssFile": "proc.rss_file", "VmSwap": "proc.swap"}
    if status is None:
        b.missing(status_keys.values())
    else:
        values = _key_value_lines(status, sep=":")
        for name, key in status_keys.items():
            # kernel threads have no Rss* lines
            if name in values:
                b.gauge("status", key, values[name], scale=1024)
            else:
                b.gauges[key] = UNAVAILABLE

    # /proc/<pid>/io is often permission-denied for other users' processes
    io_text = _read_optional(base / "io", sources)
    io_keys = {"read_bytes": "proc.read_bytes", "write_bytes": "proc.write_bytes"}
    if io_text is None:
        b.missing(io_keys.values(), counters=True)
    else:
        values = _key_value_lines(io_text, sep=":")
        for name, key in io_keys.items():
            b.counter("io", key, values.get(name))

    try:
        b.gauges["proc.fds"] = len(os.listdir(base / "fd"))
    except OSError:
        b.gauges["proc.fds"] = UNAVAILABLE

    try:
        b.info["proc.command"] = read_cmdline(sources.proc_root, pid, sources.max_bytes)
    except SourceUnavailable:
        b.info["proc.command"] = stat.comm

    return b.build()


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch
# ─────────────────────────────────────────────────────────────────────────────

READERS: dict[Domain, Callable[[Sources], DomainReading]] = {
    Domain.CPU: read_cpu,
    Domain.MEMORY: read_memory,
    Domain.DISK: read_disk,
    Domain.NETWORK: read_network,
    Domain.PRESSURE: read_pressure,
    Domain.CGROUP: read_cgroup,
    Domain.PROCESS: read_process,
}


def read_domain(domain: Domain, sources: Sources) -> DomainReading:
    """Read one domain. Never raises for missing or malformed kernel data."""
    try:
        return READERS[domain](sources)
    except SourceUnavailable as e:
        log.debug("domain_unavailable", domain=domain.value, path=e.path, reason=e.reason)
        return DomainReading.unavailable(domain, reason=str(e))
