"""Shared test fixtures for perfwatch.

FakeHost builds a minimal procfs/sysfs tree under tmp_path so readers,
the resolver and the sampler can run without touching the real kernel.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from types import MappingProxyType

import pytest

from perfwatch.config import Config
from perfwatch.readers import Sources
from perfwatch.snapshot import DerivedSnapshot, Flag


class FakeHost:
    """Writable fake /proc and /sys roots."""

    def __init__(self, root: Path) -> None:
        self.proc = root / "proc"
        self.sys = root / "sys"
        self.proc.mkdir(parents=True, exist_ok=True)
        self.sys.mkdir(parents=True, exist_ok=True)

    def write(self, relative: str, text: str, root: Path | None = None) -> Path:
        path = (root or self.proc) / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path

    def remove(self, relative: str, root: Path | None = None) -> None:
        path = (root or self.proc) / relative
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    def sources(self, pid: int | None = None) -> Sources:
        return Sources(proc_root=self.proc, sys_root=self.sys, pid=pid)

    # ── system files ──────────────────────────────────────────────────────

    def set_cpu(
        self,
        user: int = 1000,
        nice: int = 0,
        system: int = 500,
        idle: int = 8000,
        iowait: int = 500,
        irq: int = 0,
        softirq: int = 0,
        steal: int = 0,
        cores: int = 2,
        ctxt: int = 10000,
    ) -> None:
        columns = (user, nice, system, idle, iowait, irq, softirq, steal)
        lines = ["cpu  " + " ".join(str(c) for c in columns) + " 0 0"]
        for n in range(cores):
            per_core = " ".join(str(c // cores) for c in columns)
            lines.append(f"cpu{n} {per_core} 0 0")
        lines += [
            "intr 5000 0 0 0",
            f"ctxt {ctxt}",
            "btime 1700000000",
            "processes 400",
            "procs_running 2",
            "procs_blocked 0",
        ]
        self.write("stat", "\n".join(lines) + "\n")
        self.write("loadavg", "0.50 0.40 0.30 2/300 4242\n")

    def set_meminfo(
        self,
        total_kb: int = 8_000_000,
        free_kb: int = 2_000_000,
        buffers_kb: int = 500_000,
        cached_kb: int = 1_500_000,
        swap_total_kb: int = 1_000_000,
        swap_free_kb: int = 1_000_000,
        dirty_kb: int = 1024,
    ) -> None:
        self.write(
            "meminfo",
            f"MemTotal:       {total_kb} kB\n"
            f"MemFree:        {free_kb} kB\n"
            f"MemAvailable:   {free_kb + cached_kb} kB\n"
            f"Buffers:        {buffers_kb} kB\n"
            f"Cached:         {cached_kb} kB\n"
            "SwapCached:            0 kB\n"
            "Active(file):     400000 kB\n"
            "Inactive(file):   600000 kB\n"
            f"SwapTotal:      {swap_total_kb} kB\n"
            f"SwapFree:       {swap_free_kb} kB\n"
            f"Dirty:          {dirty_kb} kB\n"
            "Writeback:             0 kB\n",
        )
        self.write("vmstat", "nr_free_pages 500000\npgfault 100000\npgmajfault 50\n")

    def set_diskstats(
        self,
        reads: int = 1000,
        read_sectors: int = 20000,
        writes: int = 500,
        write_sectors: int = 10000,
        io_ms: int = 3000,
        in_flight: int = 1,
    ) -> None:
        def line(major: int, minor: int, name: str) -> str:
            return (
                f"   {major}       {minor} {name} {reads} 0 {read_sectors} 400 "
                f"{writes} 0 {write_sectors} 600 {in_flight} {io_ms} 2000"
            )

        self.write(
            "diskstats",
            "\n".join(
                [
                    line(8, 0, "sda"),
                    line(8, 1, "sda1"),
                    line(7, 0, "loop0"),
                    line(259, 0, "nvme0n1"),
                    line(259, 1, "nvme0n1p1"),
                ]
            )
            + "\n",
        )

    def set_netdev(self, rx_bytes: int = 100000, tx_bytes: int = 50000) -> None:
        header = (
            "Inter-|   Receive                                                |  Transmit\n"
            " face |bytes    packets errs drop fifo frame compressed multicast|"
            "bytes    packets errs drop fifo colls carrier compressed\n"
        )
        lo = "    lo: 999 9 0 0 0 0 0 0 999 9 0 0 0 0 0 0\n"
        eth = f"  eth0: {rx_bytes} 100 0 0 0 0 0 0 {tx_bytes} 80 0 0 0 0 0 0\n"
        self.write("net/dev", header + lo + eth)
        self.write(
            "net/tcp",
            "  sl  local_address rem_address   st\n"
            "   0: 0100007F:0277 00000000:0000 0A\n"
            "   1: 0100007F:9C40 0100007F:0277 01\n",
        )
        self.write(
            "net/snmp",
            "Tcp: RtoAlgorithm RtoMin RetransSegs\nTcp: 1 200 7\n",
        )

    def set_pressure(self, avg10: float = 1.5, total: int = 1000) -> None:
        for resource in ("cpu", "memory", "io"):
            self.write(
                f"pressure/{resource}",
                f"some avg10={avg10:.2f} avg60=0.50 avg300=0.10 total={total}\n"
                f"full avg10=0.00 avg60=0.00 avg300=0.00 total={total // 2}\n",
            )

    def set_cgroup_v2(self, current: int = 500_000_000, limit: str = "1000000000") -> None:
        self.write("fs/cgroup/memory.current", f"{current}\n", root=self.sys)
        self.write("fs/cgroup/memory.max", f"{limit}\n", root=self.sys)
        self.write("fs/cgroup/memory.high", "max\n", root=self.sys)
        self.write(
            "fs/cgroup/cpu.stat",
            "usage_usec 1000000\nuser_usec 600000\nsystem_usec 400000\n"
            "nr_periods 0\nnr_throttled 0\nthrottled_usec 0\n",
            root=self.sys,
        )
        self.write("fs/cgroup/memory.events", "low 0\nhigh 0\nmax 0\noom 0\noom_kill 0\n", root=self.sys)

    # ── processes ─────────────────────────────────────────────────────────

    def add_process(
        self,
        pid: int,
        cmdline: str = "python worker.py",
        comm: str = "python",
        start_time: int = 1000,
        utime: int = 100,
        stime: int = 50,
        threads: int = 4,
        rss_pages: int = 2560,
        read_bytes: int = 4096,
        write_bytes: int = 8192,
        fds: int = 3,
    ) -> None:
        rest = [
            "S", "1", str(pid), str(pid), "0", "-1", "4194304",
            "100", "0", "0", "0",
            str(utime), str(stime), "0", "0", "20", "0", str(threads), "0",
            str(start_time), "104857600", str(rss_pages),
            "18446744073709551615", "0", "0", "0",
        ]  # fmt: skip
        self.write(f"{pid}/stat", f"{pid} ({comm}) " + " ".join(rest) + "\n")
        self.write(f"{pid}/cmdline", cmdline.replace(" ", "\x00") + "\x00")
        self.write(f"{pid}/comm", comm + "\n")
        self.write(
            f"{pid}/status",
            f"Name:\t{comm}\nState:\tS (sleeping)\nRssAnon:\t    8192 kB\n"
            "RssFile:\t    2048 kB\nVmSwap:\t       0 kB\n",
        )
        self.write(
            f"{pid}/io",
            f"rchar: 1\nwchar: 1\nread_bytes: {read_bytes}\nwrite_bytes: {write_bytes}\n",
        )
        fd_dir = self.proc / str(pid) / "fd"
        fd_dir.mkdir(parents=True, exist_ok=True)
        for n in range(fds):
            (fd_dir / str(n)).write_text("")

    def remove_process(self, pid: int) -> None:
        self.remove(str(pid))

    def populate(self) -> FakeHost:
        """Fill in every system domain with plausible values."""
        self.set_cpu()
        self.set_meminfo()
        self.set_diskstats()
        self.set_netdev()
        self.set_pressure()
        self.set_cgroup_v2()
        return self


@pytest.fixture
def fake_host(tmp_path: Path) -> FakeHost:
    """A fully populated fake host."""
    return FakeHost(tmp_path / "host").populate()


@pytest.fixture
def empty_host(tmp_path: Path) -> FakeHost:
    """A fake host with no kernel files at all."""
    return FakeHost(tmp_path / "host")


def make_config(host: FakeHost, tmp_path: Path, **logging_overrides) -> Config:
    """Config pointed at a fake host with fast sampling."""
    config = Config()
    config.system.proc_root = str(host.proc)
    config.system.sys_root = str(host.sys)
    config.system.sample_interval = 0.01
    config.system.read_timeout = 2.0
    config.control.socket_path = str(tmp_path / "control.sock")
    for name, value in logging_overrides.items():
        setattr(config.logging, name, value)
    return config


def make_derived(
    values: dict[str, float],
    timestamp: float = 1_700_000_000.0,
    flags: dict[str, Flag] | None = None,
    interval: float = 1.0,
) -> DerivedSnapshot:
    """DerivedSnapshot with the given values, for consumer tests."""
    return DerivedSnapshot(
        timestamp=timestamp,
        values=MappingProxyType(dict(values)),
        flags=MappingProxyType(dict(flags or {})),
        interval=interval,
    )
