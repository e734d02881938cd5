"""Tests for rate derivation."""

from unittest.mock import patch

import pytest

from perfwatch.rates import derive
from perfwatch.snapshot import UNAVAILABLE, Domain, DomainReading, Flag, RawSnapshot


def raw(monotonic: float, *readings: DomainReading, timestamp: float | None = None) -> RawSnapshot:
    """RawSnapshot from readings, wall clock following monotonic by default."""
    return RawSnapshot(
        timestamp=1_700_000_000.0 + monotonic if timestamp is None else timestamp,
        monotonic=monotonic,
        domains={r.domain: r for r in readings},
    )


def cpu(**jiffies: int) -> DomainReading:
    columns = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")
    return DomainReading(
        Domain.CPU,
        gauges={"cpu.cores": 1},
        counters={f"cpu.{c}": jiffies.get(c, 0) for c in columns},
    )


class TestCounters:
    """Tests for counter to rate conversion."""

    def test_rate_over_measured_interval(self) -> None:
        """Delta divided by the monotonic interval."""
        prev = raw(10.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 1000}))
        curr = raw(12.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 3000}))

        derived = derive(prev, curr)

        assert derived.get("net.total.rx_bytes") == pytest.approx(1000.0)
        assert derived.interval == pytest.approx(2.0)
        assert "net.total.rx_bytes" in derived.rate_keys

    def test_counter_reset_is_discontinuity(self) -> None:
        """A counter going backwards yields 0 flagged DISCONTINUITY."""
        prev = raw(0.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 1000}))
        curr = raw(1.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 5}))

        derived = derive(prev, curr)

        assert derived.values["net.total.rx_bytes"] == 0
        assert derived.flag("net.total.rx_bytes") is Flag.DISCONTINUITY
        assert derived.get("net.total.rx_bytes") is None

    def test_first_tick_has_no_rates(self) -> None:
        """Without a previous snapshot counters are UNAVAILABLE but gauges present."""
        reading = DomainReading(
            Domain.MEMORY,
            gauges={"mem.total": 1000, "mem.free": 250, "mem.buffers": 0, "mem.cached": 250},
            counters={"mem.pgfault": 10},
        )

        derived = derive(None, raw(0.0, reading))

        assert derived.flag("mem.pgfault") is Flag.UNAVAILABLE
        assert derived.get("mem.pgfault") is None
        assert derived.get("mem.total") == 1000
        assert derived.get("mem.used_pct") == pytest.approx(50.0)

    def test_zero_interval_is_warmup(self) -> None:
        """dt <= 0 never produces a rate."""
        prev = raw(5.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 1}))
        curr = raw(5.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 9}))

        derived = derive(prev, curr)

        assert derived.get("net.total.rx_bytes") is None
        assert derived.interval == 0.0

    def test_identity_change_resets_rates(self) -> None:
        """A different process behind the same pid starts a new baseline."""
        prev = raw(
            0.0,
            DomainReading(Domain.PROCESS, counters={"proc.read_bytes": 10}, identity="42:100"),
        )
        curr = raw(
            1.0,
            DomainReading(Domain.PROCESS, counters={"proc.read_bytes": 5000}, identity="42:999"),
        )

        derived = derive(prev, curr)

        assert derived.flag("proc.read_bytes") is Flag.UNAVAILABLE

    def test_unavailable_previous_domain_is_warmup(self) -> None:
        """A domain returning after an outage warms up again."""
        prev = raw(0.0, DomainReading.unavailable(Domain.NETWORK))
        curr = raw(1.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 50}))

        assert derive(prev, curr).get("net.total.rx_bytes") is None

    def test_unavailable_value_propagates(self) -> None:
        """An UNAVAILABLE raw counter stays UNAVAILABLE."""
        prev = raw(0.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": 1}))
        curr = raw(1.0, DomainReading(Domain.NETWORK, counters={"net.total.rx_bytes": UNAVAILABLE}))

        assert derive(prev, curr).flag("net.total.rx_bytes") is Flag.UNAVAILABLE

    def test_unavailable_domain_listed(self) -> None:
        """Unavailable domains are reported, not silently dropped."""
        curr = raw(
            1.0,
            DomainReading.unavailable(Domain.PRESSURE, "no PSI"),
            DomainReading(Domain.MEMORY, gauges={"mem.total": 1}),
        )

        derived = derive(None, curr)

        assert derived.unavailable_domains == frozenset({Domain.PRESSURE})
        assert derived.get("mem.total") == 1


class TestComposites:
    """Tests for per-domain derived values."""

    def test_cpu_percentages(self) -> None:
        """Jiffy deltas become shares of the interval; raw jiffies are dropped."""
        prev = raw(0.0, cpu())
        curr = raw(
            1.0, cpu(user=20, nice=5, system=10, idle=50, iowait=10, irq=3, softirq=2)
        )

        derived = derive(prev, curr)

        assert derived.get("cpu.user_pct") == pytest.approx(25.0)
        assert derived.get("cpu.system_pct") == pytest.approx(15.0)
        assert derived.get("cpu.iowait_pct") == pytest.approx(10.0)
        assert derived.get("cpu.idle_pct") == pytest.approx(50.0)
        assert derived.get("cpu.busy_pct") == pytest.approx(40.0)
        assert "cpu.user" not in derived.values

    def test_cpu_percent_unavailable_when_no_time_passed(self) -> None:
        """Identical jiffies give no percentage rather than a division by zero."""
        derived = derive(raw(0.0, cpu(idle=5)), raw(1.0, cpu(idle=5)))

        assert derived.get("cpu.busy_pct") is None

    def test_cpu_reset_propagates_discontinuity(self) -> None:
        """A jiffy counter going backwards flags the percentages."""
        derived = derive(raw(0.0, cpu(idle=500)), raw(1.0, cpu(idle=10)))

        assert derived.flag("cpu.busy_pct") is Flag.DISCONTINUITY

    def test_disk_utilization_and_latency(self) -> None:
        """io_time rate gives util; time per op gives latency."""

        def disk(io_ms: int, reads: int, read_ms: int, weighted: int) -> DomainReading:
            return DomainReading(
                Domain.DISK,
                counters={
                    "disk.sda.io_time_ms": io_ms,
                    "disk.sda.reads": reads,
                    "disk.sda.read_time_ms": read_ms,
                    "disk.sda.writes": 0,
                    "disk.sda.write_time_ms": 0,
                    "disk.sda.weighted_io_ms": weighted,
                },
            )

        derived = derive(raw(0.0, disk(0, 0, 0, 0)), raw(1.0, disk(500, 10, 50, 2000)))

        assert derived.get("disk.sda.util_pct") == pytest.approx(50.0)
        assert derived.get("disk.sda.read_latency_ms") == pytest.approx(5.0)
        assert derived.get("disk.sda.write_latency_ms") == 0.0
        assert derived.get("disk.sda.queue_depth") == pytest.approx(2.0)

    def test_disk_utilization_capped(self) -> None:
        """Utilization never exceeds 100%."""
        prev = raw(0.0, DomainReading(Domain.DISK, counters={"disk.sda.io_time_ms": 0}))
        curr = raw(1.0, DomainReading(Domain.DISK, counters={"disk.sda.io_time_ms": 1500}))

        assert derive(prev, curr).get("disk.sda.util_pct") == 100.0

    def test_memory_composites(self) -> None:
        """Used memory excludes buffers and cache."""
        reading = DomainReading(
            Domain.MEMORY,
            gauges={
                "mem.total": 1000,
                "mem.free": 100,
                "mem.buffers": 100,
                "mem.cached": 200,
                "mem.swap_total": 400,
                "mem.swap_free": 300,
            },
        )

        derived = derive(None, raw(0.0, reading))

        assert derived.get("mem.used") == 600
        assert derived.get("mem.used_pct") == pytest.approx(60.0)
        assert derived.get("mem.swap_used") == 100
        assert derived.get("mem.swap_pct") == pytest.approx(25.0)

    def test_cgroup_usage_without_limit(self) -> None:
        """No limit means no usage percentage."""
        reading = DomainReading(
            Domain.CGROUP,
            gauges={"cgroup.memory_current": 100, "cgroup.memory_max": UNAVAILABLE},
        )

        assert derive(None, raw(0.0, reading)).get("cgroup.memory_usage_pct") is None

    def test_pressure_stall_pct(self) -> None:
        """Stall microseconds per second become a percentage."""
        prev = raw(0.0, DomainReading(Domain.PRESSURE, counters={"psi.io.some.total": 0}))
        curr = raw(1.0, DomainReading(Domain.PRESSURE, counters={"psi.io.some.total": 250_000}))

        assert derive(prev, curr).get("psi.io.some.stall_pct") == pytest.approx(25.0)

    def test_process_cpu_pct(self) -> None:
        """Process ticks per second over USER_HZ."""

        def proc(utime: int, stime: int) -> DomainReading:
            return DomainReading(
                Domain.PROCESS,
                counters={"proc.utime": utime, "proc.stime": stime},
                identity="42:1",
            )

        with patch("perfwatch.rates.clock_ticks", return_value=100):
            derived = derive(raw(0.0, proc(100, 50)), raw(2.0, proc(160, 90)))

        assert derived.get("proc.cpu_pct") == pytest.approx(50.0)

    def test_derived_snapshot_is_read_only(self) -> None:
        """Consumers cannot mutate derived values."""
        derived = derive(None, raw(0.0, DomainReading(Domain.MEMORY, gauges={"mem.total": 1})))

        with pytest.raises(TypeError):
            derived.values["mem.total"] = 2  # type: ignore[index]
