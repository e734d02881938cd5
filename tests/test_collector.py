"""Tests for the snapshot collector."""

import time
from unittest.mock import patch

import pytest

from perfwatch.collector import SnapshotCollector
from perfwatch.readers import read_domain
from perfwatch.snapshot import Domain

PID = 5_000_000


@pytest.mark.asyncio
async def test_collect_all_domains(fake_host):
    """Every domain has a reading, even without a tracked process."""
    collector = SnapshotCollector(fake_host.sources(), read_timeout=2.0)

    raw = await collector.collect()

    assert set(raw.domains) == set(Domain)
    assert raw.domains[Domain.CPU].available
    assert raw.domains[Domain.MEMORY].available
    assert not raw.domains[Domain.PROCESS].available


@pytest.mark.asyncio
async def test_collect_tracked_process(fake_host):
    """A pid selects the process domain source."""
    fake_host.add_process(PID)
    collector = SnapshotCollector(fake_host.sources(), read_timeout=2.0)

    raw = await collector.collect(pid=PID)

    reading = raw.domains[Domain.PROCESS]
    assert reading.available
    assert reading.gauges["proc.pid"] == PID


@pytest.mark.asyncio
async def test_timestamps_increase(fake_host):
    """Monotonic time moves forward between snapshots."""
    collector = SnapshotCollector(fake_host.sources(), read_timeout=2.0)

    first = await collector.collect()
    second = await collector.collect()

    assert second.monotonic > first.monotonic
    assert second.timestamp >= first.timestamp


@pytest.mark.asyncio
async def test_slow_domain_marked_unavailable(fake_host):
    """A reader that overruns read_timeout does not hold up the others."""

    def slow_cpu(domain, sources):
        if domain is Domain.CPU:
            time.sleep(0.5)
        return read_domain(domain, sources)

    collector = SnapshotCollector(fake_host.sources(), read_timeout=0.05)
    with patch("perfwatch.collector.read_domain", side_effect=slow_cpu):
        raw = await collector.collect()

    assert not raw.domains[Domain.CPU].available
    assert raw.domains[Domain.CPU].reason == "read timeout"
    assert raw.domains[Domain.MEMORY].available


@pytest.mark.asyncio
async def test_domain_subset(fake_host):
    """Only the configured domains are read."""
    collector = SnapshotCollector(
        fake_host.sources(), read_timeout=2.0, domains=(Domain.CPU, Domain.DISK)
    )

    raw = await collector.collect()

    assert set(raw.domains) == {Domain.CPU, Domain.DISK}
