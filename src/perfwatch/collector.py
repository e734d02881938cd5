"""Snapshot collector running every domain reader once per tick."""

import asyncio
import time
from functools import partial

import structlog

from perfwatch.readers import Sources, read_domain
from perfwatch.snapshot import Domain, DomainReading, RawSnapshot

log = structlog.get_logger()


class SnapshotCollector:
    """Reads all domains concurrently, each bounded by read_timeout.

    Readers are blocking file I/O, so each runs in the default executor.
    A reader that overruns read_timeout marks its domain unavailable for the
    tick; the thread is left to finish on its own.
    """

    def __init__(
        self,
        sources: Sources,
        read_timeout: float = 0.5,
        domains: tuple[Domain, ...] = tuple(Domain),
    ) -> None:
        self.sources = sources
        self.read_timeout = read_timeout
        self.domains = domains

    async def _read(self, domain: Domain, sources: Sources) -> DomainReading:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, partial(read_domain, domain, sources)),
                timeout=self.read_timeout,
            )
        except TimeoutError:
            log.warning("domain_read_timeout", domain=domain.value, timeout=self.read_timeout)
            return DomainReading.unavailable(domain, reason="read timeout")

    async def collect(self, pid: int | None = None) -> RawSnapshot:
        """Take one raw snapshot. pid selects the tracked process, if any."""
        sources = self.sources.for_pid(pid)
        timestamp = time.time()
        monotonic = time.monotonic()
        readings = await asyncio.gather(*(self._read(d, sources) for d in self.domains))
        return RawSnapshot(
            timestamp=timestamp,
            monotonic=monotonic,
            domains={reading.domain: reading for reading in readings},
        )
