"""Sampling loop orchestrating acquisition, derivation and log rotation.

Each tick, in order:
1. Resolve the tracked process (if any)
2. Read every domain and derive rates against the previous tick
3. Push history and evaluate alerts
4. Apply queued split commands and lifecycle-triggered rotation
5. Write the snapshot to the current segment
6. Publish an immutable Publication for consumers

All mutable state lives in SamplerState, owned by one Sampler. Consumers
only ever see the latest Publication.
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

import psutil
import structlog

from perfwatch import logging as console
from perfwatch.alerts import AlertEvaluator
from perfwatch.collector import SnapshotCollector
from perfwatch.config import Config
from perfwatch.history import GapPolicy, HistoryView, MetricHistory
from perfwatch.rates import derive
from perfwatch.readers import Sources
from perfwatch.resolver import (
    ByPattern,
    ByPid,
    Exited,
    ProcessResolver,
    ProcessTarget,
    Resolution,
    Started,
)
from perfwatch.segments import LogSegmentController
from perfwatch.snapshot import DerivedSnapshot, Domain, RawSnapshot
from perfwatch.summary import RunSummary

log = structlog.get_logger()


class SplitAction(str, Enum):
    REQUEST = "request"  # enter pending split
    CONFIRM = "confirm"  # rotate if pending
    CANCEL = "cancel"  # drop pending split
    SPLIT = "split"  # rotate now
    RENAME = "rename"  # rename current segment, then rotate


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    segment: int


@dataclass
class _Command:
    action: SplitAction
    name: str | None
    future: asyncio.Future[CommandResult]


@dataclass(frozen=True)
class ActiveAlert:
    rule: str
    key: str
    severity: str


@dataclass(frozen=True)
class Publication:
    """What consumers see after a tick. Never mutated."""

    snapshot: DerivedSnapshot
    history: HistoryView
    segment_index: int
    split_pending: bool
    active_alerts: tuple[ActiveAlert, ...]
    sample_count: int
    target: str = ""


@dataclass
class SamplerState:
    """Everything that carries over from one tick to the next."""

    history: MetricHistory
    alerts: AlertEvaluator
    segments: LogSegmentController
    resolver: ProcessResolver | None = None
    previous: RawSnapshot | None = None
    last_timestamp: float | None = None
    clock_behind: bool = False
    summary: RunSummary = field(default_factory=RunSummary)
    sample_count: int = 0


def target_from_config(config: Config) -> ProcessTarget | None:
    if config.target.pid:
        return ByPid(config.target.pid)
    if config.target.pattern:
        return ByPattern(config.target.pattern)
    return None


def _optional_path(value: str) -> Path | None:
    return Path(value).expanduser() if value else None


class Sampler:
    """Runs the tick loop and holds the single-slot publication."""

    def __init__(
        self,
        config: Config,
        sources: Sources | None = None,
        console_output: bool = False,
    ) -> None:
        self.config = config
        self.console_output = console_output
        system = config.system
        self.sources = sources or Sources(
            proc_root=Path(system.proc_root),
            sys_root=Path(system.sys_root),
            max_bytes=system.read_max_bytes,
        )

        self.target = target_from_config(config)
        domains = tuple(d for d in Domain if d is not Domain.PROCESS or self.target is not None)
        self.collector = SnapshotCollector(self.sources, system.read_timeout, domains)

        resolver = None
        if self.target is not None:
            resolver = ProcessResolver(self.target, self.sources.proc_root)

        rules = config.alerts.rules if config.alerts.enabled else []
        self.state = SamplerState(
            history=MetricHistory(
                capacity=system.history_size,
                series=system.history_series,
                gap_policy=GapPolicy(system.history_gap_policy),
            ),
            alerts=AlertEvaluator.from_config(rules),
            segments=LogSegmentController(
                detailed_path=_optional_path(config.logging.detailed_path),
                summary_path=_optional_path(config.logging.summary_path),
                confirm_timeout=config.logging.split_confirm_timeout,
                flush_every=config.logging.flush_every,
                target=self.target.describe() if self.target else "",
            ),
            resolver=resolver,
        )

        self._commands: deque[_Command] = deque()
        self._latest: Publication | None = None
        self._shutdown_event = asyncio.Event()
        self._opened = False
        self._closed = False

    @property
    def latest(self) -> Publication | None:
        """Most recent publication, or None before the first tick."""
        return self._latest

    @property
    def summary(self) -> RunSummary:
        return self.state.summary

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    def open(self, now: float | None = None) -> None:
        """Open the first log segment. SegmentIoError propagates."""
        if self._opened:
            return
        self.state.segments.open(time.time() if now is None else now)
        self._opened = True

    def submit(self, action: SplitAction | str, name: str | None = None) -> asyncio.Future:
        """Queue a split command, applied between ticks.

        Returns:
            Future resolving to a CommandResult once the command is applied.
        """
        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        self._commands.append(_Command(SplitAction(action), name, future))
        return future

    def _apply(self, command: _Command, now: float) -> CommandResult:
        segments = self.state.segments
        if command.action is SplitAction.REQUEST:
            return CommandResult(segments.request_split(now), segments.index)
        if command.action is SplitAction.CONFIRM:
            index = segments.confirm_split(now)
        elif command.action is SplitAction.CANCEL:
            return CommandResult(segments.cancel_split(), segments.index)
        elif command.action is SplitAction.RENAME and command.name:
            index = segments.rename_current(command.name, now)
        else:
            index = segments.split("manual", now)
        if index is not None and self.console_output:
            console.segment_rotated(index, command.action.value)
        return CommandResult(index is not None, segments.index)

    def _apply_commands(self, now: float) -> None:
        while self._commands:
            command = self._commands.popleft()
            if command.future.done():
                continue
            try:
                result = self._apply(command, now)
            except ValueError as e:
                log.warning("split_command_rejected", action=command.action.value, error=str(e))
                result = CommandResult(False, self.state.segments.index)
            command.future.set_result(result)

    def _report_events(self, resolution: Resolution | None, derived: DerivedSnapshot) -> None:
        if resolution is not None:
            for event in resolution.events:
                if isinstance(event, Started):
                    console.target_started(event.pid, event.command)
                elif isinstance(event, Exited):
                    console.target_exited(event.pid)
                else:
                    console.target_restarted(event.old_pid, event.new_pid)
        for notification in derived.alerts:
            if notification.entered:
                console.alert_entered(notification)
            else:
                console.alert_cleared(notification)

    def _steady_timestamp(self, derived: DerivedSnapshot, raw: RawSnapshot) -> DerivedSnapshot:
        """Keep sample timestamps non-decreasing when the wall clock steps back.

        While the wall clock is behind the last written sample, timestamps
        advance from that sample by the monotonic time between ticks.
        """
        state = self.state
        last = state.last_timestamp
        if last is not None and derived.timestamp < last:
            if not state.clock_behind:
                log.warning("wall_clock_stepped_back", wall=derived.timestamp, last=last)
                state.clock_behind = True
            previous = state.previous
            elapsed = raw.monotonic - previous.monotonic if previous is not None else 0.0
            derived = replace(derived, timestamp=last + max(elapsed, 0.0))
        elif state.clock_behind:
            log.info("wall_clock_caught_up", wall=derived.timestamp)
            state.clock_behind = False
        state.last_timestamp = derived.timestamp
        return derived

    async def tick(self) -> Publication:
        """Run one full sampling step and publish the result."""
        state = self.state
        loop = asyncio.get_running_loop()

        resolution: Resolution | None = None
        if state.resolver is not None:
            resolution = await loop.run_in_executor(None, state.resolver.resolve)
        pid = resolution.live_pid if resolution is not None else None

        raw = await self.collector.collect(pid)
        derived = self._steady_timestamp(derive(state.previous, raw), raw)
        state.previous = raw
        if resolution is not None:
            derived = replace(derived, process=resolution.process, events=resolution.events)

        state.history.record(derived)
        notifications = state.alerts.update(derived)
        if notifications:
            derived = replace(derived, alerts=tuple(notifications))

        # Rotation happens here, strictly before this tick's write
        now = derived.timestamp
        self._apply_commands(now)
        if state.segments.expire(now) and self.console_output:
            console.split_expired()
        if derived.events and self.config.logging.split_on_process:
            index = state.segments.auto_split(derived.events[-1].kind, now)
            if index is not None and self.console_output:
                console.segment_rotated(index, derived.events[-1].kind)

        try:
            state.segments.write(derived)
        except ValueError as e:
            log.warning("snapshot_not_written", error=str(e))
        state.summary.add(derived)
        state.sample_count += 1

        if self.console_output:
            self._report_events(resolution, derived)

        publication = Publication(
            snapshot=derived,
            history=state.history.freeze(),
            segment_index=state.segments.index,
            split_pending=state.segments.split_pending,
            active_alerts=tuple(
                ActiveAlert(rule.name, key, rule.severity.value)
                for rule, key in state.alerts.active
            ),
            sample_count=state.sample_count,
            target=self.target.describe() if self.target else "",
        )
        self._latest = publication
        return publication

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        if self.console_output:
            console.signal_received(sig.name)
        self._shutdown_event.set()

    def stop(self) -> None:
        """Ask run() to return after the current tick."""
        self._shutdown_event.set()

    def _heartbeat(self, count: int) -> None:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        snapshot = self._latest.snapshot if self._latest else None
        cpu = snapshot.get("cpu.busy_pct") if snapshot else None
        mem = snapshot.get("mem.used_pct") if snapshot else None
        log.info(
            "monitor_heartbeat",
            samples=count,
            segment=self.state.segments.index,
            active_alerts=len(self.state.alerts.active),
            rss_mb=round(rss_mb, 1),
        )
        if self.console_output:
            console.heartbeat(count, cpu, mem, rss_mb)

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Tick at the configured interval until stopped or duration expires.

        Missed time is absorbed by shortening the next sleep; ticks never
        overlap. An error inside a tick is logged and the loop continues.
        """
        from perfwatch.control import ControlServer

        self.open()
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT) if install_signal_handlers else ()
        for sig in signals:
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        server: ControlServer | None = None
        if self.config.control.enabled:
            server = ControlServer(self.config.socket_path, self)
            await server.start()

        interval = self.config.system.sample_interval
        duration = self.config.system.duration
        deadline = loop.time() + duration if duration > 0 else None
        heartbeat_every = max(1, self.config.system.heartbeat_samples)
        heartbeat_count = 0

        log.info(
            "monitor_started",
            interval=interval,
            duration=duration,
            target=self.target.describe() if self.target else None,
        )
        if self.console_output:
            console.monitor_started(self.target.describe() if self.target else "system only")

        try:
            while not self._shutdown_event.is_set():
                try:
                    iteration_start = loop.time()
                    await self.tick()

                    heartbeat_count += 1
                    if heartbeat_count >= heartbeat_every:
                        self._heartbeat(heartbeat_count)
                        heartbeat_count = 0

                    if deadline is not None and loop.time() >= deadline:
                        log.info("duration_reached", duration=duration)
                        break

                    elapsed = loop.time() - iteration_start
                    sleep_time = interval - elapsed
                    if deadline is not None:
                        sleep_time = min(sleep_time, deadline - loop.time())
                    if sleep_time > 0:
                        try:
                            await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                            break
                        except TimeoutError:
                            pass

                except asyncio.CancelledError:
                    log.info("main_loop_cancelled")
                    raise
                except Exception as e:
                    log.error("sample_failed", error=str(e))
                    if self.console_output:
                        console.sample_failed(str(e))
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                        break
                    except TimeoutError:
                        pass
        finally:
            if self.console_output:
                console.monitor_stopping()
            if server is not None:
                await server.stop()
            for sig in signals:
                loop.remove_signal_handler(sig)
            self.close()

    def close(self) -> None:
        """Flush and close the segment; fail any command still queued."""
        if self._closed:
            return
        self._closed = True
        while self._commands:
            command = self._commands.popleft()
            if not command.future.done():
                command.future.set_result(CommandResult(False, self.state.segments.index))
        self.state.segments.close()
        log.info("monitor_stopped", samples=self.state.sample_count)
        if self.console_output:
            console.monitor_stopped(self.state.sample_count)
