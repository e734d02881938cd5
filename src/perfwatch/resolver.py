"""Process resolver: maps a pid or command-line pattern to a live process.

A process is identified by (pid, start_time) so that a reused pid is never
mistaken for the original. State moves SEARCHING -> RUNNING -> EXITED, and
in pattern mode EXITED -> SEARCHING on the following call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from perfwatch.boottime import start_time_to_wall
from perfwatch.errors import SourceUnavailable
from perfwatch.readers import read_cmdline, read_pid_stat

log = structlog.get_logger()


class ProcessState(str, Enum):
    SEARCHING = "searching"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(frozen=True)
class ByPid:
    """Track one specific pid; never re-search once it exits."""

    pid: int

    def describe(self) -> str:
        return f"pid {self.pid}"


@dataclass(frozen=True)
class ByPattern:
    """Track the process whose full command line matches a regex."""

    pattern: str

    def describe(self) -> str:
        return f"pattern {self.pattern!r}"


ProcessTarget = ByPid | ByPattern


@dataclass(frozen=True)
class ResolvedProcess:
    pid: int
    start_time: int  # clock ticks since boot
    state: ProcessState
    command: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "start_time": self.start_time,
            "started_at": round(start_time_to_wall(self.start_time), 3),
            "state": self.state.value,
            "command": self.command,
        }


@dataclass(frozen=True)
class Started:
    pid: int
    command: str = ""
    kind: str = field(default="started", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "pid": self.pid, "command": self.command}


@dataclass(frozen=True)
class Exited:
    pid: int
    kind: str = field(default="exited", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "pid": self.pid}


@dataclass(frozen=True)
class Restarted:
    old_pid: int
    new_pid: int
    command: str = ""
    kind: str = field(default="restarted", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "old_pid": self.old_pid,
            "new_pid": self.new_pid,
            "command": self.command,
        }


LifecycleEvent = Started | Exited | Restarted


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolve() call."""

    process: ResolvedProcess | None
    events: tuple[LifecycleEvent, ...] = ()

    @property
    def live_pid(self) -> int | None:
        """Pid to sample this tick, or None when nothing is running."""
        if self.process is not None and self.process.state is ProcessState.RUNNING:
            return self.process.pid
        return None


class ProcessResolver:
    """Keeps a target resolved to one live process across ticks.

    Pattern mode tie-break: among several matches the earliest start_time
    wins, then the lowest pid. While the tracked process is alive it is kept
    without rescanning, so a second match never steals tracking.
    """

    def __init__(
        self,
        target: ProcessTarget,
        proc_root: Path = Path("/proc"),
        own_pid: int | None = None,
    ) -> None:
        self.target = target
        self.proc_root = proc_root
        self.own_pid = os.getpid() if own_pid is None else own_pid
        self._regex = re.compile(target.pattern) if isinstance(target, ByPattern) else None
        self._current: ResolvedProcess | None = None
        self._state = ProcessState.SEARCHING
        self._previous_pid: int | None = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def current(self) -> ResolvedProcess | None:
        return self._current

    def _start_time(self, pid: int) -> int | None:
        try:
            return read_pid_stat(self.proc_root, pid).start_time
        except (SourceUnavailable, ValueError):
            return None

    def _is_alive(self, process: ResolvedProcess) -> bool:
        return self._start_time(process.pid) == process.start_time

    def _command(self, pid: int) -> str:
        try:
            return read_cmdline(self.proc_root, pid)
        except SourceUnavailable:
            return ""

    def _scan(self) -> ResolvedProcess | None:
        """Find the best live match for the pattern."""
        assert self._regex is not None
        best: tuple[int, int, str] | None = None
        try:
            entries = os.listdir(self.proc_root)
        except OSError as e:
            log.warning("process_scan_failed", root=str(self.proc_root), error=str(e))
            return None

        for name in entries:
            if not name.isdigit():
                continue
            pid = int(name)
            if pid == self.own_pid:
                continue
            try:
                cmdline = read_cmdline(self.proc_root, pid)
            except SourceUnavailable:
                continue
            if not cmdline or not self._regex.search(cmdline):
                continue
            start_time = self._start_time(pid)
            if start_time is None:
                continue
            candidate = (start_time, pid, cmdline)
            if best is None or candidate[:2] < best[:2]:
                best = candidate

        if best is None:
            return None
        start_time, pid, cmdline = best
        return ResolvedProcess(pid, start_time, ProcessState.RUNNING, cmdline)

    def _find(self) -> ResolvedProcess | None:
        if isinstance(self.target, ByPid):
            pid = self.target.pid
            start_time = self._start_time(pid)
            if start_time is None:
                return None
            return ResolvedProcess(pid, start_time, ProcessState.RUNNING, self._command(pid))
        return self._scan()

    def _search(self) -> Resolution:
        found = self._find()
        if found is None:
            self._state = ProcessState.SEARCHING
            self._current = None
            return Resolution(None)

        self._state = ProcessState.RUNNING
        self._current = found
        event: LifecycleEvent
        if self._previous_pid is not None:
            event = Restarted(self._previous_pid, found.pid, found.command)
            log.info("target_restarted", old_pid=self._previous_pid, new_pid=found.pid)
        else:
            event = Started(found.pid, found.command)
            log.info("target_started", pid=found.pid, command=found.command[:120])
        return Resolution(found, (event,))

    def resolve(self) -> Resolution:
        """Advance the state machine by one tick."""
        if self._state is ProcessState.SEARCHING:
            return self._search()

        if self._state is ProcessState.RUNNING:
            assert self._current is not None
            if self._is_alive(self._current):
                return Resolution(self._current)
            exited = ResolvedProcess(
                self._current.pid,
                self._current.start_time,
                ProcessState.EXITED,
                self._current.command,
            )
            self._state = ProcessState.EXITED
            self._current = exited
            self._previous_pid = exited.pid
            log.info("target_exited", pid=exited.pid)
            return Resolution(exited, (Exited(exited.pid),))

        # EXITED: a pid target is gone for good
        if isinstance(self.target, ByPid):
            return Resolution(self._current)
        self._state = ProcessState.SEARCHING
        return self._search()
