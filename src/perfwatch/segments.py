"""Metric log segment controller.

Owns the single open segment and its sinks. Manual splits are two-phase
(request, then confirm within a timeout); lifecycle-triggered splits rotate
immediately. Rotation only ever happens between two writes, so each
snapshot lands in exactly one segment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

from perfwatch.errors import SegmentIoError
from perfwatch.sinks import JsonLinesSink, SegmentHeader, Sink, SummaryTextSink
from perfwatch.snapshot import DerivedSnapshot

log = structlog.get_logger()

DETAILED = "detailed"
SUMMARY = "summary"


class SplitState(str, Enum):
    NO_PENDING_SPLIT = "no_pending_split"
    PENDING_SPLIT = "pending_split"


def segment_path(base: Path, index: int) -> Path:
    """Path of segment index for a configured log path.

    Segment 0 uses the path as given; later segments insert _N before the
    suffix (run.jsonl, run_1.jsonl, run_2.jsonl, ...).
    """
    if index == 0:
        return base
    return base.with_name(f"{base.stem}_{index}{base.suffix}")


def _unique(path: Path, reserved: frozenset[Path] = frozenset()) -> Path:
    """First of path, path_1, path_2, ... that is neither on disk nor reserved."""
    candidate = path
    n = 1
    while candidate.exists() or candidate in reserved:
        candidate = path.with_name(f"{path.stem}_{n}{path.suffix}")
        n += 1
    return candidate


@dataclass
class LogSegment:
    """One contiguous span of the metric logs."""

    index: int
    started_at: float
    reason: str
    sinks: dict[str, Sink] = field(default_factory=dict)
    sample_count: int = 0
    last_timestamp: float | None = None

    @property
    def paths(self) -> dict[str, Path]:
        return {role: sink.path for role, sink in self.sinks.items()}


class LogSegmentController:
    """Rotates the detailed and summary logs as one unit.

    Either path may be None to disable that log. With both disabled the
    controller still tracks segment indices, so splits stay observable.
    """

    def __init__(
        self,
        detailed_path: Path | None = None,
        summary_path: Path | None = None,
        confirm_timeout: float = 5.0,
        flush_every: int = 10,
        target: str = "",
    ) -> None:
        self.detailed_path = detailed_path
        self.summary_path = summary_path
        self.confirm_timeout = confirm_timeout
        self.flush_every = flush_every
        self.target = target
        self._current: LogSegment | None = None
        self._next_index = 0
        self._state = SplitState.NO_PENDING_SPLIT
        self._pending_since: float | None = None
        self._pending_reason = ""
        self._last_timestamp: float | None = None

    @property
    def enabled(self) -> bool:
        return self.detailed_path is not None or self.summary_path is not None

    @property
    def state(self) -> SplitState:
        return self._state

    @property
    def split_pending(self) -> bool:
        return self._state is SplitState.PENDING_SPLIT

    @property
    def index(self) -> int:
        """Index of the open segment (-1 before open)."""
        return self._current.index if self._current is not None else -1

    def current(self) -> LogSegment | None:
        return self._current

    def _planned_paths(self, index: int) -> dict[str, Path]:
        paths: dict[str, Path] = {}
        if self.detailed_path is not None:
            paths[DETAILED] = segment_path(self.detailed_path, index)
        if self.summary_path is not None:
            paths[SUMMARY] = segment_path(self.summary_path, index)
        return paths

    def _make_sinks(self, index: int) -> dict[str, Sink]:
        sinks: dict[str, Sink] = {}
        for role, path in self._planned_paths(index).items():
            # Segment 0 replaces a previous run's log; later segments never
            # replace a file, including one a rename just produced
            if index > 0:
                path = _unique(path)
            if role == DETAILED:
                sinks[role] = JsonLinesSink(path, self.flush_every)
            else:
                sinks[role] = SummaryTextSink(path)
        return sinks

    def _open_segment(self, reason: str, now: float) -> LogSegment:
        index = self._next_index
        self._next_index += 1
        header = SegmentHeader(index=index, started_at=now, reason=reason, target=self.target)
        opened: dict[str, Sink] = {}
        for role, sink in self._make_sinks(index).items():
            try:
                sink.open(header)
            except OSError as e:
                log.error("segment_open_failed", path=str(sink.path), role=role, error=str(e))
                continue
            opened[role] = sink
        segment = LogSegment(index=index, started_at=now, reason=reason, sinks=opened)
        self._current = segment
        return segment

    def _close_segment(self) -> LogSegment | None:
        segment = self._current
        if segment is None:
            return None
        for role, sink in list(segment.sinks.items()):
            try:
                sink.close()
            except OSError as e:
                log.error("segment_close_failed", path=str(sink.path), role=role, error=str(e))
        self._current = None
        log.info("segment_closed", index=segment.index, samples=segment.sample_count)
        return segment

    def open(self, now: float, reason: str = "start") -> LogSegment:
        """Open the first segment.

        Raises:
            SegmentIoError: If logging was requested and no sink could be opened.
        """
        if self._current is not None:
            return self._current
        segment = self._open_segment(reason, now)
        if self.enabled and not segment.sinks:
            self._current = None
            raise SegmentIoError("no metric log could be opened")
        log.info("segment_opened", index=segment.index, paths=_str_paths(segment))
        return segment

    def _rotate(self, reason: str, now: float) -> int:
        self._clear_pending()
        self._close_segment()
        segment = self._open_segment(reason, now)
        log.info("segment_rotated", index=segment.index, reason=reason, paths=_str_paths(segment))
        return segment.index

    def _clear_pending(self) -> None:
        self._state = SplitState.NO_PENDING_SPLIT
        self._pending_since = None
        self._pending_reason = ""

    def write(self, snapshot: DerivedSnapshot) -> None:
        """Offer one snapshot to the open segment's sinks.

        Raises:
            ValueError: If the snapshot is older than the last one written.
        """
        if self._last_timestamp is not None and snapshot.timestamp < self._last_timestamp:
            raise ValueError(
                f"snapshot at {snapshot.timestamp} is older than {self._last_timestamp}"
            )
        segment = self._current
        if segment is None:
            return
        for role, sink in list(segment.sinks.items()):
            try:
                sink.write(snapshot)
            except OSError as e:
                # Reported once: the sink leaves the segment for good
                log.error("segment_write_failed", path=str(sink.path), role=role, error=str(e))
                del segment.sinks[role]
                try:
                    sink.close()
                except OSError as close_error:
                    log.debug("segment_close_failed", path=str(sink.path), error=str(close_error))
        segment.sample_count += 1
        segment.last_timestamp = snapshot.timestamp
        self._last_timestamp = snapshot.timestamp

    def request_split(self, now: float, reason: str = "manual") -> bool:
        """Enter PENDING_SPLIT. Returns False when nothing is open."""
        if self._current is None:
            return False
        self._state = SplitState.PENDING_SPLIT
        self._pending_since = now
        self._pending_reason = reason
        log.info("split_requested", index=self._current.index, reason=reason)
        return True

    def confirm_split(self, now: float) -> int | None:
        """Rotate if a split is pending. Returns the new segment index."""
        if self._state is not SplitState.PENDING_SPLIT or self._current is None:
            return None
        return self._rotate(self._pending_reason or "manual", now)

    def cancel_split(self) -> bool:
        """Drop a pending split. Returns True if one was pending."""
        if self._state is not SplitState.PENDING_SPLIT:
            return False
        self._clear_pending()
        log.info("split_cancelled", index=self.index)
        return True

    def expire(self, now: float) -> bool:
        """Cancel a pending split older than the confirmation timeout."""
        if self._state is not SplitState.PENDING_SPLIT or self._pending_since is None:
            return False
        if now - self._pending_since < self.confirm_timeout:
            return False
        self._clear_pending()
        log.info("split_expired", index=self.index, timeout=self.confirm_timeout)
        return True

    def split(self, reason: str, now: float) -> int | None:
        """Rotate immediately, bypassing confirmation."""
        if self._current is None:
            return None
        return self._rotate(reason, now)

    def auto_split(self, reason: str, now: float) -> int | None:
        """Lifecycle-triggered rotation. An empty segment is kept as is."""
        if self._current is None or self._current.sample_count == 0:
            return None
        return self._rotate(reason, now)

    def rename_current(self, name: str, now: float) -> int | None:
        """Close the open segment, rename its files after name, open the next.

        Only the final path component of name is used. When both logs share
        a suffix the summary becomes <name>_summary<suffix>.
        """
        segment = self._current
        if segment is None:
            return None
        stem = Path(name).name
        if not stem:
            raise ValueError(f"invalid segment name: {name!r}")
        self._clear_pending()
        self._close_segment()

        reserved = frozenset(self._planned_paths(self._next_index).values())
        suffixes = [sink.path.suffix for sink in segment.sinks.values()]
        shared = len(suffixes) == 2 and suffixes[0] == suffixes[1]
        for role, sink in segment.sinks.items():
            new_stem = f"{stem}_summary" if role == SUMMARY and shared else stem
            target = _unique(sink.path.with_name(new_stem + sink.path.suffix), reserved)
            try:
                sink.path.rename(target)
            except OSError as e:
                log.error("segment_rename_failed", path=str(sink.path), error=str(e))
                continue
            log.info("segment_renamed", index=segment.index, path=str(target))

        new = self._open_segment(f"renamed {stem}", now)
        log.info("segment_rotated", index=new.index, reason="rename", paths=_str_paths(new))
        return new.index

    def close(self) -> None:
        """Flush and close the open segment, if any."""
        self._clear_pending()
        self._close_segment()


def _str_paths(segment: LogSegment) -> dict[str, str]:
    return {role: str(path) for role, path in segment.paths.items()}
