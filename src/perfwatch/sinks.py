"""Metric log writers: detailed JSON Lines and a fixed-width text summary."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Protocol

from perfwatch.formatting import NO_DATA, format_bytes, format_pct, format_rate
from perfwatch.snapshot import DerivedSnapshot


@dataclass(frozen=True)
class SegmentHeader:
    """Written at the top of every segment, before any data."""

    index: int
    started_at: float
    reason: str
    target: str = ""


class Sink(Protocol):
    path: Path

    def open(self, header: SegmentHeader) -> None: ...

    def write(self, snapshot: DerivedSnapshot) -> None: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class _FileSink:
    """Shared open/flush/close for line-oriented file sinks."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: IO[str] | None = None
        self.samples_written = 0

    def _require(self) -> IO[str]:
        if self._file is None:
            raise ValueError(f"sink {self.path} is not open")
        return self._file

    def open(self, header: SegmentHeader) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "w", encoding="utf-8")
        try:
            self._write_header(header)
            self._file.flush()
        except OSError:
            self._file.close()
            self._file = None
            raise

    def _write_header(self, header: SegmentHeader) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        if self._file is not None:
            self._file.flush()

    def close(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
        finally:
            self._file.close()
            self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None


class JsonLinesSink(_FileSink):
    """One JSON object per line: a segment record, then one per snapshot.

    Flushes every flush_every samples so a crash loses at most that many.
    """

    def __init__(self, path: Path, flush_every: int = 10) -> None:
        super().__init__(path)
        self.flush_every = max(1, flush_every)

    def _write_header(self, header: SegmentHeader) -> None:
        record = {
            "type": "segment",
            "index": header.index,
            "started": datetime.fromtimestamp(header.started_at).isoformat(),
            "reason": header.reason,
            "target": header.target,
        }
        self._require().write(json.dumps(record) + "\n")

    def write(self, snapshot: DerivedSnapshot) -> None:
        record = {"type": "sample", **snapshot.to_dict()}
        self._require().write(json.dumps(record) + "\n")
        self.samples_written += 1
        if self.samples_written % self.flush_every == 0:
            self.flush()


# (title, width, key, renderer)
_COLUMNS: list[tuple[str, int, str, str]] = [
    ("CPU%", 5, "cpu.busy_pct", "pct"),
    ("IOW%", 5, "cpu.iowait_pct", "pct"),
    ("Mem%", 5, "mem.used_pct", "pct"),
    ("CG%", 5, "cgroup.memory_usage_pct", "pct"),
    ("Cache", 7, "mem.cached", "bytes"),
    ("Dirty", 7, "mem.dirty", "bytes"),
    ("RssAnon", 8, "proc.rss_anon", "bytes"),
    ("RssFile", 8, "proc.rss_file", "bytes"),
    ("ProcRd", 10, "proc.read_bytes", "rate"),
    ("ProcWr", 10, "proc.write_bytes", "rate"),
    ("InFlt", 5, "disk.total.in_flight", "count"),
    ("MemPS", 5, "psi.memory.some.avg10", "pct"),
    ("IoPSI", 5, "psi.io.some.avg10", "pct"),
]

_LEGEND = [
    "# Column Definitions:",
    "#   Time     - Sample timestamp (HH:MM:SS)",
    "#   CPU%     - CPU busy (user + system + steal)",
    "#   IOW%     - CPU time waiting for I/O",
    "#   Mem%     - System memory used",
    "#   CG%      - Cgroup memory used (container limit)",
    "#   Cache    - File-backed page cache",
    "#   Dirty    - Pages modified but not yet written to disk",
    "#   RssAnon  - Tracked process anonymous memory",
    "#   RssFile  - Tracked process file-backed memory",
    "#   ProcRd   - Bytes/s read from disk by the tracked process",
    "#   ProcWr   - Bytes/s written to disk by the tracked process",
    "#   InFlt    - I/O requests currently in flight",
    "#   MemPS    - % time tasks stalled on memory (some avg10)",
    "#   IoPSI    - % time tasks stalled on I/O (some avg10)",
    f"#   {NO_DATA}       - No data (source unavailable or counter reset)",
]


def _cell(snapshot: DerivedSnapshot, key: str, renderer: str) -> str:
    value = snapshot.get(key)
    if renderer == "pct":
        return format_pct(value)
    if renderer == "bytes":
        return format_bytes(value)
    if renderer == "rate":
        return format_rate(value)
    return NO_DATA if value is None else f"{value:.0f}"


class SummaryTextSink(_FileSink):
    """Human-readable table, flushed after every row."""

    def _write_header(self, header: SegmentHeader) -> None:
        f = self._require()
        started = datetime.fromtimestamp(header.started_at).strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            "# perfwatch log",
            f"# Started: {started}",
            f"# Segment: {header.index} ({header.reason})",
        ]
        if header.target:
            lines.append(f"# Target: {header.target}")
        lines.extend(["#", *_LEGEND, "#"])
        f.write("\n".join(lines) + "\n")
        titles = " ".join(f"{title:>{width}}" for title, width, _, _ in _COLUMNS)
        f.write(f"{'Time':<8} {titles}\n")
        f.write("-" * (9 + sum(width + 1 for _, width, _, _ in _COLUMNS)) + "\n")

    def write(self, snapshot: DerivedSnapshot) -> None:
        f = self._require()
        ts = datetime.fromtimestamp(snapshot.timestamp).strftime("%H:%M:%S")
        cells = " ".join(
            f"{_cell(snapshot, key, renderer):>{width}}" for _, width, key, renderer in _COLUMNS
        )
        f.write(f"{ts:<8} {cells}\n")
        self.samples_written += 1
        f.flush()
