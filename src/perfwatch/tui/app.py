"""Real-time dashboard for perfwatch.

The sampler runs as a task in the app's own event loop. The dashboard only
reads the sampler's latest Publication on a timer and submits split
commands; it never touches the sampler's state directly.

Keys: s requests a log split, y confirms it, any other key cancels a
pending split, q quits.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from textual import events
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.widgets import Footer, Label, RichLog, Static

from perfwatch.config import Config
from perfwatch.errors import SegmentIoError
from perfwatch.formatting import NO_DATA, format_bytes, format_count, format_pct, format_rate
from perfwatch.resolver import Exited, Started
from perfwatch.sampler import Publication, Sampler, SplitAction
from perfwatch.tui.sparkline import GradientColor, Sparkline, SparklineMode

# (title, metric key, renderer, fixed max for the sparkline or None to autoscale)
METRIC_ROWS: list[tuple[str, str, str, float | None]] = [
    ("CPU busy", "cpu.busy_pct", "pct", 100.0),
    ("CPU iowait", "cpu.iowait_pct", "pct", 100.0),
    ("Memory", "mem.used_pct", "pct", 100.0),
    ("Cgroup mem", "cgroup.memory_usage_pct", "pct", 100.0),
    ("Disk read", "disk.total.read_bytes", "rate", None),
    ("Disk write", "disk.total.write_bytes", "rate", None),
    ("Net RX", "net.total.rx_bytes", "rate", None),
    ("Net TX", "net.total.tx_bytes", "rate", None),
    ("Mem PSI", "psi.memory.some.avg10", "pct", 100.0),
    ("IO PSI", "psi.io.some.avg10", "pct", 100.0),
    ("Proc CPU", "proc.cpu_pct", "pct", None),
    ("Proc RSS", "proc.rss", "bytes", None),
]


def render_value(value: float | None, renderer: str) -> str:
    """Format a metric for the dashboard; None shows the no-data marker."""
    if value is None:
        return NO_DATA
    if renderer == "pct":
        return f"{format_pct(value)}%"
    if renderer == "rate":
        return format_rate(value)
    if renderer == "bytes":
        return format_bytes(value)
    return format_count(value)


class HeaderBar(Static):
    """Target, segment and sample status."""

    DEFAULT_CSS = """
    HeaderBar {
        height: 3;
        padding: 0 1;
        border: solid green;
        border-title-align: left;
    }

    HeaderBar Horizontal {
        height: 1;
        width: 100%;
    }

    HeaderBar #status-left {
        width: 1fr;
    }

    HeaderBar #status-right {
        width: auto;
    }
    """

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Label("Waiting for first sample...", id="status-left"),
            Label("", id="status-right"),
        )

    def on_mount(self) -> None:
        self.border_title = "PERFWATCH"

    def update_from(self, publication: Publication) -> None:
        try:
            left = self.query_one("#status-left", Label)
            right = self.query_one("#status-right", Label)
        except NoMatches:
            return

        process = publication.snapshot.process
        if not publication.target:
            target = "system only"
        elif process is None:
            target = f"{publication.target}: searching"
        else:
            target = f"{publication.target}: pid {process.pid} {process.state.value}"
        left.update(target)

        split = "   [bold yellow]SPLIT? y to confirm[/]" if publication.split_pending else ""
        right.update(
            f"segment {publication.segment_index}   #{publication.sample_count}{split}"
        )

        tui = self.app.config.tui  # type: ignore[attr-defined]
        if any(a.severity == "critical" for a in publication.active_alerts):
            color = tui.critical_color
        elif publication.active_alerts:
            color = tui.warning_color
        else:
            color = tui.ok_color
        self.styles.border = ("solid", color)


class MetricRow(Static):
    """One metric: name, current value and its history sparkline."""

    DEFAULT_CSS = """
    MetricRow {
        layout: horizontal;
        height: auto;
    }

    MetricRow .metric-title {
        width: 12;
    }

    MetricRow .metric-value {
        width: 12;
        text-align: right;
        margin-right: 1;
    }
    """

    def __init__(
        self,
        title: str,
        key: str,
        renderer: str,
        max_value: float | None,
        height: int,
        mode: SparklineMode,
        gradient: GradientColor | None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.metric_title = title
        self.metric_key = key
        self.renderer = renderer
        self._sparkline = Sparkline(
            height=height,
            max_value=max_value,
            mode=mode,
            color_func=gradient if renderer == "pct" else None,
        )

    def compose(self) -> ComposeResult:
        yield Label(self.metric_title, classes="metric-title")
        yield Label(NO_DATA, classes="metric-value")
        yield self._sparkline

    def update_from(self, publication: Publication) -> None:
        try:
            value_label = self.query_one(".metric-value", Label)
        except NoMatches:
            return
        value_label.update(render_value(publication.snapshot.get(self.metric_key), self.renderer))
        self._sparkline.set_history(publication.history.get(self.metric_key))


class AlertsPanel(Static):
    """Currently triggered alerts, critical first."""

    DEFAULT_CSS = """
    AlertsPanel {
        height: 100%;
        border: solid $primary;
        border-title-align: left;
        padding: 0 1;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "ALERTS"
        self.update("[dim]none[/]")

    def update_from(self, publication: Publication) -> None:
        if not publication.active_alerts:
            self.update("[dim]none[/]")
            return
        tui = self.app.config.tui  # type: ignore[attr-defined]
        lines = []
        for alert in publication.active_alerts:
            color = tui.critical_color if alert.severity == "critical" else tui.warning_color
            value = publication.snapshot.get(alert.key)
            shown = NO_DATA if value is None else f"{value:.1f}"
            lines.append(f"[{color}]{alert.severity.upper():8}[/] {alert.key} {shown}")
        self.update("\n".join(lines))


class ActivityLog(Static):
    """Alerts, lifecycle events and splits as they happen."""

    DEFAULT_CSS = """
    ActivityLog {
        height: 100%;
        border: solid $primary;
        border-title-align: left;
    }

    ActivityLog RichLog {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, max_entries: int = 50, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._max_entries = max_entries

    def compose(self) -> ComposeResult:
        yield RichLog(id="activity-log", markup=True, max_lines=self._max_entries)

    def on_mount(self) -> None:
        self.border_title = "ACTIVITY"

    def add_entry(self, message: str, color: str = "white") -> None:
        timestamp = datetime.now().strftime("%H:%M:%S")
        try:
            log = self.query_one("#activity-log", RichLog)
        except NoMatches:
            return
        log.write(f"[{color}]{timestamp}  {message}[/{color}]")

    def record(self, publication: Publication) -> None:
        """Add entries for this publication's alerts and lifecycle events."""
        tui = self.app.config.tui  # type: ignore[attr-defined]
        snapshot = publication.snapshot
        for event in snapshot.events:
            if isinstance(event, Started):
                self.add_entry(f"● target started (pid {event.pid})", tui.ok_color)
            elif isinstance(event, Exited):
                self.add_entry(f"○ target exited (pid {event.pid})", tui.warning_color)
            else:
                self.add_entry(
                    f"● target restarted ({event.old_pid} → {event.new_pid})", tui.ok_color
                )
        for alert in snapshot.alerts:
            if alert.entered:
                color = (
                    tui.critical_color if alert.severity.value == "critical" else tui.warning_color
                )
                self.add_entry(
                    f"▲ {alert.key} {alert.value:.1f} {alert.comparator} {alert.threshold:g}",
                    color,
                )
            else:
                self.add_entry(f"▼ {alert.key} back to normal", tui.ok_color)


class PerfwatchApp(App):
    """Dashboard driving an in-process sampler."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #header {
        height: 3;
    }

    #metrics {
        height: 1fr;
        padding: 0 1;
    }

    #bottom-panels {
        height: 10;
    }

    #bottom-panels > * {
        width: 1fr;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "request_split", "Split logs"),
        ("y", "confirm_split", "Confirm split"),
    ]

    def __init__(self, config: Config | None = None, sampler: Sampler | None = None):
        super().__init__()
        self.config = config or Config.load()
        self.sampler = sampler or Sampler(self.config)
        self._sampler_task: asyncio.Task | None = None
        self._last_seen = 0
        self._last_segment = 0
        self._split_pending = False

    def compose(self) -> ComposeResult:
        tui = self.config.tui
        mode = SparklineMode(tui.sparkline_mode)
        gradient = GradientColor(
            [(0, tui.ok_color), (80, tui.warning_color), (95, tui.critical_color)]
        )
        yield HeaderBar(id="header")
        yield Vertical(
            *(
                MetricRow(title, key, renderer, max_value, tui.sparkline_height, mode, gradient)
                for title, key, renderer, max_value in METRIC_ROWS
            ),
            id="metrics",
        )
        yield Horizontal(
            AlertsPanel(id="alerts"),
            ActivityLog(tui.activity_max_entries, id="activity"),
            id="bottom-panels",
        )
        yield Footer()

    def on_mount(self) -> None:
        self.title = "perfwatch"
        self.sub_title = "Live Dashboard"
        self._sampler_task = asyncio.create_task(self._run_sampler())
        self.set_interval(self.config.tui.refresh_interval, self.refresh_from_sampler)

    async def _run_sampler(self) -> None:
        try:
            await self.sampler.run(install_signal_handlers=False)
        except SegmentIoError as e:
            self.notify(f"Cannot open metric logs: {e}", severity="error", timeout=10)
            return
        # Duration expired or sampler stopped on its own
        self.exit()

    async def on_unmount(self) -> None:
        self.sampler.stop()
        if self._sampler_task is not None and not self._sampler_task.done():
            try:
                await asyncio.wait_for(self._sampler_task, timeout=5.0)
            except TimeoutError:
                self._sampler_task.cancel()

    def refresh_from_sampler(self) -> None:
        """Redraw from the sampler's latest publication, if it is new."""
        publication = self.sampler.latest
        if publication is None or publication.sample_count == self._last_seen:
            return
        self._last_seen = publication.sample_count
        self._split_pending = publication.split_pending

        try:
            self.query_one("#header", HeaderBar).update_from(publication)
            for row in self.query(MetricRow):
                row.update_from(publication)
            self.query_one("#alerts", AlertsPanel).update_from(publication)
            activity = self.query_one("#activity", ActivityLog)
        except NoMatches:
            return

        activity.record(publication)
        if publication.segment_index != self._last_segment:
            activity.add_entry(f"✂ logs split → segment {publication.segment_index}", "cyan")
            self._last_segment = publication.segment_index

    def _submit(self, action: SplitAction) -> None:
        self.sampler.submit(action)

    def action_request_split(self) -> None:
        self._submit(SplitAction.REQUEST)
        self._split_pending = True
        timeout = self.config.logging.split_confirm_timeout
        self.notify(f"Split logs? Press y within {timeout:g}s to confirm.")

    def action_confirm_split(self) -> None:
        # A confirm without a pending split is ignored by the sampler
        self._submit(SplitAction.CONFIRM)
        self._split_pending = False

    def on_key(self, event: events.Key) -> None:
        # Bound keys are handled by their actions
        if event.key in ("q", "s", "y"):
            return
        if self._split_pending:
            self._submit(SplitAction.CANCEL)
            self._split_pending = False
            self.notify("Split cancelled")


def run_tui(config: Config | None = None) -> None:
    """Run the TUI application."""
    app = PerfwatchApp(config)
    app.run()
