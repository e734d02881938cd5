"""Operator console messages and the structured agent log.

perfwatch talks to two audiences and keeps them apart:

- The console gets short Rich-styled lines for whoever started the run:
  start and stop, alerts, target lifecycle, splits and heartbeats. Use
  info/warn/error directly or one of the domain helpers below.
- The agent log gets every structlog event as one JSON object per line,
  in a rotating file under the state directory. configure() sets this up
  and must run before the first structlog event.

Anything that comes from outside (commands, paths, metric keys) is escaped
before it reaches Rich markup.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from perfwatch.alerts import AlertNotification
    from perfwatch.config import Config

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Console
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Glyph shown after the level tag, one per kind of message."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SAVE = "💾"
    SPLIT = "[cyan]✂[/]"
    HEARTBEAT = "[magenta]♡[/]"
    ALERT = "[bright_red]▲[/]"
    CLEAR = "[bright_green]▼[/]"
    STARTED = "[green]⬤[/]"
    EXITED = "[red]⬤[/]"
    SIGNAL = "⚡"


_LEVEL_TAGS = {
    "info": "[blue]INFO [/]",
    "warn": "[yellow]WARN [/]",
    "error": "[bold red]ERROR[/]",
}

_SEVERITY_COLORS = {
    "critical": "bright_red",
    "warning": "bright_yellow",
}


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one console line: local time, level tag, icon, message.

    msg is Rich markup; escape untrusted parts before passing them in.
    """
    parts = [f"[dim]{datetime.now():%H:%M:%S}[/]", _LEVEL_TAGS.get(level, level.upper())]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = Icon.FAIL) -> None:
    log("error", msg, icon)


def severity_color(severity: str) -> str:
    """Rich color for an alert severity; anything else is green."""
    return _SEVERITY_COLORS.get(severity, "green")


def _shorten(text: str, width: int = 40) -> str:
    return text if len(text) <= width else text[: width - 2] + ".."


# ─────────────────────────────────────────────────────────────────────────────
# Domain helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started(target: str) -> None:
    info(f"Sampling [dim]({escape(target)})[/]", Icon.OK)


def monitor_stopping() -> None:
    info("Shutting down...", Icon.WAIT)


def monitor_stopped(samples: int) -> None:
    info(f"Stopped after [bold]{samples}[/] samples", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Got [bold]{name}[/], finishing current sample", Icon.SIGNAL)


def sample_failed(err: str) -> None:
    error(f"Sample failed: {escape(err)}")


def alert_entered(notification: AlertNotification) -> None:
    """One line per alert entering TRIGGERED, colored by severity."""
    severity = notification.severity.value
    warn(
        f"[{severity_color(severity)}]{severity.upper()}[/] "
        f"[cyan]{escape(notification.key)}[/] {notification.value:.1f} "
        f"{notification.comparator} {notification.threshold:g} "
        f"[dim]({escape(notification.rule)})[/]",
        Icon.ALERT,
    )


def alert_cleared(notification: AlertNotification) -> None:
    info(
        f"[cyan]{escape(notification.key)}[/] back to normal "
        f"[dim]({escape(notification.rule)})[/]",
        Icon.CLEAR,
    )


def target_started(pid: int, command: str) -> None:
    info(f"Tracking [cyan]{escape(_shorten(command))}[/] [dim]pid {pid}[/]", Icon.STARTED)


def target_exited(pid: int) -> None:
    info(f"Target [dim]pid {pid}[/] exited", Icon.EXITED)


def target_restarted(old_pid: int, new_pid: int) -> None:
    info(f"Target restarted [dim]pid {old_pid} → {new_pid}[/]", Icon.STARTED)


def split_expired() -> None:
    warn("Split request expired without confirmation", Icon.SPLIT)


def segment_rotated(index: int, reason: str) -> None:
    info(f"Now writing segment [bold]{index}[/] [dim]({escape(reason)})[/]", Icon.SPLIT)


def summary_saved(path: str) -> None:
    info(f"Metric log: [bold]{escape(path)}[/]", Icon.SAVE)


def heartbeat(samples: int, cpu_pct: float | None, mem_pct: float | None, rss_mb: float) -> None:
    """Periodic one-liner so a quiet headless run still shows signs of life."""
    cpu = "--" if cpu_pct is None else f"{cpu_pct:.1f}%"
    mem = "--" if mem_pct is None else f"{mem_pct:.1f}%"
    info(
        f"#{samples} [dim]cpu[/] {cpu} [dim]mem[/] {mem} [dim]self[/] {rss_mb:.1f}MB",
        Icon.HEARTBEAT,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Agent log
# ─────────────────────────────────────────────────────────────────────────────


def _source_field(source: str) -> structlog.types.Processor:
    """Processor stamping every event with which front end produced it."""

    def add_source(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict.setdefault("source", source)
        return event_dict

    return add_source


def _common_chain(source: str) -> list[structlog.types.Processor]:
    # Local time, like the sample timestamps in the metric logs
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="ts", utc=False),
        _source_field(source),
    ]


def configure(config: Config, source: str = "monitor") -> None:
    """Send structlog and stdlib logging to the rotating JSON agent log.

    Replaces any handlers already on the root logger. Nothing is written to
    the terminal from here.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*_common_chain(source), structlog.processors.format_exc_info],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_common_chain(source),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
