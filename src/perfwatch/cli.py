"""CLI commands for perfwatch."""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from perfwatch.config import Config


@click.group()
@click.version_option()
def main() -> None:
    """Watch a Linux host (and optionally one process) for bottlenecks."""
    pass


def _monitor_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by run and tui; each overrides the config file."""

    @click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file")
    @click.option("--pid", "-p", type=int, help="Process ID to track")
    @click.option("--name", "-n", help="Regex matched against process command lines")
    @click.option("--interval", "-i", type=float, help="Seconds between samples")
    @click.option("--duration", "-d", type=float, help="Stop after this many seconds")
    @click.option("--log", "-l", "log_path", type=click.Path(dir_okay=False), help="JSON Lines log")
    @click.option("--text-log", "-o", type=click.Path(dir_okay=False), help="Text summary log")
    @click.option("--split-on-process", is_flag=True, help="Split logs when the target starts/exits")
    @click.option("--control-socket", type=click.Path(dir_okay=False), help="Enable control socket")
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return wrapper


def _build_config(
    config_path: str | None,
    pid: int | None,
    name: str | None,
    interval: float | None,
    duration: float | None,
    log_path: str | None,
    text_log: str | None,
    split_on_process: bool,
    control_socket: str | None,
) -> Config:
    """Load the config file and apply command line overrides."""
    from pathlib import Path

    from perfwatch.config import Config

    if pid is not None and name:
        raise click.UsageError("--pid and --name are mutually exclusive")
    if pid is not None and pid <= 0:
        raise click.BadParameter("must be > 0", param_hint="--pid")
    if interval is not None and interval <= 0:
        raise click.BadParameter("must be > 0", param_hint="--interval")
    if duration is not None and duration < 0:
        raise click.BadParameter("must be >= 0", param_hint="--duration")

    try:
        cfg = Config.load(Path(config_path) if config_path else None)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if pid is not None:
        cfg.target.pid, cfg.target.pattern = pid, ""
    if name:
        cfg.target.pid, cfg.target.pattern = 0, name
    if interval is not None:
        cfg.system.sample_interval = interval
    if duration is not None:
        cfg.system.duration = duration
    if log_path:
        cfg.logging.detailed_path = log_path
    if text_log:
        cfg.logging.summary_path = text_log
    if split_on_process:
        cfg.logging.split_on_process = True
    if control_socket:
        cfg.control.enabled = True
        cfg.control.socket_path = control_socket

    if cfg.target.pattern:
        import re

        try:
            re.compile(cfg.target.pattern)
        except re.error as e:
            raise click.BadParameter(f"invalid regex: {e}", param_hint="--name") from e
    return cfg


@main.command()
@_monitor_options
@click.option("--summary", "show_summary", is_flag=True, help="Print run statistics on exit")
def run(show_summary: bool, **options: Any) -> None:
    """Sample headless, printing alerts and lifecycle events."""
    import asyncio

    from perfwatch import logging as console
    from perfwatch.errors import SegmentIoError
    from perfwatch.logging import configure
    from perfwatch.sampler import Sampler

    cfg = _build_config(**options)
    configure(cfg)

    sampler = Sampler(cfg, console_output=True)
    try:
        asyncio.run(sampler.run())
    except SegmentIoError as e:
        raise click.ClickException(f"cannot open metric logs: {e}") from e
    except KeyboardInterrupt:
        sampler.close()

    if show_summary:
        for line in sampler.summary.report_lines():
            click.echo(line)
    for path in (cfg.logging.detailed_path, cfg.logging.summary_path):
        if path:
            console.summary_saved(path)


@main.command()
@_monitor_options
def tui(**options: Any) -> None:
    """Launch interactive dashboard."""
    from perfwatch.logging import configure
    from perfwatch.tui import run_tui

    cfg = _build_config(**options)
    configure(cfg, source="tui")
    run_tui(cfg)


@main.command()
@click.argument("name", required=False, default="")
@click.option("--socket", "socket_path", type=click.Path(dir_okay=False), help="Control socket")
def split(name: str, socket_path: str | None) -> None:
    """Split a running monitor's logs, optionally renaming the closed segment."""
    import asyncio
    from pathlib import Path

    from perfwatch.config import Config
    from perfwatch.control import send_request

    path = Path(socket_path) if socket_path else Config.load().socket_path
    try:
        reply = asyncio.run(send_request(path, name))
    except (OSError, TimeoutError) as e:
        raise click.ClickException(f"no monitor listening on {path}: {e}") from e
    if not reply.get("ok"):
        raise click.ClickException(f"split rejected (segment {reply.get('segment')})")
    click.echo(f"Now writing segment {reply['segment']}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write a default config file."""
    from perfwatch.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        raise click.ClickException(f"{cfg.config_path} already exists (use --force)")
    cfg.save()
    click.echo(f"Created default config at {cfg.config_path}")


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from perfwatch.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  read_timeout = {cfg.system.read_timeout}")
    click.echo(f"  history_size = {cfg.system.history_size}")
    click.echo(f"  history_gap_policy = {cfg.system.history_gap_policy}")
    click.echo(f"  proc_root = {cfg.system.proc_root}")
    click.echo(f"  sys_root = {cfg.system.sys_root}")
    click.echo()
    click.echo("[target]")
    click.echo(f"  pid = {cfg.target.pid}")
    click.echo(f"  pattern = {cfg.target.pattern!r}")
    click.echo()
    click.echo("[logging]")
    click.echo(f"  detailed_path = {cfg.logging.detailed_path!r}")
    click.echo(f"  summary_path = {cfg.logging.summary_path!r}")
    click.echo(f"  split_on_process = {cfg.logging.split_on_process}")
    click.echo(f"  split_confirm_timeout = {cfg.logging.split_confirm_timeout}")
    click.echo()
    click.echo("[control]")
    click.echo(f"  enabled = {cfg.control.enabled}")
    click.echo(f"  socket_path = {cfg.socket_path}")
    click.echo()
    click.echo("[alerts]")
    click.echo(f"  enabled = {cfg.alerts.enabled}")
    for rule in cfg.alerts.rules:
        click.echo(
            f"  {rule.name}: {rule.key} {rule.comparator} {rule.threshold:g} "
            f"x{rule.samples} ({rule.severity})"
        )
