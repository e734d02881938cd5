"""Interactive dashboard for perfwatch."""

from perfwatch.tui.app import PerfwatchApp, run_tui

__all__ = ["PerfwatchApp", "run_tui"]
