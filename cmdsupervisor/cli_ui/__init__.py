"""Terminal UI components for following command execution."""

from cmdsupervisor.cli_ui.live_monitor import LiveTaskMonitor

__all__ = ["LiveTaskMonitor"]
