"""Live terminal monitoring of a background task.

Polls the task's status snapshot and redraws a header, an output tail and
a resource footer until the task reaches a terminal state.
"""

from __future__ import annotations

import time

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cmdsupervisor.core.background import BackgroundTaskManager
from cmdsupervisor.core.models import BackgroundStatus, TaskStatus
from cmdsupervisor.metrics.dashboard import format_bytes


class LiveTaskMonitor:
    """Real-time terminal view of one background task.

    Design Notes:
    - status() never blocks, so polling from the UI thread is safe
    - only the last ``tail_lines`` lines of each stream are drawn
    - stops on a terminal status or when cancel() is called
    """

    def __init__(
        self,
        manager: BackgroundTaskManager,
        console: Console | None = None,
        poll_interval: float = 0.5,
        tail_lines: int = 20,
    ):
        self.manager = manager
        self.console = console or Console()
        self.poll_interval = poll_interval
        self.tail_lines = tail_lines
        self._cancelled = False

    def create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="output"),
            Layout(name="footer", size=5),
        )
        return layout

    def cancel(self) -> None:
        self._cancelled = True

    def _tail(self, text: str) -> str:
        lines = text.rstrip("\n").split("\n")
        return "\n".join(lines[-self.tail_lines:])

    def render(self, layout: Layout, snapshot: BackgroundStatus) -> None:
        safe_command = escape(snapshot.command)
        if snapshot.status == TaskStatus.RUNNING:
            header = f"[bold blue]⟳ Running:[/] {safe_command}"
        elif snapshot.status == TaskStatus.KILLING:
            header = f"[bold yellow]… Killing:[/] {safe_command}"
        elif snapshot.status == TaskStatus.COMPLETED:
            header = f"[bold green]✓ Completed:[/] {safe_command}"
        else:
            header = f"[bold red]✗ Failed:[/] {safe_command}"
        layout["header"].update(Panel(header, style="bold"))

        parts = [Text(self._tail(snapshot.stdout))]
        if snapshot.stderr.strip():
            parts.append(Text(self._tail(snapshot.stderr), style="red"))
        title = f"Output ({snapshot.task_id})"
        if snapshot.stdout_truncated or snapshot.stderr_truncated:
            title += " [dim]earlier output dropped[/]"
        layout["output"].update(Panel(Group(*parts), title=title))

        footer = Table(show_header=False, box=None)
        footer.add_column("Metric", style="dim")
        footer.add_column("Value")
        footer.add_row("Elapsed", f"{snapshot.duration_ms / 1000:.1f}s")
        footer.add_row("CPU", f"{snapshot.metrics.cpu_time_seconds:.2f}s")
        footer.add_row("Peak RSS", format_bytes(snapshot.metrics.peak_rss_bytes))
        if snapshot.exit_code is not None:
            footer.add_row("Exit Code", str(snapshot.exit_code))
        layout["footer"].update(Panel(footer, title="Resources"))

    def monitor(self, task_id: str) -> BackgroundStatus:
        """Follow ``task_id`` until it finishes. Returns the last snapshot."""
        layout = self.create_layout()
        snapshot = self.manager.status(task_id)

        with Live(layout, console=self.console, refresh_per_second=4):
            while True:
                snapshot = self.manager.status(task_id)
                self.render(layout, snapshot)
                if snapshot.status.is_terminal or self._cancelled:
                    break
                time.sleep(self.poll_interval)
        return snapshot
