"""Rich-based metrics dashboard."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from cmdsupervisor.metrics.aggregator import MetricsAggregator


def format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GiB"


class MetricsDashboard:
    """Terminal dashboard for process metrics.

    USAGE:
        dashboard = MetricsDashboard(aggregator)
        dashboard.show()
    """

    def __init__(self, aggregator: MetricsAggregator, console: Console | None = None):
        self.aggregator = aggregator
        self.console = console or Console()

    def show(self) -> None:
        """Display the dashboard once."""
        self.console.print()
        self.console.rule("[bold blue]Command Supervisor Metrics[/bold blue]")

        self._show_summary()
        self.console.print()

        self._show_mode_performance()
        self.console.print()

        self._show_recent_failures()

    def _show_summary(self) -> None:
        stats = self.aggregator.get_summary_stats()

        table = Table(title="Summary", show_header=False, box=None)
        table.add_column("Metric", style="dim")
        table.add_column("Value", style="bold")

        table.add_row("Total Executions", str(stats["total_executions"]))
        table.add_row("Success Rate", stats["overall_success_rate"])
        table.add_row("Avg Duration", f"{stats['avg_duration_ms']:.0f}ms")
        table.add_row("CPU Time", f"{stats['total_cpu_seconds']:.2f}s")
        table.add_row("Peak Memory", format_bytes(stats["peak_rss_bytes"]))
        table.add_row("Output", format_bytes(stats["total_output_bytes"]))
        table.add_row("Killed by Signal", str(stats["signalled"]))
        table.add_row("Live Processes", str(stats["live_processes"]))

        self.console.print(Panel(table))

    def _show_mode_performance(self) -> None:
        rows = self.aggregator.get_mode_performance()

        table = Table(title="Performance by Mode")
        table.add_column("Mode", style="cyan")
        table.add_column("Success Rate", justify="right")
        table.add_column("Avg Time", justify="right")
        table.add_column("Avg CPU", justify="right")
        table.add_column("Peak RSS", justify="right")
        table.add_column("Executions", justify="right")

        for row in rows:
            success_style = "green" if row.success_rate > 0.9 else "yellow" if row.success_rate > 0.7 else "red"
            table.add_row(
                row.mode.value,
                f"[{success_style}]{row.formatted_success_rate}[/]",
                f"{row.avg_duration_ms:.0f}ms",
                f"{row.avg_cpu_seconds:.2f}s",
                format_bytes(row.peak_rss_bytes),
                str(row.total_executions),
            )

        self.console.print(table)

    def _show_recent_failures(self, limit: int = 5) -> None:
        failures = self.aggregator.get_recent_failures(limit)

        if not failures:
            self.console.print("[dim]No recent failures[/dim]")
            return

        table = Table(title="Recent Failures")
        table.add_column("Time", style="dim")
        table.add_column("Mode")
        table.add_column("Command")
        table.add_column("Exit")

        for f in failures:
            command = f["command"]
            table.add_row(
                f["ended_at"].strftime("%H:%M:%S"),
                f["mode"],
                escape(command[:40] + "..." if len(command) > 40 else command),
                f["signal"] or str(f["exit_code"]),
            )

        self.console.print(table)
