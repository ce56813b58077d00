"""Tests for metrics aggregation and the dashboard.

This module tests aggregation over the tracker's process history:
- MetricsAggregator: success rates, per-mode performance, failures
- MetricsDashboard: Displaying metrics to users
"""

from __future__ import annotations

from datetime import timedelta
from io import StringIO

import pytest
from rich.console import Console

from cmdsupervisor.core.models import ExecutionMode, ProcessRecord, ResourceMetrics, _utc_now
from cmdsupervisor.core.tracker import ProcessTracker
from cmdsupervisor.metrics.aggregator import MetricsAggregator
from cmdsupervisor.metrics.dashboard import MetricsDashboard, format_bytes


def _record(owner, exit_code=0, signal=None, duration_ms=100.0, cpu=0.1, rss=1024, output=10, age_minutes=0, command="cmd"):
    now = _utc_now()
    return ProcessRecord(
        handle_id=f"proc-{id(object())}",
        pid=1000,
        owner=owner,
        owner_id="owner",
        command=command,
        started_at=now - timedelta(minutes=age_minutes, milliseconds=duration_ms),
        ended_at=now - timedelta(minutes=age_minutes),
        duration_ms=duration_ms,
        exit_code=exit_code,
        signal=signal,
        metrics=ResourceMetrics(cpu_time_seconds=cpu, peak_rss_bytes=rss, output_bytes=output),
    )


@pytest.fixture
def populated_tracker() -> ProcessTracker:
    """Tracker whose history holds a fixed mix of outcomes."""
    tracker = ProcessTracker(history_size=50)
    records = [
        _record(ExecutionMode.FOREGROUND, duration_ms=100, command="echo ok"),
        _record(ExecutionMode.FOREGROUND, duration_ms=300, command="make test"),
        _record(ExecutionMode.FOREGROUND, exit_code=2, duration_ms=200, command="make lint"),
        _record(ExecutionMode.BACKGROUND, exit_code=None, signal="SIGTERM", duration_ms=5000, rss=4096, command="sleep 60"),
        _record(ExecutionMode.SESSION, duration_ms=50, age_minutes=120, command="old session shell"),
    ]
    for record in records:
        tracker._history.append(record)
    return tracker


# =============================================================================
# MetricsAggregator Tests
# =============================================================================


class TestMetricsAggregator:
    """Tests for metrics aggregation and analysis."""

    def test_summary_stats(self, populated_tracker):
        stats = MetricsAggregator(populated_tracker).get_summary_stats()

        assert stats["total_executions"] == 5
        assert stats["overall_success_rate"] == "60.0%"
        assert stats["avg_duration_ms"] == pytest.approx((100 + 300 + 200 + 5000 + 50) / 5)
        assert stats["total_cpu_seconds"] == pytest.approx(0.5)
        assert stats["peak_rss_bytes"] == 4096
        assert stats["total_output_bytes"] == 50
        assert stats["signalled"] == 1
        assert stats["live_processes"] == 0

    def test_mode_performance(self, populated_tracker):
        rows = MetricsAggregator(populated_tracker).get_mode_performance()

        by_mode = {r.mode: r for r in rows}
        assert by_mode[ExecutionMode.FOREGROUND].total_executions == 3
        assert by_mode[ExecutionMode.FOREGROUND].formatted_success_rate == "66.7%"
        assert by_mode[ExecutionMode.BACKGROUND].success_rate == 0.0
        assert by_mode[ExecutionMode.BACKGROUND].peak_rss_bytes == 4096
        # Sorted best first
        assert rows[0].mode == ExecutionMode.SESSION
        assert rows[-1].mode == ExecutionMode.BACKGROUND

    def test_time_window(self, populated_tracker):
        aggregator = MetricsAggregator(populated_tracker)

        assert aggregator.get_summary_stats(minutes=60)["total_executions"] == 4
        modes = {r.mode for r in aggregator.get_mode_performance(minutes=60)}
        assert ExecutionMode.SESSION not in modes

    def test_recent_failures(self, populated_tracker):
        failures = MetricsAggregator(populated_tracker).get_recent_failures()

        assert {f["command"] for f in failures} == {"make lint", "sleep 60"}
        signalled = next(f for f in failures if f["signal"])
        assert signalled["mode"] == "background"
        assert signalled["exit_code"] is None

    def test_slowest(self, populated_tracker):
        slowest = MetricsAggregator(populated_tracker).get_slowest(limit=2)
        assert [r.command for r in slowest] == ["sleep 60", "make test"]

    def test_empty_history(self):
        aggregator = MetricsAggregator(ProcessTracker())

        stats = aggregator.get_summary_stats()
        assert stats["total_executions"] == 0
        assert stats["overall_success_rate"] == "0.0%"
        assert stats["peak_rss_bytes"] == 0
        assert aggregator.get_mode_performance() == []
        assert aggregator.get_recent_failures() == []


# =============================================================================
# MetricsDashboard Tests
# =============================================================================


class TestMetricsDashboard:
    """Tests for metrics dashboard display."""

    def test_show_metrics_output(self, populated_tracker):
        buffer = StringIO()
        console = Console(file=buffer, width=120)

        MetricsDashboard(MetricsAggregator(populated_tracker), console).show()

        output = buffer.getvalue()
        assert "Command Supervisor Metrics" in output
        assert "Performance by Mode" in output
        assert "foreground" in output
        assert "make lint" in output
        assert "SIGTERM" in output

    def test_show_without_failures(self):
        buffer = StringIO()
        console = Console(file=buffer, width=120)

        MetricsDashboard(MetricsAggregator(ProcessTracker()), console).show()

        assert "No recent failures" in buffer.getvalue()

    @pytest.mark.parametrize(
        "n,expected",
        [(0, "0B"), (512, "512B"), (2048, "2.0KiB"), (5 * 1024 * 1024, "5.0MiB"), (3 * 1024**4, "3072.0GiB")],
    )
    def test_format_bytes(self, n, expected):
        assert format_bytes(n) == expected
