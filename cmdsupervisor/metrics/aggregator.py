"""Metrics aggregation over retired process records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from cmdsupervisor.core.models import ExecutionMode, ProcessRecord, _utc_now
from cmdsupervisor.core.tracker import ProcessTracker

logger = logging.getLogger(__name__)


@dataclass
class ModePerformance:
    """Aggregated performance for one execution mode."""

    mode: ExecutionMode
    success_rate: float
    avg_duration_ms: float
    avg_cpu_seconds: float
    peak_rss_bytes: int
    total_executions: int

    @property
    def formatted_success_rate(self) -> str:
        return f"{self.success_rate * 100:.1f}%"


def _success_rate(records: list[ProcessRecord]) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.succeeded) / len(records)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MetricsAggregator:
    """Summarise the tracker's bounded history of finished processes.

    History is in-memory only, so figures cover this supervisor's lifetime
    (up to the tracker's history size).

    USAGE:
        aggregator = MetricsAggregator(supervisor.tracker)
        aggregator.get_summary_stats()
        aggregator.get_mode_performance()
    """

    def __init__(self, tracker: ProcessTracker):
        self.tracker = tracker

    def _records(self, minutes: int | None = None) -> list[ProcessRecord]:
        records = self.tracker.history()
        if minutes is not None:
            cutoff = _utc_now() - timedelta(minutes=minutes)
            records = [r for r in records if r.ended_at >= cutoff]
        return records

    def get_mode_performance(self, minutes: int | None = None) -> list[ModePerformance]:
        """Performance by execution mode, best success rate first."""
        by_mode: dict[ExecutionMode, list[ProcessRecord]] = {}
        for record in self._records(minutes):
            by_mode.setdefault(record.owner, []).append(record)

        rows = [
            ModePerformance(
                mode=mode,
                success_rate=_success_rate(records),
                avg_duration_ms=_mean([r.duration_ms for r in records]),
                avg_cpu_seconds=_mean([r.metrics.cpu_time_seconds for r in records]),
                peak_rss_bytes=max(r.metrics.peak_rss_bytes for r in records),
                total_executions=len(records),
            )
            for mode, records in by_mode.items()
        ]
        return sorted(rows, key=lambda p: p.success_rate, reverse=True)

    def get_recent_failures(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent non-successful processes, newest first."""
        failures = [r for r in self._records() if not r.succeeded]
        failures.sort(key=lambda r: r.ended_at, reverse=True)
        return [
            {
                "ended_at": r.ended_at,
                "mode": r.owner.value,
                "owner_id": r.owner_id,
                "command": r.command,
                "exit_code": r.exit_code,
                "signal": r.signal,
                "duration_ms": r.duration_ms,
            }
            for r in failures[:limit]
        ]

    def get_slowest(self, limit: int = 5) -> list[ProcessRecord]:
        return sorted(self._records(), key=lambda r: r.duration_ms, reverse=True)[:limit]

    def get_summary_stats(self, minutes: int | None = None) -> dict[str, Any]:
        """High-level summary statistics."""
        records = self._records(minutes)
        return {
            "total_executions": len(records),
            "overall_success_rate": f"{_success_rate(records) * 100:.1f}%",
            "avg_duration_ms": _mean([r.duration_ms for r in records]),
            "total_cpu_seconds": sum(r.metrics.cpu_time_seconds for r in records),
            "peak_rss_bytes": max((r.metrics.peak_rss_bytes for r in records), default=0),
            "total_output_bytes": sum(r.metrics.output_bytes for r in records),
            "signalled": sum(1 for r in records if r.signal is not None),
            "live_processes": len(self.tracker),
        }
