"""Process metrics aggregation and display."""

from cmdsupervisor.metrics.aggregator import MetricsAggregator, ModePerformance
from cmdsupervisor.metrics.dashboard import MetricsDashboard

__all__ = ["MetricsAggregator", "MetricsDashboard", "ModePerformance"]
