"""Aggregation and streaming flush of p4d command metrics.

Architecture:
    raw log lines
            |
            v
    MetricsPipeline (pipeline module) ---> CommandParser (lines -> commands)
            |   ^                                   |
            |   +-----------------------------------+
            v
    MetricsAggregator (aggregator module)
            |  snapshot on tick (live) or log time bucket (historical)
            v
    MetricsWriter + Dialect (formatter module)
            |
            v
    metrics channel (snapshot text)
"""

from p4metrics.metrics.aggregator import MetricsAggregator, split_ip
from p4metrics.metrics.boundary import Boundary, BoundaryDetector
from p4metrics.metrics.formatter import (
    GraphiteDialect,
    Label,
    MetricsWriter,
    PrometheusDialect,
    sanitize_label_value,
)
from p4metrics.metrics.pipeline import (
    MetricsPipeline,
    PipelineOutputs,
    PipelineState,
    Ticker,
)

__all__ = [
    # Aggregation
    "MetricsAggregator",
    "split_ip",
    # Formatting
    "GraphiteDialect",
    "Label",
    "MetricsWriter",
    "PrometheusDialect",
    "sanitize_label_value",
    # Historical replay
    "Boundary",
    "BoundaryDetector",
    # Orchestration
    "MetricsPipeline",
    "PipelineOutputs",
    "PipelineState",
    "Ticker",
]
