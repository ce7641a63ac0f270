"""Metric instruments and the sink the aggregator writes to."""

from retrieval_recorder.metrics.errors import MetricsSinkError
from retrieval_recorder.metrics.instruments import CounterName, HistogramName, error_counter
from retrieval_recorder.metrics.sink import MetricsSink, OpenTelemetryMetricsSink

__all__ = [
    "CounterName",
    "HistogramName",
    "MetricsSink",
    "MetricsSinkError",
    "OpenTelemetryMetricsSink",
    "error_counter",
]
