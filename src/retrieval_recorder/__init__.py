"""
Retrieval Recorder: ingestion and real-time aggregation of retrieval telemetry.

Accepts lifecycle events and pre-aggregated retrieval records from content
retrieval clients, persists them, and derives funnel, latency, bandwidth and
error-category metrics per retrieval.
"""

__version__ = "0.1.0"
