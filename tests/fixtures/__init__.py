# tests/fixtures/__init__.py
"""Shared test doubles and factories.

Available helpers:
- FakeClock: manually advanced monotonic clock
- RecordingMetricsSink: MetricsSink capturing exact add()/record() calls
- make_event / make_record: lifecycle event and aggregate record factories
"""

from tests.fixtures.clock import FakeClock
from tests.fixtures.events import BASE_TIME, make_attempt, make_event, make_record
from tests.fixtures.metrics import MetricCall, RecordingMetricsSink

__all__ = [
    "BASE_TIME",
    "FakeClock",
    "MetricCall",
    "RecordingMetricsSink",
    "make_attempt",
    "make_event",
    "make_record",
]
