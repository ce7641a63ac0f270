# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from retrieval_recorder.aggregation.aggregator import RetrievalAggregator
from retrieval_recorder.storage import RecorderDB
from tests.fixtures.clock import FakeClock
from tests.fixtures.metrics import RecordingMetricsSink


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture
def aggregator(sink: RecordingMetricsSink, clock: FakeClock) -> Iterator[RetrievalAggregator]:
    """Aggregator on a fake clock; expiry only runs via table.expire_due()."""
    agg = RetrievalAggregator(sink, retrieval_timeout=60.0, clock=clock)
    yield agg
    agg.stop()


@pytest.fixture
def db() -> Iterator[RecorderDB]:
    database = RecorderDB.in_memory()
    yield database
    database.close()


# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
