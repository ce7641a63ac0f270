"""Metrics sink: the update contract the aggregator writes to.

The aggregator only ever calls add() on counters and record() on
histograms, with string attributes as keyword arguments. Implementations
must tolerate concurrent calls from many threads.

OpenTelemetryMetricsSink backs the contract with an OpenTelemetry SDK
MeterProvider. All instruments are created up front so a broken metrics
setup fails at startup, never while handling events. Readers are injected:
a PrometheusMetricReader for pull exposition in production, an
InMemoryMetricReader in tests.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import structlog
from opentelemetry.metrics import Counter, Histogram
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View

from retrieval_recorder.metrics.errors import MetricsSinkError
from retrieval_recorder.metrics.instruments import (
    COUNTER_DESCRIPTIONS,
    HISTOGRAMS,
    CounterName,
    HistogramName,
)

logger = structlog.get_logger(__name__)

DEFAULT_METER_NAME = "retrieval-recorder"


@runtime_checkable
class MetricsSink(Protocol):
    """Counter and histogram updates emitted by the aggregator."""

    def add(self, counter: CounterName, delta: int = 1, **attributes: str) -> None:
        """Increment a monotonic counter."""
        ...

    def record(self, histogram: HistogramName, value: float, **attributes: str) -> None:
        """Record one histogram sample."""
        ...


def build_views() -> list[View]:
    """Explicit-bucket views for every recorder histogram."""
    return [
        View(
            instrument_name=name.value,
            aggregation=ExplicitBucketHistogramAggregation(boundaries=spec.boundaries),
        )
        for name, spec in HISTOGRAMS.items()
    ]


class OpenTelemetryMetricsSink:
    """MetricsSink backed by the OpenTelemetry SDK.

    Example:
        >>> from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        >>> reader = InMemoryMetricReader()
        >>> sink = OpenTelemetryMetricsSink([reader])
        >>> sink.add(CounterName.TOTAL_REQUESTS)
        >>> data = reader.get_metrics_data()
    """

    def __init__(
        self,
        readers: Sequence[MetricReader] = (),
        *,
        meter_name: str = DEFAULT_METER_NAME,
    ) -> None:
        """Create the provider and register every instrument.

        Args:
            readers: Metric readers attached to the provider.
            meter_name: Instrumentation scope name for the meter.

        Raises:
            MetricsSinkError: If the provider or any instrument cannot be created.
        """
        try:
            self._provider = MeterProvider(metric_readers=list(readers), views=build_views())
        except Exception as e:
            raise MetricsSinkError(meter_name, f"cannot create meter provider: {e}") from e

        meter = self._provider.get_meter(meter_name)
        self._counters: dict[CounterName, Counter] = {}
        self._histograms: dict[HistogramName, Histogram] = {}

        for counter_name in CounterName:
            try:
                self._counters[counter_name] = meter.create_counter(
                    counter_name.value,
                    description=COUNTER_DESCRIPTIONS[counter_name],
                )
            except Exception as e:
                raise MetricsSinkError(counter_name.value, str(e)) from e

        for histogram_name, spec in HISTOGRAMS.items():
            try:
                self._histograms[histogram_name] = meter.create_histogram(
                    histogram_name.value,
                    unit=spec.unit,
                    description=spec.description,
                )
            except Exception as e:
                raise MetricsSinkError(histogram_name.value, str(e)) from e

        self._closed = False
        logger.debug(
            "Metrics sink initialized",
            meter_name=meter_name,
            counters=len(self._counters),
            histograms=len(self._histograms),
            readers=len(readers),
        )

    def add(self, counter: CounterName, delta: int = 1, **attributes: str) -> None:
        self._counters[counter].add(delta, attributes=attributes or None)

    def record(self, histogram: HistogramName, value: float, **attributes: str) -> None:
        self._histograms[histogram].record(value, attributes=attributes or None)

    def shutdown(self) -> None:
        """Flush and shut down the provider and its readers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._provider.shutdown()
