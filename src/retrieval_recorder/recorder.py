"""EventRecorder: persists inbound batches and feeds them to the aggregator.

A batch is written to the event log first, in one transaction. Only once
it is stored are its events aggregated into metrics, so a batch rejected
with a storage error (and retried by the client) is never counted twice.
When no database is configured the recorder only aggregates.
"""

from collections.abc import Sequence
from typing import Self

import structlog
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics.export import MetricReader

from retrieval_recorder.aggregation.aggregator import RetrievalAggregator
from retrieval_recorder.contracts import AggregateRecord, LifecycleEvent
from retrieval_recorder.core.config import RecorderConfig
from retrieval_recorder.metrics.sink import MetricsSink, OpenTelemetryMetricsSink
from retrieval_recorder.providers.resolver import StorageProviderResolver
from retrieval_recorder.storage.database import RecorderDB, StorageError
from retrieval_recorder.storage.repository import EventRepository

logger = structlog.get_logger(__name__)


class EventRecorder:
    """Entry point for validated event batches.

    Example:
        recorder = EventRecorder.from_config(load_config())
        recorder.start()
        recorder.record_events(events)
        recorder.stop()
    """

    def __init__(
        self,
        aggregator: RetrievalAggregator,
        *,
        db: RecorderDB | None = None,
        sink: OpenTelemetryMetricsSink | None = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            aggregator: Aggregator that turns events into metrics.
            db: Event log database. Persistence is skipped when None.
            sink: Metrics sink owned by the recorder, shut down on stop().
        """
        self._aggregator = aggregator
        self._db = db
        self._repository = EventRepository(db) if db is not None else None
        self._owned_sink = sink
        self._started = False

    @classmethod
    def from_config(cls, config: RecorderConfig) -> Self:
        """Build a recorder with its database, sink and resolver from config."""
        readers: list[MetricReader] = []
        if config.metrics.prometheus:
            readers.append(PrometheusMetricReader())
        sink = OpenTelemetryMetricsSink(readers, meter_name=config.metrics.meter_name)

        resolver = None
        if config.providers.enabled:
            resolver = StorageProviderResolver(
                config.providers.endpoint,
                timeout=config.providers.timeout_sec,
                cache_size=config.providers.cache_size,
                max_workers=config.providers.max_workers,
            )

        aggregator = RetrievalAggregator(
            sink,
            resolver=resolver,
            retrieval_timeout=config.aggregation.retrieval_timeout_sec,
            state_pool_size=config.aggregation.state_pool_size,
        )

        db = RecorderDB(config.database.url) if config.database.url else None
        if db is None:
            logger.warning("Event log persistence disabled; no database URL configured")
        return cls(aggregator, db=db, sink=sink)

    @property
    def aggregator(self) -> RetrievalAggregator:
        return self._aggregator

    @property
    def repository(self) -> EventRepository | None:
        return self._repository

    @property
    def sink(self) -> MetricsSink | None:
        return self._owned_sink

    @property
    def in_flight(self) -> int:
        """Retrievals currently tracked in memory."""
        return len(self._aggregator.table)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._aggregator.start()
        logger.info("Event recorder started", persistence=self._repository is not None)

    def stop(self) -> None:
        """Stop aggregation and release the database and sink. Idempotent."""
        if not self._started and self._db is None and self._owned_sink is None:
            return
        self._started = False
        self._aggregator.stop()
        if self._db is not None:
            self._db.close()
            self._db = None
        if self._owned_sink is not None:
            self._owned_sink.shutdown()
            self._owned_sink = None
        logger.info("Event recorder stopped")

    def record_events(self, events: Sequence[LifecycleEvent]) -> None:
        """Persist and aggregate a batch of lifecycle events.

        Raises:
            StorageError: If the batch could not be persisted. Nothing from
                the batch is aggregated in that case.
        """
        if self._repository is not None:
            try:
                self._repository.insert_events(events)
            except StorageError as e:
                logger.error("Could not persist retrieval events", count=len(events), error=e.message)
                raise
        for event in events:
            self._aggregator.handle(event)
        logger.debug("Recorded retrieval events", count=len(events))

    def record_aggregate_events(self, records: Sequence[AggregateRecord]) -> None:
        """Persist and aggregate a batch of aggregate records.

        Raises:
            StorageError: If the batch could not be persisted. Nothing from
                the batch is aggregated in that case.
        """
        if self._repository is not None:
            try:
                self._repository.insert_aggregate_events(records)
            except StorageError as e:
                logger.error("Could not persist aggregate retrieval events", count=len(records), error=e.message)
                raise
        for record in records:
            resolved = self._aggregator.resolve_providers(record)
            self._aggregator.handle_aggregate(record, resolved)
        logger.debug("Recorded aggregate retrieval events", count=len(records))
