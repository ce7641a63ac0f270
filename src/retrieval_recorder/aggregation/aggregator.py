"""RetrievalAggregator turns retrieval telemetry into funnel and latency metrics.

Two entry points:

- handle(event): correlates discrete LifecycleEvents per retrieval id through
  the RetrievalStateTable. Terminal events (indexer failure, retrieval
  success) finalize the retrieval; per-retrieval metrics are emitted only by
  the call that actually obtained the summary, so duplicate terminal events
  never double count. Retrievals that never see a terminal event expire
  after the table timeout and are counted as expired, without per-request
  histogram samples.
- handle_aggregate(record): one synchronous pass over a retrieval the client
  has already correlated. Storage provider ids are resolved to registry ids
  (all of a record's providers concurrently) before anything is emitted.

Neither entry point raises for business reasons: unknown (phase, event)
pairs are ignored, and details that do not match the expected shape for an
event skip only the metric derived from them.
"""

from collections.abc import Callable, Mapping
from datetime import timedelta
from uuid import UUID

import structlog

from retrieval_recorder.aggregation.classifier import classify_error
from retrieval_recorder.aggregation.state import RetrievalSummary, StatePool
from retrieval_recorder.aggregation.table import DEFAULT_RETRIEVAL_TIMEOUT_SEC, RetrievalStateTable
from retrieval_recorder.contracts.enums import (
    EventCode,
    Phase,
    ProtocolFamily,
    is_protocol_agnostic,
    protocol_from_multicodec,
    protocol_from_provider_id,
)
from retrieval_recorder.contracts.events import (
    AggregateRecord,
    CandidatesDetail,
    ErrorDetail,
    LifecycleEvent,
    ReceivedDetail,
)
from retrieval_recorder.metrics.instruments import CounterName, HistogramName, error_counter
from retrieval_recorder.metrics.sink import MetricsSink
from retrieval_recorder.providers.resolver import StorageProviderResolver

logger = structlog.get_logger(__name__)


def _seconds(delta: timedelta) -> float:
    return delta.total_seconds()


class RetrievalAggregator:
    """Applies per-event update rules and emits metrics to a MetricsSink.

    Owns its RetrievalStateTable. The caller controls the lifecycle:
    start() launches the table's expiry reaper, stop() halts it and closes
    the resolver.

    Example:
        >>> aggregator = RetrievalAggregator(sink)
        >>> aggregator.start()
        >>> aggregator.handle(event)
        >>> aggregator.stop()
    """

    def __init__(
        self,
        sink: MetricsSink,
        *,
        resolver: StorageProviderResolver | None = None,
        retrieval_timeout: float = DEFAULT_RETRIEVAL_TIMEOUT_SEC,
        state_pool_size: int = 1024,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            sink: Destination for counter and histogram updates.
            resolver: Registry lookup for aggregate records. When None,
                provider-tagged samples carry only the raw ``sp_id``.
            retrieval_timeout: Lifetime in seconds of in-flight retrieval state.
            state_pool_size: Number of recycled state objects kept for reuse.
            clock: Monotonic clock for expiry deadlines (tests).
        """
        self._sink = sink
        self._resolver = resolver
        table_kwargs = {} if clock is None else {"clock": clock}
        self._table = RetrievalStateTable(
            timeout=retrieval_timeout,
            on_expire=self._on_expire,
            pool=StatePool(state_pool_size),
            **table_kwargs,
        )

    @property
    def table(self) -> RetrievalStateTable:
        return self._table

    def start(self) -> None:
        self._table.start()

    def stop(self) -> None:
        """Stop expiry and release the resolver. Idempotent."""
        self._table.stop()
        if self._resolver is not None:
            self._resolver.close()

    # =========================================================================
    # Lifecycle events
    # =========================================================================

    def handle(self, event: LifecycleEvent) -> None:
        """Apply the update rule for ``event``'s (phase, event code)."""
        match (event.phase, event.event_code):
            case (Phase.INDEXER, EventCode.STARTED):
                self._indexer_started(event)
            case (Phase.INDEXER, EventCode.CANDIDATES_FOUND):
                self._candidates_found(event)
            case (Phase.INDEXER, EventCode.CANDIDATES_FILTERED):
                self._candidates_filtered(event)
            case (Phase.INDEXER, EventCode.FAILED):
                self._indexer_failed(event)
            case (Phase.QUERY, EventCode.QUERY_ASKED):
                self._sink.add(CounterName.QUERY_ASKED, sp_id=event.storage_provider_id)
            case (Phase.QUERY, EventCode.QUERY_ASKED_FILTERED):
                self._sink.add(CounterName.QUERY_ASKED_FILTERED, sp_id=event.storage_provider_id)
            case (Phase.QUERY, EventCode.FAILED):
                self._sink.add(CounterName.QUERY_FAILURES, sp_id=event.storage_provider_id)
            case (Phase.RETRIEVAL, EventCode.STARTED):
                self._retrieval_started(event)
            case (Phase.RETRIEVAL, EventCode.FAILED):
                self._retrieval_failed(event)
            case (Phase.RETRIEVAL, EventCode.FIRST_BYTE):
                self._first_byte(event)
            case (Phase.RETRIEVAL, EventCode.SUCCESS):
                self._retrieval_succeeded(event)
            case _:
                pass

    def _indexer_started(self, event: LifecycleEvent) -> None:
        state = self._table.get_or_create(event.retrieval_id)
        if state.record_start_time(event.event_time):
            self._sink.add(CounterName.TOTAL_REQUESTS)

    def _candidates_found(self, event: LifecycleEvent) -> None:
        if not isinstance(event.details, CandidatesDetail) or event.details.candidate_count <= 0:
            return
        state = self._table.get_or_create(event.retrieval_id)
        if not state.record_indexer_candidates(event.event_time, event.details.candidate_count):
            return
        self._sink.add(CounterName.INDEXER_CANDIDATES)
        start_time = state.start_time
        if start_time is not None:
            self._sink.record(
                HistogramName.TIME_TO_FIRST_INDEXER_RESULT,
                _seconds(event.event_time - start_time),
            )

    def _candidates_filtered(self, event: LifecycleEvent) -> None:
        if not isinstance(event.details, CandidatesDetail) or event.details.candidate_count <= 0:
            return
        state = self._table.get_or_create(event.retrieval_id)
        if state.record_indexer_filtered(event.details.candidate_count):
            self._sink.add(CounterName.INDEXER_CANDIDATES_FILTERED)

    def _indexer_failed(self, event: LifecycleEvent) -> None:
        summary = self._table.finalize(event.retrieval_id)
        if summary is None:
            logger.debug("Ignoring indexer failure for inactive retrieval", retrieval_id=str(event.retrieval_id))
            return
        self._sink.add(CounterName.INDEXER_FAILURES)

    def _retrieval_started(self, event: LifecycleEvent) -> None:
        state = self._table.get_or_create(event.retrieval_id)
        if is_protocol_agnostic(event.storage_provider_id):
            if state.record_bitswap_attempt():
                self._sink.add(CounterName.BITSWAP_ATTEMPTS)
        elif state.record_graphsync_attempt():
            self._sink.add(CounterName.GRAPHSYNC_ATTEMPTS, sp_id=event.storage_provider_id)

    def _retrieval_failed(self, event: LifecycleEvent) -> None:
        state = self._table.get_or_create(event.retrieval_id)
        state.record_failure()
        if not is_protocol_agnostic(event.storage_provider_id):
            self._sink.add(CounterName.GRAPHSYNC_RETRIEVAL_FAILURES, sp_id=event.storage_provider_id)
        if isinstance(event.details, ErrorDetail):
            protocol = protocol_from_provider_id(event.storage_provider_id)
            self._sink.add(error_counter(classify_error(event.details.error)), protocol=protocol)

    def _first_byte(self, event: LifecycleEvent) -> None:
        state = self._table.get_or_create(event.retrieval_id)
        if not state.record_first_byte(event.event_time):
            return
        protocol = protocol_from_provider_id(event.storage_provider_id)
        self._sink.add(CounterName.FIRST_BYTE_RECEIVED, protocol=protocol)
        start_time = state.start_time
        if start_time is not None:
            self._sink.record(
                HistogramName.TIME_TO_FIRST_BYTE,
                _seconds(event.event_time - start_time),
                protocol=protocol,
            )

    def _retrieval_succeeded(self, event: LifecycleEvent) -> None:
        summary = self._table.finalize(event.retrieval_id)
        if summary is None:
            logger.debug("Ignoring success for inactive retrieval", retrieval_id=str(event.retrieval_id))
            return

        protocol = protocol_from_provider_id(event.storage_provider_id)
        self._sink.add(CounterName.SUCCESS, protocol=protocol)
        if protocol == ProtocolFamily.BITSWAP:
            self._sink.add(CounterName.BITSWAP_SUCCESS)
        else:
            self._sink.add(CounterName.GRAPHSYNC_SUCCESS, sp_id=event.storage_provider_id)

        if summary.start_time is not None:
            self._sink.record(
                HistogramName.DEAL_DURATION,
                _seconds(event.event_time - summary.start_time),
                protocol=protocol,
            )
        if isinstance(event.details, ReceivedDetail):
            received = event.details.received_size
            self._sink.record(HistogramName.DEAL_SIZE, received, protocol=protocol)
            if summary.first_byte_time is not None:
                transfer_seconds = _seconds(event.event_time - summary.first_byte_time)
                if transfer_seconds > 0:
                    self._sink.record(HistogramName.BANDWIDTH, int(received / transfer_seconds), protocol=protocol)

        self._record_per_request(summary.indexer_candidates, summary.indexer_filtered, summary.failed_count)

    def _record_per_request(self, candidates: int, filtered: int, failures: int) -> None:
        self._sink.record(HistogramName.CANDIDATES_PER_REQUEST, candidates)
        self._sink.record(HistogramName.FILTERED_CANDIDATES_PER_REQUEST, filtered)
        self._sink.record(HistogramName.FAILURES_PER_REQUEST, failures)

    def _on_expire(self, retrieval_id: UUID, summary: RetrievalSummary) -> None:
        self._sink.add(CounterName.EXPIRED)
        logger.debug(
            "Retrieval expired without terminal event",
            retrieval_id=str(retrieval_id),
            started=summary.start_time is not None,
            indexer_candidates=summary.indexer_candidates,
            failed_count=summary.failed_count,
        )

    # =========================================================================
    # Aggregate records
    # =========================================================================

    def resolve_providers(self, record: AggregateRecord) -> dict[str, str]:
        """Resolve every storage provider referenced by ``record``.

        Returns:
            Mapping of peer id to registry id ("" when unresolved). Empty
            when no resolver is configured.
        """
        if self._resolver is None:
            return {}
        peer_ids = list(record.attempts)
        if record.success and record.storage_provider_id:
            peer_ids.append(record.storage_provider_id)
        return self._resolver.resolve_many(peer_ids)

    @staticmethod
    def _provider_tags(peer_id: str, resolved: Mapping[str, str]) -> dict[str, str]:
        tags = {"sp_id": peer_id}
        registry_id = resolved.get(peer_id, "")
        if registry_id:
            tags["fil_sp_id"] = registry_id
        return tags

    def handle_aggregate(self, record: AggregateRecord, resolved: Mapping[str, str] | None = None) -> None:
        """Emit all metrics for one pre-aggregated retrieval.

        Args:
            record: The retrieval, already correlated by the client.
            resolved: Pre-resolved peer id -> registry id mapping. Resolved
                here via resolve_providers() when omitted.
        """
        if resolved is None:
            resolved = self.resolve_providers(record)

        self._sink.add(CounterName.TOTAL_REQUESTS)

        failure_count = 0
        attempted: set[str] = set()
        lowest_ttfb: timedelta | None = None
        lowest_ttfb_protocol = ""

        for peer_id, attempt in record.attempts.items():
            protocol = protocol_from_multicodec(attempt.protocol)
            tags = self._provider_tags(peer_id, resolved)

            if protocol not in attempted:
                attempted.add(protocol)
                match protocol:
                    case ProtocolFamily.BITSWAP:
                        self._sink.add(CounterName.BITSWAP_ATTEMPTS)
                    case ProtocolFamily.GRAPHSYNC:
                        self._sink.add(CounterName.GRAPHSYNC_ATTEMPTS, **tags)
                    case ProtocolFamily.HTTP:
                        self._sink.add(CounterName.HTTP_ATTEMPTS, **tags)

            if attempt.error:
                failure_count += 1
                match protocol:
                    case ProtocolFamily.GRAPHSYNC:
                        self._sink.add(CounterName.GRAPHSYNC_RETRIEVAL_FAILURES, **tags)
                    case ProtocolFamily.HTTP:
                        self._sink.add(CounterName.HTTP_RETRIEVAL_FAILURES, **tags)
                self._sink.add(error_counter(classify_error(attempt.error)), protocol=protocol)

            ttfb = attempt.time_to_first_byte
            if ttfb > timedelta(0) and (lowest_ttfb is None or ttfb < lowest_ttfb):
                lowest_ttfb = ttfb
                lowest_ttfb_protocol = protocol

        if record.time_to_first_indexer_result > timedelta(0):
            self._sink.record(
                HistogramName.TIME_TO_FIRST_INDEXER_RESULT,
                _seconds(record.time_to_first_indexer_result),
            )
        if record.indexer_candidates_received > 0:
            self._sink.add(CounterName.INDEXER_CANDIDATES)
        if record.indexer_candidates_filtered > 0:
            self._sink.add(CounterName.INDEXER_CANDIDATES_FILTERED)

        succeeded_protocol = protocol_from_multicodec(record.protocol_succeeded)
        if record.time_to_first_byte > timedelta(0):
            first_byte_protocol = lowest_ttfb_protocol or succeeded_protocol
            self._sink.add(CounterName.FIRST_BYTE_RECEIVED, protocol=first_byte_protocol)
            self._sink.record(
                HistogramName.TIME_TO_FIRST_BYTE,
                _seconds(record.time_to_first_byte),
                protocol=first_byte_protocol,
            )

        if record.success:
            tags = self._provider_tags(record.storage_provider_id, resolved)
            self._sink.add(CounterName.SUCCESS, protocol=succeeded_protocol)
            match succeeded_protocol:
                case ProtocolFamily.BITSWAP:
                    self._sink.add(CounterName.BITSWAP_SUCCESS)
                case ProtocolFamily.GRAPHSYNC:
                    self._sink.add(CounterName.GRAPHSYNC_SUCCESS, **tags)
                case ProtocolFamily.HTTP:
                    self._sink.add(CounterName.HTTP_SUCCESS, **tags)

            self._sink.record(HistogramName.DEAL_DURATION, _seconds(record.duration), protocol=succeeded_protocol)
            self._sink.record(HistogramName.DEAL_SIZE, record.bytes_transferred, protocol=succeeded_protocol)
            self._sink.record(HistogramName.BANDWIDTH, record.bandwidth, protocol=succeeded_protocol)
            self._record_per_request(
                record.indexer_candidates_received,
                record.indexer_candidates_filtered,
                failure_count,
            )
        elif not record.attempts:
            self._sink.add(CounterName.INDEXER_FAILURES)
