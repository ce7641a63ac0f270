"""Tests for RetrievalAggregator.handle() on lifecycle events."""

from uuid import uuid4

import pytest

from retrieval_recorder.aggregation.aggregator import RetrievalAggregator
from retrieval_recorder.contracts import EventCode, Phase
from retrieval_recorder.metrics import CounterName, HistogramName
from tests.fixtures.clock import FakeClock
from tests.fixtures.events import make_event
from tests.fixtures.metrics import RecordingMetricsSink

SP = "12D3KooWDGBkHBZye7rN6Pz9ihEZrHnggoVRQh6eEtKP4z1K4KeE"


class TestIndexerPhase:
    def test_start_counts_request_once(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED, at_ms=5))

        assert sink.counter_total(CounterName.TOTAL_REQUESTS) == 1

    def test_candidates_found_records_time_to_first_result(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink
    ) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FOUND, at_ms=10, details={"candidateCount": 3}))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FOUND, at_ms=20, details={"candidateCount": 2}))

        assert sink.counter_total(CounterName.INDEXER_CANDIDATES) == 1
        assert sink.values(HistogramName.TIME_TO_FIRST_INDEXER_RESULT) == [pytest.approx(0.010)]

    def test_candidates_without_start_skip_latency(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FOUND, at_ms=10, details={"candidateCount": 3}))

        assert sink.counter_total(CounterName.INDEXER_CANDIDATES) == 1
        assert sink.samples(HistogramName.TIME_TO_FIRST_INDEXER_RESULT) == []

    @pytest.mark.parametrize("details", [None, {}, {"candidateCount": "3"}, {"candidateCount": 0}, {"candidateCount": True}])
    def test_zero_or_malformed_candidates_are_ignored(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink, details: object
    ) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FOUND, at_ms=10, details=details))

        assert sink.counter_total(CounterName.INDEXER_CANDIDATES) == 0
        assert sink.samples(HistogramName.TIME_TO_FIRST_INDEXER_RESULT) == []

    def test_filtered_counted_once(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        for at_ms in (10, 20):
            aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FILTERED, at_ms=at_ms, details={"candidateCount": 2}))

        assert sink.counter_total(CounterName.INDEXER_CANDIDATES_FILTERED) == 1

    def test_indexer_failure_finalizes(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.FAILED, at_ms=5, details={"error": "no candidates"}))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.FAILED, at_ms=6, details={"error": "no candidates"}))

        assert sink.counter_total(CounterName.INDEXER_FAILURES) == 1
        assert rid not in aggregator.table

    def test_indexer_failure_for_unknown_retrieval_is_ignored(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink
    ) -> None:
        aggregator.handle(make_event(uuid4(), Phase.INDEXER, EventCode.FAILED))

        assert sink.counter_total(CounterName.INDEXER_FAILURES) == 0


class TestQueryPhase:
    @pytest.mark.parametrize(
        ("code", "counter"),
        [
            (EventCode.QUERY_ASKED, CounterName.QUERY_ASKED),
            (EventCode.QUERY_ASKED_FILTERED, CounterName.QUERY_ASKED_FILTERED),
            (EventCode.FAILED, CounterName.QUERY_FAILURES),
        ],
    )
    def test_query_events_pass_through(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink, code: EventCode, counter: CounterName
    ) -> None:
        aggregator.handle(make_event(uuid4(), Phase.QUERY, code, sp=SP))

        assert sink.counter_total(counter, sp_id=SP) == 1
        assert len(aggregator.table) == 0

    def test_unhandled_events_emit_nothing(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.CONNECTED, sp=SP))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.PROPOSED, sp=SP))
        aggregator.handle(make_event(rid, Phase.QUERY, EventCode.STARTED, sp=SP))

        assert sink.adds == []
        assert sink.records == []


class TestRetrievalPhase:
    def test_attempt_flags_per_protocol(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp="Bitswap"))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp="Bitswap"))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp=SP))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp="12D3KooWOther"))

        assert sink.counter_total(CounterName.BITSWAP_ATTEMPTS) == 1
        assert sink.counter_calls(CounterName.GRAPHSYNC_ATTEMPTS)[0].attributes == {"sp_id": SP}
        assert sink.counter_total(CounterName.GRAPHSYNC_ATTEMPTS) == 1

    def test_empty_provider_is_protocol_agnostic(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        aggregator.handle(make_event(uuid4(), Phase.RETRIEVAL, EventCode.STARTED, sp=""))

        assert sink.counter_total(CounterName.BITSWAP_ATTEMPTS) == 1
        assert sink.counter_total(CounterName.GRAPHSYNC_ATTEMPTS) == 0

    def test_failure_counts_and_classifies(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FAILED, sp=SP, details={"error": "timeout after 30s"}))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FAILED, sp="Bitswap", details={"error": "boom"}))

        assert sink.counter_total(CounterName.GRAPHSYNC_RETRIEVAL_FAILURES, sp_id=SP) == 1
        assert sink.counter_total(CounterName.GRAPHSYNC_RETRIEVAL_FAILURES) == 1
        assert sink.counter_total(CounterName.ERROR_TIMEOUT, protocol="graphsync") == 1
        assert sink.counter_total(CounterName.ERROR_OTHER, protocol="bitswap") == 1

    def test_ambiguous_error_counts_first_matching_category(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink
    ) -> None:
        message = "failed to dial 12D3KooW: timeout after 5s"
        aggregator.handle(make_event(uuid4(), Phase.RETRIEVAL, EventCode.FAILED, sp=SP, details={"error": message}))

        assert sink.counter_total(CounterName.ERROR_TIMEOUT, protocol="graphsync") == 1
        assert sink.counter_total(CounterName.ERROR_FAILED_TO_DIAL) == 0
        assert sink.counter_total(CounterName.ERROR_OTHER) == 0

    def test_failure_without_message_still_counts(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FAILED, sp=SP))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap", at_ms=10))

        assert sink.counter_total(CounterName.GRAPHSYNC_RETRIEVAL_FAILURES) == 1
        assert all(not call.name.startswith("retrieval_error_") for call in sink.adds)
        assert sink.values(HistogramName.FAILURES_PER_REQUEST) == [1]

    def test_first_byte_recorded_once(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FIRST_BYTE, sp=SP, at_ms=40))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FIRST_BYTE, sp="Bitswap", at_ms=50))

        assert sink.counter_total(CounterName.FIRST_BYTE_RECEIVED) == 1
        samples = sink.samples(HistogramName.TIME_TO_FIRST_BYTE)
        assert [s.value for s in samples] == [pytest.approx(0.040)]
        assert samples[0].attributes == {"protocol": "graphsync"}


class TestSuccess:
    def _run_success_flow(self, aggregator: RetrievalAggregator, sp: str = "Bitswap") -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FOUND, at_ms=10, details={"candidateCount": 5}))
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.CANDIDATES_FILTERED, at_ms=12, details={"candidateCount": 3}))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp=sp, at_ms=15))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FIRST_BYTE, sp=sp, at_ms=40))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp=sp, at_ms=1040, details={"receivedSize": 20_000}))

    def test_bitswap_success_emits_terminal_metrics(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        self._run_success_flow(aggregator)

        assert sink.counter_total(CounterName.SUCCESS, protocol="bitswap") == 1
        assert sink.counter_total(CounterName.BITSWAP_SUCCESS) == 1
        assert sink.counter_total(CounterName.GRAPHSYNC_SUCCESS) == 0
        assert sink.values(HistogramName.DEAL_DURATION) == [pytest.approx(1.04)]
        assert sink.values(HistogramName.DEAL_SIZE) == [20_000]
        assert sink.values(HistogramName.BANDWIDTH) == [20_000]
        assert sink.values(HistogramName.CANDIDATES_PER_REQUEST) == [5]
        assert sink.values(HistogramName.FILTERED_CANDIDATES_PER_REQUEST) == [3]
        assert sink.values(HistogramName.FAILURES_PER_REQUEST) == [0]
        assert len(aggregator.table) == 0

    def test_graphsync_success_tagged_with_provider(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        self._run_success_flow(aggregator, sp=SP)

        assert sink.counter_total(CounterName.GRAPHSYNC_SUCCESS, sp_id=SP) == 1
        assert sink.counter_total(CounterName.SUCCESS, protocol="graphsync") == 1

    def test_duplicate_success_counts_once(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        for at_ms in (100, 200):
            aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap", at_ms=at_ms, details={"receivedSize": 10}))

        assert sink.counter_total(CounterName.SUCCESS) == 1
        assert len(sink.samples(HistogramName.DEAL_DURATION)) == 1

    def test_success_without_start_skips_duration(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.STARTED, sp="Bitswap"))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap", at_ms=100, details={"receivedSize": 10}))

        assert sink.counter_total(CounterName.SUCCESS) == 1
        assert sink.samples(HistogramName.DEAL_DURATION) == []
        assert sink.values(HistogramName.DEAL_SIZE) == [10]

    def test_bandwidth_needs_first_byte(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap", at_ms=100, details={"receivedSize": 10}))

        assert sink.samples(HistogramName.BANDWIDTH) == []

    def test_success_for_unknown_retrieval_is_ignored(self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink) -> None:
        aggregator.handle(make_event(uuid4(), Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap"))

        assert sink.counter_total(CounterName.SUCCESS) == 0
        assert sink.records == []


class TestExpiry:
    def test_expired_retrieval_counted_without_histograms(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink, clock: FakeClock
    ) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.FAILED, sp=SP))

        clock.advance(61)
        assert aggregator.table.expire_due() == 1

        assert sink.counter_total(CounterName.EXPIRED) == 1
        assert sink.samples(HistogramName.FAILURES_PER_REQUEST) == []

    def test_late_success_after_expiry_is_ignored(
        self, aggregator: RetrievalAggregator, sink: RecordingMetricsSink, clock: FakeClock
    ) -> None:
        rid = uuid4()
        aggregator.handle(make_event(rid, Phase.INDEXER, EventCode.STARTED))
        clock.advance(61)
        aggregator.table.expire_due()

        aggregator.handle(make_event(rid, Phase.RETRIEVAL, EventCode.SUCCESS, sp="Bitswap", at_ms=70_000))

        assert sink.counter_total(CounterName.SUCCESS) == 0
