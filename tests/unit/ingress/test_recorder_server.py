"""Tests for the recorder HTTP server."""

from collections.abc import Iterator
from uuid import uuid4

import pytest
from starlette.testclient import TestClient

from retrieval_recorder.aggregation.aggregator import RetrievalAggregator
from retrieval_recorder.core.config import RecorderConfig
from retrieval_recorder.ingress.server import RecorderServer
from retrieval_recorder.metrics import CounterName
from retrieval_recorder.recorder import EventRecorder
from retrieval_recorder.storage import RecorderDB
from retrieval_recorder.storage.schema import aggregate_retrieval_events_table, retrieval_events_table
from tests.fixtures import RecordingMetricsSink

V1 = "/v1/retrieval-events"
V2 = "/v2/retrieval-events"


def _started_event(retrieval_id: str) -> dict[str, object]:
    return {
        "retrievalId": retrieval_id,
        "instanceId": "instance-1",
        "cid": "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
        "storageProviderId": "",
        "phase": "indexer",
        "phaseStartTime": "2023-05-01T12:00:00Z",
        "eventName": "started",
        "eventTime": "2023-05-01T12:00:00Z",
    }


def _aggregate_record() -> dict[str, object]:
    return {
        "instanceId": "instance-1",
        "retrievalId": str(uuid4()),
        "storageProviderId": "Bitswap",
        "timeToFirstByte": "40ms",
        "bandwidth": 200000,
        "bytesTransferred": 10000,
        "success": True,
        "startTime": "2023-05-01T12:00:00Z",
        "endTime": "2023-05-01T12:00:02Z",
        "protocolSucceeded": "transport-bitswap",
        "retrievalAttempts": {"Bitswap": {"protocol": "transport-bitswap", "timeToFirstByte": "40ms"}},
    }


@pytest.fixture
def config() -> RecorderConfig:
    return RecorderConfig(metrics={"prometheus": False}, providers={"enabled": False})


@pytest.fixture
def recorder_db() -> RecorderDB:
    return RecorderDB.in_memory()


@pytest.fixture
def server(config: RecorderConfig, sink: RecordingMetricsSink, recorder_db: RecorderDB) -> RecorderServer:
    recorder = EventRecorder(RetrievalAggregator(sink), db=recorder_db)
    return RecorderServer(config, recorder=recorder)


@pytest.fixture
def client(server: RecorderServer) -> Iterator[TestClient]:
    with TestClient(server.app) as test_client:
        yield test_client


class TestLifecycleEndpoint:
    def test_valid_batch_is_stored_and_aggregated(
        self, client: TestClient, server: RecorderServer, sink: RecordingMetricsSink
    ) -> None:
        rid = str(uuid4())

        response = client.post(V1, json={"events": [_started_event(rid)]})

        assert response.status_code == 200
        assert response.content == b""
        assert sink.counter_total(CounterName.TOTAL_REQUESTS) == 1
        assert server.recorder.repository is not None
        assert [str(e.retrieval_id) for e in server.recorder.repository.fetch_events()] == [rid]

    def test_content_type_with_charset_accepted(self, client: TestClient) -> None:
        response = client.post(
            V1,
            content=b'{"events": []}',
            headers={"content-type": "application/json; charset=utf-8"},
        )
        assert response.status_code == 200

    def test_wrong_content_type(self, client: TestClient) -> None:
        response = client.post(V1, content=b'{"events": []}', headers={"content-type": "text/plain"})

        assert response.status_code == 400
        assert response.text == "Not an acceptable content type. Content type must be application/json."

    def test_malformed_json(self, client: TestClient) -> None:
        response = client.post(V1, content=b"{not json", headers={"content-type": "application/json"})

        assert response.status_code == 400

    def test_validation_error_names_field(self, client: TestClient, sink: RecordingMetricsSink) -> None:
        event = _started_event(str(uuid4()))
        event["eventName"] = "exploded"

        response = client.post(V1, json={"events": [event]})

        assert response.status_code == 400
        assert "events.0.eventName" in response.text
        assert sink.adds == []

    def test_non_finite_detail_skips_metric(self, client: TestClient, sink: RecordingMetricsSink) -> None:
        body = (
            '{"events": [{"retrievalId": "' + str(uuid4()) + '", "instanceId": "instance-1", "cid": "bafy",'
            ' "storageProviderId": "", "phase": "indexer", "phaseStartTime": "2023-05-01T12:00:00Z",'
            ' "eventName": "candidates-found", "eventTime": "2023-05-01T12:00:01Z",'
            ' "eventDetails": {"candidateCount": 1e400}}]}'
        )

        response = client.post(V1, content=body.encode(), headers={"content-type": "application/json"})

        assert response.status_code == 200
        assert sink.counter_total(CounterName.INDEXER_CANDIDATES) == 0

    def test_get_not_allowed(self, client: TestClient) -> None:
        response = client.get(V1)

        assert response.status_code == 405
        assert response.headers["allow"] == "POST"

    def test_storage_failure_returns_500_without_aggregating(
        self, client: TestClient, recorder_db: RecorderDB, sink: RecordingMetricsSink
    ) -> None:
        retrieval_events_table.drop(recorder_db.engine)

        response = client.post(V1, json={"events": [_started_event(str(uuid4()))]})

        assert response.status_code == 500
        assert sink.adds == []


class TestAggregateEndpoint:
    def test_valid_batch(self, client: TestClient, server: RecorderServer, sink: RecordingMetricsSink) -> None:
        response = client.post(V2, json={"events": [_aggregate_record()]})

        assert response.status_code == 200
        assert sink.counter_total(CounterName.SUCCESS, protocol="bitswap") == 1
        assert server.recorder.repository is not None
        assert server.recorder.repository.count_aggregate_events() == 1

    def test_success_without_provider(self, client: TestClient) -> None:
        record = _aggregate_record()
        record["storageProviderId"] = ""

        response = client.post(V2, json={"events": [record]})

        assert response.status_code == 400
        assert "storageProviderId is required when success is true" in response.text

    def test_storage_failure_returns_500(
        self, client: TestClient, recorder_db: RecorderDB, sink: RecordingMetricsSink
    ) -> None:
        aggregate_retrieval_events_table.drop(recorder_db.engine)

        response = client.post(V2, json={"events": [_aggregate_record()]})

        assert response.status_code == 500
        assert sink.adds == []


class TestProbes:
    def test_ready(self, client: TestClient) -> None:
        assert client.get("/ready").status_code == 200

    def test_health_reports_in_flight(self, client: TestClient) -> None:
        client.post(V1, json={"events": [_started_event(str(uuid4()))]})

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "in_flight_retrievals": 1, "persistence": True}

    def test_metrics_disabled(self, client: TestClient) -> None:
        assert client.get("/metrics").status_code == 404

    def test_metrics_enabled(self, sink: RecordingMetricsSink) -> None:
        config = RecorderConfig(providers={"enabled": False})
        server = RecorderServer(config, recorder=EventRecorder(RetrievalAggregator(sink)))

        with TestClient(server.app) as test_client:
            response = test_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")


class TestLifespan:
    def test_recorder_stopped_on_shutdown(self, server: RecorderServer, recorder_db: RecorderDB) -> None:
        with TestClient(server.app):
            pass

        with pytest.raises(RuntimeError):
            _ = recorder_db.engine
