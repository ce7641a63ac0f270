"""Starlette ASGI application receiving retrieval telemetry.

Routes:
    POST /v1/retrieval-events  lifecycle event batches
    POST /v2/retrieval-events  aggregate record batches
    GET  /ready                readiness probe
    GET  /health               liveness with in-flight retrieval count
    GET  /metrics              Prometheus exposition (when enabled)

Usage:
    from retrieval_recorder.ingress.server import create_app, RecorderServer
    from retrieval_recorder.core.config import RecorderConfig

    app = create_app(RecorderConfig())

    # Or inject a prebuilt recorder
    server = RecorderServer(config, recorder=recorder)
    app = server.app
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from retrieval_recorder.core.config import RecorderConfig
from retrieval_recorder.ingress.schemas import AggregateEventBatch, EventBatch
from retrieval_recorder.recorder import EventRecorder
from retrieval_recorder.storage.database import StorageError

logger = structlog.get_logger(__name__)

_JSON_CONTENT_TYPE = "application/json"
_BAD_CONTENT_TYPE_MESSAGE = "Not an acceptable content type. Content type must be application/json."


def describe_validation_error(error: ValidationError) -> str:
    """Render a pydantic error as one line per problem, with JSON paths."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        lines.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "\n".join(lines)


class RecorderServer:
    """HTTP front end of an EventRecorder.

    The recorder is started when the application starts up and stopped when
    it shuts down.
    """

    def __init__(self, config: RecorderConfig, recorder: EventRecorder | None = None) -> None:
        self._config = config
        self._recorder = recorder if recorder is not None else EventRecorder.from_config(config)
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        routes = [
            Route("/v1/retrieval-events", self._events_endpoint, methods=["POST"]),
            Route("/v2/retrieval-events", self._aggregate_events_endpoint, methods=["POST"]),
            Route("/ready", self._ready_endpoint, methods=["GET"]),
            Route("/health", self._health_endpoint, methods=["GET"]),
            Route("/metrics", self._metrics_endpoint, methods=["GET"]),
        ]
        return Starlette(debug=False, routes=routes, lifespan=self._lifespan)

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        self._recorder.start()
        try:
            yield
        finally:
            self._recorder.stop()

    @property
    def app(self) -> Starlette:
        """Get the Starlette ASGI application."""
        return self._app

    @property
    def recorder(self) -> EventRecorder:
        return self._recorder

    # === Endpoint handlers ===

    @staticmethod
    def _reject_content_type(request: Request) -> Response | None:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(_JSON_CONTENT_TYPE):
            return None
        logger.warning(
            "Rejected bad request with non-json content type",
            path=request.url.path,
            content_type=content_type,
        )
        return PlainTextResponse(_BAD_CONTENT_TYPE_MESSAGE, status_code=400)

    async def _events_endpoint(self, request: Request) -> Response:
        """Handle POST /v1/retrieval-events."""
        if (rejection := self._reject_content_type(request)) is not None:
            return rejection
        body = await request.body()
        try:
            batch = EventBatch.model_validate_json(body)
        except ValidationError as e:
            logger.warning("Rejected invalid event batch", path=request.url.path, errors=e.error_count())
            return PlainTextResponse(describe_validation_error(e), status_code=400)

        try:
            await run_in_threadpool(self._recorder.record_events, batch.to_events())
        except StorageError:
            return Response(status_code=500)
        return Response(status_code=200)

    async def _aggregate_events_endpoint(self, request: Request) -> Response:
        """Handle POST /v2/retrieval-events."""
        if (rejection := self._reject_content_type(request)) is not None:
            return rejection
        body = await request.body()
        try:
            batch = AggregateEventBatch.model_validate_json(body)
        except ValidationError as e:
            logger.warning("Rejected invalid aggregate event batch", path=request.url.path, errors=e.error_count())
            return PlainTextResponse(describe_validation_error(e), status_code=400)

        try:
            await run_in_threadpool(self._recorder.record_aggregate_events, batch.to_records())
        except StorageError:
            return Response(status_code=500)
        return Response(status_code=200)

    async def _ready_endpoint(self, request: Request) -> Response:
        """Handle GET /ready."""
        return Response(status_code=200)

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /health."""
        return JSONResponse(
            {
                "status": "healthy",
                "in_flight_retrievals": self._recorder.in_flight,
                "persistence": self._recorder.repository is not None,
            }
        )

    async def _metrics_endpoint(self, request: Request) -> Response:
        """Handle GET /metrics."""
        if not self._config.metrics.prometheus:
            return PlainTextResponse("Prometheus exposition is disabled", status_code=404)
        return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


def create_app(config: RecorderConfig) -> Starlette:
    """Create a Starlette ASGI application from config.

    Convenience function for simple use cases. For an injected recorder,
    use RecorderServer directly.
    """
    server = RecorderServer(config)
    server.app.state.server = server
    return server.app
