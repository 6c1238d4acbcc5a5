"""FastAPI ingestion service.

``create_app(settings)`` builds the application.  Its lifespan opens the
backend client, starts the batching writer, and on shutdown drains the queue
before closing the client.

Routes:
  POST /events    one JSON object, or a JSON array of objects (batch)
  GET  /health    liveness plus writer queue state
  GET  /metrics   Prometheus exposition

Responses for a single event:
  200  {"status": "accepted", "token": "<hex>"}
  400  {"error": "<kind>", "message": "<text>"}   validation or malformed body
  429  {"error": "QueueFull", ...}                 reject policy, queue full
  503  {"error": "QueueFull", ...}                 deadline expired while blocked

A batch always answers 200 with per-element results unless the body itself
is malformed.  Non-POST methods on /events answer 405.

Run with ``waypoint serve`` or ``uvicorn --factory waypoint.app:create_app``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from waypoint import __version__
from waypoint.backend import BackendClient
from waypoint.config import Settings, get_settings
from waypoint.ingest import Ingestor
from waypoint.logging import configure_logging, get_logger
from waypoint.parser import MalformedRequestError, parse_request_body
from waypoint.validate import EventError
from waypoint.writer import BatchingWriter, QueueFullError

_log = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the ingestion application.

    Args:
        settings:  Resolved settings; loads from ``get_settings()`` if None.
        transport: Optional httpx transport for the backend client (tests).
    """
    if settings is None:
        # Started by uvicorn --factory rather than `waypoint serve`.
        settings = get_settings()
        configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client = BackendClient(settings.backend, transport=transport)
        await client.open()
        writer = BatchingWriter.from_settings(client, settings.writer)
        await writer.start()
        app.state.writer = writer
        app.state.ingestor = Ingestor(
            writer,
            measurement=settings.backend.measurement,
            precision=settings.backend.precision,
        )
        _log.info(
            "ingestion service started",
            backend=settings.backend.write_url,
            policy=settings.writer.backpressure_policy,
        )
        try:
            yield
        finally:
            await writer.stop()
            await client.close()
            _log.info("ingestion service stopped")

    app = FastAPI(
        title="waypoint",
        description="Customer-journey event ingestion for a time-series store.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Error mapping -------------------------------------------------------

    @app.exception_handler(MalformedRequestError)
    async def _malformed(request: Request, exc: MalformedRequestError) -> JSONResponse:
        return _error(400, exc.code, str(exc))

    @app.exception_handler(EventError)
    async def _invalid_event(request: Request, exc: EventError) -> JSONResponse:
        return _error(400, exc.code, str(exc))

    @app.exception_handler(QueueFullError)
    async def _queue_full(request: Request, exc: QueueFullError) -> JSONResponse:
        status = 503 if exc.timed_out else 429
        return _error(status, exc.code, str(exc), headers={"Retry-After": "1"})

    # -- Routes --------------------------------------------------------------

    @app.post("/events")
    async def post_events(request: Request) -> JSONResponse:
        """Accept one event or a batch of events for delivery."""
        received_at = datetime.now(UTC)
        deadline = asyncio.get_running_loop().time() + settings.server.request_deadline
        ingestor: Ingestor = request.app.state.ingestor

        payload = parse_request_body(
            await request.body(), max_bytes=settings.server.max_body_bytes
        )

        if isinstance(payload, list):
            if not payload:
                raise MalformedRequestError("batch is empty")
            if len(payload) > settings.server.max_batch_events:
                raise MalformedRequestError(
                    f"batch has {len(payload)} events; "
                    f"limit is {settings.server.max_batch_events}"
                )
            outcomes = await ingestor.submit_batch(
                payload, received_at=received_at, deadline=deadline
            )
            accepted = sum(1 for o in outcomes if o.accepted)
            return JSONResponse(
                {
                    "accepted": accepted,
                    "rejected": len(outcomes) - accepted,
                    "results": [o.as_dict() for o in outcomes],
                }
            )

        token = await ingestor.submit(payload, received_at=received_at, deadline=deadline)
        return JSONResponse({"status": "accepted", "token": token})

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        writer: BatchingWriter = request.app.state.writer
        return {
            "status": "ok" if writer.running else "degraded",
            "version": __version__,
            "writer": writer.stats(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def _error(
    status: int,
    code: str,
    message: str,
    *,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse({"error": code, "message": message}, status_code=status, headers=headers)
