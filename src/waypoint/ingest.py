"""Per-event ingestion: validate → encode → enqueue.

:class:`Ingestor` is the seam between the HTTP surface (or the replay
command) and the batching writer.  For one raw event it:

1. Checks the item is a JSON object (:class:`MalformedRequestError` if not).
2. Validates it with :func:`~waypoint.validate.validate_event`.
3. Encodes it with :func:`~waypoint.line_protocol.encode`.
4. Enqueues the record on the :class:`~waypoint.writer.BatchingWriter`,
   bounded by the caller's deadline.

Acceptance means "queued for delivery", never "stored": the backend flush
happens later and its failures never reach the caller.

``submit_batch`` applies the same steps to each element of an array body and
returns one :class:`EventOutcome` per element instead of raising.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from waypoint.line_protocol import DEFAULT_MEASUREMENT, encode
from waypoint.metrics import EVENTS_INGESTED, INGEST_DURATION
from waypoint.parser import MalformedRequestError
from waypoint.validate import EventError, validate_event
from waypoint.writer import BatchingWriter, QueueFullError


@dataclass(frozen=True)
class EventOutcome:
    """Result for one element of a batch request.

    Attributes:
        index:   Position of the event in the request array.
        token:   Acceptance token when accepted, else None.
        error:   Error code when rejected (``MissingTag``, ``QueueFull``, …).
        message: Human-readable rejection reason.
    """

    index: int
    token: str | None = None
    error: str | None = None
    message: str | None = None

    @property
    def accepted(self) -> bool:
        return self.token is not None

    def as_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {"index": self.index, "status": "accepted", "token": self.token}
        return {
            "index": self.index,
            "status": "rejected",
            "error": self.error,
            "message": self.message,
        }


class Ingestor:
    """Validate, encode and enqueue raw events onto a writer.

    Args:
        writer:      The running :class:`BatchingWriter`.
        measurement: Line-protocol measurement name.
        precision:   Write-time precision (``s``, ``ms``, ``us``, ``ns``).
    """

    def __init__(
        self,
        writer: BatchingWriter,
        *,
        measurement: str = DEFAULT_MEASUREMENT,
        precision: str = "s",
    ) -> None:
        self._writer = writer
        self._measurement = measurement
        self._precision = precision

    async def submit(
        self,
        raw: Any,
        *,
        received_at: datetime | None = None,
        deadline: float | None = None,
    ) -> str:
        """Accept one raw event and return its acceptance token.

        Args:
            raw:         Decoded JSON value for one event.
            received_at: Ingestion time; defaults to now (UTC).
            deadline:    Event-loop time (``loop.time()``) by which the event
                         must be queued.  None waits as long as the policy does.

        Raises:
            MalformedRequestError: *raw* is not a JSON object.
            EventError:            Validation failed.
            QueueFullError:        Backpressure refused the record, or the
                                   deadline passed while blocked.
        """
        started = time.perf_counter()
        try:
            if not isinstance(raw, dict):
                raise MalformedRequestError(
                    f"expected JSON object, got {type(raw).__name__}"
                )
            event = validate_event(
                raw, received_at=received_at if received_at is not None else datetime.now(UTC)
            )
            record = encode(event, measurement=self._measurement, precision=self._precision)
            try:
                async with asyncio.timeout_at(deadline):
                    await self._writer.enqueue(record)
            except TimeoutError:
                raise QueueFullError(
                    "write queue stayed full past the request deadline", timed_out=True
                ) from None
        except (MalformedRequestError, EventError, QueueFullError) as exc:
            EVENTS_INGESTED.labels(outcome="rejected", reason=exc.code).inc()
            raise

        EVENTS_INGESTED.labels(outcome="accepted", reason="").inc()
        INGEST_DURATION.observe(time.perf_counter() - started)
        return uuid.uuid4().hex

    async def submit_batch(
        self,
        items: Sequence[Any],
        *,
        received_at: datetime | None = None,
        deadline: float | None = None,
    ) -> list[EventOutcome]:
        """Accept each element of a batch independently.

        Elements are processed in order; one rejection never affects the
        others.  All elements share *received_at* and *deadline*.
        """
        received_at = received_at if received_at is not None else datetime.now(UTC)
        outcomes: list[EventOutcome] = []
        for index, raw in enumerate(items):
            try:
                token = await self.submit(raw, received_at=received_at, deadline=deadline)
            except (MalformedRequestError, EventError, QueueFullError) as exc:
                outcomes.append(EventOutcome(index=index, error=exc.code, message=str(exc)))
                continue
            outcomes.append(EventOutcome(index=index, token=token))
        return outcomes
