"""Batching writer: bounded queue → background flush loop → backend.

:class:`BatchingWriter` decouples per-event request latency from per-write
network cost.  Request handlers call :meth:`~BatchingWriter.enqueue`; a single
flush task collects records into batches and POSTs them through an injected
:class:`~waypoint.backend.BackendClient`.

Flush triggers (whichever comes first):
  - the batch reaches ``batch_size`` records
  - ``flush_interval`` seconds have passed since the oldest record in the
    batch was enqueued

Backpressure: the queue holds at most ``queue_capacity`` records.  Under the
``reject`` policy a full queue raises :class:`QueueFullError` immediately;
under ``block`` the caller waits for room (bounded by its own deadline).

Retry: 5xx, 429, timeouts and connection errors are transient and retried
with exponential backoff up to ``max_attempts`` total attempts; the batch is
held while retrying.  Any other non-2xx response is permanent and the batch
is dropped at once.  Every dropped batch increments
``waypoint_records_dropped_total``, is logged at error level, and is appended
to the dead-letter spool when one is configured.

Delivery is at-least-once: a batch whose response was lost may be written
twice, which the backend absorbs through point identity (tags + time).

Usage::

    async with BackendClient(settings.backend) as client:
        writer = BatchingWriter.from_settings(client, settings.writer)
        await writer.start()
        await writer.enqueue(record)
        ...
        await writer.stop()          # drains and flushes what is left
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from waypoint.backend import BackendClient
from waypoint.config import BackpressurePolicy, WriterSettings
from waypoint.dead_letter import dead_letter_batch
from waypoint.logging import get_logger
from waypoint.metrics import (
    BATCHES_FLUSHED,
    FLUSH_DURATION,
    QUEUE_DEPTH,
    QUEUE_REJECTIONS,
    RECORDS_DELIVERED,
    RECORDS_DROPPED,
    WRITE_ATTEMPTS,
)
from waypoint.models.record import EncodedRecord

_log = get_logger(__name__)

# How often an idle flush loop re-checks for shutdown.
_POLL_INTERVAL = 0.1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class QueueFullError(RuntimeError):
    """Backpressure refused an enqueue.

    ``timed_out`` is True when a blocking enqueue ran out of request deadline
    rather than being refused outright.
    """

    code = "QueueFull"

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class BackendWriteError(RuntimeError):
    """Base class for failed backend writes."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendTransientFailure(BackendWriteError):
    """A write that may succeed if retried (5xx, 429, network, timeout)."""

    code = "BackendTransientFailure"


class BackendPermanentFailure(BackendWriteError):
    """A write the backend will never accept (malformed payload, auth)."""

    code = "BackendPermanentFailure"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlushResult:
    """Outcome of one batch flush.

    Attributes:
        records:   Lines in the batch.
        attempts:  Backend write attempts made.
        delivered: True if the backend acknowledged the batch.
        reason:    Why the batch was dropped; empty when delivered.
    """

    records: int
    attempts: int
    delivered: bool
    reason: str = ""


@dataclass(frozen=True)
class _Pending:
    record: EncodedRecord
    enqueued_at: float


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class BatchingWriter:
    """Bounded queue with a single background flush loop.

    Args:
        client:              Opened :class:`BackendClient`; owned by the caller.
        batch_size:          Records per flush at most.
        flush_interval:      Max seconds a record waits before a partial flush.
        queue_capacity:      Max records waiting in the queue.
        backpressure_policy: ``reject`` or ``block``.
        max_attempts:        Total write attempts per batch, including the first.
        backoff_base_delay:  Delay before the first retry, doubled per attempt.
        backoff_max_delay:   Upper bound on a single retry delay.
        dead_letter_dir:     Spool directory for dropped batches; None disables.
        sleep:               Coroutine used for backoff waits (patched in tests).
    """

    def __init__(
        self,
        client: BackendClient,
        *,
        batch_size: int = 500,
        flush_interval: float = 1.0,
        queue_capacity: int = 10_000,
        backpressure_policy: BackpressurePolicy = "reject",
        max_attempts: int = 5,
        backoff_base_delay: float = 0.5,
        backoff_max_delay: float = 30.0,
        dead_letter_dir: Path | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1 or queue_capacity < 1 or max_attempts < 1:
            raise ValueError("batch_size, queue_capacity and max_attempts must be >= 1")
        if backpressure_policy not in ("reject", "block"):
            raise ValueError(f"unknown backpressure policy {backpressure_policy!r}")
        self._client = client
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._policy = backpressure_policy
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_delay
        self._backoff_max = backoff_max_delay
        self._dead_letter_dir = dead_letter_dir
        self._sleep = sleep

        self._queue: asyncio.Queue[_Pending] = asyncio.Queue(maxsize=queue_capacity)
        self._task: asyncio.Task[None] | None = None
        self._closing = False

        self.delivered = 0
        self.dropped = 0
        self.batches = 0

    @classmethod
    def from_settings(
        cls,
        client: BackendClient,
        settings: WriterSettings,
        **overrides: object,
    ) -> BatchingWriter:
        """Build a writer from the ``[writer]`` settings section."""
        kwargs: dict[str, object] = {
            "batch_size": settings.batch_size,
            "flush_interval": settings.flush_interval,
            "queue_capacity": settings.queue_capacity,
            "backpressure_policy": settings.backpressure_policy,
            "max_attempts": settings.max_retry_attempts,
            "backoff_base_delay": settings.backoff_base_delay,
            "backoff_max_delay": settings.backoff_max_delay,
            "dead_letter_dir": settings.dead_letter_dir,
        }
        kwargs.update(overrides)
        return cls(client, **kwargs)  # type: ignore[arg-type]

    # -- Introspection -------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def queue_capacity(self) -> int:
        return self._queue.maxsize

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stats(self) -> dict[str, object]:
        return {
            "running": self.running,
            "queue_depth": self.queue_depth,
            "queue_capacity": self.queue_capacity,
            "batches": self.batches,
            "delivered": self.delivered,
            "dropped": self.dropped,
        }

    # -- Producers -----------------------------------------------------------

    async def enqueue(self, record: EncodedRecord) -> None:
        """Add *record* to the queue.

        Raises:
            QueueFullError: The queue is full under the ``reject`` policy, or
                            the writer is shutting down.
        """
        if self._closing:
            raise QueueFullError("writer is shutting down")
        pending = _Pending(record=record, enqueued_at=time.monotonic())
        if self._policy == "reject":
            try:
                self._queue.put_nowait(pending)
            except asyncio.QueueFull:
                QUEUE_REJECTIONS.inc()
                raise QueueFullError(
                    f"write queue is full ({self._queue.maxsize} records)"
                ) from None
        else:
            await self._queue.put(pending)
        QUEUE_DEPTH.set(self._queue.qsize())

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start the background flush loop (idempotent)."""
        if self.running:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="waypoint-flush-loop")
        _log.info(
            "writer started",
            batch_size=self._batch_size,
            flush_interval=self._flush_interval,
            queue_capacity=self._queue.maxsize,
            policy=self._policy,
        )

    async def stop(self) -> None:
        """Refuse new records, flush everything queued, and stop the loop."""
        self._closing = True
        if self._task is not None:
            await self._task
            self._task = None
        else:
            await self.drain()
        _log.info("writer stopped", delivered=self.delivered, dropped=self.dropped)

    async def drain(self) -> list[FlushResult]:
        """Flush everything queued right now in ``batch_size`` chunks.

        Not for use while the flush loop is running.
        """
        results: list[FlushResult] = []
        while not self._queue.empty():
            batch = self._take_available([])
            results.append(await self.write_batch([p.record for p in batch]))
        return results

    # -- Flush loop ----------------------------------------------------------

    async def _run(self) -> None:
        while not (self._closing and self._queue.empty()):
            batch = await self._collect()
            if not batch:
                continue
            records = [p.record for p in batch]
            try:
                await self.write_batch(records)
            except Exception as exc:
                # Keep the loop alive; the batch is accounted for as dropped.
                _log.exception("flush failed unexpectedly", records=len(records))
                await self._drop(
                    records, reason="error", error=str(exc), status_code=None, attempts=0
                )

    async def _collect(self) -> list[_Pending]:
        """Wait for a first record, then gather until full or its deadline passes."""
        first = await self._get(_POLL_INTERVAL)
        if first is None:
            return []
        batch = [first]
        deadline = first.enqueued_at + self._flush_interval
        while len(batch) < self._batch_size:
            batch = self._take_available(batch)
            if len(batch) >= self._batch_size or self._closing:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            item = await self._get(min(remaining, _POLL_INTERVAL))
            if item is not None:
                batch.append(item)
        return batch

    def _take_available(self, batch: list[_Pending]) -> list[_Pending]:
        while len(batch) < self._batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        QUEUE_DEPTH.set(self._queue.qsize())
        return batch

    async def _get(self, timeout: float) -> _Pending | None:
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None
        QUEUE_DEPTH.set(self._queue.qsize())
        return item

    # -- Backend writes ------------------------------------------------------

    async def write_batch(self, records: Sequence[EncodedRecord]) -> FlushResult:
        """Write one batch with retry; never raises for backend failures."""
        if not records:
            return FlushResult(records=0, attempts=0, delivered=True)

        body = b"\n".join(r.line for r in records)
        started = time.perf_counter()
        self.batches += 1

        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._attempt(body)
            except BackendPermanentFailure as exc:
                WRITE_ATTEMPTS.labels(result="permanent").inc()
                await self._drop(
                    records,
                    reason="permanent",
                    error=str(exc),
                    status_code=exc.status_code,
                    attempts=attempt,
                )
                FLUSH_DURATION.observe(time.perf_counter() - started)
                return FlushResult(len(records), attempt, delivered=False, reason="permanent")
            except BackendTransientFailure as exc:
                WRITE_ATTEMPTS.labels(result="transient").inc()
                if attempt == self._max_attempts:
                    await self._drop(
                        records,
                        reason="retries_exhausted",
                        error=str(exc),
                        status_code=exc.status_code,
                        attempts=attempt,
                    )
                    FLUSH_DURATION.observe(time.perf_counter() - started)
                    return FlushResult(
                        len(records), attempt, delivered=False, reason="retries_exhausted"
                    )
                delay = self.backoff_delay(attempt)
                _log.warning(
                    "backend write failed, retrying",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay=round(delay, 3),
                    status_code=exc.status_code,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue

            WRITE_ATTEMPTS.labels(result="success").inc()
            BATCHES_FLUSHED.labels(outcome="delivered").inc()
            RECORDS_DELIVERED.inc(len(records))
            FLUSH_DURATION.observe(time.perf_counter() - started)
            self.delivered += len(records)
            _log.debug("batch flushed", records=len(records), attempts=attempt)
            return FlushResult(len(records), attempt, delivered=True)

        raise AssertionError("unreachable: retry loop always returns")

    async def _attempt(self, body: bytes) -> None:
        """Perform one write and classify its outcome."""
        try:
            resp = await self._client.write(body)
        except httpx.TransportError as exc:
            raise BackendTransientFailure(f"{type(exc).__name__}: {exc}") from exc

        if resp.is_success:
            return
        detail = resp.text[:500]
        if resp.status_code >= 500 or resp.status_code == 429:
            raise BackendTransientFailure(
                f"backend error {resp.status_code}: {detail}", status_code=resp.status_code
            )
        raise BackendPermanentFailure(
            f"backend rejected batch with {resp.status_code}: {detail}",
            status_code=resp.status_code,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter, capped at ``backoff_max_delay``."""
        base = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
        return min(base + random.uniform(0, base * 0.5), self._backoff_max)

    async def _drop(
        self,
        records: Sequence[EncodedRecord],
        *,
        reason: str,
        error: str,
        status_code: int | None,
        attempts: int,
    ) -> None:
        BATCHES_FLUSHED.labels(outcome="dropped").inc()
        RECORDS_DROPPED.labels(reason=reason).inc(len(records))
        self.dropped += len(records)
        _log.error(
            "batch dropped",
            reason=reason,
            records=len(records),
            attempts=attempts,
            status_code=status_code,
            error=error,
        )
        if self._dead_letter_dir is None:
            return
        try:
            path = await asyncio.to_thread(
                dead_letter_batch,
                self._dead_letter_dir,
                [r.line for r in records],
                reason=reason,
                status_code=status_code,
                error=error,
                attempts=attempts,
            )
        except OSError:
            _log.exception("dead-letter write failed", records=len(records))
            return
        _log.info("batch dead-lettered", path=str(path), records=len(records))
