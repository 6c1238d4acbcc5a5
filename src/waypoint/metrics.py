"""
Shared Prometheus metrics for the ingestion service.

All metrics are declared once here so that repeated app or writer
construction (tests, CLI replay) never registers a collector twice.
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingestion metrics
EVENTS_INGESTED = Counter(
    'waypoint_events_total',
    'Events received by the ingestion endpoint',
    ['outcome', 'reason']
)

INGEST_DURATION = Histogram(
    'waypoint_ingest_duration_seconds',
    'Time spent validating, encoding and enqueueing one event'
)

# Queue metrics
QUEUE_DEPTH = Gauge(
    'waypoint_queue_depth',
    'Encoded records waiting in the writer queue'
)

QUEUE_REJECTIONS = Counter(
    'waypoint_queue_rejections_total',
    'Enqueue attempts refused by backpressure'
)

# Backend write metrics
WRITE_ATTEMPTS = Counter(
    'waypoint_backend_write_attempts_total',
    'Backend write attempts',
    ['result']
)

BATCHES_FLUSHED = Counter(
    'waypoint_batches_total',
    'Batches flushed to the backend',
    ['outcome']
)

RECORDS_DELIVERED = Counter(
    'waypoint_records_delivered_total',
    'Records acknowledged by the backend'
)

# Accepted-but-undeliverable data; alert on any increase.
RECORDS_DROPPED = Counter(
    'waypoint_records_dropped_total',
    'Records dropped after a permanent failure or exhausted retries',
    ['reason']
)

FLUSH_DURATION = Histogram(
    'waypoint_flush_duration_seconds',
    'Wall time of one batch flush including retries'
)
