"""waypoint — customer-journey event ingestion for a time-series store.

Accepts loosely structured journey events over HTTP, validates them against a
tagged per-variant schema, encodes them as line protocol, and batches them
into the storage backend's write API.

Pipeline contract: 7 built-in event types, measurement ``events``.
"""

__version__ = "0.1.0"
