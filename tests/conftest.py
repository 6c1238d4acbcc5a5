"""Shared pytest helpers and fixtures for the waypoint test suite.

make_event(type, **overrides)  — a minimal valid raw event dict for one variant
load_fixture(name)             — parse tests/fixtures/<name>.jsonl into event dicts
RECEIVED_AT                    — fixed ingestion time for deterministic encoding
journey_events                 — session fixture: every event in journey.jsonl
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

FIXTURE_DIR = Path(__file__).parent / "fixtures"

# 2023-11-14T22:13:20Z; write-time 1700000000 at seconds precision.
RECEIVED_AT = datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)

# One applicable optional field per built-in variant.
SAMPLE_FIELDS: dict[str, dict[str, Any]] = {
    "pageview": {"page_url": "/home"},
    "interaction": {"page_url": "/home", "interaction_type": "hover"},
    "transaction": {"purchase_value": 9.99},
    "button_click": {"page_url": "/home", "button_clicked": "signup"},
    "scroll": {"scroll_depth": 50},
    "first_rental_view": {"time_lag_from_transaction": 120},
    "rental": {"rental_duration": 72, "rental_popularity": 5},
}


def make_event(event_type: str = "pageview", **overrides: Any) -> dict[str, Any]:
    """Return a valid raw event for *event_type*, with *overrides* applied.

    Pass ``key=None`` to have the key removed entirely::

        make_event("scroll", user_id=None)   # no user_id key
    """
    event: dict[str, Any] = {
        "event_type": event_type,
        "content_id": "c1",
        "user_id": "u1",
        "device_type": "mobile",
        "timestamp": 1700000000,
        **SAMPLE_FIELDS.get(event_type, {}),
    }
    for key, value in overrides.items():
        if value is None:
            event.pop(key, None)
        else:
            event[key] = value
    return event


def load_fixture(name: str) -> list[dict]:
    """Parse ``tests/fixtures/<name>.jsonl`` and return a list of event dicts."""
    return [
        json.loads(line)
        for line in (FIXTURE_DIR / f"{name}.jsonl").read_text().splitlines()
        if line.strip()
    ]


@pytest.fixture(scope="session")
def journey_events() -> list[dict]:
    """The synthetic customer journey in ``tests/fixtures/journey.jsonl``."""
    return load_fixture("journey")


@pytest.fixture(autouse=True)
def _detach_root_log_handler():
    """Drop the root handler configure_logging() installs; it holds a per-test stderr."""
    yield
    root = logging.getLogger()
    for handler in [h for h in root.handlers if h.get_name() == "waypoint-structlog"]:
        root.removeHandler(handler)
