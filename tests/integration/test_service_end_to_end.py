"""Integration tests — HTTP requests to line protocol at the backend.

The full service (FastAPI app, ingestor, batching writer, backend client)
runs in-process.  The backend is an ``httpx.MockTransport`` that records
every write request, so these tests assert on what the time-series store
would actually have received.

Fixture setup (module-scoped, runs once):
  1. Start the app with a small batch size.
  2. POST the journey fixture as one batch, then two single events.
  3. Shut the app down, which flushes the writer.
"""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import structlog
from fastapi.testclient import TestClient

from waypoint.app import create_app
from waypoint.config import Settings
from waypoint.line_protocol import decode

_FIXTURE = Path(__file__).parent.parent / "fixtures" / "journey.jsonl"


# ---------------------------------------------------------------------------
# Module-scoped service fixture
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def service_run(tmp_path_factory):
    """Drive one service lifetime; yield (responses, write requests)."""
    root = tmp_path_factory.mktemp("service_e2e")
    writes: list[httpx.Request] = []

    def backend(request: httpx.Request) -> httpx.Response:
        writes.append(request)
        return httpx.Response(204)

    settings = Settings(
        backend={"bucket": "e2e", "org": "acme", "token": "e2e-token"},
        writer={"batch_size": 4, "flush_interval": 0.05, "dead_letter_dir": str(root / "dl")},
    )
    events = [json.loads(line) for line in _FIXTURE.read_text().splitlines() if line.strip()]

    structlog.reset_defaults()
    app = create_app(settings, transport=httpx.MockTransport(backend))
    with TestClient(app) as client:
        responses = [
            client.post("/events", content=json.dumps(events)),
            client.post("/events", content=json.dumps(events[0])),
            client.post("/events", content=json.dumps({**events[0], "device_type": "toaster"})),
        ]

    yield responses, writes


@pytest.fixture(scope="module")
def written_lines(service_run):
    _, writes = service_run
    return [line for req in writes for line in req.content.split(b"\n")]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TestResponses:
    def test_batch_fully_accepted(self, service_run):
        batch = service_run[0][0]
        assert batch.status_code == 200
        assert batch.json()["accepted"] == 8
        assert batch.json()["rejected"] == 0

    def test_single_accepted(self, service_run):
        assert service_run[0][1].status_code == 200

    def test_invalid_single_rejected(self, service_run):
        resp = service_run[0][2]
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidTagValue"


# ---------------------------------------------------------------------------
# What the backend received
# ---------------------------------------------------------------------------


class TestBackendWrites:
    def test_every_accepted_event_written_once(self, written_lines):
        assert len(written_lines) == 9

    def test_no_batch_exceeds_batch_size(self, service_run):
        _, writes = service_run
        assert all(len(req.content.split(b"\n")) <= 4 for req in writes)

    def test_write_requests_carry_target_and_auth(self, service_run):
        _, writes = service_run
        for req in writes:
            assert req.url.path == "/api/v2/write"
            assert req.url.params["bucket"] == "e2e"
            assert req.url.params["org"] == "acme"
            assert req.headers["authorization"] == "Token e2e-token"

    def test_lines_decode_to_fixture_events(self, written_lines):
        decoded = [decode(line) for line in written_lines]
        types = [d.tags["event_type"] for d in decoded[:8]]
        assert types == [
            "pageview",
            "interaction",
            "button_click",
            "transaction",
            "first_rental_view",
            "rental",
            "scroll",
            "pageview",
        ]

    def test_normalization_visible_on_the_wire(self, written_lines):
        decoded = [decode(line) for line in written_lines]
        scroll = next(d for d in decoded if d.tags["event_type"] == "scroll")
        assert scroll.tags["device_type"] == "mobile"
        assert scroll.fields == {"timestamp": 1700000100, "scroll_depth": 62.5}
        home = decoded[7]
        assert "referral_source" not in home.tags

    def test_only_applicable_fields_written(self, written_lines):
        for d in map(decode, written_lines):
            if d.tags["event_type"] == "pageview":
                assert set(d.fields) <= {"timestamp", "page_url"}
