"""Tests for the CLI command surface."""

import json
from pathlib import Path

import httpx
import pytest
import structlog
from typer.testing import CliRunner

from tests.conftest import FIXTURE_DIR, make_event
from waypoint.cli import _load_file, app, replay_records
from waypoint.config import Settings, get_settings
from waypoint.line_protocol import decode

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Isolate each test from structlog state and settings cache."""
    get_settings.cache_clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    get_settings.cache_clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _env(tmp_path: Path, **extra: str) -> dict[str, str]:
    """Env vars that keep the spool in tmp and point the backend at a closed port."""
    return {
        "WAYPOINT_WRITER__DEAD_LETTER_DIR": str(tmp_path / "dead_letter"),
        "WAYPOINT_BACKEND__URL": "http://127.0.0.1:9/api/v2",
        "WAYPOINT_BACKEND__TIMEOUT": "1",
        **extra,
    }


def _write_events(tmp_path: Path, events: list) -> Path:
    p = tmp_path / "events.jsonl"
    p.write_text("\n".join(e if isinstance(e, str) else json.dumps(e) for e in events) + "\n")
    return p


_JOURNEY = FIXTURE_DIR / "journey.jsonl"


# ---------------------------------------------------------------------------
# Help and version
# ---------------------------------------------------------------------------


class TestHelp:
    def test_root_help_exits_zero(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0

    def test_root_help_lists_all_commands(self):
        result = runner.invoke(app, ["--help"])
        for cmd in ("serve", "validate", "replay", "doctor", "config"):
            assert cmd in result.output, f"command {cmd!r} missing from --help"

    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "waypoint" in result.output

    @pytest.mark.parametrize("cmd", ["serve", "validate", "replay", "doctor"])
    def test_each_command_has_help(self, cmd):
        result = runner.invoke(app, [cmd, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


class TestValidateCommand:
    def test_fixture_file_all_accepted(self, tmp_path):
        result = runner.invoke(app, ["validate", str(_JOURNEY)], env=_env(tmp_path))
        assert result.exit_code == 0, result.output
        assert "events accepted:  8" in result.output
        assert "events rejected:  0" in result.output

    def test_rejected_lines_listed_and_exit_one(self, tmp_path):
        path = _write_events(
            tmp_path,
            [make_event(), make_event(user_id=None), "{broken", make_event("pageview", purchase_value=1)],
        )
        result = runner.invoke(app, ["validate", str(path)], env=_env(tmp_path))
        assert result.exit_code == 1
        assert "line 2: MissingTag" in result.output
        assert "line 3: MalformedRequest" in result.output
        assert "line 4: FieldNotApplicable" in result.output
        assert "events accepted:  1" in result.output
        assert "events rejected:  3" in result.output

    def test_show_lines_prints_line_protocol(self, tmp_path):
        path = _write_events(tmp_path, [make_event("scroll")])
        result = runner.invoke(app, ["validate", "--show-lines", str(path)], env=_env(tmp_path))
        assert result.exit_code == 0
        assert "events,content_id=c1,device_type=mobile,event_type=scroll,user_id=u1" in result.output

    def test_missing_file_fails(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "absent.jsonl")])
        assert result.exit_code != 0


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


class TestReplayCommand:
    def test_dry_run_counts_events(self, tmp_path):
        result = runner.invoke(app, ["replay", "--dry-run", str(_JOURNEY)], env=_env(tmp_path))
        assert result.exit_code == 0, result.output
        assert "8 event(s) would be written" in result.output

    def test_dry_run_with_rejections_exits_one(self, tmp_path):
        path = _write_events(tmp_path, [make_event(), make_event(device_type="fridge")])
        result = runner.invoke(app, ["replay", "--dry-run", str(path)], env=_env(tmp_path))
        assert result.exit_code == 1
        assert "line 2: InvalidTagValue" in result.output
        assert "1 event(s) would be written" in result.output


class TestLoadFile:
    def test_write_time_defaults_to_now(self):
        loaded = _load_file(_JOURNEY, Settings())
        assert len(loaded.records) == 8
        assert all(r.write_time > 1_700_100_000 for r in loaded.records)

    def test_use_event_time(self):
        loaded = _load_file(_JOURNEY, Settings(), use_event_time=True)
        for record in loaded.records:
            decoded = decode(record.line)
            assert record.write_time == decoded.fields["timestamp"]

    def test_use_event_time_with_ms_precision(self):
        loaded = _load_file(_JOURNEY, Settings(backend={"precision": "ms"}), use_event_time=True)
        assert loaded.records[0].write_time == 1700000000 * 1000

    def test_rejections_sorted_by_line(self, tmp_path):
        path = _write_events(tmp_path, [make_event(user_id=None), "[]", make_event()])
        loaded = _load_file(path, Settings())
        assert [line for line, _, _ in loaded.rejected] == [1, 2]


class TestReplayRecords:
    @pytest.mark.asyncio
    async def test_all_records_delivered(self, tmp_path):
        seen: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.extend(request.content.split(b"\n"))
            return httpx.Response(204)

        settings = Settings(writer={"batch_size": 3, "dead_letter_dir": str(tmp_path)})
        loaded = _load_file(_JOURNEY, settings)
        stats = await replay_records(
            loaded.records, settings, transport=httpx.MockTransport(handler)
        )
        assert stats.delivered == 8
        assert stats.dropped == 0
        assert stats.batches == 3
        assert seen == [r.line for r in loaded.records]

    @pytest.mark.asyncio
    async def test_rejected_batches_counted(self, tmp_path):
        settings = Settings(writer={"dead_letter_dir": str(tmp_path)})
        loaded = _load_file(_JOURNEY, settings)
        stats = await replay_records(
            loaded.records,
            settings,
            transport=httpx.MockTransport(lambda r: httpx.Response(422)),
        )
        assert stats.delivered == 0
        assert stats.dropped == 8


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


class TestDoctorCommand:
    def test_token_warning_exits_one(self, tmp_path):
        result = runner.invoke(app, ["doctor", "--check", "token"], env=_env(tmp_path))
        assert result.exit_code == 1
        assert "WARN" in result.output

    def test_token_configured_exits_zero(self, tmp_path):
        env = _env(tmp_path, WAYPOINT_BACKEND__TOKEN="s3cret")
        result = runner.invoke(app, ["doctor", "--check", "token"], env=env)
        assert result.exit_code == 0
        assert "all checks passed" in result.output

    def test_unreachable_backend_exits_two(self, tmp_path):
        result = runner.invoke(app, ["doctor"], env=_env(tmp_path))
        assert result.exit_code == 2
        assert "backend_reachable" in result.output
        assert "FAIL" in result.output

    def test_unknown_check_exits_two(self, tmp_path):
        result = runner.invoke(app, ["doctor", "--check", "nope"], env=_env(tmp_path))
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# config show
# ---------------------------------------------------------------------------


class TestConfigShow:
    def test_lists_every_section(self, tmp_path):
        result = runner.invoke(app, ["config", "show"], env=_env(tmp_path))
        assert result.exit_code == 0
        for section in ("[backend]", "[writer]", "[server]", "[logging]"):
            assert section in result.output

    def test_env_override_visible(self, tmp_path):
        env = _env(tmp_path, WAYPOINT_WRITER__BATCH_SIZE="42")
        result = runner.invoke(app, ["config", "show"], env=env)
        assert "batch_size" in result.output
        assert "= 42" in result.output

    def test_token_masked(self, tmp_path):
        env = _env(tmp_path, WAYPOINT_BACKEND__TOKEN="s3cret")
        result = runner.invoke(app, ["config", "show"], env=env)
        assert result.exit_code == 0
        assert "s3cret" not in result.output
        assert "**********" in result.output
