"""CLI root — entry point for all waypoint subcommands.

Entry points:
  waypoint              (installed console script)
  python -m waypoint

Command surface:
  waypoint serve            run the HTTP ingestion service
  waypoint validate FILE    validate a JSONL file of raw events offline
  waypoint replay FILE      validate, encode and write a JSONL file to the backend
  waypoint doctor           check backend reachability and dead-letter backlog
  waypoint config show      print resolved configuration
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import typer

from waypoint import __version__
from waypoint.logging import get_logger

if TYPE_CHECKING:
    import httpx

    from waypoint.config import Settings
    from waypoint.models.record import EncodedRecord

app = typer.Typer(
    name="waypoint",
    help="Customer-journey event ingestion for a time-series store.",
    no_args_is_help=True,
)

_log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Global callback — runs before every subcommand
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"waypoint {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Print version and exit.",
    ),
) -> None:
    """Customer-journey event ingestion for a time-series store."""
    # Eager options (--version) raise typer.Exit() before this body runs,
    # so configure_logging() is only called for real subcommands.
    from waypoint.logging import configure_logging

    configure_logging()


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    host: str = typer.Option("", "--host", help="Bind address.  Empty = server.host."),
    port: int = typer.Option(0, "--port", "-p", help="Bind port.  0 = server.port."),
) -> None:
    """Run the HTTP ingestion service until interrupted.

    Starts the batching writer, accepts events on POST /events, and on
    shutdown flushes everything still queued before exiting.
    """
    import uvicorn

    from waypoint.app import create_app
    from waypoint.config import get_settings

    settings = get_settings()
    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    _log.info("serving", host=bind_host, port=bind_port)
    uvicorn.run(create_app(settings), host=bind_host, port=bind_port, log_config=None)


# ---------------------------------------------------------------------------
# Shared file loading for validate / replay
# ---------------------------------------------------------------------------


@dataclass
class _Loaded:
    records: list[EncodedRecord] = field(default_factory=list)
    # (line_number, error code, message)
    rejected: list[tuple[int, str, str]] = field(default_factory=list)


def _load_file(path: Path, settings: Settings, *, use_event_time: bool = False) -> _Loaded:
    """Parse, validate and encode every line of *path*."""
    from waypoint.line_protocol import encode
    from waypoint.parser import MalformedRequestError, parse_jsonl_file
    from waypoint.validate import EventError, validate_event

    good, bad = parse_jsonl_file(path)
    loaded = _Loaded()
    for b in bad:
        loaded.rejected.append((b.line_number, MalformedRequestError.code, b.reason))

    received_at = datetime.now(UTC)
    for parsed in good:
        try:
            event = validate_event(parsed.data, received_at=received_at)
        except EventError as exc:
            loaded.rejected.append((parsed.line_number, exc.code, str(exc)))
            continue
        if use_event_time:
            event = replace(event, received_at=datetime.fromtimestamp(event.timestamp, UTC))
        loaded.records.append(
            encode(
                event,
                measurement=settings.backend.measurement,
                precision=settings.backend.precision,
            )
        )

    loaded.rejected.sort()
    return loaded


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@app.command("validate")
def validate(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSONL file of raw events."),
    show_lines: bool = typer.Option(
        False,
        "--show-lines",
        help="Print the encoded line protocol for every accepted event.",
    ),
) -> None:
    """Validate a JSONL file of raw events without writing anything.

    Each non-empty line is parsed, validated and encoded exactly as the
    service would.  Rejected lines are listed with their error code.

    Exit codes: 0 = every line accepted, 1 = one or more lines rejected.
    """
    from waypoint.config import get_settings

    loaded = _load_file(file, get_settings())

    if show_lines:
        for record in loaded.records:
            typer.echo(record.line.decode("utf-8"))

    for line_number, code, message in loaded.rejected:
        typer.echo(f"  line {line_number}: {code}: {message}")

    typer.echo(f"\nValidation complete — {file}")
    typer.echo(f"  events accepted:  {len(loaded.records)}")
    typer.echo(f"  events rejected:  {len(loaded.rejected)}")
    _log.info(
        "validate finished",
        path=str(file),
        accepted=len(loaded.records),
        rejected=len(loaded.rejected),
    )
    if loaded.rejected:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReplayStats:
    batches: int
    delivered: int
    dropped: int


async def replay_records(
    records: list[EncodedRecord],
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ReplayStats:
    """Write *records* through a blocking writer and wait for the final flush."""
    from waypoint.backend import BackendClient
    from waypoint.writer import BatchingWriter

    async with BackendClient(settings.backend, transport=transport) as client:
        writer = BatchingWriter.from_settings(
            client, settings.writer, backpressure_policy="block"
        )
        await writer.start()
        try:
            for record in records:
                await writer.enqueue(record)
        finally:
            await writer.stop()
    return ReplayStats(batches=writer.batches, delivered=writer.delivered, dropped=writer.dropped)


@app.command("replay")
def replay(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSONL file of raw events."),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate and encode but do not write to the backend.",
    ),
    use_event_time: bool = typer.Option(
        False,
        "--use-event-time",
        help="Use each event's timestamp as write-time instead of now.",
    ),
) -> None:
    """Write a JSONL file of raw events to the backend (backfill).

    Invalid lines are skipped and reported.  Valid events go through the
    batching writer with the block policy, so nothing is refused for
    backpressure.  Batches the backend drops land in the dead-letter spool.

    Exit codes: 0 = all events delivered, 1 = any line rejected or batch dropped.
    """
    import asyncio

    from waypoint.config import get_settings

    settings = get_settings()
    loaded = _load_file(file, settings, use_event_time=use_event_time)

    for line_number, code, message in loaded.rejected:
        typer.echo(f"  line {line_number}: {code}: {message}")

    if dry_run:
        typer.echo(f"\nDry run — {len(loaded.records)} event(s) would be written")
        typer.echo(f"  events rejected:  {len(loaded.rejected)}")
        if loaded.rejected:
            raise typer.Exit(1)
        return

    stats = asyncio.run(replay_records(loaded.records, settings))

    typer.echo(f"\nReplay complete — {file}")
    typer.echo(f"  events rejected:    {len(loaded.rejected)}")
    typer.echo(f"  batches written:    {stats.batches}")
    typer.echo(f"  records delivered:  {stats.delivered}")
    typer.echo(f"  records dropped:    {stats.dropped}")
    _log.info(
        "replay finished",
        path=str(file),
        rejected=len(loaded.rejected),
        delivered=stats.delivered,
        dropped=stats.dropped,
    )
    if loaded.rejected or stats.dropped:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


@app.command("doctor")
def doctor(
    check: str = typer.Option(
        "",
        "--check",
        "-c",
        help="Run only this named check.  Empty = run all checks.",
    ),
) -> None:
    """Check configuration, backend reachability, and dead-letter backlog.

    Prints a pass / warn / fail status for each check.

    Exit codes: 0 = all pass, 1 = one or more warnings, 2 = one or more failures.
    """
    from waypoint.config import get_settings
    from waypoint.doctor import run_checks

    try:
        results = run_checks(get_settings(), only=check)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc

    _STATUS_LABEL = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}
    name_width = max(len(r.name) for r in results)
    for r in results:
        typer.echo(f"  {r.name.ljust(name_width)}  {_STATUS_LABEL[r.status]:4}  {r.message}")
        if r.hint:
            typer.echo(f"  {''.ljust(name_width)}        hint: {r.hint}")

    n_warn = sum(1 for r in results if r.status == "warn")
    n_fail = sum(1 for r in results if r.status == "fail")
    typer.echo()
    if n_fail:
        typer.echo(f"  {n_warn} warning(s) — {n_fail} failure(s)")
        _log.warning("doctor finished with failures", warnings=n_warn, failures=n_fail)
        raise typer.Exit(2)
    if n_warn:
        typer.echo(f"  {n_warn} warning(s) — 0 failures")
        _log.warning("doctor finished with warnings", warnings=n_warn)
        raise typer.Exit(1)
    typer.echo("  all checks passed")
    _log.info("doctor finished", status="pass")


# ---------------------------------------------------------------------------
# config subcommands
# ---------------------------------------------------------------------------

_config_app = typer.Typer(help="Inspect resolved configuration.")
app.add_typer(_config_app, name="config")


@_config_app.command("show")
def config_show() -> None:
    """Print the fully-resolved configuration and exit.

    Shows which config file was loaded and the final value of every setting
    after WAYPOINT_* environment overrides.  The backend token is masked.
    """
    from waypoint.config import _config_file, get_settings

    settings = get_settings()

    typer.echo(f"\n  config : {_config_file()}\n")

    for section_name, section in settings.model_dump().items():
        typer.echo(f"  [{section_name}]")
        width = max(len(k) for k in section)
        for key, val in section.items():
            typer.echo(f"  {key.ljust(width)} = {val}")
        typer.echo()
