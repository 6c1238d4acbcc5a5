"""Service health checks for ``waypoint doctor``.

Each check takes the resolved :class:`~waypoint.config.Settings` and returns a
``CheckResult``.  Checks never raise for an unhealthy deployment; they
return FAIL or WARN with a message and, where useful, a hint.

Exit-code contract (enforced by the CLI):
  0 — all checks passed
  1 — one or more warnings, no failures
  2 — one or more failures
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import httpx

from waypoint.backend import ping_url
from waypoint.config import Settings
from waypoint.dead_letter import iter_dead_letters

Status = Literal["pass", "warn", "fail"]


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: Status
    message: str
    hint: str = ""


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def check_token(settings: Settings, **_: object) -> CheckResult:
    """An API token must be configured for the backend.

    PASS  — token is set
    WARN  — token is empty (only acceptable for an unauthenticated backend)
    """
    if settings.backend.token.get_secret_value():
        return CheckResult(name="token", status="pass", message="backend token configured")
    return CheckResult(
        name="token",
        status="warn",
        message="no backend token configured",
        hint="set WAYPOINT_BACKEND__TOKEN unless the backend runs without auth",
    )


def check_backend_reachable(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
    **_: object,
) -> CheckResult:
    """The backend must answer ``GET /ping`` on its origin.

    PASS  — 2xx response
    FAIL  — connection error, timeout, or non-2xx response
    """
    url = ping_url(settings.backend.url)
    try:
        with httpx.Client(timeout=settings.backend.timeout, transport=transport) as client:
            resp = client.get(url)
    except httpx.TransportError as exc:
        return CheckResult(
            name="backend_reachable",
            status="fail",
            message=f"{url} unreachable: {type(exc).__name__}",
            hint="check backend.url and that the backend is running",
        )
    if not resp.is_success:
        return CheckResult(
            name="backend_reachable",
            status="fail",
            message=f"{url} answered {resp.status_code}",
            hint="check backend.url points at the API root",
        )
    return CheckResult(
        name="backend_reachable",
        status="pass",
        message=f"{url} answered {resp.status_code}",
    )


def check_dead_letters(settings: Settings, **_: object) -> CheckResult:
    """The dead-letter spool should be empty.

    PASS  — spool disabled, missing, or empty
    WARN  — dropped batches recorded, or spool lines that cannot be read back
    FAIL  — spool directory cannot be read
    """
    spool = settings.writer.dead_letter_dir
    if spool is None:
        return CheckResult(name="dead_letters", status="pass", message="dead-letter spool disabled")

    batches = 0
    records = 0
    skipped: list[tuple[Path, int]] = []
    try:
        for entry in iter_dead_letters(spool, skipped=skipped):
            batches += 1
            count = entry.get("record_count", 0)
            records += count if isinstance(count, int) else 0
    except OSError as exc:
        return CheckResult(
            name="dead_letters",
            status="fail",
            message=f"cannot read {spool}: {exc.strerror or exc}",
            hint="check permissions on writer.dead_letter_dir",
        )

    if skipped:
        path, line_number = skipped[0]
        return CheckResult(
            name="dead_letters",
            status="warn",
            message=(
                f"{batches} dropped batch(es), {len(skipped)} unreadable line(s) in {spool}"
            ),
            hint=f"first unreadable line: {path}:{line_number}",
        )
    if batches:
        return CheckResult(
            name="dead_letters",
            status="warn",
            message=f"{batches} dropped batch(es), {records} record(s) in {spool}",
            hint="inspect the spool and re-send with `waypoint replay` once fixed",
        )
    return CheckResult(name="dead_letters", status="pass", message="no dropped batches")


# ---------------------------------------------------------------------------
# Registry and runner
# ---------------------------------------------------------------------------

_ALL_CHECKS: dict[str, Callable[..., CheckResult]] = {
    "token": check_token,
    "backend_reachable": check_backend_reachable,
    "dead_letters": check_dead_letters,
}


def run_checks(
    settings: Settings,
    *,
    only: str = "",
    transport: httpx.BaseTransport | None = None,
) -> list[CheckResult]:
    """Run all registered checks (or just ``only`` if named) and return results.

    Args:
        settings:  Resolved settings.
        only:      If non-empty, run only the check with this name.
        transport: Optional httpx transport for the reachability check.

    Raises:
        ValueError: If ``only`` names a check that does not exist.
    """
    if only:
        if only not in _ALL_CHECKS:
            raise ValueError(f"unknown check: {only!r}.  Known: {sorted(_ALL_CHECKS)}")
        return [_ALL_CHECKS[only](settings, transport=transport)]
    return [fn(settings, transport=transport) for fn in _ALL_CHECKS.values()]
