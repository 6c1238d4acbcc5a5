"""Dead-letter spool for batches the backend never accepted.

``dead_letter_batch(dead_letter_dir, lines, reason=...)`` appends a single
JSON record to::

    <dead_letter_dir>/<YYYY-MM-DD>/batches.jsonl

Each record captures enough context to investigate or replay the batch:
- ``dropped_at_utc`` — ISO-8601 timestamp of when the batch was dropped
- ``reason``         — ``permanent`` or ``retries_exhausted``
- ``status_code``    — last HTTP status from the backend, or null
- ``error``          — last error message
- ``attempts``       — write attempts made before giving up
- ``record_count``   — number of lines in the batch
- ``lines``          — the line-protocol records verbatim

Records are *appended*, so spool files are themselves valid JSONL.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

SPOOL_FILE = "batches.jsonl"


def dead_letter_batch(
    dead_letter_dir: Path,
    lines: Sequence[bytes],
    *,
    reason: str,
    status_code: int | None = None,
    error: str = "",
    attempts: int = 0,
    today: date | None = None,
) -> Path:
    """Append one dropped batch to the spool and return the file written.

    Args:
        dead_letter_dir: Root spool directory (``writer.dead_letter_dir``).
        lines:           Encoded line-protocol records of the batch.
        reason:          Why the batch was dropped.
        status_code:     Last backend HTTP status, if any.
        error:           Last error message.
        attempts:        Write attempts made.
        today:           Override the partition date (for testing).  Defaults
                         to :func:`datetime.date.today`.
    """
    partition = today if today is not None else date.today()
    day_dir = dead_letter_dir / partition.strftime("%Y-%m-%d")
    day_dir.mkdir(parents=True, exist_ok=True)

    record = {
        "dropped_at_utc": datetime.now(UTC).isoformat(timespec="seconds"),
        "reason": reason,
        "status_code": status_code,
        "error": error,
        "attempts": attempts,
        "record_count": len(lines),
        "lines": [line.decode("utf-8") for line in lines],
    }
    path = day_dir / SPOOL_FILE
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record) + "\n")
    return path


def iter_dead_letters(
    dead_letter_dir: Path, *, skipped: list[tuple[Path, int]] | None = None
) -> Iterator[dict[str, Any]]:
    """Yield every spooled batch record, oldest partition first.

    Lines that are not a JSON object (a write cut short by a crash, say) are
    skipped.  Pass a list as *skipped* to collect their ``(path, line_number)``.
    """
    if not dead_letter_dir.is_dir():
        return
    for path in sorted(dead_letter_dir.glob(f"*/{SPOOL_FILE}")):
        text = path.read_text(encoding="utf-8", errors="replace")
        for line_number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except (ValueError, RecursionError):
                record = None
            if not isinstance(record, dict):
                if skipped is not None:
                    skipped.append((path, line_number))
                continue
            yield record
