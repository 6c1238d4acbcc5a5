"""Request-body and JSONL parsing with bad-input capture.

``parse_request_body(body)`` decodes one HTTP request body.  It returns a
JSON object (single event) or a JSON array (batch) and raises
:class:`MalformedRequestError` for anything else, before the validator sees
it.

``parse_jsonl_file(path)`` reads a JSONL file of raw events (replay and
offline validation) and returns two lists:
- ``good``: :class:`ParsedLine` for every line that is valid JSON *and* a
  JSON object (``{...}``).
- ``bad``:  :class:`BadLine` for every line that is malformed JSON or a
  non-object JSON value.

Empty and whitespace-only lines are skipped silently and do not appear in
either list.

Both parsers reject the non-standard ``NaN`` / ``Infinity`` literals that
Python's ``json`` module would otherwise accept.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class MalformedRequestError(ValueError):
    """The request body is not a JSON object or array of objects."""

    code = "MalformedRequest"


@dataclass(frozen=True)
class ParsedLine:
    """A successfully parsed JSONL line."""

    line_number: int
    data: dict[str, Any]


@dataclass(frozen=True)
class BadLine:
    """A line that could not be parsed into a JSON object."""

    line_number: int
    raw_text: str
    reason: str


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _loads(text: str | bytes) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


def parse_request_body(
    body: bytes, *, max_bytes: int | None = None
) -> dict[str, Any] | list[Any]:
    """Decode one request body into a JSON object or array.

    Raises:
        MalformedRequestError: Empty or oversized body, invalid JSON or UTF-8,
                               nesting too deep to decode, or a JSON value
                               that is neither an object nor an array.
    """
    if max_bytes is not None and len(body) > max_bytes:
        raise MalformedRequestError(f"request body is {len(body)} bytes; limit is {max_bytes}")
    if not body.strip():
        raise MalformedRequestError("request body is empty")

    try:
        parsed = _loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedRequestError(f"invalid JSON: {exc.msg} (col {exc.colno})") from exc
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedRequestError(f"invalid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedRequestError("invalid JSON: nested too deeply") from exc

    if not isinstance(parsed, (dict, list)):
        raise MalformedRequestError(
            f"expected JSON object or array, got {type(parsed).__name__}"
        )
    return parsed


def parse_jsonl_file(path: Path) -> tuple[list[ParsedLine], list[BadLine]]:
    """Parse *path* line-by-line and return ``(good, bad)``.

    Args:
        path: Path to a ``.jsonl`` file (UTF-8 encoded).

    Returns:
        A 2-tuple ``(good, bad)`` where *good* is a list of
        :class:`ParsedLine` and *bad* is a list of :class:`BadLine`.
        Lists are in line-number order.  Empty lines are skipped and
        appear in neither list.
    """
    good: list[ParsedLine] = []
    bad: list[BadLine] = []

    for line_number, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        raw = raw.strip()
        if not raw:
            continue

        try:
            parsed = _loads(raw)
        except json.JSONDecodeError as exc:
            bad.append(
                BadLine(
                    line_number=line_number,
                    raw_text=raw,
                    reason=f"invalid JSON: {exc.msg} (col {exc.colno})",
                )
            )
            continue
        except ValueError as exc:
            bad.append(BadLine(line_number=line_number, raw_text=raw, reason=f"invalid JSON: {exc}"))
            continue
        except RecursionError:
            bad.append(
                BadLine(
                    line_number=line_number,
                    raw_text=raw,
                    reason="invalid JSON: nested too deeply",
                )
            )
            continue

        if not isinstance(parsed, dict):
            bad.append(
                BadLine(
                    line_number=line_number,
                    raw_text=raw,
                    reason=f"expected JSON object, got {type(parsed).__name__}",
                )
            )
            continue

        good.append(ParsedLine(line_number=line_number, data=parsed))

    return good, bad
