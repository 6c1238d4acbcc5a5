"""Line-protocol encoding for the time-series backend.

``encode(event)`` turns a :class:`~waypoint.models.event.CanonicalEvent` into
one line of the form::

    events,content_id=c1,device_type=mobile,event_type=scroll,user_id=u1 timestamp=1700000000i,scroll_depth=42.5 1700000003

Rules:

- Tags are sorted lexicographically by key; fields keep schema order.
- Measurement names escape comma and space.  Tag keys, tag values and
  field keys escape backslash, comma, equals sign and space.
- String field values are double-quoted; ``"`` and ``\\`` inside are escaped.
- Integers carry an ``i`` suffix; floats use the shortest round-trip repr.
- The trailing write-time is the event's ``received_at`` in the configured
  precision, not the client-supplied ``timestamp`` field.

``decode(line)`` is the inverse, used by tests and for inspecting
dead-lettered batches.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from waypoint.models.event import CanonicalEvent, FieldValue
from waypoint.models.record import EncodedRecord

DEFAULT_MEASUREMENT = "events"

_PRECISION_FACTORS: dict[str, int] = {"s": 1, "ms": 10**3, "us": 10**6, "ns": 10**9}
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_MEASUREMENT_ESCAPES = str.maketrans({",": "\\,", " ": "\\ "})
_KEY_ESCAPES = str.maketrans({"\\": "\\\\", ",": "\\,", "=": "\\=", " ": "\\ "})
_STRING_ESCAPES = str.maketrans({"\\": "\\\\", '"': '\\"'})


class EncodeError(ValueError):
    """The event cannot be represented in line protocol."""


class DecodeError(ValueError):
    """A line is not well-formed line protocol."""


@dataclass(frozen=True)
class DecodedLine:
    measurement: str
    tags: dict[str, str]
    fields: dict[str, FieldValue]
    write_time: int | None


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(
    event: CanonicalEvent,
    *,
    measurement: str = DEFAULT_MEASUREMENT,
    precision: str = "s",
) -> EncodedRecord:
    """Encode *event* as one line-protocol record.

    Args:
        event:       A validated :class:`CanonicalEvent`.
        measurement: Measurement name written at the start of the line.
        precision:   Write-time precision: ``s``, ``ms``, ``us`` or ``ns``.

    Raises:
        EncodeError: The event is structurally invalid (no fields, empty or
                     multi-line tag values, non-finite floats, naive
                     ``received_at``).  Unreachable for validator output.
    """
    if not measurement or _has_line_break(measurement):
        raise EncodeError(f"invalid measurement name {measurement!r}")
    if not event.fields:
        raise EncodeError("event has no fields; line protocol requires at least one")

    write_time = to_write_time(event.received_at, precision)

    parts = [measurement.translate(_MEASUREMENT_ESCAPES)]
    for key in sorted(event.tags):
        value = event.tags[key]
        if not value or _has_line_break(value) or _has_line_break(key):
            raise EncodeError(f"tag {key!r} has an empty or multi-line value")
        parts.append(f"{_escape_key(key)}={_escape_key(value)}")
    head = ",".join(parts)

    fields = ",".join(
        f"{_escape_key(key)}={_format_value(key, value)}" for key, value in event.fields.items()
    )

    line = f"{head} {fields} {write_time}"
    return EncodedRecord(line=line.encode("utf-8"), write_time=write_time)


def to_write_time(received_at: datetime, precision: str = "s") -> int:
    """Convert an aware datetime to an integer epoch in *precision* units."""
    factor = _PRECISION_FACTORS.get(precision)
    if factor is None:
        raise EncodeError(f"unsupported precision {precision!r}; expected one of s, ms, us, ns")
    if received_at.tzinfo is None:
        raise EncodeError("received_at must be timezone-aware")
    delta = received_at - _EPOCH
    whole_seconds = delta.days * 86_400 + delta.seconds
    # Integer arithmetic so nanosecond precision does not lose digits.
    return whole_seconds * factor + delta.microseconds * factor // 1_000_000


def _escape_key(text: str) -> str:
    return text.translate(_KEY_ESCAPES)


def _has_line_break(text: str) -> bool:
    return "\n" in text or "\r" in text


def _format_value(key: str, value: Any) -> str:
    # bool before int: bool is an int subclass.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        if not math.isfinite(value):
            raise EncodeError(f"field {key!r} is not finite: {value!r}")
        return repr(value)
    if isinstance(value, str):
        if _has_line_break(value):
            raise EncodeError(f"field {key!r} contains a line break")
        return f'"{value.translate(_STRING_ESCAPES)}"'
    raise EncodeError(f"field {key!r} has unsupported type {type(value).__name__}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(line: bytes | str) -> DecodedLine:
    """Parse one line-protocol line back into its parts.

    Raises:
        DecodeError: The line is malformed.
    """
    text = line.decode("utf-8") if isinstance(line, bytes) else line
    text = text.rstrip("\n")

    # Tag values are never quoted, so the head ends at the first unescaped space.
    cut = _find_unescaped(text, " ")
    if cut < 0:
        raise DecodeError("expected measurement, fields and optional write-time")
    sections = [text[:cut], *_split(text[cut + 1 :], " ", quotes=True)]
    if len(sections) not in (2, 3):
        raise DecodeError(f"expected 2 or 3 space-separated sections, got {len(sections)}")

    head = _split(sections[0], ",")
    measurement = _unescape(head[0])
    if not measurement:
        raise DecodeError("missing measurement")

    tags: dict[str, str] = {}
    for pair in head[1:]:
        key, value = _split_pair(pair)
        tags[_unescape(key)] = _unescape(value)

    fields: dict[str, FieldValue] = {}
    for pair in _split(sections[1], ",", quotes=True):
        key, value = _split_pair(pair)
        fields[_unescape(key)] = _parse_value(value)
    if not fields:
        raise DecodeError("line has no fields")

    write_time: int | None = None
    if len(sections) == 3:
        try:
            write_time = int(sections[2])
        except ValueError as exc:
            raise DecodeError(f"invalid write-time {sections[2]!r}") from exc

    return DecodedLine(measurement=measurement, tags=tags, fields=fields, write_time=write_time)


def _split(text: str, sep: str, *, quotes: bool = False) -> list[str]:
    """Split on *sep* outside escapes (and, optionally, outside double quotes)."""
    parts: list[str] = []
    buf: list[str] = []
    in_quotes = False
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            buf.append(text[i : i + 2])
            i += 2
            continue
        if quotes and ch == '"':
            in_quotes = not in_quotes
        elif ch == sep and not in_quotes:
            parts.append("".join(buf))
            buf = []
            i += 1
            continue
        buf.append(ch)
        i += 1
    if in_quotes:
        raise DecodeError("unterminated string value")
    parts.append("".join(buf))
    return parts


def _find_unescaped(text: str, target: str) -> int:
    i = 0
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == target:
            return i
        i += 1
    return -1


def _split_pair(pair: str) -> tuple[str, str]:
    i = _find_unescaped(pair, "=")
    if i < 0:
        raise DecodeError(f"expected key=value, got {pair!r}")
    if i == 0:
        raise DecodeError(f"empty key in {pair!r}")
    return pair[:i], pair[i + 1 :]


def _unescape(text: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(text):
        if text[i] == "\\" and i + 1 < len(text):
            out.append(text[i + 1])
            i += 2
            continue
        out.append(text[i])
        i += 1
    return "".join(out)


def _parse_value(raw: str) -> FieldValue:
    if len(raw) >= 2 and raw[0] == '"' and raw[-1] == '"':
        return _unescape(raw[1:-1])
    if raw in ("t", "T", "true", "True", "TRUE"):
        return True
    if raw in ("f", "F", "false", "False", "FALSE"):
        return False
    try:
        if raw.endswith("i"):
            return int(raw[:-1])
        return float(raw)
    except ValueError as exc:
        raise DecodeError(f"invalid field value {raw!r}") from exc
