"""Journey event validation and normalization.

``validate_event(raw)`` is the single entry point.  It converts a raw dict
(decoded from one request body or one JSONL line) into a
:class:`~waypoint.models.event.CanonicalEvent` or raises a typed error.

Checks run in a fixed order and the first failure wins:

  a. ``event_type`` present and registered        → UnknownEventTypeError
  b. required tags present and non-empty          → MissingTagError
  c. tags are strings, device_type in closed set  → InvalidTagValueError
  d. ``timestamp`` present                        → MissingFieldError
     and a non-negative integer                   → InvalidFieldTypeError
  e. other keys applicable to the variant         → FieldNotApplicableError
     and of the right type / range                → InvalidFieldTypeError

Error hierarchy (all inherit from ValueError for easy catch-all handling):

    EventError
    ├── UnknownEventTypeError
    ├── MissingTagError
    ├── InvalidTagValueError
    ├── MissingFieldError
    ├── InvalidFieldTypeError
    └── FieldNotApplicableError

Each class carries a ``code`` that the HTTP surface returns verbatim.

Keys whose value is JSON ``null`` are treated as absent, so clients that send
every known field with nulls for the inapplicable ones still validate.
"""

from datetime import UTC, datetime
from typing import Any, Mapping

from pydantic import TypeAdapter
from pydantic import ValidationError as _PydanticError

from waypoint.models.event import (
    DEVICE_TYPES,
    MAX_STRING_BYTES,
    OPTIONAL_TAGS,
    REQUIRED_TAGS,
    TAG_KEYS,
    CanonicalEvent,
    EpochSeconds,
    exceeds_string_limit,
    fields_model_for,
    known_event_types,
    known_field_names,
)

_TIMESTAMP = TypeAdapter(EpochSeconds)


# ---------------------------------------------------------------------------
# Typed error classes
# ---------------------------------------------------------------------------


class EventError(ValueError):
    """Base class for all journey event validation errors."""

    code = "InvalidEvent"

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class UnknownEventTypeError(EventError):
    """``event_type`` is absent or not a registered variant."""

    code = "UnknownEventType"


class MissingTagError(EventError):
    """A required tag is absent or empty."""

    code = "MissingTag"


class InvalidTagValueError(EventError):
    """A tag is present but not an acceptable value."""

    code = "InvalidTagValue"


class MissingFieldError(EventError):
    """A required field is absent."""

    code = "MissingField"


class InvalidFieldTypeError(EventError):
    """A field is present but fails its type or range constraint."""

    code = "InvalidFieldType"


class FieldNotApplicableError(EventError):
    """A supplied field does not belong to the event's variant."""

    code = "FieldNotApplicable"


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def validate_event(
    raw: Mapping[str, Any],
    *,
    received_at: datetime | None = None,
) -> CanonicalEvent:
    """Validate and normalize a raw journey event.

    Args:
        raw:         Decoded JSON object for one event.
        received_at: Ingestion time to stamp on the record.  Defaults to
                     ``datetime.now(UTC)``; pass an explicit value in tests.

    Returns:
        A :class:`CanonicalEvent` holding exactly the supplied, applicable
        fields.

    Raises:
        EventError: One of its subclasses, for the first failed check.
    """
    present = {k: v for k, v in raw.items() if v is not None}

    event_type = _check_event_type(present.get("event_type"))
    tags = _check_tags(present, event_type)
    timestamp = _check_timestamp(present)
    fields = _check_fields(present, event_type, timestamp)

    return CanonicalEvent(
        event_type=event_type,
        tags=tags,
        fields=fields,
        received_at=received_at if received_at is not None else datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def _check_event_type(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise UnknownEventTypeError("event_type is missing", key="event_type")
    event_type = value.strip()
    if fields_model_for(event_type) is None:
        raise UnknownEventTypeError(
            f"Unknown event_type {event_type!r}; expected one of {known_event_types()}",
            key="event_type",
        )
    return event_type


def _check_tags(present: dict[str, Any], event_type: str) -> dict[str, str]:
    for key in REQUIRED_TAGS:
        value = present.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingTagError(f"Required tag missing or empty: {key!r}", key=key)

    tags = {"event_type": event_type}
    for key in REQUIRED_TAGS:
        tags[key] = _tag_value(key, present[key])

    device_type = tags["device_type"].lower()
    if device_type not in DEVICE_TYPES:
        raise InvalidTagValueError(
            f"Invalid value for 'device_type': {tags['device_type']!r}; "
            f"expected one of {sorted(DEVICE_TYPES)}",
            key="device_type",
        )
    tags["device_type"] = device_type

    for key in OPTIONAL_TAGS:
        if key in present:
            value = _tag_value(key, present[key])
            if value:
                tags[key] = value

    return tags


def _tag_value(key: str, value: Any) -> str:
    """Normalize one tag value to a stripped string."""
    # Integer IDs are common from analytics clients; anything else non-string is not.
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise InvalidTagValueError(
            f"Invalid value for {key!r}: tags must be strings, got {type(value).__name__}",
            key=key,
        )
    if "\n" in value or "\r" in value:
        raise InvalidTagValueError(f"Invalid value for {key!r}: contains a line break", key=key)
    if exceeds_string_limit(value):
        raise InvalidTagValueError(
            f"Invalid value for {key!r}: longer than {MAX_STRING_BYTES} bytes", key=key
        )
    return value.strip()


def _check_timestamp(present: dict[str, Any]) -> int:
    if "timestamp" not in present:
        raise MissingFieldError("Required field missing: 'timestamp'", key="timestamp")
    try:
        return _TIMESTAMP.validate_python(present["timestamp"])
    except _PydanticError as exc:
        raise _convert_pydantic_error(exc) from exc


def _check_fields(present: dict[str, Any], event_type: str, timestamp: int) -> dict[str, Any]:
    model = fields_model_for(event_type)
    assert model is not None  # _check_event_type guarantees registration

    supplied = {k: v for k, v in present.items() if k not in TAG_KEYS}
    supplied["timestamp"] = timestamp

    for key in supplied:
        if key in model.model_fields:
            continue
        if key in known_field_names():
            raise FieldNotApplicableError(
                f"Field {key!r} does not apply to event_type {event_type!r}", key=key
            )
        raise FieldNotApplicableError(f"Unrecognized field {key!r}", key=key)

    try:
        validated = model.model_validate(supplied)
    except _PydanticError as exc:
        raise _convert_pydantic_error(exc) from exc

    # model_dump keeps declaration order, which is the wire order.
    return validated.model_dump(exclude_none=True)


def _convert_pydantic_error(exc: _PydanticError) -> EventError:
    """Map the first Pydantic validation error to one of our typed errors.

    Only the first error is reported to keep rejection messages concise.
    The full Pydantic error is preserved as ``__cause__`` for debugging.
    """
    first = exc.errors(include_url=False)[0]
    loc = first.get("loc", ())
    key = str(loc[0]) if loc else "timestamp"
    msg = first.get("msg", str(exc))

    if first.get("type") == "missing":
        return MissingFieldError(f"Required field missing: {key!r}", key=key)
    if first.get("type") == "extra_forbidden":
        return FieldNotApplicableError(f"Unrecognized field {key!r}", key=key)
    return InvalidFieldTypeError(f"Invalid value for {key!r}: {msg}", key=key)
