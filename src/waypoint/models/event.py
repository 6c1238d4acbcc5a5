"""Tagged event model for customer-journey events.

Every event shares one tag set (indexed, string-valued) and carries a field
set that depends on its ``event_type``.  Each variant has its own pydantic
field model with ``extra="forbid"``, so a field that belongs to another
variant cannot ride along as a sparse null.

Built-in variants and their applicable fields (``timestamp`` is common):

    pageview            page_url
    interaction         page_url, interaction_type
    transaction         purchase_value
    button_click        page_url, button_clicked
    scroll              scroll_depth  (percentage, 0–100)
    first_rental_view   time_lag_from_transaction
    rental              rental_duration, rental_popularity

New variants are added with :func:`register_event_type`.

:class:`CanonicalEvent` is the immutable record the validator produces and the
encoder consumes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints

FieldValue = int | float | str | bool


class EventType(StrEnum):
    PAGEVIEW = "pageview"
    INTERACTION = "interaction"
    TRANSACTION = "transaction"
    BUTTON_CLICK = "button_click"
    SCROLL = "scroll"
    FIRST_RENTAL_VIEW = "first_rental_view"
    RENTAL = "rental"


class DeviceType(StrEnum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Tag set
# ---------------------------------------------------------------------------

REQUIRED_TAGS: tuple[str, ...] = ("content_id", "user_id", "device_type")
OPTIONAL_TAGS: tuple[str, ...] = ("location", "referral_source")
TAG_KEYS: frozenset[str] = frozenset({"event_type", *REQUIRED_TAGS, *OPTIONAL_TAGS})

DEVICE_TYPES: frozenset[str] = frozenset(d.value for d in DeviceType)


# ---------------------------------------------------------------------------
# Field value types
# ---------------------------------------------------------------------------


def _reject_bool(v: Any) -> Any:
    # bool is an int subclass; true/false is never a valid count or amount.
    if isinstance(v, bool):
        raise ValueError("Input should be a number, not a boolean")
    return v


# Wire limits: "i" fields are signed 64-bit, strings are capped at 64 KiB.
MAX_INTEGER = 2**63 - 1
MAX_STRING_BYTES = 64 * 1024


def exceeds_string_limit(value: str) -> bool:
    return len(value.encode("utf-8")) > MAX_STRING_BYTES


def _reject_line_breaks(v: Any) -> Any:
    if isinstance(v, str) and ("\n" in v or "\r" in v):
        raise ValueError("Input must not contain line breaks")
    if isinstance(v, str) and exceeds_string_limit(v):
        raise ValueError(f"Input must be at most {MAX_STRING_BYTES} bytes")
    return v


EpochSeconds = Annotated[int, Field(ge=0, le=MAX_INTEGER), BeforeValidator(_reject_bool)]
Count = Annotated[int, Field(ge=0, le=MAX_INTEGER), BeforeValidator(_reject_bool)]
Amount = Annotated[float, Field(ge=0, allow_inf_nan=False), BeforeValidator(_reject_bool)]
Percentage = Annotated[
    float, Field(ge=0, le=100, allow_inf_nan=False), BeforeValidator(_reject_bool)
]
Text = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1),
    BeforeValidator(_reject_line_breaks),
]


# ---------------------------------------------------------------------------
# Per-variant field models
# ---------------------------------------------------------------------------


class EventFields(BaseModel):
    """Base field set shared by every variant.

    Subclasses declare the optional fields applicable to one event type.
    Declaration order is the order fields are written on the wire, with
    ``timestamp`` always first.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Business-event time supplied by the client, epoch seconds.
    timestamp: EpochSeconds


class PageviewFields(EventFields):
    page_url: Text | None = None


class InteractionFields(EventFields):
    page_url: Text | None = None
    interaction_type: Text | None = None


class TransactionFields(EventFields):
    purchase_value: Amount | None = None


class ButtonClickFields(EventFields):
    page_url: Text | None = None
    button_clicked: Text | None = None


class ScrollFields(EventFields):
    scroll_depth: Percentage | None = None


class FirstRentalViewFields(EventFields):
    time_lag_from_transaction: Count | None = None


class RentalFields(EventFields):
    rental_duration: Count | None = None
    rental_popularity: Count | None = None


_VARIANTS: dict[str, type[EventFields]] = {
    EventType.PAGEVIEW.value: PageviewFields,
    EventType.INTERACTION.value: InteractionFields,
    EventType.TRANSACTION.value: TransactionFields,
    EventType.BUTTON_CLICK.value: ButtonClickFields,
    EventType.SCROLL.value: ScrollFields,
    EventType.FIRST_RENTAL_VIEW.value: FirstRentalViewFields,
    EventType.RENTAL.value: RentalFields,
}


def register_event_type(
    name: str,
    fields_model: type[EventFields],
    *,
    replace: bool = False,
) -> None:
    """Register a new event variant and its applicable-field model.

    Args:
        name:         The ``event_type`` value clients will send.
        fields_model: An :class:`EventFields` subclass declaring the variant's
                      optional fields.
        replace:      Allow overriding an existing registration.

    Raises:
        ValueError: *name* is empty or already registered, or the model
                    declares a field that collides with a tag key.
        TypeError:  *fields_model* is not an :class:`EventFields` subclass.
    """
    if not isinstance(fields_model, type) or not issubclass(fields_model, EventFields):
        raise TypeError(f"fields_model must subclass EventFields, got {fields_model!r}")
    if not name or name != name.strip():
        raise ValueError(f"event type name must be a non-empty trimmed string, got {name!r}")
    if name in _VARIANTS and not replace:
        raise ValueError(f"event type {name!r} is already registered")
    clashes = TAG_KEYS.intersection(fields_model.model_fields)
    if clashes:
        raise ValueError(f"field names collide with tag keys: {sorted(clashes)}")
    _VARIANTS[name] = fields_model


def unregister_event_type(name: str) -> None:
    """Remove a registered variant.  Built-in variants cannot be removed."""
    if name in {t.value for t in EventType}:
        raise ValueError(f"cannot unregister built-in event type {name!r}")
    _VARIANTS.pop(name, None)


def fields_model_for(event_type: str) -> type[EventFields] | None:
    """Return the field model for *event_type*, or None if it is not registered."""
    return _VARIANTS.get(event_type)


def known_event_types() -> list[str]:
    """All registered event type names, sorted."""
    return sorted(_VARIANTS)


def known_field_names() -> frozenset[str]:
    """Every field name declared by at least one registered variant."""
    return frozenset(name for model in _VARIANTS.values() for name in model.model_fields)


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CanonicalEvent:
    """A validated, immutable journey event.

    Attributes:
        event_type:  Registered variant name (also present in ``tags``).
        tags:        Tag key → value; always includes the four required tags.
        fields:      Field key → value in schema order, ``timestamp`` first.
                     Holds only supplied, applicable fields.
        received_at: Timezone-aware time the pipeline received the event.
                     Becomes the line-protocol write-time.
    """

    event_type: str
    tags: Mapping[str, str]
    fields: Mapping[str, FieldValue]
    received_at: datetime

    def __post_init__(self) -> None:
        # Read-only views so the record cannot be mutated after validation.
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def timestamp(self) -> int:
        return int(self.fields["timestamp"])

    @property
    def user_id(self) -> str:
        return self.tags["user_id"]

    @property
    def content_id(self) -> str:
        return self.tags["content_id"]
