"""
Tagged-variant parsing of PMS webhook payloads.

The PMS posts ``{"action": ..., "user": ..., "data": {...}}``. The action field
selects one of a closed set of event variants; anything that does not parse
into one of them is rejected before any business logic runs.

Example payload:
    {
        "action": "updateReservation",
        "user": 1034,
        "eventId": "evt_8812",
        "data": {
            "id": 291,
            "arrival": "2025-01-10",
            "departure": "2025-01-12",
            "apartment": {"id": 123, "name": "Villa Kemuning"},
            "guest-name": "Jane Doe",
            "modifiedAt": "2025-01-09 12:00:00"
        }
    }
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from dateutil import parser as date_parser
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

# Width of webhook_events.event_id
MAX_EVENT_ID_LENGTH = 128


def parse_event_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a PMS timestamp into aware UTC.

    The PMS sends "YYYY-MM-DD HH:MM:SS" without an offset; those are UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = value if isinstance(value, datetime) else date_parser.parse(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ApartmentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        # Numeric IDs in the payload are stored as strings
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else value


class ReservationData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    arrival: date
    departure: date
    apartment: ApartmentRef
    guest_name: Optional[str] = Field(None, validation_alias=AliasChoices("guest-name", "guestName"))
    modified_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("modifiedAt", "modified-at")
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        # Numeric IDs in the payload are stored as strings
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else value

    @field_validator("modified_at", mode="before")
    @classmethod
    def parse_modified_at(cls, value: Any) -> Optional[datetime]:
        try:
            return parse_event_timestamp(value)
        except (ValueError, OverflowError) as e:
            raise ValueError(f"unparseable timestamp: {value!r}") from e

    @model_validator(mode="after")
    def validate_stay(self) -> "ReservationData":
        if self.departure <= self.arrival:
            raise ValueError("departure must be after arrival")
        return self


class DayRate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Optional[Decimal] = Field(None, ge=0)
    available: Optional[bool] = None
    min_length_of_stay: Optional[int] = None

    @field_validator("available", mode="before")
    @classmethod
    def coerce_available(cls, value: Any) -> Any:
        # The PMS sends availability as 0/1
        if isinstance(value, int) and not isinstance(value, bool):
            return value > 0
        return value


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_id: Optional[Union[str, int]] = Field(None, validation_alias=AliasChoices("eventId", "event_id"))
    user: Optional[Union[int, str]] = None
    timestamp: Optional[datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, value: Any) -> Optional[datetime]:
        try:
            return parse_event_timestamp(value)
        except (ValueError, OverflowError) as e:
            raise ValueError(f"unparseable timestamp: {value!r}") from e


class ReservationEvent(_EventBase):
    action: Literal["newReservation", "updateReservation", "cancelReservation", "deleteReservation"]
    data: ReservationData

    @property
    def pms_reservation_id(self) -> str:
        return self.data.id

    @property
    def occurred_at(self) -> Optional[datetime]:
        return self.data.modified_at or self.timestamp

    @property
    def releases_dates(self) -> bool:
        return self.action in ("cancelReservation", "deleteReservation")


class RatesEvent(_EventBase):
    """Rate/availability change: apartment ID -> ISO date -> day rate."""

    action: Literal["updateRates"]
    data: Dict[str, Dict[date, DayRate]]

    @field_validator("data", mode="before")
    @classmethod
    def coerce_apartment_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): v for k, v in value.items()}
        return value

    @property
    def occurred_at(self) -> Optional[datetime]:
        return self.timestamp


WebhookEventPayload = Annotated[Union[ReservationEvent, RatesEvent], Field(discriminator="action")]

webhook_event_adapter: TypeAdapter[Union[ReservationEvent, RatesEvent]] = TypeAdapter(WebhookEventPayload)


def parse_webhook_event(payload: Any) -> Union[ReservationEvent, RatesEvent]:
    """
    Validate a decoded payload into its event variant.

    Raises:
        pydantic.ValidationError: If the payload matches no variant.
    """
    return webhook_event_adapter.validate_python(payload)


def compute_event_id(payload: Any) -> str:
    """
    Return the payload's own event ID, or a content hash when it has none.

    The hash covers the canonical JSON form (sorted keys, compact separators),
    so a redelivery of the same event maps to the same ID. Explicit IDs longer
    than the event_id column are hashed too, keeping them stable and unique.
    """
    if isinstance(payload, dict):
        explicit = payload.get("eventId") or payload.get("event_id")
        if explicit:
            explicit = str(explicit)
            if len(explicit) > MAX_EVENT_ID_LENGTH:
                return "sha256:" + hashlib.sha256(explicit.encode("utf-8")).hexdigest()
            return explicit
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
