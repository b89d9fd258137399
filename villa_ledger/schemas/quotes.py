from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from villa_ledger.utils.datetime import utc_now

MAX_STAY_NIGHTS = 90


class QuoteRequest(BaseModel):
    """
    Schema for a price quote: villa, stay and guest composition.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    villa_id: str = Field(..., min_length=1, max_length=64, description="Villa ID (PMS apartment ID)")
    checkin: date = Field(..., description="First night of the stay")
    checkout: date = Field(..., description="Departure day (exclusive)")
    currency: str = Field(..., description="ISO 4217 currency to quote in")
    adults: int = Field(..., ge=1, le=20, description="Number of adults")
    children: int = Field(0, ge=0, le=20, description="Number of children")

    @field_validator("villa_id", mode="before")
    @classmethod
    def coerce_villa_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        value = value.upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a 3-letter ISO 4217 code")
        return value

    @model_validator(mode="after")
    def validate_stay(self) -> "QuoteRequest":
        if self.checkout <= self.checkin:
            raise ValueError("checkout must be after checkin")
        if (self.checkout - self.checkin).days > MAX_STAY_NIGHTS:
            raise ValueError(f"stays are limited to {MAX_STAY_NIGHTS} nights")
        if self.checkin < utc_now().date():
            raise ValueError("checkin must not be in the past")
        return self
