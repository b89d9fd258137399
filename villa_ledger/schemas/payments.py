"""
Request schemas for the client payment API.

Everything a guest submits is validated here, before the payment state machine
or the gateway sees it. Card numbers are Luhn-checked and never leave the
CardDetails model except on the way to the gateway.
"""

import re
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from villa_ledger.schemas.quotes import QuoteRequest
from villa_ledger.utils.datetime import utc_now

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def luhn_valid(number: str) -> bool:
    """Return True if the digit string passes the Luhn checksum."""
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class GuestInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=128, description="Lead guest full name")
    email: str = Field(..., max_length=254, description="Contact email")
    phone: Optional[str] = Field(None, max_length=32, description="Contact phone")

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("invalid email address")
        return value.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        digits = re.sub(r"[\s\-().]", "", value)
        if not re.fullmatch(r"\+?\d{6,15}", digits):
            raise ValueError("invalid phone number")
        return digits


class CartRequest(QuoteRequest):
    """
    Schema for the cart being paid for: the quoted stay plus the lead guest.
    """

    guest: GuestInfo


class CardDetails(BaseModel):
    """
    Schema for raw card details. Never persisted; only last4 is kept.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    number: str = Field(..., description="Card number (spaces and dashes allowed)")
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int = Field(..., description="Four-digit or two-digit expiry year")
    cvn: str = Field(..., description="Card verification number")
    holder_name: str = Field(..., min_length=1, max_length=128, description="Name as printed on the card")

    @field_validator("number")
    @classmethod
    def validate_number(cls, value: str) -> str:
        digits = re.sub(r"[\s\-]", "", value)
        if not digits.isdigit() or not 12 <= len(digits) <= 19:
            raise ValueError("card number must be 12 to 19 digits")
        if not luhn_valid(digits):
            raise ValueError("card number failed checksum")
        return digits

    @field_validator("exp_year")
    @classmethod
    def normalize_year(cls, value: int) -> int:
        if 0 <= value < 100:
            value += 2000
        if not 2000 <= value <= 2100:
            raise ValueError("invalid expiry year")
        return value

    @field_validator("cvn")
    @classmethod
    def validate_cvn(cls, value: str) -> str:
        if not re.fullmatch(r"\d{3,4}", value):
            raise ValueError("CVN must be 3 or 4 digits")
        return value

    @model_validator(mode="after")
    def validate_not_expired(self) -> "CardDetails":
        today = utc_now().date()
        if (self.exp_year, self.exp_month) < (today.year, today.month):
            raise ValueError("card has expired")
        return self

    @property
    def last4(self) -> str:
        return self.number[-4:]

    def __repr__(self) -> str:
        return f"CardDetails(last4={self.last4!r}, exp={self.exp_month:02d}/{self.exp_year})"

    __str__ = __repr__


BillingAddressInput = Union[Dict[str, Any], str]


class PaymentCreateRequest(BaseModel):
    """
    Schema for starting a payment: cart, card and billing address.

    The billing address may be structured or a single free-form line; it is
    parsed into street/city/region/postal/country before the gateway call.
    """

    model_config = ConfigDict(extra="forbid")

    cart: CartRequest
    card: CardDetails
    billing_address: BillingAddressInput


class PaymentRetryRequest(BaseModel):
    """
    Schema for retrying a failed payment with a new card.

    Cart, guest and (unless replaced) billing address come from the failed session.
    """

    model_config = ConfigDict(extra="forbid")

    card: CardDetails
    billing_address: Optional[BillingAddressInput] = None


class VoidRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    reason: str = Field(..., min_length=1, max_length=255, description="Chargeback or reversal reason")
