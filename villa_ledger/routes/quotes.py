"""Price quote route."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from villa_ledger.dependencies import get_ledger
from villa_ledger.schemas.quotes import QuoteRequest
from villa_ledger.services.availability import AvailabilityLedger

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/quotes")
def create_quote(
    payload: QuoteRequest,
    ledger: AvailabilityLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """
    Price a stay in the requested currency without holding the dates.

    Returns:
        dict: villa_id, dates, nights, price_per_night, total, currency,
        capacity_class and the age of the exchange rate used

    Raises:
        Unavailable: a night is missing, closed, booked or locked
        CapacityMismatch: guest mix does not fit the villa
        UnknownCurrency: no rate has been fetched for the currency
    """
    quote = ledger.quote(
        payload.villa_id,
        payload.checkin,
        payload.checkout,
        payload.currency,
        payload.adults,
        payload.children,
    )
    logger.info(
        "quote_created",
        villa_id=payload.villa_id,
        currency=payload.currency,
        nights=quote.nights,
    )
    return quote.to_dict()
