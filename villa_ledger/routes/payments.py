"""
Client payment API.

The session ID returned by POST /payments is the only handle a client holds;
every later call re-reads the session from the database, so a browser refresh
or a second tab sees the same state.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, status

from villa_ledger.dependencies import get_coordinator, get_payments
from villa_ledger.schemas.payments import PaymentCreateRequest, PaymentRetryRequest
from villa_ledger.services.coordinator import ReservationCoordinator
from villa_ledger.services.payments import PaymentAuthenticator

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/payments", status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: PaymentCreateRequest,
    payments: PaymentAuthenticator = Depends(get_payments),
) -> dict[str, Any]:
    """
    Start a payment: price and lock the stay, then tokenize the card.

    Returns:
        dict: The session view. ``state`` is IN_REVIEW (follow
        ``authentication_url`` for the 3-D Secure challenge), VERIFIED, or
        FAILED when the card was refused.
    """
    session_id = payments.create_token(payload.cart, payload.card, payload.billing_address)
    view = payments.poll_status(session_id)
    logger.info("payment_created", session_id=session_id, state=view.state)
    return view.to_dict()


@router.get("/payments/{session_id}")
def get_payment(
    session_id: str,
    payments: PaymentAuthenticator = Depends(get_payments),
) -> dict[str, Any]:
    """Read the current state of a payment session."""
    return payments.poll_status(session_id).to_dict()


@router.post("/payments/{session_id}/challenge")
def check_challenge(
    session_id: str,
    wait: bool = Query(True, description="Block until the challenge settles or times out"),
    payments: PaymentAuthenticator = Depends(get_payments),
) -> dict[str, Any]:
    """
    Check the 3-D Secure challenge with the gateway.

    With ``wait=true`` (default) the gateway is polled until the session
    leaves IN_REVIEW, bounded by attempt count and wall-clock time. With
    ``wait=false`` a single poll is made and the current view returned.
    """
    if wait:
        view = payments.await_challenge(session_id)
    else:
        view = payments.sync_challenge(session_id)
    return view.to_dict()


@router.post("/payments/{session_id}/confirm")
def confirm_payment(
    session_id: str,
    payments: PaymentAuthenticator = Depends(get_payments),
) -> dict[str, Any]:
    """Charge a VERIFIED session. Only the first confirm for a session charges."""
    return payments.confirm(session_id).to_dict()


@router.post("/payments/{session_id}/finalize")
def finalize_payment(
    session_id: str,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    """Create the reservation for a CONFIRMED session (idempotent)."""
    reservation_id = coordinator.finalize(session_id)
    return {"session_id": session_id, "reservation_id": reservation_id}


@router.post("/payments/{session_id}/retry", status_code=status.HTTP_201_CREATED)
def retry_payment(
    session_id: str,
    payload: PaymentRetryRequest,
    payments: PaymentAuthenticator = Depends(get_payments),
) -> dict[str, Any]:
    """Start a new session for a FAILED one with a different card."""
    new_session_id = payments.retry(session_id, payload.card, payload.billing_address)
    view = payments.poll_status(new_session_id)
    logger.info("payment_retried", session_id=new_session_id, retry_of=session_id, state=view.state)
    return view.to_dict()
