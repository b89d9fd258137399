"""
Reservation commit coordinator.

The single place a Reservation row is created. finalize() runs three writes in
one transaction: session CONFIRMED -> SUCCESS, insert the reservation, commit
the date lock. Either all three land or none do, which is what makes
"reservation exists" equivalent to "session reached SUCCESS". If the lock has
lapsed the transaction rolls back, the session stays CONFIRMED with a
compensation note (the charge needs a refund) and the caller gets
InventoryConflict.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.engine import Engine

from villa_ledger.db.readers.reservations import get_reservation_for_session
from villa_ledger.db.writers.reservations import insert_reservation, update_reservation
from villa_ledger.errors import (
    ConflictError,
    InventoryConflict,
    LockExpired,
    NotConfirmed,
    NotFoundError,
)
from villa_ledger.metrics import reservations_finalized
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.notifications import Notifier, notify_safely
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


def notification_payload(reservation: Dict[str, Any], session: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the reservation/guest payload handed to the notifier."""
    payload = {
        "reservation_id": reservation["reservation_id"],
        "villa_id": reservation["villa_id"],
        "checkin": str(reservation["checkin"]),
        "checkout": str(reservation["checkout"]),
        "guest": reservation["guest_info"],
        "total": str(reservation["total_amount"]) if reservation.get("total_amount") is not None else None,
        "currency": reservation.get("currency"),
        "pms_reservation_id": reservation.get("pms_reservation_id"),
    }
    if session is not None:
        payload["payment_session_id"] = session["session_id"]
    return payload


class ReservationCoordinator:
    """
    Turns a CONFIRMED payment into a reservation, atomically.

    Example:
        >>> coordinator = ReservationCoordinator(engine, payments, ledger, notifier)
        >>> coordinator.finalize(session_id)
        '6f1c2c4e-...'
    """

    def __init__(
        self,
        engine: Engine,
        payments: PaymentAuthenticator,
        ledger: AvailabilityLedger,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.payments = payments
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

    def finalize(self, session_id: str) -> str:
        """
        Create the reservation for a CONFIRMED session.

        Calling it again after success returns the same reservation ID.

        Raises:
            SessionNotFound: unknown session
            NotConfirmed: the session is not CONFIRMED (or SUCCESS)
            InventoryConflict: the date lock lapsed; nothing was created and
                the session carries a compensation note
        """
        reservation_id = str(uuid.uuid4())
        try:
            with self.engine.begin() as conn:
                session = self.payments.read_within(conn, session_id)

                if session["state"] == "SUCCESS":
                    existing = get_reservation_for_session(conn, session_id)
                    if existing is not None:
                        reservations_finalized.labels(outcome="existing").inc()
                        return existing["reservation_id"]
                if session["state"] != "CONFIRMED":
                    reservations_finalized.labels(outcome="not_confirmed").inc()
                    raise NotConfirmed(f"Payment session {session_id} is {session['state']}")

                if not self.payments.mark_success(conn, session_id):
                    # Lost the CAS to a concurrent finalize; report its outcome
                    raise ConflictError("Payment session changed during finalize", code="finalize_race")

                snapshot = session["cart_snapshot"]
                cart, quote = snapshot["cart"], snapshot["quote"]
                now = self.clock()
                reservation = {
                    "reservation_id": reservation_id,
                    "villa_id": cart["villa_id"],
                    "checkin": datetime.fromisoformat(cart["checkin"]).date(),
                    "checkout": datetime.fromisoformat(cart["checkout"]).date(),
                    "guest_info": {
                        **cart["guest"],
                        "adults": cart["adults"],
                        "children": cart["children"],
                    },
                    "payment_session_id": session_id,
                    "lock_token": session["lock_token"],
                    "total_amount": Decimal(quote["total"]),
                    "currency": quote["currency"],
                    "sync_status": "LOCAL_ONLY",
                    "status": "CONFIRMED",
                    "created_at": now,
                    "updated_at": now,
                }
                insert_reservation(conn, reservation)
                self.ledger.commit_within(conn, session["lock_token"], reservation_id)
        except LockExpired as e:
            self._compensate(session_id, e)
            raise InventoryConflict(
                "The dates were released before the booking could be completed; please rebook"
            ) from e
        except ConflictError as e:
            if e.code != "finalize_race":
                raise
            return self._finalize_race_result(session_id)

        reservations_finalized.labels(outcome="created").inc()
        logger.info(
            "reservation_finalized",
            reservation_id=reservation_id,
            session_id=session_id,
            villa_id=reservation["villa_id"],
        )
        notify_safely(self.notifier, "confirmed", notification_payload(reservation, session))
        return reservation_id

    def _finalize_race_result(self, session_id: str) -> str:
        with self.engine.connect() as conn:
            existing = get_reservation_for_session(conn, session_id)
        if existing is not None:
            reservations_finalized.labels(outcome="existing").inc()
            return existing["reservation_id"]
        view = self.payments.poll_status(session_id)
        raise NotConfirmed(f"Payment session {session_id} is {view.state}")

    def _compensate(self, session_id: str, error: LockExpired) -> None:
        session = self.payments.poll_status(session_id)
        lock_token = self._lock_token(session_id)
        note = f"Inventory lost after charge ({error.message}); refund or rebook required"
        self.payments.record_compensation(session_id, note)
        if lock_token:
            self.ledger.release(lock_token, status="EXPIRED")
        reservations_finalized.labels(outcome="inventory_conflict").inc()
        logger.error("finalize_inventory_conflict", session_id=session_id, state=session.state, note=note)

    def _lock_token(self, session_id: str) -> Optional[str]:
        with self.engine.connect() as conn:
            session = self.payments.read_within(conn, session_id)
        return session["lock_token"]

    def void(self, session_id: str, reason: str) -> str:
        """
        Compensation for a payment that fails after SUCCESS (chargeback, reversal).

        The session moves SUCCESS -> FAILED, the reservation is VOIDED and its
        dates become bookable again, all in one transaction. The guest is
        notified of the cancellation afterwards.

        Returns:
            str: The voided reservation ID

        Raises:
            NotFoundError: no reservation exists for the session
            ConflictError: the session is not in SUCCESS
        """
        with self.engine.begin() as conn:
            reservation = get_reservation_for_session(conn, session_id)
            if reservation is None:
                raise NotFoundError(f"No reservation for payment session {session_id}", code="reservation_not_found")
            if not self.payments.fail_after_success(conn, session_id, reason):
                raise ConflictError(f"Payment session {session_id} is not in SUCCESS", code="not_voidable")
            update_reservation(conn, reservation["reservation_id"], self.clock(), status="VOIDED")
            released = self.ledger.vacate_within(conn, reservation_id=reservation["reservation_id"])

        logger.warning(
            "reservation_voided",
            reservation_id=reservation["reservation_id"],
            session_id=session_id,
            reason=reason,
            nights_released=released,
        )
        payload = notification_payload(reservation)
        payload["reason"] = reason
        notify_safely(self.notifier, "cancelled", payload)
        return reservation["reservation_id"]
