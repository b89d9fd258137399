"""
Payment authenticator: the server-side 3-D Secure state machine.

    CREATING -> IN_REVIEW -> VERIFIED -> CONFIRMED -> SUCCESS
    CREATING -> VERIFIED                  (no challenge required)
    any non-terminal state -> FAILED

Every transition is a compare-and-swap on payment_sessions.state, so two
requests racing on the same session cannot both move it. Gateway calls are
made with no database transaction open; the session row is the checkpoint
between them. A FAILED session is retried by starting a fresh session that
reuses the failed one's cart and billing data.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Connection, Engine

from villa_ledger.config import (
    CHALLENGE_MAX_POLLS,
    CHALLENGE_POLL_INTERVAL_SECONDS,
    CHALLENGE_TIMEOUT_SECONDS,
    SESSION_TTL_SECONDS,
)
from villa_ledger.db.readers.reservations import get_reservation_for_session
from villa_ledger.db.readers.sessions import get_session, list_stale_sessions
from villa_ledger.db.writers.sessions import (
    claim_confirmation,
    insert_session,
    transition_session,
    update_session_fields,
)
from villa_ledger.errors import (
    ChallengeTimeout,
    ConflictError,
    DoubleConfirmation,
    ExternalServiceError,
    LockExpired,
    NotVerified,
    PaymentDeclined,
    SessionNotFound,
    Unavailable,
    ValidationError,
)
from villa_ledger.metrics import session_transitions
from villa_ledger.network.gateway import GatewayClient
from villa_ledger.normalizers.addresses import parse_billing_address
from villa_ledger.normalizers.names import split_full_name
from villa_ledger.schemas.payments import CardDetails, CartRequest
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.utils.datetime import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[str, set[str]] = {
    "CREATING": {"IN_REVIEW", "VERIFIED", "FAILED"},
    "IN_REVIEW": {"VERIFIED", "FAILED"},
    "VERIFIED": {"CONFIRMED", "FAILED"},
    "CONFIRMED": {"SUCCESS", "FAILED"},
    "SUCCESS": set(),
    "FAILED": set(),
}
TERMINAL_STATES = {"SUCCESS", "FAILED"}
EXPIRABLE_STATES = ["CREATING", "IN_REVIEW", "VERIFIED"]


@dataclass(frozen=True)
class SessionView:
    """Read-only projection of a payment session for clients."""

    session_id: str
    state: str
    authentication_url: Optional[str]
    error_code: Optional[str]
    last_error: Optional[str]
    villa_id: Optional[str]
    checkin: Optional[str]
    checkout: Optional[str]
    total: Optional[str]
    currency: Optional[str]
    poll_attempts: int
    reservation_id: Optional[str]
    retry_of: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_rows(cls, session: Mapping[str, Any], reservation: Optional[Mapping[str, Any]]) -> "SessionView":
        snapshot = session["cart_snapshot"] or {}
        quote = snapshot.get("quote", {})
        return cls(
            session_id=session["session_id"],
            state=session["state"],
            authentication_url=session["authentication_url"] if session["state"] == "IN_REVIEW" else None,
            error_code=session["error_code"],
            last_error=session["last_error"],
            villa_id=quote.get("villa_id"),
            checkin=quote.get("checkin"),
            checkout=quote.get("checkout"),
            total=quote.get("total"),
            currency=quote.get("currency"),
            poll_attempts=session["poll_attempts"] or 0,
            reservation_id=reservation["reservation_id"] if reservation else None,
            retry_of=session["retry_of"],
            created_at=ensure_utc(session["created_at"]),
            updated_at=ensure_utc(session["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "authentication_url": self.authentication_url,
            "error": {"code": self.error_code, "message": self.last_error} if self.error_code else None,
            "villa_id": self.villa_id,
            "checkin": self.checkin,
            "checkout": self.checkout,
            "total": self.total,
            "currency": self.currency,
            "poll_attempts": self.poll_attempts,
            "reservation_id": self.reservation_id,
            "retry_of": self.retry_of,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PaymentAuthenticator:
    """
    Drives token creation, challenge and verification against the gateway.

    Example:
        >>> payments = PaymentAuthenticator(engine, ledger, GatewayClient())
        >>> session_id = payments.create_token(cart, card, "Jl. Raya 1, Ubud, Bali 80571, Indonesia")
        >>> payments.await_challenge(session_id).state
        'VERIFIED'
        >>> payments.confirm(session_id).state
        'CONFIRMED'
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        gateway: GatewayClient,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = CHALLENGE_POLL_INTERVAL_SECONDS,
        max_polls: int = CHALLENGE_MAX_POLLS,
        timeout_seconds: float = CHALLENGE_TIMEOUT_SECONDS,
        session_ttl_seconds: int = SESSION_TTL_SECONDS,
    ):
        self.engine = engine
        self.ledger = ledger
        self.gateway = gateway
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timedelta(seconds=timeout_seconds)
        self.session_ttl = timedelta(seconds=session_ttl_seconds)

    # -------------------------------------------------------------- helpers

    def _transition(
        self, conn: Connection, session_id: str, from_state: str, to_state: str, **fields: Any
    ) -> bool:
        if to_state not in TRANSITIONS[from_state]:
            raise ValueError(f"Illegal payment session transition {from_state} -> {to_state}")
        moved = transition_session(conn, session_id, from_state, to_state, self.clock(), **fields)
        if moved:
            session_transitions.labels(from_state=from_state, to_state=to_state).inc()
            logger.info("payment_session_transition", session_id=session_id, from_state=from_state, to_state=to_state)
        return moved

    def _load(self, session_id: str) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            session = get_session(conn, session_id)
        if session is None:
            raise SessionNotFound(f"Payment session {session_id} not found")
        return session

    def read_within(self, conn: Connection, session_id: str) -> Dict[str, Any]:
        """Read a session inside the caller's transaction."""
        session = get_session(conn, session_id, for_update=True)
        if session is None:
            raise SessionNotFound(f"Payment session {session_id} not found")
        return session

    # ----------------------------------------------------------- create_token

    def create_token(
        self,
        cart: CartRequest,
        card: CardDetails,
        billing_address: Union[Mapping[str, Any], str],
        retry_of: Optional[str] = None,
    ) -> str:
        """
        Start a payment: quote, lock the dates, tokenize the card.

        Args:
            cart: Validated stay and lead guest
            card: Validated card details (never persisted)
            billing_address: Structured or free-form billing address
            retry_of: ID of the FAILED session this one retries

        Returns:
            str: New session ID. The session is IN_REVIEW (challenge URL
            available), VERIFIED, or FAILED if the gateway refused the card.

        Raises:
            InvalidAddress, CapacityMismatch, Unavailable, UnknownCurrency:
                before any gateway call
            ExternalServiceError: the gateway could not be reached; the
                session is FAILED and the dates are released
        """
        address = parse_billing_address(billing_address)
        name = split_full_name(card.holder_name, address.country)
        quote = self.ledger.quote(
            cart.villa_id, cart.checkin, cart.checkout, cart.currency, cart.adults, cart.children
        )

        session_id = str(uuid.uuid4())
        now = self.clock()
        snapshot = {
            "cart": cart.model_dump(mode="json"),
            "quote": quote.to_dict(),
            "billing_address": address.to_dict(),
            "cardholder": {"given": name.given, "middle": name.middle, "family": name.family},
            "card": {"last4": card.last4, "exp_month": card.exp_month, "exp_year": card.exp_year},
        }
        with self.engine.begin() as conn:
            insert_session(
                conn,
                {
                    "session_id": session_id,
                    "state": "CREATING",
                    "cart_snapshot": snapshot,
                    "poll_attempts": 0,
                    "retry_of": retry_of,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        logger.info(
            "payment_session_created",
            session_id=session_id,
            villa_id=cart.villa_id,
            total=str(quote.total),
            currency=quote.currency,
            retry_of=retry_of,
        )

        try:
            lock = self.ledger.lock(cart.villa_id, cart.checkin, cart.checkout, session_id)
        except Unavailable as e:
            self.fail(session_id, e.code, e.message)
            raise

        with self.engine.begin() as conn:
            update_session_fields(conn, session_id, self.clock(), expected_state="CREATING", lock_token=lock.token)

        billing = {
            "given_names": " ".join(p for p in (name.given, name.middle) if p),
            "surname": name.family,
            "email": cart.guest.email,
            "mobile_number": cart.guest.phone,
            "address": {
                "country": address.country,
                "street_line1": address.street_line1,
                "street_line2": address.street_line2,
                "city": address.city,
                "province_state": address.region,
                "postal_code": address.postal_code,
            },
        }
        card_data = {
            "number": card.number,
            "exp_month": card.exp_month,
            "exp_year": card.exp_year,
            "cvn": card.cvn,
        }

        try:
            token = self.gateway.create_token(card_data, billing, quote.total, quote.currency, session_id)
        except ExternalServiceError as e:
            self.fail(session_id, "gateway_error", e.message)
            raise

        if token.status == "FAILED":
            self.fail(session_id, "authentication_failed", token.failure_reason or "Card was refused")
            return session_id

        if token.status == "VERIFIED":
            next_state, fields = "VERIFIED", {"gateway_token_id": token.id}
        else:
            next_state = "IN_REVIEW"
            fields = {"gateway_token_id": token.id, "authentication_url": token.authentication_url}

        with self.engine.begin() as conn:
            moved = self._transition(conn, session_id, "CREATING", next_state, **fields)
        if not moved:
            logger.warning("payment_session_left_creating", session_id=session_id, wanted=next_state)
        return session_id

    # ---------------------------------------------------------------- reads

    def poll_status(self, session_id: str) -> SessionView:
        """Read-only projection; never calls the gateway."""
        with self.engine.connect() as conn:
            session = get_session(conn, session_id)
            if session is None:
                raise SessionNotFound(f"Payment session {session_id} not found")
            reservation = get_reservation_for_session(conn, session_id)
        return SessionView.from_rows(session, reservation)

    # ------------------------------------------------------------ challenge

    def sync_challenge(self, session_id: str) -> SessionView:
        """
        Check the 3-D Secure outcome once against the gateway.

        Each call counts toward max_polls; the call that reaches the cap while
        the challenge is still pending fails the session with challenge_timeout.
        """
        session = self._load(session_id)
        if session["state"] != "IN_REVIEW":
            return self.poll_status(session_id)

        attempts = (session["poll_attempts"] or 0) + 1
        with self.engine.begin() as conn:
            counted = update_session_fields(
                conn, session_id, self.clock(), expected_state="IN_REVIEW", poll_attempts=attempts
            )
        if not counted:
            return self.poll_status(session_id)

        try:
            token = self.gateway.get_token(session["gateway_token_id"])
        except ExternalServiceError as e:
            self.fail(session_id, "gateway_error", e.message)
            return self.poll_status(session_id)

        if token.status == "VERIFIED":
            with self.engine.begin() as conn:
                self._transition(conn, session_id, "IN_REVIEW", "VERIFIED")
        elif token.status == "FAILED":
            self.fail(session_id, "authentication_failed", token.failure_reason or "3-D Secure failed")
        elif attempts >= self.max_polls:
            self.fail(
                session_id,
                ChallengeTimeout.code,
                f"3-D Secure not completed after {attempts} status checks",
            )
        else:
            logger.debug("challenge_pending", session_id=session_id, attempts=attempts)

        return self.poll_status(session_id)

    def await_challenge(self, session_id: str) -> SessionView:
        """
        Poll until the challenge resolves, bounded by attempts and wall clock.

        Raises:
            ChallengeTimeout: the challenge did not complete in time; the
                session is FAILED and its dates are released
        """
        deadline = self.clock() + self.timeout
        while True:
            view = self.sync_challenge(session_id)
            if view.state != "IN_REVIEW":
                if view.error_code == ChallengeTimeout.code:
                    raise ChallengeTimeout(view.last_error)
                return view
            if self.clock() >= deadline:
                message = f"3-D Secure not completed within {int(self.timeout.total_seconds())}s"
                self.fail(session_id, ChallengeTimeout.code, message)
                raise ChallengeTimeout(message)
            self.sleep(self.poll_interval)

    # -------------------------------------------------------------- confirm

    def confirm(self, session_id: str) -> SessionView:
        """
        Re-verify the token and charge it: the only VERIFIED -> CONFIRMED path.

        Raises:
            DoubleConfirmation: confirm already ran (or is running) for this session
            NotVerified: the session is not VERIFIED, or the gateway no longer
                reports the token as verified
            LockExpired: the dates are no longer held; nothing is charged
            PaymentDeclined: the gateway refused the charge
            ExternalServiceError: the gateway could not be reached
        """
        session = self._load(session_id)
        if session["state"] in ("CONFIRMED", "SUCCESS"):
            raise DoubleConfirmation(f"Payment session {session_id} is already confirmed")
        if session["state"] != "VERIFIED":
            raise NotVerified(f"Payment session {session_id} is {session['state']}")

        with self.engine.begin() as conn:
            claimed = claim_confirmation(conn, session_id, self.clock())
        if not claimed:
            current = self._load(session_id)
            if current["state"] in ("VERIFIED", "CONFIRMED", "SUCCESS"):
                raise DoubleConfirmation(f"Payment session {session_id} is already being confirmed")
            raise NotVerified(f"Payment session {session_id} is {current['state']}")

        try:
            token = self.gateway.get_token(session["gateway_token_id"])
        except ExternalServiceError as e:
            self.fail(session_id, "gateway_error", e.message)
            raise
        if token.status != "VERIFIED":
            self.fail(session_id, NotVerified.code, f"Gateway reports token as {token.status}")
            raise NotVerified(f"Gateway reports token as {token.status}")

        if not session["lock_token"] or not self.ledger.holds(session["lock_token"]):
            self.fail(session_id, LockExpired.code, "Dates are no longer held for this payment")
            raise LockExpired("Dates are no longer held for this payment")

        quote = session["cart_snapshot"]["quote"]
        try:
            charge = self.gateway.create_charge(
                token.id, Decimal(quote["total"]), quote["currency"], session_id
            )
        except ExternalServiceError as e:
            self.fail(session_id, "charge_failed", e.message)
            raise

        if charge.succeeded:
            try:
                charge = self.gateway.get_charge(charge.id)
            except ExternalServiceError as e:
                logger.warning("charge_recheck_failed", session_id=session_id, charge_id=charge.id, error=e.message)

        if not charge.succeeded:
            self.fail(session_id, PaymentDeclined.code, charge.failure_reason or f"Charge {charge.status}")
            raise PaymentDeclined(charge.failure_reason or "The card was declined")

        with self.engine.begin() as conn:
            moved = self._transition(conn, session_id, "VERIFIED", "CONFIRMED", charge_id=charge.id)
            if not moved:
                note = f"Charge {charge.id} captured after session left VERIFIED; refund required"
                update_session_fields(conn, session_id, self.clock(), charge_id=charge.id, compensation_note=note)
        if not moved:
            logger.error("charge_without_confirmation", session_id=session_id, charge_id=charge.id)
            raise ConflictError("Payment session changed during confirmation", code="session_state_changed")

        return self.poll_status(session_id)

    # ---------------------------------------------------------------- fail

    def fail(
        self, session_id: str, code: str, message: str, claimed_before: Optional[datetime] = None
    ) -> bool:
        """
        Move a non-terminal session to FAILED and release its dates.

        Args:
            claimed_before: If given, leave the session alone when confirm
                claimed it at or after this time (its charge may be in flight)

        Returns:
            bool: True if this call failed the session, False if it was
            already terminal or is being confirmed
        """
        for _ in range(len(TRANSITIONS)):
            with self.engine.begin() as conn:
                session = get_session(conn, session_id, for_update=True)
                if session is None:
                    raise SessionNotFound(f"Payment session {session_id} not found")
                if session["state"] in TERMINAL_STATES:
                    return False
                claimed_at = ensure_utc(session["confirm_claimed_at"])
                if claimed_before is not None and claimed_at is not None and claimed_at >= claimed_before:
                    logger.info("payment_session_expiry_skipped", session_id=session_id, reason="confirm_in_flight")
                    return False
                moved = self._transition(
                    conn, session_id, session["state"], "FAILED", error_code=code, last_error=message
                )
                if moved and session["lock_token"]:
                    self.ledger.release_within(conn, session["lock_token"])
            if moved:
                logger.info("payment_session_failed", session_id=session_id, error_code=code)
                return True
        return False

    def fail_after_success(self, conn: Connection, session_id: str, reason: str) -> bool:
        """
        Post-hoc SUCCESS -> FAILED for a chargeback or reversal.

        Only the commit coordinator's void flow calls this, inside its own
        transaction, together with voiding the reservation.
        """
        moved = transition_session(
            conn, session_id, "SUCCESS", "FAILED", self.clock(), error_code="voided", last_error=reason
        )
        if moved:
            session_transitions.labels(from_state="SUCCESS", to_state="FAILED").inc()
            logger.warning("payment_session_voided", session_id=session_id, reason=reason)
        return moved

    def mark_success(self, conn: Connection, session_id: str) -> bool:
        """CONFIRMED -> SUCCESS inside the commit coordinator's transaction."""
        return self._transition(conn, session_id, "CONFIRMED", "SUCCESS")

    def record_compensation(self, session_id: str, note: str) -> None:
        with self.engine.begin() as conn:
            update_session_fields(conn, session_id, self.clock(), compensation_note=note)
        logger.warning("payment_compensation_recorded", session_id=session_id, note=note)

    # ---------------------------------------------------------------- retry

    def retry(
        self,
        session_id: str,
        card: CardDetails,
        billing_address: Optional[Union[Mapping[str, Any], str]] = None,
    ) -> str:
        """
        Start a fresh session from a FAILED one, reusing its cart and billing data.

        Raises:
            ConflictError: the session is not FAILED
            ValidationError: the stored cart is no longer valid (e.g. checkin passed)
        """
        session = self._load(session_id)
        if session["state"] != "FAILED":
            raise ConflictError(f"Payment session {session_id} is {session['state']}", code="not_retryable")

        snapshot = session["cart_snapshot"]
        try:
            cart = CartRequest.model_validate(snapshot["cart"])
        except PydanticValidationError as e:
            raise ValidationError(f"Stored cart can no longer be booked: {e.errors()[0]['msg']}") from e

        billing = billing_address if billing_address is not None else snapshot["billing_address"]
        return self.create_token(cart, card, billing, retry_of=session_id)

    # ---------------------------------------------------------- maintenance

    def expire_stale_sessions(self) -> int:
        """
        Fail sessions abandoned before CONFIRMED for longer than the session TTL.

        A session whose confirmation was claimed within the TTL is skipped.
        """
        cutoff = self.clock() - self.session_ttl
        with self.engine.connect() as conn:
            stale = list_stale_sessions(conn, EXPIRABLE_STATES, cutoff)

        expired = 0
        for session_id in stale:
            expired_now = self.fail(
                session_id, "session_expired", "Payment was not completed in time", claimed_before=cutoff
            )
            if expired_now:
                expired += 1
        if expired:
            logger.info("stale_sessions_expired", count=expired)
        return expired
