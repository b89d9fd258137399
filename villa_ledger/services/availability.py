"""
Availability ledger: per-villa, per-date bookability, pricing and lock tokens.

Every mutation is a conditional UPDATE on villa_date_inventory, so the database
decides which of two concurrent requests gets a date. A lock claims every
night of a stay for LOCK_TTL_SECONDS; commit turns the claim into permanent
unavailability, release gives it back. Abandoned locks lapse on their own:
claim_dates treats an expired lock as free, and expire_stale_locks() tidies the
lock records.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from villa_ledger.config import FAMILY_MAX_GUESTS, LOCK_TTL_SECONDS
from villa_ledger.db.readers.inventory import count_held_nights, get_lock, get_nights, list_expired_locks
from villa_ledger.db.writers.inventory import (
    claim_dates,
    clear_claim,
    commit_claim,
    insert_lock,
    occupy_night,
    release_occupancy,
    set_lock_status,
    set_night_rate,
)
from villa_ledger.errors import (
    CapacityMismatch,
    ConflictError,
    LockExpired,
    Unavailable,
    ValidationError,
)
from villa_ledger.metrics import lock_operations
from villa_ledger.services.rate_cache import RateCache
from villa_ledger.utils.datetime import ensure_utc, nights, utc_now

logger = structlog.get_logger(__name__)

# Currencies without a minor unit; everything else rounds to cents
ZERO_DECIMAL_CURRENCIES = {"IDR", "JPY", "KRW", "VND"}

COUPLE_MAX_ADULTS = 2


def minor_unit(currency: str) -> Decimal:
    return Decimal(1) if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")


def round_amount(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Quote:
    villa_id: str
    checkin: date
    checkout: date
    currency: str
    price_per_night: List[Decimal]
    total: Decimal
    capacity_class: str
    rate_age_seconds: Optional[float] = None

    @property
    def nights(self) -> int:
        return len(self.price_per_night)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "villa_id": self.villa_id,
            "checkin": self.checkin.isoformat(),
            "checkout": self.checkout.isoformat(),
            "currency": self.currency,
            "price_per_night": [str(p) for p in self.price_per_night],
            "total": str(self.total),
            "nights": self.nights,
            "capacity_class": self.capacity_class,
            "rate_age_seconds": self.rate_age_seconds,
        }


@dataclass(frozen=True)
class LockToken:
    token: str
    villa_id: str
    checkin: date
    checkout: date
    session_id: str
    expires_at: datetime


@dataclass
class OccupyResult:
    occupied: List[date] = field(default_factory=list)
    conflicts: List[date] = field(default_factory=list)
    missing: List[date] = field(default_factory=list)


class AvailabilityLedger:
    """
    Source of truth for bookability and price quoting.

    Example:
        >>> ledger = AvailabilityLedger(engine, RateCache(engine))
        >>> ledger.quote("123", date(2025, 1, 10), date(2025, 1, 12), "USD", adults=2).total
        Decimal('0.01')
        >>> lock = ledger.lock("123", date(2025, 1, 10), date(2025, 1, 12), session_id)
        >>> ledger.commit(lock.token, reservation_id)
    """

    def __init__(
        self,
        engine: Engine,
        rate_cache: RateCache,
        clock: Callable[[], datetime] = utc_now,
        lock_ttl_seconds: int = LOCK_TTL_SECONDS,
        family_max_guests: int = FAMILY_MAX_GUESTS,
    ):
        self.engine = engine
        self.rate_cache = rate_cache
        self.clock = clock
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.family_max_guests = family_max_guests

    # ------------------------------------------------------------------ quote

    def quote(
        self,
        villa_id: str,
        checkin: date,
        checkout: date,
        currency: str,
        adults: int,
        children: int = 0,
    ) -> Quote:
        """
        Price a stay in the requested currency.

        Raises:
            ValidationError: checkout is not after checkin
            Unavailable: a night is missing from the calendar, closed, booked or
                locked by another payment
            CapacityMismatch: the guests exceed the villa's capacity class
            UnknownCurrency: a needed exchange rate was never fetched
        """
        if checkout <= checkin:
            raise ValidationError("checkout must be after checkin", code="invalid_dates")
        currency = currency.upper()
        expected = list(nights(checkin, checkout))
        now = self.clock()

        with self.engine.connect() as conn:
            rows = get_nights(conn, villa_id, checkin, checkout)
            self._check_bookable(villa_id, expected, rows, now)
            capacity_class = self._check_capacity(rows, adults, children)
            unrounded, rate_age = self._convert(conn, rows, currency)

        quote = Quote(
            villa_id=villa_id,
            checkin=checkin,
            checkout=checkout,
            currency=currency,
            price_per_night=[round_amount(p, currency) for p in unrounded],
            total=round_amount(sum(unrounded, Decimal(0)), currency),
            capacity_class=capacity_class,
            rate_age_seconds=rate_age,
        )
        logger.info(
            "quote_computed",
            villa_id=villa_id,
            checkin=str(checkin),
            nights=len(expected),
            currency=currency,
            total=str(quote.total),
        )
        return quote

    def _check_bookable(
        self, villa_id: str, expected: List[date], rows: List[Dict[str, Any]], now: datetime
    ) -> None:
        present = {row["date"] for row in rows}
        missing = [d for d in expected if d not in present]
        if missing:
            raise Unavailable(f"Villa {villa_id} has no published calendar for {missing[0].isoformat()}")

        for row in rows:
            night = row["date"].isoformat()
            if row["reservation_id"] or row["pms_reservation_id"]:
                raise Unavailable(f"Villa {villa_id} is booked on {night}")
            if not row["available"]:
                raise Unavailable(f"Villa {villa_id} is closed on {night}")
            expires_at = ensure_utc(row["lock_expires_at"])
            if row["lock_token"] and expires_at is not None and expires_at > now:
                raise Unavailable(f"Villa {villa_id} is being booked for {night}")

    def _check_capacity(self, rows: List[Dict[str, Any]], adults: int, children: int) -> str:
        if adults < 1 or children < 0:
            raise ValidationError("At least one adult is required", code="invalid_guests")

        classes = {row["capacity_class"] for row in rows}
        if "couple" in classes:
            if adults > COUPLE_MAX_ADULTS or children > 0:
                raise CapacityMismatch(
                    f"Couple villas host at most {COUPLE_MAX_ADULTS} adults and no children"
                )
            return "couple"

        if adults + children > self.family_max_guests:
            raise CapacityMismatch(f"Family villas host at most {self.family_max_guests} guests")
        return "family"

    def _convert(
        self, conn: Connection, rows: List[Dict[str, Any]], currency: str
    ) -> tuple[List[Decimal], Optional[float]]:
        """Convert each night from the villa currency to the target via the base currency."""
        target = self.rate_cache.get_rate(currency, conn=conn)
        sources: Dict[str, Decimal] = {}
        oldest = target.age

        prices = []
        for row in rows:
            source_code = row["currency"].upper()
            base_price = Decimal(str(row["base_price"]))
            if source_code == currency:
                prices.append(base_price)
                continue
            if source_code not in sources:
                source = self.rate_cache.get_rate(source_code, conn=conn)
                sources[source_code] = source.rate
                oldest = max(oldest, source.age)
            in_base = base_price / sources[source_code]
            prices.append(in_base * target.rate)

        return prices, oldest.total_seconds()

    # ------------------------------------------------------------------- lock

    def lock(self, villa_id: str, checkin: date, checkout: date, session_id: str) -> LockToken:
        """
        Claim every night of [checkin, checkout) for one payment attempt.

        Raises:
            Unavailable: at least one night is booked, closed, missing or held
                by another unexpired lock
        """
        if checkout <= checkin:
            raise ValidationError("checkout must be after checkin", code="invalid_dates")

        now = self.clock()
        token = str(uuid.uuid4())
        expires_at = now + self.lock_ttl
        expected = (checkout - checkin).days

        with self.engine.begin() as conn:
            claimed = claim_dates(conn, villa_id, checkin, checkout, token, expires_at, now)
            if claimed != expected:
                lock_operations.labels(operation="lock", outcome="unavailable").inc()
                logger.info(
                    "lock_unavailable",
                    villa_id=villa_id,
                    checkin=str(checkin),
                    requested=expected,
                    claimed=claimed,
                    session_id=session_id,
                )
                raise Unavailable(f"Villa {villa_id} is not available for the requested dates")
            insert_lock(
                conn,
                {
                    "token": token,
                    "villa_id": villa_id,
                    "checkin": checkin,
                    "checkout": checkout,
                    "session_id": session_id,
                    "expires_at": expires_at,
                    "status": "ACTIVE",
                },
            )

        lock_operations.labels(operation="lock", outcome="ok").inc()
        logger.info("lock_acquired", villa_id=villa_id, lock_token=token, session_id=session_id)
        return LockToken(
            token=token,
            villa_id=villa_id,
            checkin=checkin,
            checkout=checkout,
            session_id=session_id,
            expires_at=expires_at,
        )

    # ----------------------------------------------------------------- commit

    def commit(self, lock_token: str, reservation_id: Optional[str] = None) -> None:
        """
        Convert a lock into permanent unavailability.

        Raises:
            LockExpired: the lock lapsed, was released, or its dates were taken
                over; the claim is cleared before raising
            ConflictError: the lock was already committed
        """
        try:
            with self.engine.begin() as conn:
                self.commit_within(conn, lock_token, reservation_id)
        except LockExpired:
            self.release(lock_token, status="EXPIRED")
            raise

    def commit_within(self, conn: Connection, lock_token: str, reservation_id: Optional[str]) -> None:
        """Commit a lock inside the caller's transaction; the caller rolls back on error."""
        now = self.clock()
        lock = get_lock(conn, lock_token)
        if lock is None:
            lock_operations.labels(operation="commit", outcome="expired").inc()
            raise LockExpired(f"Unknown lock token {lock_token}")
        if lock["status"] == "COMMITTED":
            raise ConflictError("Lock was already committed", code="lock_already_committed")

        expires_at = ensure_utc(lock["expires_at"])
        if lock["status"] != "ACTIVE" or expires_at <= now:
            lock_operations.labels(operation="commit", outcome="expired").inc()
            raise LockExpired(f"Lock {lock_token} expired at {expires_at.isoformat()}")

        expected = (lock["checkout"] - lock["checkin"]).days
        committed = commit_claim(conn, lock_token, reservation_id, now)
        if committed != expected:
            lock_operations.labels(operation="commit", outcome="expired").inc()
            logger.warning(
                "lock_dates_taken_over",
                lock_token=lock_token,
                expected=expected,
                committed=committed,
            )
            raise LockExpired(f"Dates held by lock {lock_token} were taken over")

        set_lock_status(conn, lock_token, "COMMITTED", now)
        lock_operations.labels(operation="commit", outcome="ok").inc()
        logger.info("lock_committed", lock_token=lock_token, reservation_id=reservation_id)

    def holds(self, lock_token: str) -> bool:
        """True while the lock is ACTIVE, unexpired and still holds every night."""
        with self.engine.connect() as conn:
            lock = get_lock(conn, lock_token)
            if lock is None or lock["status"] != "ACTIVE" or ensure_utc(lock["expires_at"]) <= self.clock():
                return False
            expected = (lock["checkout"] - lock["checkin"]).days
            return count_held_nights(conn, lock_token) == expected

    # ---------------------------------------------------------------- release

    def release(self, lock_token: str, status: str = "RELEASED") -> bool:
        """
        Give a lock's nights back. Safe to call any number of times.

        Returns:
            bool: True if this call moved the lock out of ACTIVE
        """
        with self.engine.begin() as conn:
            changed = self.release_within(conn, lock_token, status)
        return changed

    def release_within(self, conn: Connection, lock_token: str, status: str = "RELEASED") -> bool:
        now = self.clock()
        cleared = clear_claim(conn, lock_token, now)
        changed = set_lock_status(conn, lock_token, status, now)
        if changed:
            lock_operations.labels(operation="release", outcome=status.lower()).inc()
            logger.info("lock_released", lock_token=lock_token, status=status, nights=cleared)
        return changed

    def expire_stale_locks(self) -> int:
        """Mark lapsed ACTIVE locks EXPIRED and clear their claims."""
        now = self.clock()
        with self.engine.begin() as conn:
            tokens = list_expired_locks(conn, now)
            for token in tokens:
                clear_claim(conn, token, now)
                set_lock_status(conn, token, "EXPIRED", now)
        if tokens:
            lock_operations.labels(operation="expire", outcome="expired").inc(len(tokens))
            logger.info("stale_locks_expired", count=len(tokens))
        return len(tokens)

    # ------------------------------------------------------ PMS-driven changes

    def occupy_within(
        self,
        conn: Connection,
        villa_id: str,
        checkin: date,
        checkout: date,
        pms_reservation_id: str,
        reservation_id: Optional[str] = None,
    ) -> OccupyResult:
        """
        Mark a PMS booking's nights unavailable.

        Nights occupied by a different booking are left alone and reported as
        conflicts. In-flight payment locks lose their nights to the PMS.
        """
        now = self.clock()
        result = OccupyResult()
        rows = {row["date"]: row for row in get_nights(conn, villa_id, checkin, checkout)}

        for night in nights(checkin, checkout):
            row = rows.get(night)
            if row is None:
                result.missing.append(night)
                continue
            other_local = row["reservation_id"] and row["reservation_id"] != reservation_id
            other_pms = row["pms_reservation_id"] and row["pms_reservation_id"] != pms_reservation_id
            if other_local or other_pms:
                result.conflicts.append(night)
                continue
            occupy_night(conn, villa_id, night, now, reservation_id, pms_reservation_id)
            result.occupied.append(night)

        if result.conflicts:
            logger.error(
                "pms_booking_conflict",
                villa_id=villa_id,
                pms_reservation_id=pms_reservation_id,
                nights=[d.isoformat() for d in result.conflicts],
            )
        if result.missing:
            logger.warning(
                "pms_booking_outside_calendar",
                villa_id=villa_id,
                pms_reservation_id=pms_reservation_id,
                nights=len(result.missing),
            )
        return result

    def vacate_within(
        self,
        conn: Connection,
        reservation_id: Optional[str] = None,
        pms_reservation_id: Optional[str] = None,
    ) -> int:
        """Make the nights of a local and/or PMS booking bookable again."""
        return release_occupancy(conn, self.clock(), reservation_id, pms_reservation_id)

    def apply_rate_within(
        self,
        conn: Connection,
        villa_id: str,
        night: date,
        event_at: datetime,
        price: Optional[Decimal] = None,
        available: Optional[bool] = None,
    ) -> bool:
        """
        Apply a PMS price/availability change to one night, last writer wins.

        Returns:
            bool: True if the change took effect
        """
        now = self.clock()
        applied = False
        if price is not None:
            applied = set_night_rate(conn, villa_id, night, event_at, now, price=price) == 1
        if available is not None:
            applied = set_night_rate(conn, villa_id, night, event_at, now, available=available) == 1 or applied
        return applied
