"""
Shared fixtures: SQLite-backed engines, a controllable clock, fake gateway,
rate provider and notifier, and calendar/rate seeding helpers.
"""

from __future__ import annotations

import os

# Config is read at import time; point it at SQLite before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ALLOWED_ORIGINS", "*")

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from villa_ledger.db.engine import build_engine, create_schema
from villa_ledger.db.writers.inventory import upsert_calendar
from villa_ledger.db.writers.rates import upsert_rates
from villa_ledger.dependencies import (
    get_coordinator,
    get_db_engine,
    get_ledger,
    get_notifier,
    get_payments,
    get_rate_cache,
    get_reconciler,
)
from villa_ledger.main import app
from villa_ledger.network.gateway import GatewayCharge, GatewayToken
from villa_ledger.schemas.payments import CardDetails, CartRequest
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.coordinator import ReservationCoordinator
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.services.rate_cache import RateCache
from villa_ledger.services.reconciler import WebhookReconciler
from villa_ledger.utils.concurrency import KeyedMutex, SingleFlight
from villa_ledger.utils.datetime import nights, utc_now

VILLA_ID = "123"
CHECKIN = date.today() + timedelta(days=30)
CHECKOUT = CHECKIN + timedelta(days=2)
# Luhn-valid test card numbers
VISA_OK = "4000000000001091"
VISA_ALT = "4111111111111111"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway:
    """
    Scripted gateway.

    token_status is returned by create_token; get_token walks poll_statuses
    (repeating the last one) and falls back to token_status.
    """

    def __init__(self) -> None:
        self.token_status = "IN_REVIEW"
        self.poll_statuses: list[str] = []
        self.charge_status = "CAPTURED"
        self.create_token_error: Optional[Exception] = None
        self.tokens: list[dict[str, Any]] = []
        self.charges: list[dict[str, Any]] = []
        self.token_polls = 0

    def create_token(
        self, card: dict[str, Any], billing: dict[str, Any], amount: Decimal, currency: str, external_id: str
    ) -> GatewayToken:
        if self.create_token_error is not None:
            raise self.create_token_error
        token_id = f"tok_{len(self.tokens) + 1}"
        self.tokens.append(
            {"id": token_id, "card": card, "billing": billing, "amount": amount, "currency": currency}
        )
        return GatewayToken(
            id=token_id,
            status=self.token_status,
            authentication_url=f"https://3ds.example.test/{token_id}" if self.token_status == "IN_REVIEW" else None,
            failure_reason="card_declined" if self.token_status == "FAILED" else None,
        )

    def get_token(self, token_id: str) -> GatewayToken:
        self.token_polls += 1
        if self.poll_statuses:
            status = self.poll_statuses.pop(0) if len(self.poll_statuses) > 1 else self.poll_statuses[0]
        else:
            status = self.token_status
        return GatewayToken(id=token_id, status=status)

    def create_charge(self, token_id: str, amount: Decimal, currency: str, external_id: str) -> GatewayCharge:
        charge_id = f"chg_{len(self.charges) + 1}"
        self.charges.append({"id": charge_id, "token_id": token_id, "amount": amount, "currency": currency})
        return GatewayCharge(
            id=charge_id,
            status=self.charge_status,
            failure_reason="insufficient_funds" if self.charge_status == "FAILED" else None,
        )

    def get_charge(self, charge_id: str) -> GatewayCharge:
        return GatewayCharge(id=charge_id, status=self.charge_status)


class FakeRateProvider:
    """Returns fixed rates; batches containing a currency in fail_on raise."""

    def __init__(self, rates: dict[str, Decimal], fail_on: Optional[set[str]] = None):
        self.rates = rates
        self.fail_on = fail_on or set()
        self.calls: list[list[str]] = []

    def fetch_rates(self, base_currency: str, symbols: list[str]) -> dict[str, Decimal]:
        from villa_ledger.errors import ExternalServiceError

        self.calls.append(list(symbols))
        if self.fail_on & set(symbols):
            raise ExternalServiceError("provider unavailable", service="rates", status_code=503)
        return {code: self.rates[code] for code in symbols if code in self.rates}


class RecordingNotifier:
    def __init__(self) -> None:
        self.confirmed: list[dict[str, Any]] = []
        self.cancelled: list[dict[str, Any]] = []

    def reservation_confirmed(self, payload: dict[str, Any]) -> None:
        self.confirmed.append(payload)

    def reservation_cancelled(self, payload: dict[str, Any]) -> None:
        self.cancelled.append(payload)


def seed_nights(
    engine: Engine,
    villa_id: str = VILLA_ID,
    checkin: date = CHECKIN,
    checkout: date = CHECKOUT,
    price: Decimal = Decimal("100"),
    currency: str = "IDR",
    capacity_class: str = "family",
    available: bool = True,
) -> None:
    """Publish calendar rows for every night of [checkin, checkout)."""
    now = utc_now()
    rows = [
        {
            "villa_id": villa_id,
            "date": night,
            "base_price": price,
            "currency": currency,
            "capacity_class": capacity_class,
            "available": available,
            "created_at": now,
            "updated_at": now,
        }
        for night in nights(checkin, checkout)
    ]
    with engine.begin() as conn:
        upsert_calendar(conn, rows)


def seed_rates(engine: Engine, rates: dict[str, Decimal], fetched_at: Optional[datetime] = None) -> None:
    with engine.begin() as conn:
        upsert_rates(conn, "IDR", rates, fetched_at or utc_now())


def make_cart(**overrides: Any) -> CartRequest:
    data: dict[str, Any] = {
        "villa_id": VILLA_ID,
        "checkin": CHECKIN,
        "checkout": CHECKOUT,
        "currency": "USD",
        "adults": 2,
        "children": 0,
        "guest": {"name": "Jane Doe", "email": "jane@example.com", "phone": "+62 812 3456 7890"},
    }
    data.update(overrides)
    return CartRequest.model_validate(data)


def make_card(number: str = VISA_OK, holder_name: str = "Jane Doe") -> CardDetails:
    return CardDetails(
        number=number,
        exp_month=12,
        exp_year=date.today().year + 3,
        cvn="123",
        holder_name=holder_name,
    )


BILLING = "Jl. Sunset Road 88, Kuta, Bali 80361, Indonesia"


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory SQLite ledger per test."""
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path: Any) -> Generator[Engine, None, None]:
    """File-backed SQLite ledger, for tests that write from several threads."""
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def rate_cache(db_engine: Engine, clock: FakeClock) -> RateCache:
    provider = FakeRateProvider({"USD": Decimal("0.000065"), "EUR": Decimal("0.000059")})
    return RateCache(db_engine, provider, clock=clock, supported=["USD", "EUR"], flight=SingleFlight())


@pytest.fixture
def ledger(db_engine: Engine, rate_cache: RateCache, clock: FakeClock) -> AvailabilityLedger:
    return AvailabilityLedger(db_engine, rate_cache, clock=clock, lock_ttl_seconds=900)


@pytest.fixture
def payments(
    db_engine: Engine, ledger: AvailabilityLedger, gateway: FakeGateway, clock: FakeClock
) -> PaymentAuthenticator:
    return PaymentAuthenticator(
        db_engine,
        ledger,
        gateway,  # type: ignore[arg-type]
        clock=clock,
        sleep=lambda seconds: clock.advance(seconds=seconds),
        poll_interval=3,
        max_polls=5,
        timeout_seconds=60,
        session_ttl_seconds=900,
    )


@pytest.fixture
def coordinator(
    db_engine: Engine,
    payments: PaymentAuthenticator,
    ledger: AvailabilityLedger,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> ReservationCoordinator:
    return ReservationCoordinator(db_engine, payments, ledger, notifier, clock=clock)


@pytest.fixture
def reconciler(
    db_engine: Engine, ledger: AvailabilityLedger, notifier: RecordingNotifier, clock: FakeClock
) -> WebhookReconciler:
    return WebhookReconciler(db_engine, ledger, notifier, clock=clock, mutex=KeyedMutex())


@pytest.fixture
def priced_villa(db_engine: Engine) -> str:
    """Villa 123 published for CHECKIN..CHECKOUT at 100 IDR a night, with USD/EUR rates."""
    seed_nights(db_engine)
    seed_rates(db_engine, {"USD": Decimal("0.000065"), "EUR": Decimal("0.000059")})
    return VILLA_ID


@pytest.fixture
def api_client(
    db_engine: Engine,
    rate_cache: RateCache,
    ledger: AvailabilityLedger,
    payments: PaymentAuthenticator,
    coordinator: ReservationCoordinator,
    reconciler: WebhookReconciler,
    notifier: RecordingNotifier,
) -> Generator[TestClient, None, None]:
    """TestClient whose routes run against the SQLite ledger and the fakes above."""
    app.dependency_overrides.update(
        {
            get_db_engine: lambda: db_engine,
            get_rate_cache: lambda: rate_cache,
            get_ledger: lambda: ledger,
            get_payments: lambda: payments,
            get_coordinator: lambda: coordinator,
            get_reconciler: lambda: reconciler,
            get_notifier: lambda: notifier,
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def payment_body(card_number: str = VISA_OK, **cart_overrides: Any) -> dict[str, Any]:
    """JSON body for POST /payments."""
    return {
        "cart": make_cart(**cart_overrides).model_dump(mode="json"),
        "card": {
            "number": card_number,
            "exp_month": 12,
            "exp_year": date.today().year + 3,
            "cvn": "123",
            "holder_name": "Jane Doe",
        },
        "billing_address": BILLING,
    }
