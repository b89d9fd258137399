"""
FastAPI dependency injection providers.

Routes receive their engine, external clients and services through these
providers, so tests can swap any of them with app.dependency_overrides (for
example a SQLite engine and a fake gateway) without touching the routes.
"""

from __future__ import annotations

from typing import Generator, Optional

from fastapi import Depends
from sqlalchemy.engine import Engine

from villa_ledger.db.engine import engine
from villa_ledger.network.gateway import GatewayClient
from villa_ledger.network.rates import RateProviderClient
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.coordinator import ReservationCoordinator
from villa_ledger.services.notifications import Notifier, build_notifier
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.services.rate_cache import RateCache
from villa_ledger.services.reconciler import WebhookReconciler


def get_db_engine() -> Generator[Engine, None, None]:
    """
    Provide database engine for dependency injection.

    Yields:
        Engine: SQLAlchemy database engine

    Testing Example:
        >>> app.dependency_overrides[get_db_engine] = lambda: sqlite_engine
        >>> client = TestClient(app)
    """
    yield engine


# Process-wide clients, built on first use so each keeps one requests.Session
_gateway_client: Optional[GatewayClient] = None
_rate_provider: Optional[RateProviderClient] = None
_notifier: Optional[Notifier] = None


def get_gateway_client() -> GatewayClient:
    global _gateway_client
    if _gateway_client is None:
        _gateway_client = GatewayClient()
    return _gateway_client


def get_rate_provider() -> RateProviderClient:
    global _rate_provider
    if _rate_provider is None:
        _rate_provider = RateProviderClient()
    return _rate_provider


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


def get_rate_cache(
    db: Engine = Depends(get_db_engine),
    provider: RateProviderClient = Depends(get_rate_provider),
) -> RateCache:
    return RateCache(db, provider)


def get_ledger(
    db: Engine = Depends(get_db_engine),
    rate_cache: RateCache = Depends(get_rate_cache),
) -> AvailabilityLedger:
    return AvailabilityLedger(db, rate_cache)


def get_payments(
    db: Engine = Depends(get_db_engine),
    ledger: AvailabilityLedger = Depends(get_ledger),
    gateway: GatewayClient = Depends(get_gateway_client),
) -> PaymentAuthenticator:
    return PaymentAuthenticator(db, ledger, gateway)


def get_coordinator(
    db: Engine = Depends(get_db_engine),
    payments: PaymentAuthenticator = Depends(get_payments),
    ledger: AvailabilityLedger = Depends(get_ledger),
    notifier: Notifier = Depends(get_notifier),
) -> ReservationCoordinator:
    return ReservationCoordinator(db, payments, ledger, notifier)


def get_reconciler(
    db: Engine = Depends(get_db_engine),
    ledger: AvailabilityLedger = Depends(get_ledger),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookReconciler:
    return WebhookReconciler(db, ledger, notifier)
