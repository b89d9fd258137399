"""
Health and readiness check endpoints for Kubernetes.

/health only says the process is up. /ready also requires the database and
reports whether every supported currency has a usable exchange rate; missing
or stale rates are reported but do not take the service out of rotation,
since quotes in the base currency keep working.
"""

from __future__ import annotations

from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from villa_ledger.config import RATE_REFRESH_INTERVAL_SECONDS
from villa_ledger.db.engine import check_engine_health
from villa_ledger.dependencies import get_db_engine, get_rate_cache
from villa_ledger.errors import UnknownCurrency
from villa_ledger.services.rate_cache import RateCache

logger = structlog.get_logger(__name__)

router = APIRouter()

# Two missed refreshes in a row
RATES_STALE_AFTER = timedelta(seconds=2 * RATE_REFRESH_INTERVAL_SECONDS)


def rates_check(rate_cache: RateCache) -> str:
    """Summarize exchange-rate coverage as "ok", "stale: ..." or "missing: ..."."""
    missing: list[str] = []
    stale: list[str] = []
    for currency in rate_cache.supported:
        try:
            quote = rate_cache.get_rate(currency)
        except UnknownCurrency:
            missing.append(currency)
            continue
        if quote.age > RATES_STALE_AFTER:
            stale.append(currency)

    if missing:
        return "missing: " + ", ".join(missing)
    if stale:
        return "stale: " + ", ".join(stale)
    return "ok"


@router.get("/health")
def health_check() -> JSONResponse:
    """
    Liveness endpoint.

    Example:
        >>> GET /health
        {"status": "ok"}
    """
    return JSONResponse(content={"status": "ok"})


@router.get("/ready")
def readiness_check(
    db: Engine = Depends(get_db_engine),
    rate_cache: RateCache = Depends(get_rate_cache),
) -> JSONResponse:
    """
    Readiness endpoint.

    Returns 200 if the database is accessible, 503 otherwise.

    Example:
        >>> GET /ready
        {"status": "ready", "checks": {"database": "ok", "rates": "ok"}}
    """
    if not check_engine_health(db):
        logger.error("readiness_check_failed", reason="database_not_accessible")
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "checks": {"database": "failed"}},
        )

    checks = {"database": "ok", "rates": rates_check(rate_cache)}
    if checks["rates"] != "ok":
        logger.warning("readiness_rates_degraded", rates=checks["rates"])
    return JSONResponse(content={"status": "ready", "checks": checks})
