"""
Scheduler-facing task endpoints.

Any scheduler (cron, Cloud Scheduler, the bundled villa_ledger.scheduler) can
drive rate refresh and maintenance through these routes. When TASKS_TOKEN is
configured, callers must send it in the X-Task-Token header.
"""

from __future__ import annotations

import hmac
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, status

from villa_ledger import config
from villa_ledger.dependencies import get_coordinator, get_ledger, get_payments, get_rate_cache, get_reconciler
from villa_ledger.scheduler import run_maintenance
from villa_ledger.schemas.payments import VoidRequest
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.coordinator import ReservationCoordinator
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.services.rate_cache import RateCache
from villa_ledger.services.reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


def require_task_token(x_task_token: Optional[str] = Header(None)) -> None:
    """
    Reject the request unless it carries the configured task token.

    Raises:
        HTTPException: 401 if TASKS_TOKEN is set and the header does not match
    """
    if not config.TASKS_TOKEN:
        return
    if not x_task_token or not hmac.compare_digest(x_task_token, config.TASKS_TOKEN):
        logger.warning("task_authentication_failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid task token")


router = APIRouter(dependencies=[Depends(require_task_token)])


@router.post("/rates/refresh")
def refresh_rates(rate_cache: RateCache = Depends(get_rate_cache)) -> dict[str, Any]:
    """
    Refresh exchange rates for every supported currency.

    Returns 200 with per-batch outcomes even when some batches fail; currencies
    in failed batches keep their previous rate.
    """
    report = rate_cache.refresh()
    logger.info(
        "rates_refresh_task_completed",
        batches=len(report.batches),
        failed_batches=report.failed_batches,
        coalesced=report.coalesced,
    )
    return report.to_dict()


@router.post("/maintenance")
def maintenance_sweep(
    payments: PaymentAuthenticator = Depends(get_payments),
    ledger: AvailabilityLedger = Depends(get_ledger),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, int]:
    """Expire abandoned sessions and lapsed locks, then re-drive PENDING webhooks."""
    return run_maintenance(payments, ledger, reconciler)


@router.post("/payments/{session_id}/void")
def void_payment(
    session_id: str,
    payload: VoidRequest,
    coordinator: ReservationCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    """Void the reservation of a payment that failed after SUCCESS (chargeback, reversal)."""
    reservation_id = coordinator.void(session_id, payload.reason)
    return {"session_id": session_id, "reservation_id": reservation_id, "status": "VOIDED"}
