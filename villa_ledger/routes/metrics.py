"""
Prometheus metrics endpoint for monitoring and observability.

Example:
    GET /metrics

    Response:
        # HELP villa_ledger_webhook_events_total PMS webhook deliveries by final processing status
        # TYPE villa_ledger_webhook_events_total counter
        villa_ledger_webhook_events_total{event_type="newReservation",status="APPLIED"} 12.0
        ...
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics", response_class=Response)
async def metrics() -> Any:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text-based exposition format. This endpoint
    should be scraped by Prometheus at regular intervals (e.g., every 15-30 seconds).
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
