"""PMS webhook receiver route."""

import base64
import binascii
import hmac
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from villa_ledger import config
from villa_ledger.dependencies import get_reconciler
from villa_ledger.services.reconciler import WebhookReconciler

router = APIRouter()
logger = structlog.get_logger(__name__)


def validate_basic_auth(auth_header: Optional[str]) -> bool:
    """
    Validate HTTP Basic Auth credentials against the configured webhook credentials.

    When WEBHOOK_USERNAME/WEBHOOK_PASSWORD are not configured, every request
    is accepted.

    Args:
        auth_header: Authorization header value (e.g., "Basic dXNlcjpwYXNz")

    Returns:
        bool: True if credentials match (or none are configured), False otherwise
    """
    if not config.WEBHOOK_USERNAME or not config.WEBHOOK_PASSWORD:
        return True

    if not auth_header or not auth_header.startswith("Basic "):
        return False

    try:
        encoded_credentials = auth_header[len("Basic "):]
        decoded_credentials = base64.b64decode(encoded_credentials).decode("utf-8")
        username, password = decoded_credentials.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("webhook_auth_header_malformed")
        return False

    return hmac.compare_digest(username, config.WEBHOOK_USERNAME) and hmac.compare_digest(
        password, config.WEBHOOK_PASSWORD
    )


@router.post("/webhooks")
async def receive_pms_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> JSONResponse:
    """
    Receive a PMS webhook delivery.

    The raw body is persisted before anything else happens. Once the caller
    is authenticated the response is always 200 with the processing status,
    so the PMS does not retry deliveries we have already recorded:

        {"status": "applied" | "duplicate" | "rejected" | "pending", ...}

    Authentication: HTTP Basic Auth with WEBHOOK_USERNAME/WEBHOOK_PASSWORD
    (skipped when not configured).
    """
    if not validate_basic_auth(request.headers.get("Authorization")):
        logger.warning("webhook_authentication_failed")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": {"code": "unauthorized", "message": "Invalid webhook credentials"}},
        )

    body = await request.body()
    logger.info("webhook_received", size=len(body))

    result = await run_in_threadpool(reconciler.ingest, body)
    return JSONResponse(content=result.to_dict())
