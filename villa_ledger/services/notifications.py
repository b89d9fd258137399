"""
Notification collaborator.

Reservation confirmations and cancellations are handed to a Notifier after the
owning transaction has committed. Delivery is fire-and-forget: a failing
notifier is logged and never undoes the reservation change that triggered it.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import requests
import structlog

from villa_ledger.config import NOTIFICATION_WEBHOOK_URL
from villa_ledger.errors import ExternalServiceError
from villa_ledger.network.client import request_json

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def reservation_confirmed(self, payload: dict[str, Any]) -> None: ...

    def reservation_cancelled(self, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier that only logs; used when no delivery endpoint is configured."""

    def reservation_confirmed(self, payload: dict[str, Any]) -> None:
        logger.info("notification_reservation_confirmed", reservation_id=payload.get("reservation_id"))

    def reservation_cancelled(self, payload: dict[str, Any]) -> None:
        logger.info(
            "notification_reservation_cancelled",
            reservation_id=payload.get("reservation_id"),
            pms_reservation_id=payload.get("pms_reservation_id"),
        )


class HttpNotifier:
    """POST notification payloads as JSON to the mail/notification service."""

    def __init__(self, url: str, session: Optional[requests.Session] = None):
        self.url = url
        self.session = session or requests.Session()

    def _send(self, event: str, payload: dict[str, Any]) -> None:
        request_json(
            "POST",
            self.url,
            service="notifications",
            endpoint=event,
            retry=False,
            session=self.session,
            json={"event": event, "data": payload},
        )

    def reservation_confirmed(self, payload: dict[str, Any]) -> None:
        self._send("reservation.confirmed", payload)

    def reservation_cancelled(self, payload: dict[str, Any]) -> None:
        self._send("reservation.cancelled", payload)


def build_notifier(url: Optional[str] = NOTIFICATION_WEBHOOK_URL) -> Notifier:
    if url:
        return HttpNotifier(url)
    return LoggingNotifier()


def notify_safely(notifier: Notifier, event: str, payload: dict[str, Any]) -> bool:
    """
    Deliver one notification, logging instead of raising on failure.

    Args:
        notifier: Notifier to call
        event: "confirmed" or "cancelled"
        payload: Reservation/guest payload (JSON-serializable)

    Returns:
        bool: True if the notifier accepted the payload
    """
    handler = notifier.reservation_confirmed if event == "confirmed" else notifier.reservation_cancelled
    try:
        handler(payload)
        return True
    except ExternalServiceError as e:
        logger.warning(
            "notification_failed",
            notification=event,
            reservation_id=payload.get("reservation_id"),
            error=str(e),
        )
    except Exception:
        logger.exception("notification_crashed", notification=event, reservation_id=payload.get("reservation_id"))
    return False
