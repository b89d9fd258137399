from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from villa_ledger.models.webhook_events import WebhookEvent


def get_event(conn: Connection, log_id: int) -> Optional[dict[str, Any]]:
    """Fetch one webhook log row by its surrogate ID."""
    row = (
        conn.execute(select(WebhookEvent.__table__).where(WebhookEvent.id == log_id))
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def is_event_applied(conn: Connection, event_id: str) -> bool:
    """
    Check whether an event ID has already been applied.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        event_id (str): External or synthesized event ID.

    Returns:
        bool: True if an APPLIED row exists for this event ID.
    """
    result = conn.execute(
        select(WebhookEvent.id)
        .where(WebhookEvent.event_id == event_id)
        .where(WebhookEvent.processing_status == "APPLIED")
        .limit(1)
    )
    return result.fetchone() is not None


def list_pending_events(conn: Connection, received_before: datetime, limit: int = 100) -> list[int]:
    """
    List PENDING log rows older than a cutoff, oldest first.
    """
    result = conn.execute(
        select(WebhookEvent.id)
        .where(WebhookEvent.processing_status == "PENDING")
        .where(WebhookEvent.received_at < received_before)
        .order_by(WebhookEvent.received_at, WebhookEvent.id)
        .limit(limit)
    )
    return list(result.scalars().all())
