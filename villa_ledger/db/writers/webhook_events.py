from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from villa_ledger.models.webhook_events import WebhookEvent


def insert_event(
    conn: Connection,
    event_id: str,
    payload: str,
    received_at: datetime,
    event_type: str | None = None,
    status: str = "PENDING",
    error: str | None = None,
    raw_body: bytes | None = None,
) -> int:
    """
    Append a webhook delivery to the audit log.

    Args:
        conn: Active database connection
        event_id: External or synthesized event ID
        payload: Request body as text
        received_at: Arrival timestamp
        event_type: Parsed event type, if the payload was understood
        status: Initial processing status (PENDING or REJECTED)
        error: Rejection reason
        raw_body: Request body bytes exactly as received

    Returns:
        int: Surrogate ID of the new log row
    """
    values: dict[str, Any] = {
        "event_id": event_id,
        "payload": payload,
        "received_at": received_at,
        "event_type": event_type,
        "processing_status": status,
        "error": error,
        "raw_body": raw_body,
    }
    if status != "PENDING":
        values["processed_at"] = received_at
    result = conn.execute(insert(WebhookEvent).values(**values))
    return int(result.inserted_primary_key[0])


def mark_event(
    conn: Connection,
    log_id: int,
    status: str,
    now: datetime,
    error: str | None = None,
    note: str | None = None,
) -> bool:
    """
    Move a PENDING log row to its final status.

    Returns:
        bool: True if the row was still PENDING
    """
    result = conn.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == log_id)
        .where(WebhookEvent.processing_status == "PENDING")
        .values(processing_status=status, processed_at=now, error=error, note=note)
    )
    return result.rowcount == 1
