"""
Payment session writes.

Every state change goes through transition_session(), an UPDATE guarded by the
expected current state. A False return means another request moved the
session first; the caller decides whether that is a conflict or a no-op.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from villa_ledger.models.payment_sessions import PaymentSession


def insert_session(conn: Connection, row: dict[str, Any]) -> None:
    """
    Insert a new payment session.

    Args:
        conn: Active database connection (within transaction)
        row: Column values; must include session_id, state and cart_snapshot
    """
    conn.execute(insert(PaymentSession).values(**row))


def transition_session(
    conn: Connection,
    session_id: str,
    from_state: str,
    to_state: str,
    now: datetime,
    **fields: Any,
) -> bool:
    """
    Compare-and-swap a session from one state to another.

    Args:
        conn: Active database connection (within transaction)
        session_id: Payment session ID
        from_state: State the session must currently be in
        to_state: New state
        now: Timestamp written to updated_at
        **fields: Extra columns to set in the same statement

    Returns:
        bool: True if this call performed the transition
    """
    result = conn.execute(
        update(PaymentSession)
        .where(PaymentSession.session_id == session_id)
        .where(PaymentSession.state == from_state)
        .values(state=to_state, updated_at=now, **fields)
    )
    return result.rowcount == 1


def update_session_fields(
    conn: Connection,
    session_id: str,
    now: datetime,
    expected_state: str | None = None,
    **fields: Any,
) -> bool:
    """
    Set columns on a session without changing its state.

    Args:
        conn: Active database connection (within transaction)
        session_id: Payment session ID
        now: Timestamp written to updated_at
        expected_state: If given, only update while the session is in this state
        **fields: Columns to set

    Returns:
        bool: True if a row was updated
    """
    stmt = update(PaymentSession).where(PaymentSession.session_id == session_id)
    if expected_state is not None:
        stmt = stmt.where(PaymentSession.state == expected_state)
    result = conn.execute(stmt.values(updated_at=now, **fields))
    return result.rowcount == 1


def claim_confirmation(conn: Connection, session_id: str, now: datetime) -> bool:
    """
    Claim the one-time right to confirm a VERIFIED session.

    Returns:
        bool: True for exactly one caller per session
    """
    result = conn.execute(
        update(PaymentSession)
        .where(PaymentSession.session_id == session_id)
        .where(PaymentSession.state == "VERIFIED")
        .where(PaymentSession.confirm_claimed_at.is_(None))
        .values(confirm_claimed_at=now, updated_at=now)
    )
    return result.rowcount == 1
