from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from villa_ledger.models.payment_sessions import PaymentSession


def get_session(
    conn: Connection, session_id: str, for_update: bool = False
) -> Optional[dict[str, Any]]:
    """
    Fetch a payment session row.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        session_id (str): Payment session ID.
        for_update (bool): Lock the row for the rest of the transaction.

    Returns:
        Optional[dict[str, Any]]: Session columns or None if not found.
    """
    stmt = select(PaymentSession.__table__).where(PaymentSession.session_id == session_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().fetchone()
    return dict(row) if row else None


def list_stale_sessions(conn: Connection, states: list[str], created_before: Any) -> list[str]:
    """
    List IDs of sessions still in one of the given states created before a cutoff.

    Sessions whose confirmation was claimed after the cutoff are left out:
    their charge may still be in flight.

    Args:
        conn (Connection): SQLAlchemy DB connection.
        states (list[str]): Non-terminal states to look at.
        created_before (datetime): Cutoff timestamp.

    Returns:
        list[str]: Session IDs, oldest first.
    """
    result = conn.execute(
        select(PaymentSession.session_id)
        .where(PaymentSession.state.in_(states))
        .where(PaymentSession.created_at < created_before)
        .where(
            or_(
                PaymentSession.confirm_claimed_at.is_(None),
                PaymentSession.confirm_claimed_at < created_before,
            )
        )
        .order_by(PaymentSession.created_at)
    )
    return list(result.scalars().all())
