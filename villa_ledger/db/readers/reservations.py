from datetime import date
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from villa_ledger.models.reservations import PmsReservation, Reservation


def get_reservation(conn: Connection, reservation_id: str) -> Optional[dict[str, Any]]:
    """Fetch a reservation by its local ID."""
    row = (
        conn.execute(
            select(Reservation.__table__).where(Reservation.reservation_id == reservation_id)
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def get_reservation_for_session(conn: Connection, session_id: str) -> Optional[dict[str, Any]]:
    """Fetch the reservation bound to a payment session, if any."""
    row = (
        conn.execute(
            select(Reservation.__table__).where(Reservation.payment_session_id == session_id)
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def get_reservation_by_pms_id(
    conn: Connection, pms_reservation_id: str
) -> Optional[dict[str, Any]]:
    """Fetch the local reservation already linked to a PMS reservation."""
    row = (
        conn.execute(
            select(Reservation.__table__).where(
                Reservation.pms_reservation_id == pms_reservation_id
            )
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def find_unlinked_reservation(
    conn: Connection, villa_id: str, checkin: date, checkout: date
) -> Optional[dict[str, Any]]:
    """
    Find a confirmed local reservation not yet linked to the PMS with the same stay.

    Used to recognise the PMS echo of a booking this service created.
    """
    row = (
        conn.execute(
            select(Reservation.__table__)
            .where(Reservation.villa_id == villa_id)
            .where(Reservation.checkin == checkin)
            .where(Reservation.checkout == checkout)
            .where(Reservation.pms_reservation_id.is_(None))
            .where(Reservation.status == "CONFIRMED")
            .order_by(Reservation.created_at)
        )
        .mappings()
        .first()
    )
    return dict(row) if row else None


def get_pms_reservation(
    conn: Connection, pms_reservation_id: str, for_update: bool = False
) -> Optional[dict[str, Any]]:
    """
    Fetch the stored PMS view of a reservation.

    Args:
        for_update (bool): Lock the row for the rest of the transaction, so
            workers in other processes apply events for this booking one at a time.
    """
    stmt = select(PmsReservation.__table__).where(PmsReservation.pms_reservation_id == pms_reservation_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().fetchone()
    return dict(row) if row else None
