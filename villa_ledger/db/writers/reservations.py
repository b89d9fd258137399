from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from villa_ledger.models.reservations import PmsReservation, Reservation


def insert_reservation(conn: Connection, row: dict[str, Any]) -> None:
    """
    Insert a confirmed reservation.

    Args:
        conn: Active database connection (within the finalize transaction)
        row: Column values; payment_session_id is unique, so a second insert for
            the same session raises IntegrityError
    """
    conn.execute(insert(Reservation).values(**row))


def update_reservation(
    conn: Connection, reservation_id: str, now: datetime, **fields: Any
) -> bool:
    """
    Set columns on a reservation.

    Returns:
        bool: True if the reservation exists
    """
    result = conn.execute(
        update(Reservation)
        .where(Reservation.reservation_id == reservation_id)
        .values(updated_at=now, **fields)
    )
    return result.rowcount == 1


def save_pms_reservation(
    conn: Connection, row: dict[str, Any], exists: bool
) -> None:
    """
    Insert or overwrite the PMS view of a reservation.

    The caller has read the current row FOR UPDATE, so an UPDATE cannot race.
    Two processes inserting the same new booking collide on the primary key;
    the loser gets IntegrityError and re-applies its event.
    """
    if exists:
        pms_id = row["pms_reservation_id"]
        values = {k: v for k, v in row.items() if k != "pms_reservation_id"}
        conn.execute(
            update(PmsReservation)
            .where(PmsReservation.pms_reservation_id == pms_id)
            .values(**values)
        )
    else:
        conn.execute(insert(PmsReservation).values(**row))
