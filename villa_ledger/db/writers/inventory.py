"""
Availability ledger writes.

Each function is a single conditional UPDATE so that the database, not the
application, decides which of two concurrent requests wins a date. Callers
compare the returned row count with the number of nights they asked for.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import insert, or_, update
from sqlalchemy.engine import Connection

from villa_ledger.db.writers._upsert import upsert_rows
from villa_ledger.models.inventory import InventoryLock, VillaDateInventory


def claim_dates(
    conn: Connection,
    villa_id: str,
    checkin: date,
    checkout: date,
    token: str,
    expires_at: datetime,
    now: datetime,
) -> int:
    """
    Put a lock token on every free night of [checkin, checkout).

    A night is free when it is available, unoccupied, and either unlocked or
    held by a lock that has already expired.

    Returns:
        int: Number of nights claimed
    """
    result = conn.execute(
        update(VillaDateInventory)
        .where(VillaDateInventory.villa_id == villa_id)
        .where(VillaDateInventory.date >= checkin)
        .where(VillaDateInventory.date < checkout)
        .where(VillaDateInventory.available.is_(True))
        .where(VillaDateInventory.reservation_id.is_(None))
        .where(VillaDateInventory.pms_reservation_id.is_(None))
        .where(
            or_(
                VillaDateInventory.lock_token.is_(None),
                VillaDateInventory.lock_expires_at <= now,
            )
        )
        .values(lock_token=token, lock_expires_at=expires_at, updated_at=now)
    )
    return result.rowcount


def insert_lock(conn: Connection, row: dict[str, Any]) -> None:
    """Record a newly issued lock token."""
    conn.execute(insert(InventoryLock).values(**row))


def commit_claim(
    conn: Connection,
    token: str,
    reservation_id: str | None,
    now: datetime,
) -> int:
    """
    Turn the nights claimed by an unexpired lock into permanent unavailability.

    Returns:
        int: Number of nights committed
    """
    result = conn.execute(
        update(VillaDateInventory)
        .where(VillaDateInventory.lock_token == token)
        .where(VillaDateInventory.lock_expires_at > now)
        .where(VillaDateInventory.available.is_(True))
        .values(
            available=False,
            reservation_id=reservation_id,
            lock_token=None,
            lock_expires_at=None,
            updated_at=now,
        )
    )
    return result.rowcount


def clear_claim(conn: Connection, token: str, now: datetime) -> int:
    """
    Remove a lock token from the nights it still holds.

    Returns:
        int: Number of nights released
    """
    result = conn.execute(
        update(VillaDateInventory)
        .where(VillaDateInventory.lock_token == token)
        .values(lock_token=None, lock_expires_at=None, updated_at=now)
    )
    return result.rowcount


def set_lock_status(
    conn: Connection, token: str, status: str, now: datetime, from_status: str = "ACTIVE"
) -> bool:
    """
    Move a lock from from_status to status.

    Returns:
        bool: True if the lock was in from_status
    """
    result = conn.execute(
        update(InventoryLock)
        .where(InventoryLock.token == token)
        .where(InventoryLock.status == from_status)
        .values(status=status, updated_at=now)
    )
    return result.rowcount == 1


def occupy_night(
    conn: Connection,
    villa_id: str,
    night: date,
    now: datetime,
    reservation_id: str | None = None,
    pms_reservation_id: str | None = None,
) -> int:
    """
    Mark one night as booked by a PMS reservation, dropping any in-flight lock.

    The PMS is the system of record for bookings made through other channels,
    so a PMS booking takes the night even if a local payment holds a lock on
    it; that payment's commit then fails with LockExpired.

    Returns:
        int: 1 if the night exists in the calendar, 0 otherwise
    """
    result = conn.execute(
        update(VillaDateInventory)
        .where(VillaDateInventory.villa_id == villa_id)
        .where(VillaDateInventory.date == night)
        .values(
            available=False,
            reservation_id=reservation_id,
            pms_reservation_id=pms_reservation_id,
            lock_token=None,
            lock_expires_at=None,
            updated_at=now,
        )
    )
    return result.rowcount


def release_occupancy(
    conn: Connection,
    now: datetime,
    reservation_id: str | None = None,
    pms_reservation_id: str | None = None,
) -> int:
    """
    Make the nights held by a local and/or PMS reservation bookable again.

    Returns:
        int: Number of nights released
    """
    conditions = []
    if reservation_id is not None:
        conditions.append(VillaDateInventory.reservation_id == reservation_id)
    if pms_reservation_id is not None:
        conditions.append(VillaDateInventory.pms_reservation_id == pms_reservation_id)
    if not conditions:
        return 0

    result = conn.execute(
        update(VillaDateInventory)
        .where(or_(*conditions))
        .values(
            available=True,
            reservation_id=None,
            pms_reservation_id=None,
            updated_at=now,
        )
    )
    return result.rowcount


def set_night_rate(
    conn: Connection,
    villa_id: str,
    night: date,
    event_at: datetime,
    now: datetime,
    price: Any = None,
    available: bool | None = None,
) -> int:
    """
    Apply a PMS rate/availability change to one night, last writer wins.

    The change is skipped when a newer change was already applied to the night.
    The available flag is only honoured on unoccupied nights. Closing a night
    drops any in-flight lock on it, as a PMS booking does.

    Returns:
        int: 1 if the night was updated, 0 if stale, occupied or unknown
    """
    values: dict[str, Any] = {"price_updated_at": event_at, "updated_at": now}
    if price is not None:
        values["base_price"] = price

    stmt = (
        update(VillaDateInventory)
        .where(VillaDateInventory.villa_id == villa_id)
        .where(VillaDateInventory.date == night)
        .where(
            or_(
                VillaDateInventory.price_updated_at.is_(None),
                VillaDateInventory.price_updated_at <= event_at,
            )
        )
    )
    if available is not None:
        values["available"] = available
        if not available:
            values["lock_token"] = None
            values["lock_expires_at"] = None
        stmt = stmt.where(VillaDateInventory.reservation_id.is_(None)).where(
            VillaDateInventory.pms_reservation_id.is_(None)
        )

    return conn.execute(stmt.values(**values)).rowcount


def upsert_calendar(conn: Connection, rows: list[dict[str, Any]]) -> int:
    """
    Insert or refresh calendar rows from a PMS seed.

    Occupied or locked nights keep their current state; all other nights take
    the incoming price and availability.

    Returns:
        int: Number of rows written
    """
    return upsert_rows(
        conn,
        VillaDateInventory,
        rows,
        conflict_columns=["villa_id", "date"],
        update_columns=[
            "base_price",
            "currency",
            "capacity_class",
            "available",
            "price_updated_at",
            "updated_at",
        ],
        where=(
            VillaDateInventory.reservation_id.is_(None)
            & VillaDateInventory.pms_reservation_id.is_(None)
            & VillaDateInventory.lock_token.is_(None)
        ),
    )
