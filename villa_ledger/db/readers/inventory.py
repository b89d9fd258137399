from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from villa_ledger.models.inventory import InventoryLock, VillaDateInventory


def get_nights(
    conn: Connection, villa_id: str, checkin: date, checkout: date
) -> list[dict[str, Any]]:
    """
    Fetch the inventory rows covering [checkin, checkout) for a villa.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        villa_id (str): Villa ID.
        checkin (date): First night (inclusive).
        checkout (date): Departure day (exclusive).

    Returns:
        list[dict[str, Any]]: Rows ordered by date; missing dates are simply absent.
    """
    result = conn.execute(
        select(VillaDateInventory.__table__)
        .where(VillaDateInventory.villa_id == villa_id)
        .where(VillaDateInventory.date >= checkin)
        .where(VillaDateInventory.date < checkout)
        .order_by(VillaDateInventory.date)
    )
    return [dict(row) for row in result.mappings()]


def get_lock(conn: Connection, token: str) -> Optional[dict[str, Any]]:
    """
    Fetch a lock token row.

    Returns:
        Optional[dict[str, Any]]: Lock columns or None if the token is unknown.
    """
    row = (
        conn.execute(select(InventoryLock.__table__).where(InventoryLock.token == token))
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None


def list_expired_locks(conn: Connection, now: datetime) -> list[str]:
    """
    List ACTIVE lock tokens whose expiry has passed.
    """
    result = conn.execute(
        select(InventoryLock.token)
        .where(InventoryLock.status == "ACTIVE")
        .where(InventoryLock.expires_at <= now)
        .order_by(InventoryLock.expires_at)
    )
    return list(result.scalars().all())


def count_held_nights(conn: Connection, token: str) -> int:
    """
    Count the nights that still carry a lock token.

    A PMS booking or closure can take a night away from an unexpired lock,
    so this can be less than the lock's length.
    """
    result = conn.execute(
        select(func.count())
        .select_from(VillaDateInventory)
        .where(VillaDateInventory.lock_token == token)
        .where(VillaDateInventory.available.is_(True))
    )
    return result.scalar_one()
