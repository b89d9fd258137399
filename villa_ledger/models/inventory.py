# models/inventory.py

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Numeric,
    String,
)
from sqlalchemy.sql import func

from villa_ledger.models.base import Base


class VillaDateInventory(Base):
    """
    ORM model for per-villa, per-date inventory and pricing.

    Exactly one row exists per (villa_id, date); the composite primary key is
    the unique key. A date is occupied by at most one booking: either a local
    reservation (reservation_id) or a PMS-only booking (pms_reservation_id).
    lock_token/lock_expires_at hold a time-bounded claim by an in-flight
    payment. Rows are never deleted, only superseded.
    """

    __tablename__ = "villa_date_inventory"
    __table_args__ = (
        Index("ix_villa_date_inventory_lock_token", "lock_token"),
        Index("ix_villa_date_inventory_pms_reservation_id", "pms_reservation_id"),
        Index("ix_villa_date_inventory_reservation_id", "reservation_id"),
    )

    villa_id = Column(String(64), primary_key=True)
    date = Column(Date, primary_key=True)
    base_price = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    capacity_class = Column(String(16), nullable=False)  # family | couple
    available = Column(Boolean, nullable=False, default=True)

    reservation_id = Column(String(36), nullable=True)
    pms_reservation_id = Column(String(64), nullable=True)

    lock_token = Column(String(36), nullable=True)
    lock_expires_at = Column(DateTime(timezone=True), nullable=True)

    price_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class InventoryLock(Base):
    """
    ORM model for lock tokens handed out by the availability ledger.

    A lock covers every night of [checkin, checkout) for one villa and is bound
    to the payment session that requested it. Status moves ACTIVE -> COMMITTED,
    RELEASED or EXPIRED and never back.
    """

    __tablename__ = "inventory_locks"

    token = Column(String(36), primary_key=True)
    villa_id = Column(String(64), nullable=False, index=True)
    checkin = Column(Date, nullable=False)
    checkout = Column(Date, nullable=False)
    session_id = Column(String(36), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
