# models/reservations.py

from sqlalchemy import Column, Date, DateTime, ForeignKey, Numeric, String
from sqlalchemy.sql import func

from villa_ledger.models.base import Base, JSONType


class Reservation(Base):
    """
    ORM model for confirmed villa reservations.

    Created exactly once per payment session that reached SUCCESS (the
    payment_session_id column is unique). sync_status tracks how the PMS has
    acknowledged the booking: LOCAL_ONLY until a matching PMS webhook links it,
    then SYNCED, PMS_UPDATED or PMS_CANCELLED. status becomes VOIDED when the
    payment fails after the fact.
    """

    __tablename__ = "reservations"

    reservation_id = Column(String(36), primary_key=True)
    villa_id = Column(String(64), nullable=False, index=True)
    checkin = Column(Date, nullable=False)
    checkout = Column(Date, nullable=False)
    guest_info = Column(JSONType, nullable=False)
    payment_session_id = Column(
        String(36),
        ForeignKey("payment_sessions.session_id"),
        nullable=False,
        unique=True,
    )
    lock_token = Column(String(36), nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    pms_reservation_id = Column(String(64), nullable=True, unique=True)
    sync_status = Column(String(16), nullable=False, default="LOCAL_ONLY")
    pms_event_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default="CONFIRMED")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class PmsReservation(Base):
    """
    ORM model for the PMS's view of a reservation, keyed by the PMS id.

    Every reservation lifecycle webhook lands here first. last_event_at is the
    timestamp of the newest applied event; older events are logged but skipped.
    reservation_id links PMS bookings that originated from a local payment.
    """

    __tablename__ = "pms_reservations"

    pms_reservation_id = Column(String(64), primary_key=True)
    villa_id = Column(String(64), nullable=False, index=True)
    arrival = Column(Date, nullable=False)
    departure = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="ACTIVE")
    guest_name = Column(String(255), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=False)
    reservation_id = Column(String(36), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
