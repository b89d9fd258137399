# models/payment_sessions.py

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from villa_ledger.models.base import Base, JSONType


class PaymentSession(Base):
    """
    ORM model for a server-authoritative payment attempt.

    The state column is the compare-and-swap barrier for every transition:
    CREATING -> IN_REVIEW -> VERIFIED -> CONFIRMED -> SUCCESS, with FAILED
    reachable from any non-terminal state. cart_snapshot holds the cart, guest
    and billing data (never card numbers or CVNs) so a failed session can be
    retried without re-entering them.
    """

    __tablename__ = "payment_sessions"

    session_id = Column(String(36), primary_key=True)
    state = Column(String(16), nullable=False, index=True)
    cart_snapshot = Column(JSONType, nullable=False)

    gateway_token_id = Column(String(128), nullable=True)
    authentication_url = Column(Text, nullable=True)
    charge_id = Column(String(128), nullable=True)
    lock_token = Column(String(36), nullable=True)

    poll_attempts = Column(Integer, nullable=False, default=0)
    confirm_claimed_at = Column(DateTime(timezone=True), nullable=True)

    error_code = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)
    compensation_note = Column(Text, nullable=True)
    retry_of = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
