"""SQLAlchemy model for the PMS webhook audit log."""

from sqlalchemy import Column, DateTime, Index, Integer, LargeBinary, String, Text, text

from villa_ledger.models.base import Base


class WebhookEvent(Base):
    """
    ORM model for every PMS webhook delivery, valid or not.

    Append-only audit trail: raw_body holds the request body byte for byte and
    payload its UTF-8 text (with replacement characters if the body was not
    valid UTF-8, in which case the row is REJECTED). A redelivered event gets
    its own row with status DUPLICATE. The partial unique index guarantees an
    event_id is APPLIED at most once.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index(
            "uq_webhook_events_applied_event_id",
            "event_id",
            unique=True,
            postgresql_where=text("processing_status = 'APPLIED'"),
            sqlite_where=text("processing_status = 'APPLIED'"),
        ),
        Index("ix_webhook_events_status_received", "processing_status", "received_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(128), nullable=False, index=True)
    event_type = Column(String(64), nullable=True)
    payload = Column(Text, nullable=False)
    raw_body = Column(LargeBinary, nullable=True)
    processing_status = Column(String(16), nullable=False, default="PENDING")
    error = Column(Text, nullable=True)
    note = Column(String(64), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
