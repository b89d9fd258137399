"""Create ledger tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19 09:12:31.204518

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op  # type: ignore[attr-defined]

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7e40"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "exchange_rates",
        sa.Column("currency_code", sa.String(3), primary_key=True),
        sa.Column("base_currency", sa.String(3), nullable=False),
        sa.Column("rate_to_base", sa.Numeric(24, 12), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "villa_date_inventory",
        sa.Column("villa_id", sa.String(64), primary_key=True),
        sa.Column("date", sa.Date(), primary_key=True),
        sa.Column("base_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("capacity_class", sa.String(16), nullable=False),
        sa.Column("available", sa.Boolean(), nullable=False),
        sa.Column("reservation_id", sa.String(36), nullable=True),
        sa.Column("pms_reservation_id", sa.String(64), nullable=True),
        sa.Column("lock_token", sa.String(36), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_villa_date_inventory_lock_token", "villa_date_inventory", ["lock_token"])
    op.create_index(
        "ix_villa_date_inventory_pms_reservation_id", "villa_date_inventory", ["pms_reservation_id"]
    )
    op.create_index("ix_villa_date_inventory_reservation_id", "villa_date_inventory", ["reservation_id"])

    op.create_table(
        "inventory_locks",
        sa.Column("token", sa.String(36), primary_key=True),
        sa.Column("villa_id", sa.String(64), nullable=False),
        sa.Column("checkin", sa.Date(), nullable=False),
        sa.Column("checkout", sa.Date(), nullable=False),
        sa.Column("session_id", sa.String(36), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_inventory_locks_villa_id", "inventory_locks", ["villa_id"])
    op.create_index("ix_inventory_locks_session_id", "inventory_locks", ["session_id"])

    op.create_table(
        "payment_sessions",
        sa.Column("session_id", sa.String(36), primary_key=True),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("cart_snapshot", JSONType, nullable=False),
        sa.Column("gateway_token_id", sa.String(128), nullable=True),
        sa.Column("authentication_url", sa.Text(), nullable=True),
        sa.Column("charge_id", sa.String(128), nullable=True),
        sa.Column("lock_token", sa.String(36), nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=False),
        sa.Column("confirm_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("compensation_note", sa.Text(), nullable=True),
        sa.Column("retry_of", sa.String(36), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_sessions_state", "payment_sessions", ["state"])

    op.create_table(
        "reservations",
        sa.Column("reservation_id", sa.String(36), primary_key=True),
        sa.Column("villa_id", sa.String(64), nullable=False),
        sa.Column("checkin", sa.Date(), nullable=False),
        sa.Column("checkout", sa.Date(), nullable=False),
        sa.Column("guest_info", JSONType, nullable=False),
        sa.Column(
            "payment_session_id",
            sa.String(36),
            sa.ForeignKey("payment_sessions.session_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("lock_token", sa.String(36), nullable=True),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("pms_reservation_id", sa.String(64), nullable=True, unique=True),
        sa.Column("sync_status", sa.String(16), nullable=False),
        sa.Column("pms_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_reservations_villa_id", "reservations", ["villa_id"])

    op.create_table(
        "pms_reservations",
        sa.Column("pms_reservation_id", sa.String(64), primary_key=True),
        sa.Column("villa_id", sa.String(64), nullable=False),
        sa.Column("arrival", sa.Date(), nullable=False),
        sa.Column("departure", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("guest_name", sa.String(255), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reservation_id", sa.String(36), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_pms_reservations_villa_id", "pms_reservations", ["villa_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("raw_body", sa.LargeBinary(), nullable=True),
        sa.Column("processing_status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("note", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_events_event_id", "webhook_events", ["event_id"])
    op.create_index(
        "ix_webhook_events_status_received", "webhook_events", ["processing_status", "received_at"]
    )
    # An event_id may be APPLIED at most once; duplicates are logged alongside it
    op.create_index(
        "uq_webhook_events_applied_event_id",
        "webhook_events",
        ["event_id"],
        unique=True,
        postgresql_where=sa.text("processing_status = 'APPLIED'"),
        sqlite_where=sa.text("processing_status = 'APPLIED'"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("webhook_events")
    op.drop_table("pms_reservations")
    op.drop_table("reservations")
    op.drop_table("payment_sessions")
    op.drop_table("inventory_locks")
    op.drop_table("villa_date_inventory")
    op.drop_table("exchange_rates")
