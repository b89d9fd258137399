"""
Integration tests for PMS webhook ingestion and replay.
"""

from __future__ import annotations

import json
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine

from conftest import BILLING, CHECKIN, CHECKOUT, VILLA_ID, FakeClock, FakeGateway, RecordingNotifier, make_card, make_cart
from villa_ledger.db.readers.inventory import get_nights
from villa_ledger.db.readers.reservations import get_pms_reservation, get_reservation
from villa_ledger.db.writers.webhook_events import insert_event
from villa_ledger.errors import LockExpired
from villa_ledger.models.webhook_events import WebhookEvent
from villa_ledger.services import reconciler as reconciler_module
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.coordinator import ReservationCoordinator
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.services.reconciler import WebhookReconciler
from villa_ledger.utils.datetime import ensure_utc

pytestmark = pytest.mark.usefixtures("priced_villa")


def reservation_event(
    action: str = "newReservation",
    pms_id: int = 291,
    modified_at: Optional[str] = "2025-01-09 12:00:00",
    event_id: Optional[str] = None,
    arrival: date = CHECKIN,
    departure: date = CHECKOUT,
) -> str:
    data: dict[str, Any] = {
        "id": pms_id,
        "arrival": arrival.isoformat(),
        "departure": departure.isoformat(),
        "apartment": {"id": int(VILLA_ID), "name": "Villa Kemuning"},
        "guest-name": "Budi Santoso",
    }
    if modified_at is not None:
        data["modifiedAt"] = modified_at
    payload: dict[str, Any] = {"action": action, "user": 1034, "data": data}
    if event_id is not None:
        payload["eventId"] = event_id
    return json.dumps(payload)


def rates_event(price: int, timestamp: str, available: int = 1) -> str:
    return json.dumps(
        {
            "action": "updateRates",
            "timestamp": timestamp,
            "data": {VILLA_ID: {CHECKIN.isoformat(): {"price": price, "available": available}}},
        }
    )


def night_rows(engine: Engine) -> list[dict[str, Any]]:
    with engine.connect() as conn:
        return get_nights(conn, VILLA_ID, CHECKIN, CHECKOUT)


def log_statuses(engine: Engine) -> list[str]:
    with engine.connect() as conn:
        return list(conn.execute(select(WebhookEvent.processing_status).order_by(WebhookEvent.id)).scalars())


@pytest.mark.integration
def test_new_reservation_blocks_nights(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that a PMS booking makes its nights unavailable and is recorded."""
    result = reconciler.ingest(reservation_event(event_id="evt_1"))

    assert result.status == "APPLIED"
    assert result.event_id == "evt_1"
    assert result.note is None
    assert all(row["pms_reservation_id"] == "291" for row in night_rows(db_engine))
    with db_engine.connect() as conn:
        stored = get_pms_reservation(conn, "291")
    assert stored["status"] == "ACTIVE"
    assert stored["guest_name"] == "Budi Santoso"


@pytest.mark.integration
def test_redelivery_is_logged_as_duplicate(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that the same event delivered twice is applied once and audited twice."""
    body = reservation_event(event_id="evt_1")

    first = reconciler.ingest(body)
    second = reconciler.ingest(body)

    assert first.status == "APPLIED"
    assert second.status == "DUPLICATE"
    assert second.note == "already applied"
    assert second.log_id != first.log_id
    assert log_statuses(db_engine) == ["APPLIED", "DUPLICATE"]


@pytest.mark.integration
def test_events_without_id_deduplicate_by_content(reconciler: WebhookReconciler) -> None:
    """Test that identical payloads without an event ID are recognised as redeliveries."""
    body = reservation_event()

    assert reconciler.ingest(body).status == "APPLIED"
    assert reconciler.ingest(body).status == "DUPLICATE"


@pytest.mark.integration
def test_older_event_after_newer_is_stale(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that an update older than the applied state is logged but changes nothing."""
    reconciler.ingest(reservation_event(modified_at="2025-01-09 14:00:00", event_id="evt_2"))

    result = reconciler.ingest(
        reservation_event(
            action="updateReservation",
            modified_at="2025-01-09 12:00:00",
            event_id="evt_1",
            departure=CHECKOUT + timedelta(days=5),
        )
    )

    assert result.status == "APPLIED"
    assert result.note == "stale"
    with db_engine.connect() as conn:
        stored = get_pms_reservation(conn, "291")
    assert stored["departure"] == CHECKOUT
    assert stored["last_event_at"].hour == 14


@pytest.mark.integration
def test_event_with_equal_timestamp_is_applied(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that an update carrying the same timestamp as the applied state wins."""
    reconciler.ingest(reservation_event(event_id="evt_1"))

    result = reconciler.ingest(
        reservation_event(action="updateReservation", event_id="evt_2", departure=CHECKIN + timedelta(days=1))
    )

    assert result.note is None
    rows = night_rows(db_engine)
    assert rows[0]["pms_reservation_id"] == "291"
    assert rows[1]["pms_reservation_id"] is None
    assert rows[1]["available"] is True


@pytest.mark.integration
def test_missing_timestamp_uses_arrival_time(
    reconciler: WebhookReconciler, db_engine: Engine, clock: FakeClock
) -> None:
    """Test that an event without any timestamp is ordered by when it arrived."""
    reconciler.ingest(reservation_event(modified_at=None))

    with db_engine.connect() as conn:
        stored = get_pms_reservation(conn, "291")
    assert ensure_utc(stored["last_event_at"]) == clock.now


@pytest.mark.integration
@pytest.mark.parametrize(
    "body",
    [
        "{not json",
        json.dumps({"action": "newReservation", "data": {"id": 1}}),
        json.dumps({"action": "mysteryAction", "data": {}}),
        json.dumps(["newReservation"]),
    ],
)
def test_malformed_payloads_are_rejected_and_logged(
    reconciler: WebhookReconciler, db_engine: Engine, body: str
) -> None:
    """Test that undecodable or off-schema payloads are kept for audit and change nothing."""
    result = reconciler.ingest(body)

    assert result.status == "REJECTED"
    assert result.error
    assert log_statuses(db_engine) == ["REJECTED"]
    with db_engine.connect() as conn:
        row = conn.execute(select(WebhookEvent.payload)).scalar_one()
    assert row == body
    assert all(row["pms_reservation_id"] is None for row in night_rows(db_engine))


@pytest.mark.integration
def test_undecodable_body_is_rejected_and_kept_byte_for_byte(
    reconciler: WebhookReconciler, db_engine: Engine
) -> None:
    """Test that a body that is not UTF-8 is REJECTED with its exact bytes stored."""
    body = b'{"action": "newReservation", "guest": "\xff\xfe"}'

    result = reconciler.ingest(body)

    assert result.status == "REJECTED"
    assert result.error is not None and result.error.startswith("invalid UTF-8")
    with db_engine.connect() as conn:
        row = conn.execute(select(WebhookEvent.raw_body, WebhookEvent.processing_status)).one()
    assert row.raw_body == body
    assert row.processing_status == "REJECTED"


@pytest.mark.integration
def test_applied_event_keeps_raw_body(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that the stored raw body matches the delivered bytes exactly."""
    body = reservation_event(event_id="evt_raw").replace("Budi", "Bédi").encode("utf-8")

    assert reconciler.ingest(body).status == "APPLIED"

    with db_engine.connect() as conn:
        stored = conn.execute(select(WebhookEvent.raw_body)).scalar_one()
    assert stored == body


@pytest.mark.integration
def test_overlong_event_id_is_applied_once(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that an eventId wider than the column still deduplicates redeliveries."""
    body = reservation_event(event_id="evt_" + "9" * 300)

    first = reconciler.ingest(body)
    second = reconciler.ingest(body)

    assert first.status == "APPLIED"
    assert len(first.event_id) <= 128
    assert second.status == "DUPLICATE"
    assert second.event_id == first.event_id
    assert log_statuses(db_engine) == ["APPLIED", "DUPLICATE"]


@pytest.mark.integration
def test_cancellation_frees_nights_and_notifies(
    reconciler: WebhookReconciler, db_engine: Engine, notifier: RecordingNotifier
) -> None:
    """Test that a PMS cancellation reopens the nights and tells the guest once."""
    reconciler.ingest(reservation_event(event_id="evt_1"))

    result = reconciler.ingest(
        reservation_event(action="cancelReservation", modified_at="2025-01-10 09:00:00", event_id="evt_2")
    )
    reconciler.ingest(
        reservation_event(action="deleteReservation", modified_at="2025-01-10 10:00:00", event_id="evt_3")
    )

    assert result.status == "APPLIED"
    rows = night_rows(db_engine)
    assert all(row["pms_reservation_id"] is None and row["available"] for row in rows)
    assert len(notifier.cancelled) == 1
    assert notifier.cancelled[0]["pms_reservation_id"] == "291"
    with db_engine.connect() as conn:
        assert get_pms_reservation(conn, "291")["status"] == "DELETED"


@pytest.mark.integration
def test_overlapping_pms_booking_is_reported_as_conflict(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that a second PMS booking on taken nights leaves the first in place."""
    reconciler.ingest(reservation_event(pms_id=291, event_id="evt_1"))

    result = reconciler.ingest(reservation_event(pms_id=292, event_id="evt_2"))

    assert result.status == "APPLIED"
    assert result.note == "conflict"
    assert all(row["pms_reservation_id"] == "291" for row in night_rows(db_engine))


@pytest.mark.integration
def test_pms_echo_links_local_reservation(
    reconciler: WebhookReconciler,
    coordinator: ReservationCoordinator,
    payments: PaymentAuthenticator,
    gateway: FakeGateway,
    db_engine: Engine,
) -> None:
    """Test that the PMS copy of a booking made here is linked rather than treated as a conflict."""
    gateway.token_status = "VERIFIED"
    session_id = payments.create_token(make_cart(), make_card(), BILLING)
    payments.confirm(session_id)
    reservation_id = coordinator.finalize(session_id)

    result = reconciler.ingest(reservation_event(event_id="evt_1"))

    assert result.status == "APPLIED"
    assert result.note is None
    with db_engine.connect() as conn:
        local = get_reservation(conn, reservation_id)
    assert local["pms_reservation_id"] == "291"
    assert local["sync_status"] == "SYNCED"
    rows = night_rows(db_engine)
    assert all(row["reservation_id"] == reservation_id and row["pms_reservation_id"] == "291" for row in rows)

    reconciler.ingest(
        reservation_event(action="cancelReservation", modified_at="2025-01-10 09:00:00", event_id="evt_2")
    )
    with db_engine.connect() as conn:
        assert get_reservation(conn, reservation_id)["sync_status"] == "PMS_CANCELLED"
    assert all(row["reservation_id"] is None for row in night_rows(db_engine))


@pytest.mark.integration
def test_rates_event_updates_price_last_writer_wins(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that rate changes apply in timestamp order and older ones are skipped."""
    applied = reconciler.ingest(rates_event(250, "2025-01-09 12:00:00"))
    skipped = reconciler.ingest(rates_event(90, "2025-01-08 12:00:00"))

    assert applied.status == "APPLIED"
    assert applied.note is None
    assert skipped.status == "APPLIED"
    assert skipped.note == "skipped"
    assert night_rows(db_engine)[0]["base_price"] == Decimal("250")


@pytest.mark.integration
def test_rates_event_cannot_reopen_booked_night(reconciler: WebhookReconciler, db_engine: Engine) -> None:
    """Test that availability from a rates event never frees a booked night."""
    reconciler.ingest(reservation_event(event_id="evt_1"))

    result = reconciler.ingest(rates_event(250, "2025-01-11 12:00:00", available=1))

    row = night_rows(db_engine)[0]
    assert row["pms_reservation_id"] == "291"
    assert row["available"] is False
    assert result.status == "APPLIED"



@pytest.mark.integration
def test_rates_closure_takes_night_from_lock(
    reconciler: WebhookReconciler, ledger: AvailabilityLedger, db_engine: Engine
) -> None:
    """Test that a PMS closure on a locked night survives the lock's release."""
    lock = ledger.lock(VILLA_ID, CHECKIN, CHECKOUT, "session-1")

    result = reconciler.ingest(rates_event(250, "2025-01-09 12:00:00", available=0))

    assert result.status == "APPLIED"
    assert result.note is None
    assert ledger.holds(lock.token) is False

    ledger.release(lock.token)
    closed, still_open = night_rows(db_engine)
    assert closed["available"] is False
    assert closed["lock_token"] is None
    assert still_open["available"] is True


@pytest.mark.integration
def test_confirm_after_pms_closure_does_not_charge(
    reconciler: WebhookReconciler, payments: PaymentAuthenticator, gateway: FakeGateway
) -> None:
    """Test that a payment whose night the PMS closed fails before the charge."""
    gateway.token_status = "VERIFIED"
    session_id = payments.create_token(make_cart(), make_card(), BILLING)
    reconciler.ingest(rates_event(250, "2025-01-09 12:00:00", available=0))

    with pytest.raises(LockExpired):
        payments.confirm(session_id)

    assert gateway.charges == []
    assert payments.poll_status(session_id).error_code == "lock_expired"


@pytest.mark.integration
def test_insert_race_on_new_booking_is_retried_not_dropped(
    reconciler: WebhookReconciler, db_engine: Engine, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that losing the insert race for a new PMS id re-applies the event."""
    save = reconciler_module.save_pms_reservation
    raced: list[str] = []

    def save_after_rival(conn: Any, row: dict[str, Any], exists: bool) -> None:
        if not raced:
            raced.append(row["pms_reservation_id"])
            # Another process inserted the same booking first
            save(conn, row, exists=False)
        save(conn, row, exists)

    monkeypatch.setattr(reconciler_module, "save_pms_reservation", save_after_rival)

    result = reconciler.ingest(reservation_event(event_id="evt_1"))

    assert raced == ["291"]
    assert result.status == "APPLIED"
    assert log_statuses(db_engine) == ["APPLIED"]
    assert all(row["pms_reservation_id"] == "291" for row in night_rows(db_engine))

@pytest.mark.integration
def test_recover_pending_replays_abandoned_rows(
    reconciler: WebhookReconciler, db_engine: Engine, clock: FakeClock
) -> None:
    """Test that PENDING rows left by a crash are applied by the recovery sweep."""
    body = reservation_event(event_id="evt_1")
    with db_engine.begin() as conn:
        insert_event(conn, "evt_1", body, clock(), event_type="newReservation")

    assert reconciler.recover_pending(older_than=timedelta(minutes=5)) == []

    clock.advance(minutes=10)
    results = reconciler.recover_pending(older_than=timedelta(minutes=5))

    assert [r.status for r in results] == ["APPLIED"]
    assert log_statuses(db_engine) == ["APPLIED"]
    assert all(row["pms_reservation_id"] == "291" for row in night_rows(db_engine))
    assert reconciler.ingest(body).status == "DUPLICATE"
