"""
Webhook reconciler: idempotent, ordered application of PMS events.

Each delivery is first written to webhook_events as PENDING in its own
transaction, so even a crash mid-apply leaves an audit row that
recover_pending() can re-drive. Application then runs in one transaction that
also marks the row APPLIED, which means an event's effect and its APPLIED mark
are never separated. A partial unique index allows one APPLIED row per event
ID; redeliveries are logged as DUPLICATE.

Ordering is last-writer-wins on the event's own timestamp, per PMS
reservation: an event older than the newest one already applied is logged
APPLIED with note "stale" and changes nothing. Events for the same PMS
reservation are serialized in-process by a keyed mutex.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from villa_ledger.config import WEBHOOK_RECOVERY_AGE_SECONDS
from villa_ledger.db.readers.reservations import (
    find_unlinked_reservation,
    get_pms_reservation,
    get_reservation,
    get_reservation_by_pms_id,
)
from villa_ledger.db.readers.webhook_events import get_event, is_event_applied, list_pending_events
from villa_ledger.db.writers.reservations import save_pms_reservation, update_reservation
from villa_ledger.db.writers.webhook_events import insert_event, mark_event
from villa_ledger.metrics import webhook_events
from villa_ledger.schemas.webhooks import (
    RatesEvent,
    ReservationEvent,
    compute_event_id,
    parse_webhook_event,
)
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.coordinator import notification_payload
from villa_ledger.services.notifications import Notifier, notify_safely
from villa_ledger.utils.concurrency import KeyedMutex
from villa_ledger.utils.datetime import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# One mutex registry per process: every reconciler instance must share it
PMS_ID_MUTEX = KeyedMutex()

STATUS_BY_ACTION = {
    "newReservation": "ACTIVE",
    "updateReservation": "ACTIVE",
    "cancelReservation": "CANCELLED",
    "deleteReservation": "DELETED",
}


@dataclass(frozen=True)
class IngestResult:
    status: str  # APPLIED | DUPLICATE | REJECTED | PENDING
    event_id: str
    log_id: int
    note: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.lower(),
            "event_id": self.event_id,
            "log_id": self.log_id,
            "note": self.note,
        }


class _Outcome:
    def __init__(self, note: Optional[str] = None):
        self.note = note
        self.cancelled: Optional[dict[str, Any]] = None


def _summarize_error(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{error.error_count()} validation error(s); first at {location or 'payload'}: {first['msg']}"


class WebhookReconciler:
    """
    Ingest PMS webhook payloads exactly once each.

    Example:
        >>> reconciler = WebhookReconciler(engine, ledger, notifier)
        >>> reconciler.ingest(request_body).status
        'APPLIED'
        >>> reconciler.ingest(request_body).status
        'DUPLICATE'
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        mutex: KeyedMutex = PMS_ID_MUTEX,
    ):
        self.engine = engine
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock
        self.mutex = mutex

    # --------------------------------------------------------------- ingest

    def ingest(self, raw_payload: Union[bytes, str]) -> IngestResult:
        """
        Log and apply one webhook delivery. Never raises for bad payloads.

        Args:
            raw_payload: Request body exactly as received

        Returns:
            IngestResult: REJECTED for malformed payloads, DUPLICATE for
            redeliveries of an applied event, APPLIED otherwise. PENDING only
            if applying failed on a database error; the recovery sweep retries it.
        """
        body = raw_payload if isinstance(raw_payload, bytes) else raw_payload.encode("utf-8")
        received_at = self.clock()

        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            text = body.decode("utf-8", errors="replace")
            return self._reject(body, text, compute_event_id(text), None, f"invalid UTF-8: {e}", received_at)

        try:
            payload = json.loads(text)
        except ValueError as e:
            return self._reject(body, text, compute_event_id(text), None, f"invalid JSON: {e}", received_at)

        event_id = compute_event_id(payload)
        action = payload.get("action") if isinstance(payload, dict) else None
        event_type = str(action)[:64] if action is not None else None
        try:
            event = parse_webhook_event(payload)
        except PydanticValidationError as e:
            return self._reject(body, text, event_id, event_type, _summarize_error(e), received_at)

        with self.engine.begin() as conn:
            log_id = insert_event(conn, event_id, text, received_at, event_type=event.action, raw_body=body)
        logger.info("webhook_received", event_id=event_id, event_type=event.action, log_id=log_id)

        return self._apply(log_id, event_id, event)

    def _reject(
        self,
        body: bytes,
        text: str,
        event_id: str,
        event_type: Optional[str],
        error: str,
        received_at: datetime,
    ) -> IngestResult:
        with self.engine.begin() as conn:
            log_id = insert_event(
                conn,
                event_id,
                text,
                received_at,
                event_type=event_type,
                status="REJECTED",
                error=error,
                raw_body=body,
            )
        webhook_events.labels(event_type=str(event_type or "unknown"), status="REJECTED").inc()
        logger.warning("webhook_rejected", event_id=event_id, event_type=event_type, log_id=log_id, error=error)
        return IngestResult(status="REJECTED", event_id=event_id, log_id=log_id, error=error)

    # ---------------------------------------------------------------- apply

    def _mutex_key(self, event_id: str, event: Union[ReservationEvent, RatesEvent]) -> str:
        if isinstance(event, ReservationEvent):
            return f"pms:{event.pms_reservation_id}"
        return f"event:{event_id}"

    def _apply_once(
        self, log_id: int, event_id: str, event: Union[ReservationEvent, RatesEvent]
    ) -> tuple[str, _Outcome]:
        with self.engine.begin() as conn:
            if is_event_applied(conn, event_id):
                mark_event(conn, log_id, "DUPLICATE", self.clock(), note="already applied")
                return "DUPLICATE", _Outcome("already applied")
            outcome = self._apply_event(conn, event_id, event)
            if not mark_event(conn, log_id, "APPLIED", self.clock(), note=outcome.note):
                # Another worker settled this row (recovery sweep); undo our effect
                raise _AlreadySettled()
        return "APPLIED", outcome

    def _apply(self, log_id: int, event_id: str, event: Union[ReservationEvent, RatesEvent]) -> IngestResult:
        with self.mutex.hold(self._mutex_key(event_id, event)):
            try:
                try:
                    status, outcome = self._apply_once(log_id, event_id, event)
                except IntegrityError:
                    # Either the same event was applied concurrently (applied-event
                    # unique index) or another process created this booking's row first
                    with self.engine.connect() as conn:
                        applied_elsewhere = is_event_applied(conn, event_id)
                    if applied_elsewhere:
                        with self.engine.begin() as conn:
                            mark_event(conn, log_id, "DUPLICATE", self.clock(), note="concurrent apply")
                        status, outcome = "DUPLICATE", _Outcome("concurrent apply")
                    else:
                        logger.warning("webhook_apply_conflict_retried", event_id=event_id, log_id=log_id)
                        status, outcome = self._apply_once(log_id, event_id, event)
            except _AlreadySettled:
                with self.engine.connect() as conn:
                    row = get_event(conn, log_id)
                status = row["processing_status"] if row else "PENDING"
                return IngestResult(status=status, event_id=event_id, log_id=log_id)
            except SQLAlchemyError:
                logger.exception("webhook_apply_db_error", event_id=event_id, log_id=log_id)
                webhook_events.labels(event_type=event.action, status="PENDING").inc()
                return IngestResult(status="PENDING", event_id=event_id, log_id=log_id)
            except Exception as e:
                logger.exception("webhook_apply_failed", event_id=event_id, log_id=log_id)
                with self.engine.begin() as conn:
                    mark_event(conn, log_id, "REJECTED", self.clock(), error=f"apply failed: {e}")
                webhook_events.labels(event_type=event.action, status="REJECTED").inc()
                return IngestResult(status="REJECTED", event_id=event_id, log_id=log_id, error=str(e))

        webhook_events.labels(event_type=event.action, status=status).inc()
        logger.info(
            "webhook_settled",
            event_id=event_id,
            event_type=event.action,
            log_id=log_id,
            status=status,
            note=outcome.note,
        )
        if outcome.cancelled is not None:
            notify_safely(self.notifier, "cancelled", outcome.cancelled)
        return IngestResult(status=status, event_id=event_id, log_id=log_id, note=outcome.note)

    def _apply_event(
        self, conn: Connection, event_id: str, event: Union[ReservationEvent, RatesEvent]
    ) -> _Outcome:
        # A timestamp-less event is ordered by its arrival time
        occurred_at = event.occurred_at or self.clock()
        if isinstance(event, RatesEvent):
            return self._apply_rates(conn, event, occurred_at)
        return self._apply_reservation(conn, event, occurred_at)

    def _apply_rates(self, conn: Connection, event: RatesEvent, occurred_at: datetime) -> _Outcome:
        applied = skipped = 0
        for villa_id, days in event.data.items():
            for night, day in sorted(days.items()):
                if self.ledger.apply_rate_within(
                    conn, villa_id, night, occurred_at, price=day.price, available=day.available
                ):
                    applied += 1
                else:
                    skipped += 1
        logger.info("pms_rates_applied", nights_applied=applied, nights_skipped=skipped)
        return _Outcome("skipped" if applied == 0 and skipped else None)

    def _apply_reservation(self, conn: Connection, event: ReservationEvent, occurred_at: datetime) -> _Outcome:
        data = event.data
        pms_id = event.pms_reservation_id
        current = get_pms_reservation(conn, pms_id, for_update=True)

        if current is not None and ensure_utc(current["last_event_at"]) > occurred_at:
            logger.info(
                "webhook_stale_event_skipped",
                pms_reservation_id=pms_id,
                event_type=event.action,
                event_at=occurred_at.isoformat(),
                applied_at=ensure_utc(current["last_event_at"]).isoformat(),
            )
            return _Outcome("stale")

        local = self._linked_reservation(conn, event, current)
        local_id = local["reservation_id"] if local else None
        now = self.clock()
        outcome = _Outcome()

        if current is not None and current["status"] == "ACTIVE":
            self.ledger.vacate_within(conn, pms_reservation_id=pms_id)

        status = STATUS_BY_ACTION[event.action]
        if status == "ACTIVE":
            result = self.ledger.occupy_within(
                conn, data.apartment.id, data.arrival, data.departure, pms_id, local_id
            )
            if result.conflicts:
                outcome.note = "conflict"
        elif local_id is not None:
            # A cancelled PMS booking frees the local reservation's nights too
            self.ledger.vacate_within(conn, reservation_id=local_id)

        save_pms_reservation(
            conn,
            {
                "pms_reservation_id": pms_id,
                "villa_id": data.apartment.id,
                "arrival": data.arrival,
                "departure": data.departure,
                "status": status,
                "guest_name": data.guest_name,
                "last_event_at": occurred_at,
                "reservation_id": local_id,
                "updated_at": now,
            },
            exists=current is not None,
        )

        if local is not None:
            sync_status = {
                "newReservation": "SYNCED",
                "updateReservation": "PMS_UPDATED",
            }.get(event.action, "PMS_CANCELLED")
            update_reservation(
                conn,
                local_id,
                now,
                pms_reservation_id=pms_id,
                sync_status=sync_status,
                pms_event_at=occurred_at,
            )

        if status != "ACTIVE" and (current is None or current["status"] == "ACTIVE"):
            cancelled = dict(local) if local else {
                "reservation_id": None,
                "villa_id": data.apartment.id,
                "checkin": data.arrival,
                "checkout": data.departure,
                "guest_info": {"name": data.guest_name},
            }
            cancelled["pms_reservation_id"] = pms_id
            outcome.cancelled = notification_payload(cancelled)

        logger.info(
            "pms_reservation_applied",
            pms_reservation_id=pms_id,
            event_type=event.action,
            status=status,
            reservation_id=local_id,
        )
        return outcome

    def _linked_reservation(
        self, conn: Connection, event: ReservationEvent, current: Optional[dict[str, Any]]
    ) -> Optional[dict[str, Any]]:
        """Find the local reservation this PMS booking mirrors, if it came from us."""
        if current is not None and current["reservation_id"]:
            return get_reservation(conn, current["reservation_id"])
        linked = get_reservation_by_pms_id(conn, event.pms_reservation_id)
        if linked is not None:
            return linked
        if event.action != "newReservation":
            return None
        return find_unlinked_reservation(conn, event.data.apartment.id, event.data.arrival, event.data.departure)

    # ------------------------------------------------------------- recovery

    def recover_pending(self, older_than: Optional[timedelta] = None) -> List[IngestResult]:
        """
        Re-drive PENDING rows left behind by a crash or a database error.

        Args:
            older_than: Only rows received at least this long ago
                (default WEBHOOK_RECOVERY_AGE_SECONDS)
        """
        age = older_than if older_than is not None else timedelta(seconds=WEBHOOK_RECOVERY_AGE_SECONDS)
        with self.engine.connect() as conn:
            log_ids = list_pending_events(conn, self.clock() - age)

        results = []
        for log_id in log_ids:
            with self.engine.connect() as conn:
                row = get_event(conn, log_id)
            if row is None or row["processing_status"] != "PENDING":
                continue
            payload = json.loads(row["payload"])
            event = parse_webhook_event(payload)
            results.append(self._apply(log_id, row["event_id"], event))

        if results:
            logger.info("webhook_pending_recovered", count=len(results))
        return results


class _AlreadySettled(Exception):
    pass
