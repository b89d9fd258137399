"""Initial calendar seed: PMS daily rates -> villa_date_inventory."""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.engine import Engine

from villa_ledger.config import BASE_CURRENCY
from villa_ledger.db.writers.inventory import upsert_calendar
from villa_ledger.network.pms import PmsClient
from villa_ledger.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


def normalize_calendar(
    villa_id: str,
    days: Dict[str, Dict[str, Any]],
    currency: str,
    capacity_class: str,
    now: datetime,
) -> List[Dict[str, Any]]:
    """
    Turn the PMS ``{date: {price, available, ...}}`` map into inventory rows.

    Days without a usable price are skipped: a night with no price is not part
    of the published calendar.
    """
    rows = []
    for day, info in sorted(days.items()):
        try:
            night = date.fromisoformat(day)
            price = Decimal(str(info.get("price")))
        except (ValueError, InvalidOperation):
            logger.warning("calendar_day_skipped", villa_id=villa_id, day=day)
            continue
        if price.is_nan() or price < 0:
            logger.warning("calendar_day_skipped", villa_id=villa_id, day=day)
            continue
        rows.append(
            {
                "villa_id": villa_id,
                "date": night,
                "base_price": price,
                "currency": currency,
                "capacity_class": capacity_class,
                "available": bool(info.get("available", 1)),
                "price_updated_at": now,
                "created_at": now,
                "updated_at": now,
            }
        )
    return rows


def sync_calendar(
    engine: Engine,
    villa_id: str,
    start: date,
    end: date,
    capacity_class: str = "family",
    currency: str = BASE_CURRENCY,
    client: Optional[PmsClient] = None,
    clock: Callable[[], datetime] = utc_now,
    dry_run: bool = False,
) -> int:
    """
    Pull a villa's calendar from the PMS and upsert it into the ledger.

    Booked or locked nights keep their current state.

    Args:
        engine: Database engine
        villa_id: PMS apartment ID
        start: First date (inclusive)
        end: Last date (inclusive)
        capacity_class: "family" or "couple"
        currency: Currency of the PMS prices
        client: PMS client (default: configured from the environment)
        clock: Time source
        dry_run: Fetch and normalize without writing

    Returns:
        int: Number of rows written (or that would be written in dry-run mode)
    """
    if capacity_class not in ("family", "couple"):
        raise ValueError(f"Unknown capacity class: {capacity_class}")

    client = client or PmsClient()
    days = client.fetch_calendar(villa_id, start, end)
    rows = normalize_calendar(villa_id, days, currency.upper(), capacity_class, clock())

    if dry_run:
        logger.info("calendar_sync_dry_run", villa_id=villa_id, rows=len(rows))
        return len(rows)

    with engine.begin() as conn:
        upsert_calendar(conn, rows)

    logger.info("calendar_synced", villa_id=villa_id, start=str(start), end=str(end), rows=len(rows))
    return len(rows)
