import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
from datetime import date, timedelta

import structlog

from villa_ledger.config import BASE_CURRENCY
from villa_ledger.db.engine import engine
from villa_ledger.logging_config import setup_logging
from villa_ledger.services.calendar_sync import sync_calendar

setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    """
    Seed villa_date_inventory for one or more villas from the PMS calendar.

    Example:
        python scripts/seed_calendar.py 123 456 --days 365 --capacity couple
    """
    parser = argparse.ArgumentParser(description="Seed villa inventory from the PMS calendar")
    parser.add_argument("villa_ids", nargs="+", help="PMS apartment IDs")
    parser.add_argument("--start", type=date.fromisoformat, default=date.today(), help="First date (YYYY-MM-DD)")
    parser.add_argument("--days", type=int, default=365, help="Number of days to seed")
    parser.add_argument("--capacity", choices=["family", "couple"], default="family")
    parser.add_argument("--currency", default=BASE_CURRENCY, help="Currency of PMS prices")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and normalize without writing")
    args = parser.parse_args()

    end = args.start + timedelta(days=args.days - 1)
    for villa_id in args.villa_ids:
        logger.info("calendar_seed_started", villa_id=villa_id, start=str(args.start), end=str(end))
        try:
            rows = sync_calendar(
                engine,
                villa_id,
                args.start,
                end,
                capacity_class=args.capacity,
                currency=args.currency,
                dry_run=args.dry_run,
            )
        except Exception:
            logger.exception("calendar_seed_failed", villa_id=villa_id)
            raise
        logger.info("calendar_seed_completed", villa_id=villa_id, rows=rows)


if __name__ == "__main__":
    main()
