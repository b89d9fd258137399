from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.engine import Connection

from villa_ledger.db.writers._upsert import upsert_rows
from villa_ledger.models.exchange_rates import ExchangeRate

logger = structlog.get_logger(__name__)


def upsert_rates(
    conn: Connection,
    base_currency: str,
    rates: dict[str, Decimal],
    fetched_at: datetime,
) -> int:
    """
    Overwrite the current rate of each currency in one statement.

    Args:
        conn: Active database connection (within the batch transaction)
        base_currency: Base currency the rates are quoted against
        rates: Mapping of currency code to rate_to_base
        fetched_at: When the provider returned these rates

    Returns:
        int: Number of currencies written
    """
    rows = [
        {
            "currency_code": code,
            "base_currency": base_currency,
            "rate_to_base": rate,
            "fetched_at": fetched_at,
        }
        for code, rate in sorted(rates.items())
    ]
    written = upsert_rows(
        conn,
        ExchangeRate,
        rows,
        conflict_columns=["currency_code"],
        update_columns=["base_currency", "rate_to_base", "fetched_at"],
    )
    logger.debug("rates_upserted", count=len(rows))
    return written
