from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from villa_ledger.models.exchange_rates import ExchangeRate


def get_rate_row(conn: Connection, currency_code: str) -> Optional[dict[str, Any]]:
    """
    Fetch the current cached rate for a currency.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        currency_code (str): ISO 4217 code.

    Returns:
        Optional[dict[str, Any]]: Rate columns or None if never fetched.
    """
    row = (
        conn.execute(
            select(ExchangeRate.__table__).where(ExchangeRate.currency_code == currency_code)
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row else None
