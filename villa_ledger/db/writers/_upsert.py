"""
Generic dialect-aware upsert helper.

This module provides a reusable ON CONFLICT DO UPDATE upsert used by the rate
cache and the calendar seed. It works on PostgreSQL and SQLite, which share
the same ON CONFLICT syntax and expose it through dialect-specific insert()
constructs.
"""

from typing import Any

from sqlalchemy import ColumnElement
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection


def _dialect_insert(conn: Connection, table: type) -> Any:
    if conn.dialect.name == "postgresql":
        return postgresql.insert(table)
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {conn.dialect.name}")


def upsert_rows(
    conn: Connection,
    table: type,
    rows: list[dict[str, Any]],
    conflict_columns: list[str],
    update_columns: list[str],
    where: ColumnElement[bool] | None = None,
) -> int:
    """
    Insert rows, updating update_columns on conflict.

    Args:
        conn: Active database connection (within transaction)
        table: SQLAlchemy ORM table class (e.g., ExchangeRate)
        rows: List of row dicts to upsert
        conflict_columns: Columns of the unique key for ON CONFLICT
        update_columns: Columns overwritten from the incoming row on conflict
        where: Optional guard; conflicting rows that fail it are left untouched

    Returns:
        int: Number of rows inserted or updated

    Example:
        >>> with engine.begin() as conn:
        ...     upsert_rows(
        ...         conn,
        ...         ExchangeRate,
        ...         [{"currency_code": "USD", "rate_to_base": Decimal("0.000065"), ...}],
        ...         conflict_columns=["currency_code"],
        ...         update_columns=["rate_to_base", "fetched_at"],
        ...     )
    """
    if not rows:
        return 0

    stmt = _dialect_insert(conn, table).values(rows)
    set_dict = {col: getattr(stmt.excluded, col) for col in update_columns}

    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_=set_dict,
        where=where,
    )

    result = conn.execute(stmt)
    return result.rowcount or 0
