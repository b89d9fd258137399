"""
SQLAlchemy engine singleton with production-ready connection pooling.

PostgreSQL is the production target. SQLite URLs are accepted for local runs
and tests; SQLite engines open every transaction with BEGIN IMMEDIATE so that
concurrent writers queue on the database lock instead of failing on lock
upgrade, which the ledger's conditional updates rely on.
"""

from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from villa_ledger.config import DATABASE_URL

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set.")


def _enable_sqlite_transactions(sqlite_engine: Engine) -> None:
    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy, not pysqlite, emit BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs: Any) -> Engine:
    """
    Create an engine for the given URL with pooling suited to its dialect.

    Args:
        url: SQLAlchemy database URL
        **kwargs: Extra create_engine() arguments (override the defaults)

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    if url.startswith("sqlite"):
        options: dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            options["poolclass"] = StaticPool
        options.update(kwargs)
        sqlite_engine = create_engine(url, **options)
        _enable_sqlite_transactions(sqlite_engine)
        return sqlite_engine

    options = {
        # Connection pool settings
        "pool_size": 10,  # Number of connections to maintain in the pool
        "max_overflow": 20,  # Additional connections when pool is exhausted
        "pool_pre_ping": True,  # Verify connections before using
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "echo": False,
    }
    options.update(kwargs)
    return create_engine(url, **options)


engine: Engine = build_engine(DATABASE_URL)


def create_schema(target: Engine) -> None:
    """
    Create every table known to the models on the given engine.

    Used by tests and local SQLite runs; production schemas are managed by
    Alembic migrations.
    """
    from villa_ledger.models.base import Base
    from villa_ledger.models.exchange_rates import ExchangeRate  # noqa: F401
    from villa_ledger.models.inventory import InventoryLock, VillaDateInventory  # noqa: F401
    from villa_ledger.models.payment_sessions import PaymentSession  # noqa: F401
    from villa_ledger.models.reservations import PmsReservation, Reservation  # noqa: F401
    from villa_ledger.models.webhook_events import WebhookEvent  # noqa: F401

    Base.metadata.create_all(target)


def check_engine_health(target: Engine | None = None) -> bool:
    """
    Check if database engine is healthy and connections are working.

    This function is used by the /ready endpoint to verify database
    connectivity before allowing traffic to the service.

    Returns:
        bool: True if database is reachable and healthy, False otherwise
    """
    try:
        with (target or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
