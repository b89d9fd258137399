"""
Exchange-rate cache.

Readers get the last persisted rate for a currency together with its age and
never wait on the provider. The refresh job partitions the supported currency
set into fixed-size batches, fetches them with bounded parallelism and
persists each successful batch in its own transaction, so one failing batch
never discards rates that were already good. Overlapping refreshes are
coalesced into a single run.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional

import structlog
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from villa_ledger.config import (
    BASE_CURRENCY,
    RATE_BATCH_SIZE,
    RATE_REFRESH_CONCURRENCY,
    SUPPORTED_CURRENCIES,
)
from villa_ledger.db.readers.rates import get_rate_row
from villa_ledger.db.writers.rates import upsert_rates
from villa_ledger.errors import ExternalServiceError, UnknownCurrency
from villa_ledger.metrics import rate_batches, rate_refresh_duration
from villa_ledger.network.rates import RateProviderClient
from villa_ledger.utils.concurrency import SingleFlight
from villa_ledger.utils.datetime import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# Shared by every RateCache in the process so that the scheduler loop and the
# refresh endpoint coalesce with each other.
REFRESH_FLIGHT: SingleFlight[RefreshReport] = SingleFlight()


@dataclass(frozen=True)
class RateQuote:
    currency: str
    rate: Decimal
    fetched_at: Optional[datetime]
    age: timedelta


@dataclass(frozen=True)
class BatchOutcome:
    index: int
    currencies: List[str]
    status: str  # ok | partial | failed
    fetched: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "currencies": self.currencies,
            "status": self.status,
            "fetched": self.fetched,
            "missing": self.missing,
            "error": self.error,
        }


@dataclass(frozen=True)
class RefreshReport:
    started_at: datetime
    finished_at: datetime
    batches: List[BatchOutcome]
    coalesced: bool = False

    @property
    def failed_batches(self) -> int:
        return sum(1 for b in self.batches if b.status == "failed")

    @property
    def fetched_count(self) -> int:
        return sum(len(b.fetched) for b in self.batches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "coalesced": self.coalesced,
            "fetched": self.fetched_count,
            "failed_batches": self.failed_batches,
            "batches": [b.to_dict() for b in self.batches],
        }


def partition(codes: List[str], size: int) -> List[List[str]]:
    """Split currency codes into consecutive batches of at most size codes."""
    return [codes[i : i + size] for i in range(0, len(codes), size)]


class RateCache:
    """
    Durable currency -> rate mapping, read-through with stale fallback.

    Example:
        >>> cache = RateCache(engine, RateProviderClient())
        >>> cache.get_rate("USD").rate
        Decimal('0.000065000000')
        >>> cache.refresh().failed_batches
        0
    """

    def __init__(
        self,
        engine: Engine,
        provider: Optional[RateProviderClient] = None,
        clock: Callable[[], datetime] = utc_now,
        base_currency: str = BASE_CURRENCY,
        supported: Optional[Iterable[str]] = None,
        batch_size: int = RATE_BATCH_SIZE,
        concurrency: int = RATE_REFRESH_CONCURRENCY,
        flight: SingleFlight[RefreshReport] = REFRESH_FLIGHT,
    ):
        self.engine = engine
        self.provider = provider or RateProviderClient()
        self.clock = clock
        self.base_currency = base_currency.upper()
        self.supported = [c.upper() for c in (supported or SUPPORTED_CURRENCIES)]
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.flight = flight

    def get_rate(self, currency: str, conn: Optional[Connection] = None) -> RateQuote:
        """
        Return the last persisted rate for a currency.

        Args:
            currency: ISO 4217 code
            conn: Connection to read through; a short-lived one is opened if omitted

        Returns:
            RateQuote: rate_to_base and the age of the value

        Raises:
            UnknownCurrency: If the currency was never fetched
        """
        currency = currency.upper()
        if currency == self.base_currency:
            return RateQuote(currency=currency, rate=Decimal(1), fetched_at=None, age=timedelta(0))

        if conn is None:
            with self.engine.connect() as own_conn:
                row = get_rate_row(own_conn, currency)
        else:
            row = get_rate_row(conn, currency)

        if row is None:
            raise UnknownCurrency(f"No exchange rate has been fetched for {currency}")

        fetched_at = ensure_utc(row["fetched_at"])
        return RateQuote(
            currency=currency,
            rate=Decimal(str(row["rate_to_base"])),
            fetched_at=fetched_at,
            age=self.clock() - fetched_at,
        )

    def refresh(self, currencies: Optional[Iterable[str]] = None) -> RefreshReport:
        """
        Refresh rates for the given currencies (default: the supported set).

        Callers that arrive while a refresh is running wait for it and receive
        its report with coalesced=True instead of starting another one.
        """
        key = f"rates:{self.engine.url}"
        codes = list(currencies) if currencies is not None else None
        report, shared = self.flight.do(key, lambda: self._run_refresh(codes))
        if shared:
            logger.info("rate_refresh_coalesced")
            return replace(report, coalesced=True)
        return report

    def _run_refresh(self, currencies: Optional[List[str]]) -> RefreshReport:
        started_at = self.clock()
        start_time = time.time()
        codes = sorted({c.upper() for c in (currencies or self.supported)} - {self.base_currency})
        batches = partition(codes, self.batch_size)
        logger.info("rate_refresh_started", currencies=len(codes), batches=len(batches))

        outcomes: List[BatchOutcome] = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {
                pool.submit(self.provider.fetch_rates, self.base_currency, batch): (index, batch)
                for index, batch in enumerate(batches)
            }
            # Batches are persisted here, one transaction each, as fetches complete
            for future in as_completed(futures):
                index, batch = futures[future]
                outcomes.append(self._settle_batch(index, batch, future))

        outcomes.sort(key=lambda o: o.index)
        report = RefreshReport(started_at=started_at, finished_at=self.clock(), batches=outcomes)
        rate_refresh_duration.observe(time.time() - start_time)
        logger.info(
            "rate_refresh_completed",
            fetched=report.fetched_count,
            failed_batches=report.failed_batches,
            batches=len(outcomes),
        )
        return report

    def _settle_batch(self, index: int, batch: List[str], future: Any) -> BatchOutcome:
        try:
            rates = future.result()
        except ExternalServiceError as e:
            logger.warning("rate_batch_fetch_failed", batch=index, currencies=batch, error=str(e))
            rate_batches.labels(status="failed").inc()
            return BatchOutcome(index=index, currencies=batch, status="failed", missing=batch, error=str(e))
        except Exception as e:
            logger.exception("rate_batch_fetch_crashed", batch=index, currencies=batch)
            rate_batches.labels(status="failed").inc()
            return BatchOutcome(index=index, currencies=batch, status="failed", missing=batch, error=str(e))

        fetched = sorted(code for code in batch if code in rates)
        missing = [code for code in batch if code not in rates]
        if not fetched:
            rate_batches.labels(status="failed").inc()
            return BatchOutcome(
                index=index, currencies=batch, status="failed", missing=missing, error="no rates returned"
            )

        try:
            with self.engine.begin() as conn:
                upsert_rates(conn, self.base_currency, {c: rates[c] for c in fetched}, self.clock())
        except SQLAlchemyError as e:
            logger.exception("rate_batch_persist_failed", batch=index, currencies=batch)
            rate_batches.labels(status="failed").inc()
            return BatchOutcome(index=index, currencies=batch, status="failed", missing=batch, error=str(e))

        status = "partial" if missing else "ok"
        if missing:
            logger.warning("rate_batch_missing_currencies", batch=index, missing=missing)
        rate_batches.labels(status=status).inc()
        return BatchOutcome(index=index, currencies=batch, status=status, fetched=fetched, missing=missing)
