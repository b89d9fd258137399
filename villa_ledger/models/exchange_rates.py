"""SQLAlchemy model for cached currency exchange rates."""

from sqlalchemy import Column, DateTime, Numeric, String

from villa_ledger.models.base import Base


class ExchangeRate(Base):
    """
    ORM model for the current exchange rate of one currency.

    rate_to_base is the amount of currency_code worth one unit of the base
    currency (with IDR as base, USD is stored as 0.000065). The currency code is
    the primary key, so a refresh overwrites the previous value in place.
    Written only by the rate cache refresh job.
    """

    __tablename__ = "exchange_rates"

    currency_code = Column(String(3), primary_key=True)
    base_currency = Column(String(3), nullable=False)
    rate_to_base = Column(Numeric(24, 12), nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
