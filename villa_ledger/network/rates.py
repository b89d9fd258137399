"""Currency rate provider client (batch latest-rates endpoint)."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urljoin

import requests
import structlog

from villa_ledger.config import RATES_API_KEY, RATES_API_URL
from villa_ledger.errors import ExternalServiceError
from villa_ledger.network.client import request_json

logger = structlog.get_logger(__name__)

SERVICE = "rates"


class RateProviderClient:
    """
    Fetch latest rates for a batch of currencies against one base currency.

    The provider answers ``GET latest?base=IDR&symbols=USD,EUR`` with
    ``{"base": "IDR", "rates": {"USD": 0.000065, "EUR": 0.000059}}``.
    """

    def __init__(
        self,
        base_url: str = RATES_API_URL,
        api_key: Optional[str] = RATES_API_KEY,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.session = session or requests.Session()

    def fetch_rates(self, base_currency: str, symbols: list[str]) -> dict[str, Decimal]:
        """
        Fetch one batch of rates.

        Args:
            base_currency: Currency the rates are quoted against
            symbols: Currency codes in this batch

        Returns:
            dict[str, Decimal]: Rates for the symbols the provider returned.
            Symbols it did not return are absent.

        Raises:
            ExternalServiceError: On transport failure or a malformed body.
        """
        params = {"base": base_currency, "symbols": ",".join(symbols)}
        if self.api_key:
            params["access_key"] = self.api_key

        data = request_json(
            "GET",
            urljoin(self.base_url, "latest"),
            service=SERVICE,
            endpoint="latest",
            retry=True,
            session=self.session,
            params=params,
        )

        raw_rates = data.get("rates")
        if not isinstance(raw_rates, dict):
            raise ExternalServiceError("Rate provider response has no rates", service=SERVICE)

        rates: dict[str, Decimal] = {}
        for code in symbols:
            if code not in raw_rates:
                continue
            try:
                rate = Decimal(str(raw_rates[code]))
            except (InvalidOperation, TypeError):
                logger.warning("rate_unparseable", currency=code, value=raw_rates[code])
                continue
            if rate <= 0:
                logger.warning("rate_not_positive", currency=code, value=str(rate))
                continue
            rates[code] = rate
        return rates
