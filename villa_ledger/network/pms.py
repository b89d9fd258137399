"""PMS (Smoobu-style) API client used to seed the villa calendar."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests
import structlog

from villa_ledger.config import PMS_API_KEY, PMS_API_URL
from villa_ledger.network.client import request_json

logger = structlog.get_logger(__name__)

SERVICE = "pms"


class PmsClient:
    """
    Read-only PMS client.

    Example:
        >>> client = PmsClient()
        >>> days = client.fetch_calendar("1234", date(2025, 1, 1), date(2025, 3, 31))
        >>> days["2025-01-01"]
        {'price': 1500000, 'min_length_of_stay': 2, 'available': 1}
    """

    def __init__(
        self,
        base_url: str = PMS_API_URL,
        api_key: str = PMS_API_KEY,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.session = session or requests.Session()
        self.session.headers.update({"Api-Key": api_key, "Cache-Control": "no-cache"})

    def fetch_calendar(self, villa_id: str, start: date, end: date) -> Dict[str, Dict[str, Any]]:
        """
        Fetch daily price and availability for one villa.

        Args:
            villa_id: PMS apartment ID
            start: First date (inclusive)
            end: Last date (inclusive)

        Returns:
            Dict[str, Dict[str, Any]]: ISO date -> {"price", "available", ...}
        """
        data = request_json(
            "GET",
            urljoin(self.base_url, "rates"),
            service=SERVICE,
            endpoint="rates",
            retry=True,
            session=self.session,
            params={
                "apartments[]": villa_id,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
        )
        calendar = data.get("data", {}).get(str(villa_id), {})
        logger.info("pms_calendar_fetched", villa_id=villa_id, days=len(calendar))
        return calendar
