"""
Payment gateway client (credit card tokens with 3-D Secure, and charges).

Token creation and charging are non-idempotent writes and are attempted once;
status reads are retried. Card numbers and CVNs are sent to the gateway only
and never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urljoin

import requests
import structlog

from villa_ledger.config import GATEWAY_API_URL, GATEWAY_SECRET_KEY
from villa_ledger.network.client import request_json

logger = structlog.get_logger(__name__)

SERVICE = "gateway"


@dataclass(frozen=True)
class GatewayToken:
    """Gateway view of a card token and its 3-D Secure status."""

    id: str
    status: str  # IN_REVIEW | VERIFIED | FAILED
    authentication_url: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "GatewayToken":
        return cls(
            id=str(body["id"]),
            status=str(body.get("status", "FAILED")).upper(),
            authentication_url=body.get("payer_authentication_url"),
            failure_reason=body.get("failure_reason"),
        )


@dataclass(frozen=True)
class GatewayCharge:
    """Gateway view of a charge against a verified token."""

    id: str
    status: str  # CAPTURED | AUTHORIZED | FAILED | REVERSED | REFUNDED
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("CAPTURED", "AUTHORIZED")

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "GatewayCharge":
        return cls(
            id=str(body["id"]),
            status=str(body.get("status", "FAILED")).upper(),
            failure_reason=body.get("failure_reason"),
        )


class GatewayClient:
    """
    Thin client over the gateway REST API.

    Example:
        >>> client = GatewayClient()
        >>> token = client.create_token(card, billing, amount=Decimal("120.00"), ...)
        >>> client.get_token(token.id).status
        'IN_REVIEW'
    """

    def __init__(
        self,
        base_url: str = GATEWAY_API_URL,
        secret_key: str = GATEWAY_SECRET_KEY,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.session = session or requests.Session()
        self.session.auth = (secret_key, "")

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path)

    def create_token(
        self,
        card: dict[str, Any],
        billing: dict[str, Any],
        amount: Decimal,
        currency: str,
        external_id: str,
    ) -> GatewayToken:
        """
        Tokenize a card and start 3-D Secure authentication.

        Args:
            card: number, exp_month, exp_year, cvn
            billing: given_names, surname, email, mobile_number and address fields
            amount: Amount to authenticate
            currency: ISO currency of amount
            external_id: Payment session ID, echoed back by the gateway

        Returns:
            GatewayToken: IN_REVIEW with an authentication URL, VERIFIED when no
            challenge is required, or FAILED.
        """
        body = {
            "external_id": external_id,
            "amount": str(amount),
            "currency": currency,
            "is_multiple_use": False,
            "should_authenticate": True,
            "card_data": {
                "account_number": card["number"],
                "exp_month": f"{int(card['exp_month']):02d}",
                "exp_year": str(card["exp_year"]),
                "card_holder_first_name": billing.get("given_names"),
                "card_holder_last_name": billing.get("surname"),
                "card_holder_email": billing.get("email"),
                "card_holder_phone_number": billing.get("mobile_number"),
            },
            "card_cvn": card["cvn"],
            "billing_details": billing,
        }
        data = request_json(
            "POST",
            self._url("credit_card_tokens"),
            service=SERVICE,
            endpoint="credit_card_tokens",
            retry=False,
            session=self.session,
            json=body,
        )
        token = GatewayToken.from_response(data)
        logger.info("gateway_token_created", session_id=external_id, status=token.status)
        return token

    def get_token(self, token_id: str) -> GatewayToken:
        """Read the current authentication status of a token."""
        data = request_json(
            "GET",
            self._url(f"credit_card_tokens/{token_id}"),
            service=SERVICE,
            endpoint="credit_card_tokens",
            retry=True,
            session=self.session,
        )
        return GatewayToken.from_response(data)

    def create_charge(
        self, token_id: str, amount: Decimal, currency: str, external_id: str
    ) -> GatewayCharge:
        """
        Charge a verified token.

        The session ID is sent as the gateway idempotency key, but the call is
        still attempted once: a retry decision belongs to a fresh attempt.
        """
        data = request_json(
            "POST",
            self._url("credit_card_charges"),
            service=SERVICE,
            endpoint="credit_card_charges",
            retry=False,
            session=self.session,
            headers={"Idempotency-Key": external_id},
            json={
                "token_id": token_id,
                "external_id": external_id,
                "amount": str(amount),
                "currency": currency,
            },
        )
        charge = GatewayCharge.from_response(data)
        logger.info("gateway_charge_created", session_id=external_id, status=charge.status)
        return charge

    def get_charge(self, charge_id: str) -> GatewayCharge:
        """Read the final status of a charge."""
        data = request_json(
            "GET",
            self._url(f"credit_card_charges/{charge_id}"),
            service=SERVICE,
            endpoint="credit_card_charges",
            retry=True,
            session=self.session,
        )
        return GatewayCharge.from_response(data)
