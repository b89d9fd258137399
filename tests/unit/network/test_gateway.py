"""
Unit tests for the payment gateway client.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from villa_ledger.network.gateway import GatewayCharge, GatewayClient, GatewayToken

CARD = {"number": "4000000000001091", "exp_month": 3, "exp_year": 2030, "cvn": "123"}
BILLING = {"given_names": "Jane", "surname": "Doe", "email": "jane@example.com", "mobile_number": None}


@pytest.mark.unit
def test_token_from_response_uppercases_status() -> None:
    """Test that gateway statuses are normalized to uppercase."""
    token = GatewayToken.from_response(
        {"id": "tok_1", "status": "in_review", "payer_authentication_url": "https://3ds.test/tok_1"}
    )

    assert token.status == "IN_REVIEW"
    assert token.authentication_url == "https://3ds.test/tok_1"


@pytest.mark.unit
@pytest.mark.parametrize("status,succeeded", [("CAPTURED", True), ("AUTHORIZED", True), ("FAILED", False)])
def test_charge_succeeded(status: str, succeeded: bool) -> None:
    """Test which charge statuses count as paid."""
    assert GatewayCharge(id="chg_1", status=status).succeeded is succeeded


@pytest.mark.unit
@patch("villa_ledger.network.gateway.request_json")
def test_create_token_sends_card_once_without_retry(mock_request: Mock) -> None:
    """Test that token creation is a single non-retried POST carrying card and billing data."""
    mock_request.return_value = {"id": "tok_1", "status": "IN_REVIEW", "payer_authentication_url": "https://3ds"}
    client = GatewayClient(base_url="https://gw.test/", secret_key="sk_test")

    token = client.create_token(CARD, BILLING, Decimal("0.01"), "USD", "session-1")

    assert token.id == "tok_1"
    args, kwargs = mock_request.call_args
    assert args == ("POST", "https://gw.test/credit_card_tokens")
    assert kwargs["retry"] is False
    body = kwargs["json"]
    assert body["amount"] == "0.01"
    assert body["external_id"] == "session-1"
    assert body["card_data"]["exp_month"] == "03"
    assert body["card_cvn"] == "123"
    assert client.session.auth == ("sk_test", "")


@pytest.mark.unit
@patch("villa_ledger.network.gateway.request_json")
def test_status_reads_are_retried(mock_request: Mock) -> None:
    """Test that token and charge reads are sent with retry enabled."""
    mock_request.side_effect = [{"id": "tok_1", "status": "VERIFIED"}, {"id": "chg_1", "status": "CAPTURED"}]
    client = GatewayClient(base_url="https://gw.test/")

    assert client.get_token("tok_1").status == "VERIFIED"
    assert client.get_charge("chg_1").succeeded

    for call in mock_request.call_args_list:
        assert call.args[0] == "GET"
        assert call.kwargs["retry"] is True


@pytest.mark.unit
@patch("villa_ledger.network.gateway.request_json")
def test_create_charge_sends_idempotency_key(mock_request: Mock) -> None:
    """Test that charges carry the session ID as idempotency key and are not retried."""
    mock_request.return_value = {"id": "chg_1", "status": "CAPTURED"}
    client = GatewayClient(base_url="https://gw.test/")

    charge = client.create_charge("tok_1", Decimal("12.50"), "USD", "session-1")

    assert charge.succeeded
    kwargs = mock_request.call_args.kwargs
    assert kwargs["headers"] == {"Idempotency-Key": "session-1"}
    assert kwargs["retry"] is False
    assert kwargs["json"]["amount"] == "12.50"
