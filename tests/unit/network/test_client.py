"""
Unit tests for the shared HTTP request helper.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
import requests

from villa_ledger.errors import ExternalServiceError
from villa_ledger.network.client import request_json, should_retry


def response(status_code: int, body: object = None) -> Mock:
    res = Mock(status_code=status_code)
    res.json.return_value = body if body is not None else {}
    return res


@pytest.mark.unit
@pytest.mark.parametrize(
    "res,err,expected",
    [
        (response(429), None, True),
        (response(503), None, True),
        (None, requests.Timeout(), True),
        (None, requests.ConnectionError(), True),
        (response(400), None, False),
        (response(404), None, False),
        (None, None, False),
    ],
)
def test_should_retry(res: Mock | None, err: Exception | None, expected: bool) -> None:
    """Test that only rate limits, 5xx and transport failures are retryable."""
    assert should_retry(res, err) is expected


@pytest.mark.unit
def test_request_json_returns_decoded_body() -> None:
    """Test that a 2xx response returns its JSON body."""
    session = Mock()
    session.request.return_value = response(200, {"id": "tok_1"})

    data = request_json("GET", "https://gw.test/x", service="gateway", endpoint="x", retry=True, session=session)

    assert data == {"id": "tok_1"}
    session.request.assert_called_once_with("GET", "https://gw.test/x", timeout=10)


@pytest.mark.unit
@patch("villa_ledger.network.client.time.sleep")
def test_request_json_retries_idempotent_calls(mock_sleep: Mock) -> None:
    """Test that a retryable failure is retried and then succeeds."""
    session = Mock()
    session.request.side_effect = [response(503), requests.Timeout(), response(200, {"ok": True})]

    data = request_json("GET", "https://gw.test/x", service="gateway", endpoint="x", retry=True, session=session)

    assert data == {"ok": True}
    assert session.request.call_count == 3
    assert mock_sleep.call_count == 2


@pytest.mark.unit
@patch("villa_ledger.network.client.time.sleep")
def test_request_json_never_retries_non_idempotent_calls(mock_sleep: Mock) -> None:
    """Test that retry=False attempts a write exactly once."""
    session = Mock()
    session.request.return_value = response(503)

    with pytest.raises(ExternalServiceError) as exc_info:
        request_json("POST", "https://gw.test/x", service="gateway", endpoint="x", retry=False, session=session)

    assert session.request.call_count == 1
    assert exc_info.value.status_code == 503
    assert exc_info.value.service == "gateway"
    mock_sleep.assert_not_called()


@pytest.mark.unit
@patch("villa_ledger.network.client.time.sleep")
def test_request_json_gives_up_after_max_retries(mock_sleep: Mock) -> None:
    """Test that retries are bounded and the last failure is raised."""
    session = Mock()
    session.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(ExternalServiceError) as exc_info:
        request_json(
            "GET", "https://gw.test/x", service="rates", endpoint="latest", retry=True, session=session, max_retries=2
        )

    assert session.request.call_count == 3
    assert exc_info.value.status_code is None


@pytest.mark.unit
def test_request_json_does_not_retry_client_errors() -> None:
    """Test that a 4xx response fails immediately."""
    session = Mock()
    session.request.return_value = response(422)

    with pytest.raises(ExternalServiceError):
        request_json("GET", "https://gw.test/x", service="pms", endpoint="rates", retry=True, session=session)

    assert session.request.call_count == 1


@pytest.mark.unit
def test_request_json_rejects_non_json_body() -> None:
    """Test that a 200 with an undecodable body raises ExternalServiceError."""
    session = Mock()
    res = Mock(status_code=200)
    res.json.side_effect = ValueError("not json")
    session.request.return_value = res

    with pytest.raises(ExternalServiceError):
        request_json("GET", "https://gw.test/x", service="pms", endpoint="rates", retry=True, session=session)
