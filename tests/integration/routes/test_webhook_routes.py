"""
Integration tests for POST /pms/webhooks.
"""

from __future__ import annotations

import base64
import json

import pytest
from fastapi.testclient import TestClient

from conftest import CHECKIN, CHECKOUT, VILLA_ID, RecordingNotifier


def booking(action: str = "newReservation", modified_at: str = "2025-01-09 12:00:00", event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "action": action,
            "user": 1034,
            "eventId": event_id,
            "data": {
                "id": 291,
                "arrival": CHECKIN.isoformat(),
                "departure": CHECKOUT.isoformat(),
                "apartment": {"id": int(VILLA_ID)},
                "guest-name": "Budi Santoso",
                "modifiedAt": modified_at,
            },
        }
    )


@pytest.fixture
def credentials(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.setattr("villa_ledger.config.WEBHOOK_USERNAME", "pms")
    monkeypatch.setattr("villa_ledger.config.WEBHOOK_PASSWORD", "s3cret")
    token = base64.b64encode(b"pms:s3cret").decode()
    return {"Authorization": f"Basic {token}"}


@pytest.mark.integration
@pytest.mark.usefixtures("priced_villa")
def test_webhook_applied_then_duplicate(api_client: TestClient, credentials: dict[str, str]) -> None:
    """Test that a delivery is applied once and its redelivery acknowledged as duplicate."""
    first = api_client.post("/pms/webhooks", content=booking(), headers=credentials)
    second = api_client.post("/pms/webhooks", content=booking(), headers=credentials)

    assert first.status_code == 200
    assert first.json()["status"] == "applied"
    assert first.json()["event_id"] == "evt_1"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert second.json()["note"] == "already applied"

    quote = api_client.post(
        "/quotes",
        json={
            "villa_id": VILLA_ID,
            "checkin": CHECKIN.isoformat(),
            "checkout": CHECKOUT.isoformat(),
            "currency": "IDR",
            "adults": 2,
        },
    )
    assert quote.status_code == 409


@pytest.mark.integration
@pytest.mark.usefixtures("priced_villa")
def test_webhook_cancellation_notifies(
    api_client: TestClient, credentials: dict[str, str], notifier: RecordingNotifier
) -> None:
    """Test that a PMS cancellation is applied and the guest is told."""
    api_client.post("/pms/webhooks", content=booking(), headers=credentials)

    response = api_client.post(
        "/pms/webhooks",
        content=booking(action="cancelReservation", modified_at="2025-01-10 08:00:00", event_id="evt_2"),
        headers=credentials,
    )

    assert response.json()["status"] == "applied"
    assert notifier.cancelled[0]["pms_reservation_id"] == "291"


@pytest.mark.integration
def test_malformed_webhook_is_acknowledged_as_rejected(api_client: TestClient, credentials: dict[str, str]) -> None:
    """Test that a bad payload is still answered with 200 so the PMS stops redelivering it."""
    response = api_client.post("/pms/webhooks", content=b"{oops", headers=credentials)

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"


@pytest.mark.integration
@pytest.mark.usefixtures("credentials")
def test_webhook_without_credentials_returns_401(api_client: TestClient) -> None:
    """Test that unauthenticated deliveries are refused before being logged."""
    response = api_client.post("/pms/webhooks", content=booking())

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


@pytest.mark.integration
@pytest.mark.usefixtures("credentials")
def test_webhook_with_wrong_password_returns_401(api_client: TestClient) -> None:
    """Test that a wrong password is refused."""
    token = base64.b64encode(b"pms:wrong").decode()

    response = api_client.post("/pms/webhooks", content=booking(), headers={"Authorization": f"Basic {token}"})

    assert response.status_code == 401
