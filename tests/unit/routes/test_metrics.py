"""
Unit tests for metrics endpoint.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from villa_ledger.main import app
from villa_ledger.metrics import (
    api_latency,
    api_requests,
    lock_operations,
    rate_batches,
    session_transitions,
    webhook_events,
)


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)


@pytest.mark.unit
def test_metrics_endpoint_returns_prometheus_format(client: TestClient) -> None:
    """Test that /metrics endpoint returns Prometheus text format."""
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


@pytest.mark.unit
def test_metrics_endpoint_contains_custom_metrics(client: TestClient) -> None:
    """Test that /metrics endpoint includes the ledger's own metrics."""
    api_requests.labels(service="gateway", endpoint="credit_card_tokens", status_code="200").inc()
    api_latency.labels(service="gateway", endpoint="credit_card_tokens").observe(0.45)
    session_transitions.labels(from_state="IN_REVIEW", to_state="VERIFIED").inc()
    lock_operations.labels(operation="lock", outcome="ok").inc()
    webhook_events.labels(event_type="newReservation", status="APPLIED").inc()
    rate_batches.labels(status="ok").inc()

    response = client.get("/metrics")
    content = response.text

    assert "villa_ledger_api_requests_total" in content
    assert "villa_ledger_api_latency_seconds" in content
    assert "villa_ledger_payment_session_transitions_total" in content
    assert "villa_ledger_lock_operations_total" in content
    assert "villa_ledger_webhook_events_total" in content
    assert "villa_ledger_rate_refresh_batches_total" in content


@pytest.mark.unit
def test_metrics_endpoint_includes_help_and_type_metadata(client: TestClient) -> None:
    """Test that metrics include Prometheus HELP and TYPE metadata."""
    response = client.get("/metrics")
    content = response.text

    assert "# HELP" in content
    assert "# TYPE" in content
    assert "counter" in content or "histogram" in content
