"""
Unit tests for FastAPI dependency injection.
"""

from __future__ import annotations

from unittest.mock import Mock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from villa_ledger.dependencies import (
    get_db_engine,
    get_gateway_client,
    get_notifier,
    get_payments,
    get_rate_provider,
)
from villa_ledger.services.notifications import LoggingNotifier
from villa_ledger.services.payments import PaymentAuthenticator


@pytest.mark.unit
def test_get_db_engine_dependency() -> None:
    """Test that get_db_engine returns the engine instance."""
    engine = next(get_db_engine())

    assert isinstance(engine, Engine)


@pytest.mark.unit
def test_dependency_injection_provides_same_engine() -> None:
    """Test that multiple calls get the same engine instance."""
    assert next(get_db_engine()) is next(get_db_engine())


@pytest.mark.unit
def test_dependency_injection_can_be_overridden() -> None:
    """Test that dependency can be overridden for testing."""
    app = FastAPI()

    @app.get("/test")
    def test_endpoint(engine: Engine = Depends(get_db_engine)) -> dict[str, str]:
        """Test endpoint."""
        return {"engine_name": engine.name}

    mock_engine = Mock(spec=Engine)
    mock_engine.name = "mock_engine"
    app.dependency_overrides[get_db_engine] = lambda: mock_engine

    response = TestClient(app).get("/test")

    assert response.status_code == 200
    assert response.json() == {"engine_name": "mock_engine"}


@pytest.mark.unit
def test_services_are_wired_to_the_overridden_engine(db_engine: Engine) -> None:
    """Test that service providers receive the engine chosen by get_db_engine."""
    app = FastAPI()

    @app.get("/wired")
    def wired(payments: PaymentAuthenticator = Depends(get_payments)) -> dict[str, bool]:
        return {
            "same_engine": payments.engine is db_engine,
            "ledger_same_engine": payments.ledger.engine is db_engine,
        }

    app.dependency_overrides[get_db_engine] = lambda: db_engine

    response = TestClient(app).get("/wired")

    assert response.json() == {"same_engine": True, "ledger_same_engine": True}


@pytest.mark.unit
def test_notifier_defaults_to_logging_without_url() -> None:
    """Test that no notification URL means log-only notifications."""
    assert isinstance(get_notifier(), LoggingNotifier)


@pytest.mark.unit
def test_external_clients_are_built_once() -> None:
    """Test that every request shares one gateway and one rate provider client."""
    assert get_gateway_client() is get_gateway_client()
    assert get_rate_provider() is get_rate_provider()
    assert get_gateway_client().session is get_gateway_client().session
