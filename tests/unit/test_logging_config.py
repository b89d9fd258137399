"""
Unit tests for card-data masking in the structlog pipeline.
"""

from __future__ import annotations

import pytest
import structlog
from structlog.testing import LogCapture

from villa_ledger.logging_config import REDACTED, redact_card_data


@pytest.fixture
def captured() -> LogCapture:
    return LogCapture()


@pytest.fixture
def log(captured: LogCapture) -> structlog.BoundLogger:
    return structlog.wrap_logger(
        structlog.PrintLogger(),
        processors=[redact_card_data, captured],
        wrapper_class=structlog.BoundLogger,
    )


@pytest.mark.unit
def test_top_level_card_fields_are_masked(log: structlog.BoundLogger, captured: LogCapture) -> None:
    """Test that a card number or CVN passed as a log key never survives."""
    log.info("payment_attempt", number="4000000000001091", cvn="123", last4="1091")

    entry = captured.entries[0]
    assert entry["number"] == REDACTED
    assert entry["cvn"] == REDACTED
    assert entry["last4"] == "1091"


@pytest.mark.unit
def test_nested_card_fields_are_masked(log: structlog.BoundLogger, captured: LogCapture) -> None:
    """Test that card data inside request bodies and lists is masked too."""
    body = {
        "card": {"number": "4111111111111111", "CVN": "999", "holder_name": "Jane Doe"},
        "cards": [{"pan": "4111111111111111"}],
    }

    log.warning("payment_rejected", body=body)

    entry = captured.entries[0]
    assert entry["body"]["card"] == {"number": REDACTED, "CVN": REDACTED, "holder_name": "Jane Doe"}
    assert entry["body"]["cards"] == [{"pan": REDACTED}]
    assert body["card"]["number"] == "4111111111111111"


@pytest.mark.unit
def test_event_name_is_left_alone() -> None:
    """Test that the event name itself is never treated as a field."""
    assert redact_card_data(None, "info", {"event": "number"}) == {"event": "number"}
