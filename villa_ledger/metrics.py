"""
Prometheus metrics for the payment, availability, webhook and rate-cache paths.

This module defines all Prometheus metrics used throughout the application.
Metrics are exposed via the /metrics endpoint for scraping by Prometheus.

Example:
    >>> from villa_ledger.metrics import webhook_events
    >>> webhook_events.labels(event_type="newReservation", status="APPLIED").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# =============================================================================
# External API Metrics
# =============================================================================

api_requests = Counter(
    "villa_ledger_api_requests_total",
    "Total requests made to external services",
    ["service", "endpoint", "status_code"],
)
"""
Counter for requests to the payment gateway, PMS and rate provider.

Labels:
    service: gateway, pms or rates
    endpoint: Logical endpoint name (e.g., "credit_card_tokens")
    status_code: HTTP status code, or "error" when no response was received
"""

api_latency = Histogram(
    "villa_ledger_api_latency_seconds",
    "External service request latency in seconds",
    ["service", "endpoint"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)

# =============================================================================
# Payment Metrics
# =============================================================================

session_transitions = Counter(
    "villa_ledger_payment_session_transitions_total",
    "Payment session state transitions",
    ["from_state", "to_state"],
)
"""
Counter for payment session transitions.

Labels:
    from_state: State before the transition
    to_state: State after the transition
"""

reservations_finalized = Counter(
    "villa_ledger_reservations_finalized_total",
    "Finalize outcomes",
    ["outcome"],
)
"""Counter for finalize attempts (created, existing, inventory_conflict, not_confirmed)."""

# =============================================================================
# Availability Metrics
# =============================================================================

lock_operations = Counter(
    "villa_ledger_lock_operations_total",
    "Inventory lock operations",
    ["operation", "outcome"],
)
"""
Counter for lock, commit and release calls.

Labels:
    operation: lock, commit, release or expire
    outcome: ok, unavailable, expired
"""

# =============================================================================
# Webhook Metrics
# =============================================================================

webhook_events = Counter(
    "villa_ledger_webhook_events_total",
    "PMS webhook deliveries by final processing status",
    ["event_type", "status"],
)

# =============================================================================
# Rate Cache Metrics
# =============================================================================

rate_batches = Counter(
    "villa_ledger_rate_refresh_batches_total",
    "Rate refresh batches by outcome",
    ["status"],
)

rate_refresh_duration = Histogram(
    "villa_ledger_rate_refresh_duration_seconds",
    "Duration of a full rate refresh in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, float("inf")),
)
