"""
Error taxonomy for the reservation ledger.

Every error carries a stable ``code`` that is returned to API callers. The
category classes decide the HTTP status and the retry policy:

- ValidationError: malformed input, rejected before any side effect
- NotFoundError: the referenced record does not exist
- ConflictError: state changed underneath the caller; caller may retry with fresh state
- ExternalServiceError: gateway, PMS or rate provider unreachable or erroring
- ServiceTimeoutError: challenge polling ran out of attempts or wall-clock limit
- PaymentDeclined: the gateway refused the card; the guest may retry with another
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all domain errors."""

    code = "ledger_error"
    http_status = 500

    def __init__(self, message: str | None = None, *, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationError(LedgerError):
    code = "validation_error"
    http_status = 400


class NotFoundError(LedgerError):
    code = "not_found"
    http_status = 404


class ConflictError(LedgerError):
    code = "conflict"
    http_status = 409


class ExternalServiceError(LedgerError):
    code = "external_service_error"
    http_status = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        service: str = "unknown",
        status_code: int | None = None,
        code: str | None = None,
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(message, code=code)


class ServiceTimeoutError(LedgerError):
    code = "timeout"
    http_status = 504


class CapacityMismatch(ValidationError):
    code = "capacity_mismatch"


class InvalidAddress(ValidationError):
    code = "invalid_address"


class UnknownCurrency(NotFoundError):
    code = "unknown_currency"


class SessionNotFound(NotFoundError):
    code = "session_not_found"


class Unavailable(ConflictError):
    code = "unavailable"


class LockExpired(ConflictError):
    code = "lock_expired"


class NotConfirmed(ConflictError):
    code = "not_confirmed"


class NotVerified(ConflictError):
    code = "not_verified"


class DoubleConfirmation(ConflictError):
    code = "double_confirmation"


class InventoryConflict(ConflictError):
    code = "inventory_conflict"


class ChallengeTimeout(ServiceTimeoutError):
    code = "challenge_timeout"


class PaymentDeclined(LedgerError):
    code = "payment_declined"
    http_status = 402
