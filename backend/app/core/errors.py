"""Error taxonomy for the billing core.

Every error carries the HTTP status code the API layer reports for it, so
routers can let them propagate and the application-level handler turns them
into a structured JSON response.
"""

from typing import Any


class BillingError(Exception):
    status_code: int = 500
    code: str = "billing_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(BillingError):
    status_code = 404
    code = "not_found"


class ValidationFailure(BillingError):
    status_code = 400
    code = "validation_failed"


class InvalidTransition(BillingError):
    status_code = 400
    code = "invalid_transition"


class AlreadyInState(BillingError):
    status_code = 400
    code = "already_in_state"


class UnsupportedStatus(BillingError):
    status_code = 400
    code = "unsupported_status"


class ConcurrentModification(BillingError):
    status_code = 409
    code = "concurrent_modification"


class RemoteSyncFailure(BillingError):
    """A call to the payment gateway failed or timed out."""

    status_code = 502
    code = "remote_sync_failed"


class PersistenceFailure(BillingError):
    status_code = 500
    code = "persistence_failed"
