"""Typed error kinds surfaced by the telephony services.

Dashboard handlers turn these into structured JSON responses (see
``app.main``); the ``kind`` string is stable and safe to show to clients.
"""

from typing import Any, Optional


class TelephonyError(Exception):
    """Base class for domain errors."""

    kind: str = "error"
    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "detail": self.message}
        if self.context:
            body["context"] = self.context
        return body


class ConflictError(TelephonyError):
    """Number owned by another tenant, or an illegal state transition."""

    kind = "conflict"
    status_code = 409


class NotFoundError(TelephonyError):
    kind = "not_found"
    status_code = 404


class UnauthorizedError(TelephonyError):
    """Tenant does not own the resource."""

    kind = "unauthorized"
    status_code = 403


class InsufficientFundsError(TelephonyError):
    """Raised only by pre-authorization deltas."""

    kind = "insufficient_funds"
    status_code = 402

    def __init__(self, message: str, required: Any = None, available: Any = None):
        super().__init__(message, required=str(required), available=str(available))
        self.required = required
        self.available = available


class UpstreamError(TelephonyError):
    """Carrier or sink answered with an explicit failure."""

    kind = "upstream_error"
    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    """Carrier or sink did not answer in time; outcome unknown."""

    kind = "upstream_timeout"
    status_code = 504


class ValidationError(TelephonyError):
    """Malformed routing config or function payload."""

    kind = "validation_error"
    status_code = 422

    def __init__(self, message: str, errors: Optional[list] = None, **context: Any):
        if errors:
            context["errors"] = errors
        super().__init__(message, **context)
        self.errors = errors or []


class DuplicateEventError(TelephonyError):
    """Idempotency key already applied. Logged, never returned to callers."""

    kind = "duplicate_event"
    status_code = 200
