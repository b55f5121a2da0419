"""
Domain errors for webhook ingestion, replay and ignore.

Each error carries a stable error_code and the HTTP status the API layer
renders it with (see gearhook.api.exceptions).
"""
from typing import Any, Optional


class WebhookError(Exception):
    """Base class for all structured webhook errors."""

    error_code = "webhook_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details or None,
        }


class SignatureInvalid(WebhookError):
    error_code = "signature_invalid"
    http_status = 401


class UnsupportedEventType(WebhookError):
    error_code = "unsupported_event_type"
    http_status = 422


class HandlerException(WebhookError):
    error_code = "handler_exception"
    http_status = 500


class DuplicateEvent(WebhookError):
    """Not raised. Repeat deliveries are acknowledged with 200 and tagged with this code."""

    error_code = "duplicate_event"


class AlreadyIgnored(WebhookError):
    error_code = "already_ignored"
    http_status = 409


class ValidationFailed(WebhookError):
    error_code = "validation_error"
    http_status = 400


class ConcurrencyConflict(WebhookError):
    """Replay already in flight, or the event is not in a replayable state."""

    error_code = "concurrency_conflict"
    http_status = 409


class EventNotFound(WebhookError):
    error_code = "event_not_found"
    http_status = 404


class ForceConfirmationRequired(WebhookError):
    """Force replay needs a second request carrying the issued token."""

    error_code = "force_confirmation_required"
    http_status = 428


class ConfirmationUnavailable(WebhookError):
    error_code = "confirmation_unavailable"
    http_status = 503


class StoreUnavailable(WebhookError):
    error_code = "store_unavailable"
    http_status = 503


class PurchaseNotFound(WebhookError):
    error_code = "purchase_not_found"
    http_status = 404
