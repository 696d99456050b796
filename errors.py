"""
Application error hierarchy and Flask error handlers.

AppError is the base for all typed errors; register_error_handlers() turns
them into consistent JSON bodies. Anything else is logged and answered with a
generic, retryable 500.

Expected, user-actionable outcomes (lockout, CSRF rejection, date overlap)
are returned as result objects by the services. These exceptions cover the
exceptional paths and the translation at the HTTP boundary.
"""

from typing import Any, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from utils.logger import get_logger

log = get_logger(__name__)


class AppError(Exception):
    """Base application error. All typed errors inherit from this."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message, "code": self.error_code}
        if self.field is not None:
            payload["field"] = self.field
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(AppError):
    status_code = 401
    error_code = "authentication_error"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class RateLimitExceeded(AppError):
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, message: str, *, reason: str, retry_after: float = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        payload["retry_after_seconds"] = int(round(self.retry_after))
        return payload


class CSRFValidationFailed(AppError):
    status_code = 403
    error_code = "csrf_validation_failed"

    def __init__(self, reason: str, message: str = "CSRF validation failed. Refresh the page and try again.") -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class BookingConflict(AppError):
    status_code = 409
    error_code = "booking_conflict"


class BackendUnavailable(AppError):
    status_code = 503
    error_code = "backend_unavailable"


class CarInUse(AppError):
    status_code = 409
    error_code = "car_in_use"


class NoDataToExport(AppError):
    status_code = 404
    error_code = "no_data_to_export"


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers on the Flask app."""

    @app.errorhandler(AppError)
    def _app_error(exc: AppError):
        if exc.status_code >= 500:
            log.error("app_error", code=exc.error_code, error=exc.message)
        resp = jsonify(exc.to_dict())
        if isinstance(exc, RateLimitExceeded):
            resp.headers["Retry-After"] = str(max(1, int(round(exc.retry_after))))
        return resp, exc.status_code

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify(error=exc.description, code=exc.name.lower().replace(" ", "_")), exc.code
        log.exception("unhandled_error", error_type=type(exc).__name__)
        return jsonify(error="Something went wrong. Please try again.", code="internal_error", retryable=True), 500
