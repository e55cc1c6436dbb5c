"""Domain errors raised by the queue service and translated by the API."""

from __future__ import annotations


class QueueError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class NotFoundError(QueueError):
    """Resource not found"""

    status_code = 404
    code = "not_found"


class ValidationError(QueueError):
    """Invalid request"""

    status_code = 400
    code = "validation_error"


class ConflictError(QueueError):
    """Resource conflict"""

    status_code = 409
    code = "conflict"


class AuthenticationError(QueueError):
    """Invalid credentials"""

    status_code = 401
    code = "unauthorized"


class PermissionDeniedError(QueueError):
    """Insufficient privileges"""

    status_code = 403
    code = "forbidden"


__all__ = [
    "QueueError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "PermissionDeniedError",
]
