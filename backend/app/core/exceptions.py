# backend/app/core/exceptions.py
"""
Error kinds raised by the core services.

Each kind carries the HTTP status the API layer maps it to. Services raise
these directly; the exception handler in main.py renders them.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for every expected failure."""
    status_code = 500
    kind = "InternalError"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Malformed or out-of-policy input"""
    status_code = 400
    kind = "Validation"
    default_message = "Validation failed"


class AuthError(AppError):
    """Missing or invalid credentials or session"""
    status_code = 401
    kind = "Auth"
    default_message = "Authentication required"


class ForbiddenError(AppError):
    """Authenticated but not entitled"""
    status_code = 403
    kind = "Forbidden"
    default_message = "Access forbidden"


class NotFoundError(AppError):
    """
    Resource missing, deleted, or owned by someone else.

    `reason` is internal only: it is logged but never serialized, so callers
    cannot tell "does not exist" from "exists but not yours".
    """
    status_code = 404
    kind = "NotFound"
    default_message = "Resource not found"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 reason: Optional[str] = None):
        super().__init__(message, details)
        self.reason = reason


class ConflictError(AppError):
    """Duplicate unique field"""
    status_code = 409
    kind = "Conflict"
    default_message = "Resource conflict"


class PaymentRequiredError(AppError):
    """Storage quota exceeded"""
    status_code = 402
    kind = "PaymentRequired"
    default_message = "Storage quota exceeded"


class StorageError(AppError):
    """Blob store failure, distinct from database failures"""
    status_code = 503
    kind = "StorageError"
    default_message = "Storage backend unavailable"


class RateLimitError(AppError):
    """Too many requests from one client"""
    status_code = 429
    kind = "RateLimited"
    default_message = "Too many requests, please try again later"
