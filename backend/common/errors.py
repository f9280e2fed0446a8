"""
Error taxonomy shared by the API and the sync client.

Each error carries the HTTP status it maps to, so the server can render it
and the client can rebuild it from a response.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(AppError):
    """Malformed or out-of-range input. Never retried automatically."""
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Not authorized"


class NotFoundError(AppError):
    """Target id missing, or already archived/restored."""
    status_code = 404
    default_message = "Equipment not found"


class UniquenessConflict(AppError):
    """A unique field (serial number, barcode, phone) is already taken."""
    status_code = 409
    default_message = "Duplicate value for a unique field"


class MutationConflict(AppError):
    """Raised client-side when a mutation can't be queued for a record."""
    status_code = 409
    default_message = "Record has a conflicting mutation in flight"


class StoreTransactionError(AppError):
    """A store transaction failed and was rolled back in full."""
    status_code = 500
    default_message = "Server error"


class TransientChannelError(AppError):
    """Subscription channel down. Recovered by reconnect + resync, only surfaced once the outage drags on."""
    status_code = 503
    default_message = "Live updates unavailable, retrying"


_BY_STATUS = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    409: UniquenessConflict,
    422: ValidationError,
}


def error_from_response(status_code: int, payload: Any) -> AppError:
    """Rebuild the matching AppError from an error response body."""
    message = None
    errors: List[Dict[str, Any]] = []
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("detail")
        if isinstance(message, list):
            errors = message
            message = None
        errors = payload.get("errors") or errors
    cls = _BY_STATUS.get(status_code)
    if cls is None:
        cls = StoreTransactionError if status_code >= 500 else AppError
    err = cls(str(message) if message else None, errors=errors)
    err.status_code = status_code
    return err
