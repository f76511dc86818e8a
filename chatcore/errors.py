"""Error taxonomy shared by the core components, the REST routers and the live channel."""
from typing import Optional


class ChatError(Exception):
    code: str = "error"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str = "", *, details: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ChatError):
    code = "validation_error"
    http_status = 400


class NotFoundError(ChatError):
    code = "not_found"
    http_status = 404


class ForbiddenError(ChatError):
    code = "forbidden"
    http_status = 403


class ConflictError(ChatError):
    """Write collided with a concurrent write (duplicate sequence, duplicate key)."""

    code = "conflict"
    http_status = 409


class RateLimited(ChatError):
    code = "rate_limited"
    http_status = 429


class TransientStoreError(ChatError):
    """Timeout or unavailability of a backing store; retried by the store guard."""

    code = "store_unavailable"
    http_status = 503
    retryable = True


class ServiceUnavailable(ChatError):
    code = "service_unavailable"
    http_status = 503


class Unauthenticated(ChatError):
    code = "unauthenticated"
    http_status = 401


__all__ = [
    "ChatError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "RateLimited",
    "TransientStoreError",
    "ServiceUnavailable",
    "Unauthenticated",
]
