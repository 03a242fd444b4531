"""Error taxonomy shared by the server and client.

Each error carries a short wire ``code`` so it can travel inside an ack
payload and be rebuilt on the other side with :func:`error_from_payload`.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for all chat subsystem errors."""

    code = "error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class TransportError(ChatError):
    """Connection down, stream broken, or no reply within the ack timeout."""

    code = "transport"


class ValidationError(ChatError):
    """Request rejected before any state change (empty message, missing group id)."""

    code = "validation"


class AuthorizationError(ChatError):
    """Caller is not a member of the group it addressed."""

    code = "forbidden"


class ConflictError(ChatError):
    """Idempotency token already applied; ``existing`` holds the stored result."""

    code = "conflict"

    def __init__(self, message: str = "", existing: Any = None, **details: Any):
        super().__init__(message, **details)
        self.existing = existing


class NotFoundError(ChatError):
    """Group, message or notification no longer exists."""

    code = "not_found"


class RateLimitedError(ChatError):
    """Sender exceeded the per-user message rate."""

    code = "rate_limited"


_BY_CODE = {
    cls.code: cls
    for cls in (TransportError, ValidationError, AuthorizationError,
                ConflictError, NotFoundError, RateLimitedError)
}


def error_from_payload(payload: Optional[Dict[str, Any]]) -> ChatError:
    """Rebuild the exception described by an error ack payload."""
    payload = payload or {}
    cls = _BY_CODE.get(payload.get("code"), ChatError)
    message = payload.get("error") or "unknown error"
    if cls is ConflictError:
        return ConflictError(message, existing=payload.get("message"))
    return cls(message)
