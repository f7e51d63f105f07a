from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to HTTP callers with a stable kind."""

    kind = "gateway_error"
    status_code = 500

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": False,
            "error": self.kind,
            "message": self.detail if self.detail is not None else self.message,
        }
        return body


class ValidationError(GatewayError):
    """Raised when command input is malformed."""

    kind = "validation_error"
    status_code = 422

    def __init__(self, fields: dict[str, str]) -> None:
        super().__init__("invalid_request", detail=dict(fields))
        self.fields = dict(fields)


class UnreachableRecipientError(GatewayError):
    kind = "unreachable_recipient"
    status_code = 422

    def __init__(self, recipient: str) -> None:
        super().__init__("The number is not registered")
        self.recipient = recipient


class SessionNotReadyError(GatewayError):
    """Raised when a command arrives before the session reached ``ready``."""

    kind = "session_not_ready"
    status_code = 422

    def __init__(self, state: str) -> None:
        super().__init__(f"session is {state}, try again later")
        self.state = state


class MediaFetchError(GatewayError):
    kind = "media_fetch_failed"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.cause = cause

    def to_payload(self) -> dict[str, Any]:
        body = super().to_payload()
        if self.status is not None:
            body["upstream_status"] = self.status
        return body


class MediaTooLargeError(MediaFetchError):
    kind = "media_too_large"
    status_code = 413

    def __init__(self, limit: int, received: int) -> None:
        super().__init__(f"media exceeds {limit} bytes")
        self.limit = limit
        self.received = received


class DeliveryError(GatewayError):
    """Raised when the session engine rejects or fails a send."""

    kind = "delivery_failed"
    status_code = 500

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class EngineFailure(Exception):
    """Lifecycle failure handled by session recovery, never shown to callers."""

    def __init__(self, reason: str, *, attempts: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts


class EngineError(Exception):
    """Raised by a session engine adapter when a command call fails."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


__all__ = [
    "GatewayError",
    "ValidationError",
    "UnreachableRecipientError",
    "SessionNotReadyError",
    "MediaFetchError",
    "MediaTooLargeError",
    "DeliveryError",
    "EngineFailure",
    "EngineError",
]
