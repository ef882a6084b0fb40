"""
Error taxonomy for the REST and Gateway clients.

Every error raised by nyxcord derives from NyxcordError so callers can catch
the whole family at once. Validation errors also derive from ValueError,
matching the way configuration dataclasses report bad input.
"""

from __future__ import annotations

from typing import Any


class NyxcordError(Exception):
    """Base class for all nyxcord errors."""


class ValidationError(NyxcordError, ValueError):
    """Raised when options or payloads fail validation."""


class RateLimitError(NyxcordError):
    """Raised when a request is blocked or rejected by a rate limit.

    retry_after_ms is always expressed in milliseconds.
    """

    def __init__(
        self,
        message: str,
        *,
        method: str,
        path: str,
        retry_after_ms: int,
        scope: str = "user",
        bucket_hash: str | None = None,
        global_: bool = False,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.retry_after_ms = retry_after_ms
        self.scope = scope
        self.bucket_hash = bucket_hash
        self.global_ = global_
        self.attempts = attempts

    @property
    def is_global(self) -> bool:
        """Check if the limit applies to the whole application."""
        return self.global_ or self.scope == "global"


class ApiError(NyxcordError):
    """Structured error returned by the Discord API (status >= 400)."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        code: int = 0,
        method: str = "",
        path: str = "",
        errors: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.method = method
        self.path = path
        self.errors = errors

    def __str__(self) -> str:
        base = f"[{self.status}] {self.args[0]}"
        if self.code:
            base = f"{base} (code {self.code})"
        return base


class HttpError(NyxcordError):
    """Raised for transport level failures."""

    def __init__(
        self,
        message: str,
        *,
        method: str = "",
        path: str = "",
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.status = status


class NetworkError(HttpError):
    """Connection could not be established or was interrupted.

    The normalized error code (ECONNRESET, ETIMEDOUT, ...) is embedded in
    the message so retry classification can match it.
    """

    def __init__(self, message: str, *, code: str, method: str = "", path: str = "") -> None:
        super().__init__(message, method=method, path=path)
        self.code = code


class QueueError(NyxcordError):
    """Base class for request queue errors."""


class QueueFullError(QueueError):
    """Raised when the request queue is at capacity."""

    def __init__(self, message: str, queue_size: int = 0) -> None:
        super().__init__(message)
        self.queue_size = queue_size


class QueueTimeoutError(QueueError):
    """Raised when a request waited in the queue longer than allowed."""

    def __init__(self, message: str, queue_time_ms: int = 0) -> None:
        super().__init__(message)
        self.queue_time_ms = queue_time_ms


class QueueClearedError(QueueError):
    """Raised for queued requests discarded by clear()."""

    def __init__(self, message: str, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class GatewayError(NyxcordError):
    """Base class for Gateway errors."""


class EncodingError(GatewayError):
    """Payload could not be encoded or decoded."""


class CompressionError(GatewayError):
    """Compressed stream could not be inflated."""


class GatewayFatalError(GatewayError):
    """Server closed the connection with a non-recoverable close code."""

    def __init__(self, message: str, close_code: int) -> None:
        super().__init__(message)
        self.close_code = close_code


class GatewayReconnectError(GatewayError):
    """Reconnect attempts were exhausted."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts
