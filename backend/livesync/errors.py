"""Error taxonomy for the realtime subsystem.

Connection-level errors surface through ConnectionManager state changes,
subscription errors are raised synchronously to the subscriber, enrichment
errors are recorded and swallowed, and write errors are re-raised to the
caller that created the optimistic entry.
"""
from typing import Optional


class RealtimeError(Exception):
    """Base exception for realtime errors."""
    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class TransportError(RealtimeError):
    """Raised when the underlying transport cannot be opened or used."""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class NotConnected(RealtimeError):
    """Raised when a frame is sent while the connection is not live."""
    def __init__(self, message: str = "Realtime connection is not open"):
        super().__init__(message, retryable=True)


class ConnectionTimeout(RealtimeError):
    """Raised when connect() does not receive confirmation in time."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Realtime connection not confirmed within {timeout_seconds}s",
            retryable=True,
        )


class ReconnectExhausted(RealtimeError):
    """Terminal state after the automatic reconnect budget is spent."""
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Gave up reconnecting after {attempts} attempts",
            retryable=False,
        )


class SubscriptionRejected(RealtimeError):
    """Raised for a malformed channel key or when the channel quota is full."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Subscription to {key!r} rejected: {reason}")


class EnrichmentFailed(RealtimeError):
    """Recorded (never raised to handlers) when payload enrichment fails."""
    def __init__(self, key: str, field: str, cause: Optional[BaseException] = None):
        self.key = key
        self.field = field
        self.cause = cause
        super().__init__(f"Enrichment of {field!r} failed on {key}: {cause}")


class WriteFailed(RealtimeError):
    """Raised by the backend collaborator when an outbound write fails."""
    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}", retryable=True)
