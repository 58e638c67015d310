"""
Structured error types raised at each fallible boundary.

Transport, store, and delivery failures are converted into a RelayError
carrying a fixed set of fields (kind, code, message) so callers can log and
classify them without probing library-specific exception shapes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    STORE = "store"
    DELIVERY = "delivery"


class RelayError(Exception):
    """Base error with a kind, a short machine-readable code, and a message."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.code = code
        self.message = message

    def log_fields(self) -> dict[str, Any]:
        return {
            "error_kind": self.kind.value,
            "error_code": self.code,
            "error_message": self.message,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class FeedError(RelayError):
    """Broadcast feed connection or frame failure."""

    kind = ErrorKind.TRANSPORT


class StoreError(RelayError):
    """Subscription store read/write failure."""

    kind = ErrorKind.STORE


class DeliveryError(RelayError):
    """Failure delivering a notification to one Discord channel."""

    kind = ErrorKind.DELIVERY


def error_fields(exc: BaseException) -> dict[str, Any]:
    """Log fields for any exception, structured or not."""
    if isinstance(exc, RelayError):
        return exc.log_fields()
    return {
        "error_kind": "unexpected",
        "error_code": type(exc).__name__,
        "error_message": str(exc),
    }
