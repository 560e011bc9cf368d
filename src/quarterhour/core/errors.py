"""
Error hierarchy for the position lifecycle.

This module provides:
- Transient vs permanent error types (retry decisions)
- Venue-specific errors surfaced to the lifecycle (no liquidity, balance)
- classify_error() to map raw vendor exceptions onto the hierarchy

Usage:
    from quarterhour.core.errors import classify_error, InsufficientBalanceError

    try:
        ack = await gateway.submit_order(request)
    except Exception as e:
        error = classify_error(e)
        if isinstance(error, InsufficientBalanceError):
            ...
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Network issues, rate limits, empty book
    PERMANENT = "permanent"  # Rejected order, no balance
    UNKNOWN = "unknown"  # Unclassified - treat as transient by default


class QuarterhourError(Exception):
    """Base exception for all lifecycle errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class ConfigurationError(QuarterhourError):
    """Configuration is invalid or a required collaborator is missing.

    Fatal: trading cannot start until the configuration is fixed.
    """

    category = ErrorCategory.PERMANENT


class TransientError(QuarterhourError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT


class NetworkError(TransientError):
    """Network-related transient error."""

    pass


class RateLimitError(TransientError):
    """Rate limit exceeded - should retry after backoff."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.retry_after = retry_after


class NoLiquidityError(TransientError):
    """Immediate-or-cancel order found nothing to match against."""

    pass


class PriceMovedError(TransientError):
    """Price moved away between decision and submission."""

    pass


class PermanentError(QuarterhourError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class InsufficientBalanceError(PermanentError):
    """Not enough collateral, shares or allowance for the order."""

    pass


class OrderRejectedError(PermanentError):
    """Order was rejected by the exchange."""

    pass


class InvalidOrderError(PermanentError):
    """Order parameters are invalid (size, price, tick)."""

    pass


class PositionNotFoundError(PermanentError):
    """Position id is unknown or not part of the active market."""

    pass


class RedemptionError(QuarterhourError):
    """Redeeming resolved outcome tokens failed."""

    pass


_BALANCE_PATTERNS = (
    "not enough balance",
    "insufficient",
    "allowance",
)

_NO_LIQUIDITY_PATTERNS = (
    "no orders found to match",
    "no match",
    "no liquidity",
    "insufficient liquidity",
)

_RATE_LIMIT_PATTERNS = (
    "rate limit",
    "too many requests",
    "429",
)

_NETWORK_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "502",
    "503",
    "504",
    "service unavailable",
    "temporarily",
)

_INVALID_PATTERNS = (
    "invalid",
    "tick size",
    "min size",
    "minimum",
)


def classify_error(error: Exception, context: Optional[str] = None) -> QuarterhourError:
    """Map an arbitrary exception onto the lifecycle error hierarchy.

    Errors that already belong to the hierarchy are returned unchanged.

    Args:
        error: The exception raised by a gateway or vendor SDK.
        context: Optional operation name to prefix the message with.

    Returns:
        A QuarterhourError subclass wrapping the original exception.
    """
    if isinstance(error, QuarterhourError):
        return error

    error_str = str(error).lower()
    message = f"{context}: {error}" if context else str(error)

    if any(pattern in error_str for pattern in _NO_LIQUIDITY_PATTERNS):
        return NoLiquidityError(message, cause=error)
    if any(pattern in error_str for pattern in _BALANCE_PATTERNS):
        return InsufficientBalanceError(message, cause=error)
    if any(pattern in error_str for pattern in _RATE_LIMIT_PATTERNS):
        return RateLimitError(message, cause=error)
    if any(pattern in error_str for pattern in _NETWORK_PATTERNS):
        return NetworkError(message, cause=error)
    if any(pattern in error_str for pattern in _INVALID_PATTERNS):
        return InvalidOrderError(message, cause=error)

    return OrderRejectedError(message, cause=error)


def is_retryable(error: Exception) -> bool:
    """Check whether an error is worth retrying."""
    return classify_error(error).category != ErrorCategory.PERMANENT
