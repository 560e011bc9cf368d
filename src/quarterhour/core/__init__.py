"""Core infrastructure: logging and the error hierarchy."""

from quarterhour.core.errors import (
    ConfigurationError,
    ErrorCategory,
    InsufficientBalanceError,
    InvalidOrderError,
    NetworkError,
    NoLiquidityError,
    OrderRejectedError,
    PermanentError,
    PositionNotFoundError,
    PriceMovedError,
    QuarterhourError,
    RateLimitError,
    RedemptionError,
    TransientError,
    classify_error,
    is_retryable,
)
from quarterhour.core.logging import setup_logging

__all__ = [
    "ConfigurationError",
    "ErrorCategory",
    "InsufficientBalanceError",
    "InvalidOrderError",
    "NetworkError",
    "NoLiquidityError",
    "OrderRejectedError",
    "PermanentError",
    "PositionNotFoundError",
    "PriceMovedError",
    "QuarterhourError",
    "RateLimitError",
    "RedemptionError",
    "TransientError",
    "classify_error",
    "is_retryable",
    "setup_logging",
]
