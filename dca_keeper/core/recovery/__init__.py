"""
Error taxonomy and retry helpers for the order lifecycle.
"""

from .errors import (
    NON_RETRYABLE_KINDS,
    ContractRevertedError,
    DCAError,
    ErrorContext,
    FeedUnavailable,
    InsufficientFundsError,
    InvalidTransitionError,
    NetworkError,
    OrderConflict,
    OrderNotFound,
    OrderValidationError,
    RejectedError,
    SlippageExceededError,
    StoreUnavailable,
    SwapError,
    SwapFailureKind,
    classify_error,
    is_permanent_revert,
)
from .retry import RetryConfig, retry_async

__all__ = [
    "NON_RETRYABLE_KINDS",
    "ContractRevertedError",
    "DCAError",
    "ErrorContext",
    "FeedUnavailable",
    "InsufficientFundsError",
    "InvalidTransitionError",
    "NetworkError",
    "OrderConflict",
    "OrderNotFound",
    "OrderValidationError",
    "RejectedError",
    "RetryConfig",
    "SlippageExceededError",
    "StoreUnavailable",
    "SwapError",
    "SwapFailureKind",
    "classify_error",
    "is_permanent_revert",
    "retry_async",
]
