"""
Error Classification

Defines the error taxonomy for the DCA order lifecycle.

Infrastructure errors (feed, store) abort a whole scheduler tick and leave
every order untouched. Swap errors are local to one order and are converted
into a state transition: a retry or a terminal failure.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class SwapFailureKind(str, Enum):
    """Why a swap attempt failed."""

    INSUFFICIENT_FUNDS = "insufficient_funds"  # Wallet cannot cover the amount
    SLIPPAGE_EXCEEDED = "slippage_exceeded"    # Output below minimum received
    NETWORK_ERROR = "network_error"            # RPC/signer unreachable, timeouts
    CONTRACT_REVERTED = "contract_reverted"    # On-chain revert
    REJECTED = "rejected"                      # Signer refused (auth, policy)


# Funds and authorization will not change within the retry window
NON_RETRYABLE_KINDS = frozenset({
    SwapFailureKind.INSUFFICIENT_FUNDS,
    SwapFailureKind.REJECTED,
})


@dataclass
class ErrorContext:
    """Additional context about an error."""

    kind: Optional[SwapFailureKind] = None
    recoverable: bool = True
    tx_hash: Optional[str] = None
    suggested_action: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class DCAError(Exception):
    """Base class for all keeper errors."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


# =============================================================================
# Infrastructure errors (abort the tick)
# =============================================================================


class FeedUnavailable(DCAError):
    """No fresh price could be obtained. Never means "price is zero"."""

    def __init__(self, message: str = "Price feed unavailable", asset_pair: Optional[str] = None):
        super().__init__(message)
        self.asset_pair = asset_pair


class StoreUnavailable(DCAError):
    """The order store could not be reached or timed out."""

    def __init__(self, message: str = "Order store unavailable", operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


# =============================================================================
# Store semantics
# =============================================================================


class OrderNotFound(DCAError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderConflict(DCAError):
    """
    Acquisition race lost, or the order is not in an acquirable state.

    Expected and benign: another worker or an earlier tick already claimed it.
    """

    def __init__(self, order_id: str, reason: str = "not acquirable"):
        super().__init__(f"Order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class InvalidTransitionError(DCAError):
    """Raised when a status transition is not allowed."""

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid transition from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class OrderValidationError(DCAError, ValueError):
    """Order parameters rejected at creation."""


# =============================================================================
# Swap errors (converted into order transitions)
# =============================================================================


class SwapError(DCAError):
    """Base class for typed swap failures."""

    kind: SwapFailureKind = SwapFailureKind.NETWORK_ERROR

    def __init__(
        self,
        message: str = "Swap failed",
        retryable: Optional[bool] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self._retryable = retryable
        self.context = context or ErrorContext(kind=self.kind, recoverable=self.retryable)

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.kind not in NON_RETRYABLE_KINDS


class InsufficientFundsError(SwapError):
    kind = SwapFailureKind.INSUFFICIENT_FUNDS

    def __init__(
        self,
        message: str = "Insufficient funds",
        required: Optional[str] = None,
        available: Optional[str] = None,
    ):
        super().__init__(
            message,
            context=ErrorContext(
                kind=SwapFailureKind.INSUFFICIENT_FUNDS,
                recoverable=False,
                suggested_action="Add funds to wallet or reduce order amount",
                details={"required": required, "available": available},
            ),
        )


class SlippageExceededError(SwapError):
    kind = SwapFailureKind.SLIPPAGE_EXCEEDED


class NetworkError(SwapError):
    kind = SwapFailureKind.NETWORK_ERROR


class ContractRevertedError(SwapError):
    kind = SwapFailureKind.CONTRACT_REVERTED

    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        permanent: Optional[bool] = None,
    ):
        if permanent is None:
            permanent = is_permanent_revert(reason or message)
        super().__init__(
            message,
            retryable=not permanent,
            context=ErrorContext(
                kind=SwapFailureKind.CONTRACT_REVERTED,
                recoverable=not permanent,
                tx_hash=tx_hash,
                details={"revert_reason": reason} if reason else {},
            ),
        )
        self.tx_hash = tx_hash
        self.reason = reason


class RejectedError(SwapError):
    kind = SwapFailureKind.REJECTED


_PERMANENT_REVERT_PATTERNS = (
    "invalid order",
    "order not found",
    "expired",
    "deadline",
    "paused",
    "unsupported token",
    "invalid path",
)


def is_permanent_revert(reason: str) -> bool:
    """Reverts that will fail the same way on every retry."""
    text = (reason or "").lower()
    return any(p in text for p in _PERMANENT_REVERT_PATTERNS)


def classify_error(error: Exception) -> SwapFailureKind:
    """
    Classify an exception raised during swap submission.

    Typed SwapErrors keep their kind; anything else is classified by its
    message. Unknown errors count as network errors (retryable).
    """
    if isinstance(error, SwapError):
        return error.kind

    message = str(error).lower()

    funds_patterns = [
        "insufficient funds",
        "insufficient balance",
        "not enough",
        "balance too low",
        "exceeds balance",
        "transfer amount exceeds",
    ]
    if any(p in message for p in funds_patterns):
        return SwapFailureKind.INSUFFICIENT_FUNDS

    slippage_patterns = [
        "slippage",
        "too little received",
        "insufficient_output_amount",
        "insufficient output amount",
        "price impact",
    ]
    if any(p in message for p in slippage_patterns):
        return SwapFailureKind.SLIPPAGE_EXCEEDED

    rejected_patterns = [
        "rejected",
        "denied",
        "unauthorized",
        "forbidden",
        "not allowed",
        "invalid signature",
    ]
    if any(p in message for p in rejected_patterns):
        return SwapFailureKind.REJECTED

    revert_patterns = ["revert", "execution reverted", "out of gas"]
    if any(p in message for p in revert_patterns):
        return SwapFailureKind.CONTRACT_REVERTED

    return SwapFailureKind.NETWORK_ERROR
