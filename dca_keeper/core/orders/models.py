"""
DCA Order Models

Data models for price-triggered DCA orders and their execution outcomes.
Orders serialize with camelCase keys and millisecond timestamps, matching the
documents stored in the dcaOrders table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..recovery.errors import NON_RETRYABLE_KINDS, SwapFailureKind


class OrderDirection(str, Enum):
    """Which side of the pair the order spends."""
    BUY = "buy"    # Spend quote asset, receive base asset
    SELL = "sell"  # Spend base asset, receive quote asset


class TriggerCondition(str, Enum):
    """Comparison between live price and the trigger price."""
    ABOVE = "above"
    BELOW = "below"


class OrderStatus(str, Enum):
    """DCA order status."""
    ACTIVE = "active"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    OrderStatus.EXECUTED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_ms(value: Optional[Union[int, float]]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


@dataclass(frozen=True)
class AssetPair:
    """Traded pair. Prices are quote units per one base unit."""
    base: str
    quote: str

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"

    @classmethod
    def parse(cls, value: str) -> AssetPair:
        base, _, quote = value.partition("/")
        if not base or not quote:
            raise ValueError(f"Invalid asset pair: {value!r}")
        return cls(base=base.upper(), quote=quote.upper())


@dataclass(frozen=True)
class PricePoint:
    """A price observation. Ephemeral, never persisted."""
    price: Decimal
    observed_at: datetime
    source: str = "unknown"

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.observed_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": str(self.price),
            "observedAt": to_ms(self.observed_at),
            "source": self.source,
        }


@dataclass
class OrderTransition:
    """One committed status change, kept on the order for audit."""
    from_status: OrderStatus
    to_status: OrderStatus
    at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "at": to_ms(self.at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> OrderTransition:
        return cls(
            from_status=OrderStatus(data["from"]),
            to_status=OrderStatus(data["to"]),
            at=from_ms(data["at"]),
            reason=data.get("reason"),
        )


@dataclass
class DCAOrder:
    """A standing instruction to swap a fixed amount once a price condition is met."""
    # Identity
    id: str
    owner_id: str

    # What to swap (immutable after creation)
    direction: OrderDirection
    from_token: str
    to_token: str
    from_amount: Decimal
    trigger_price: Decimal
    trigger_condition: TriggerCondition
    max_slippage_bps: int = 100

    # State
    status: OrderStatus = OrderStatus.ACTIVE
    retry_count: int = 0
    max_retries: int = 3

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    # Outcome
    executed_price: Optional[Decimal] = None
    transaction_hash: Optional[str] = None
    amount_out: Optional[Decimal] = None
    failure_reason: Optional[str] = None  # FAILED only
    failure_kind: Optional[SwapFailureKind] = None
    last_error: Optional[str] = None  # Most recent failed attempt, kept across retries

    # Audit and concurrency
    version: int = 0
    updated_at: datetime = field(default_factory=utcnow)
    execution_started_at: Optional[datetime] = None
    acquired_version: Optional[int] = None  # Version written by the current acquisition
    acquisition_id: Optional[str] = None  # Caller-chosen token for the current acquisition
    next_attempt_at: Optional[datetime] = None
    cancel_requested: bool = False
    transitions: List[OrderTransition] = field(default_factory=list)

    @property
    def asset_pair(self) -> AssetPair:
        if self.direction == OrderDirection.BUY:
            return AssetPair(base=self.to_token, quote=self.from_token)
        return AssetPair(base=self.from_token, quote=self.to_token)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def is_due(self, now: datetime) -> bool:
        """Backoff gate passed (always true when no backoff is pending)."""
        return self.next_attempt_at is None or now >= self.next_attempt_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "direction": self.direction.value,
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "fromAmount": str(self.from_amount),
            "triggerPrice": str(self.trigger_price),
            "triggerCondition": self.trigger_condition.value,
            "maxSlippageBps": self.max_slippage_bps,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": to_ms(self.created_at),
            "expiresAt": to_ms(self.expires_at),
            "executedAt": to_ms(self.executed_at),
            "executedPrice": str(self.executed_price) if self.executed_price is not None else None,
            "transactionHash": self.transaction_hash,
            "amountOut": str(self.amount_out) if self.amount_out is not None else None,
            "failureReason": self.failure_reason,
            "failureKind": self.failure_kind.value if self.failure_kind else None,
            "lastError": self.last_error,
            "version": self.version,
            "updatedAt": to_ms(self.updated_at),
            "executionStartedAt": to_ms(self.execution_started_at),
            "acquiredVersion": self.acquired_version,
            "acquisitionId": self.acquisition_id,
            "nextAttemptAt": to_ms(self.next_attempt_at),
            "cancelRequested": self.cancel_requested,
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DCAOrder:
        """Create from a stored document (accepts Convex `_id`)."""
        return cls(
            id=data.get("id") or data["_id"],
            owner_id=data["ownerId"],
            direction=OrderDirection(data["direction"]),
            from_token=data["fromToken"],
            to_token=data["toToken"],
            from_amount=Decimal(str(data["fromAmount"])),
            trigger_price=Decimal(str(data["triggerPrice"])),
            trigger_condition=TriggerCondition(data["triggerCondition"]),
            max_slippage_bps=int(data.get("maxSlippageBps", 100)),
            status=OrderStatus(data["status"]),
            retry_count=int(data.get("retryCount", 0)),
            max_retries=int(data.get("maxRetries", 3)),
            created_at=from_ms(data["createdAt"]),
            expires_at=from_ms(data.get("expiresAt")),
            executed_at=from_ms(data.get("executedAt")),
            executed_price=_decimal(data.get("executedPrice")),
            transaction_hash=data.get("transactionHash"),
            amount_out=_decimal(data.get("amountOut")),
            failure_reason=data.get("failureReason"),
            failure_kind=SwapFailureKind(data["failureKind"]) if data.get("failureKind") else None,
            last_error=data.get("lastError"),
            version=int(data.get("version", 0)),
            updated_at=from_ms(data.get("updatedAt")) or from_ms(data["createdAt"]),
            execution_started_at=from_ms(data.get("executionStartedAt")),
            acquired_version=data.get("acquiredVersion"),
            acquisition_id=data.get("acquisitionId"),
            next_attempt_at=from_ms(data.get("nextAttemptAt")),
            cancel_requested=bool(data.get("cancelRequested", False)),
            transitions=[OrderTransition.from_dict(t) for t in data.get("transitions") or []],
        )


# =============================================================================
# Swap outcomes
# =============================================================================


@dataclass(frozen=True)
class SwapSuccess:
    """Swap submitted (and confirmed, when confirmation is required)."""
    tx_hash: str
    executed_price: Decimal
    amount_out: Optional[Decimal] = None
    confirmed: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class SwapFailure:
    """Typed swap failure."""
    kind: SwapFailureKind
    message: str
    retryable_override: Optional[bool] = None
    tx_hash: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        if self.retryable_override is not None:
            return self.retryable_override
        return self.kind not in NON_RETRYABLE_KINDS


SwapResult = Union[SwapSuccess, SwapFailure]


@dataclass
class TransitionResult:
    """Outcome of a store mutation: the current snapshot and whether it changed."""
    order: DCAOrder
    changed: bool


@dataclass
class SwapQuote:
    """Indicative quote for a swap against the live price."""
    from_token: str
    to_token: str
    amount_in: Decimal
    price: Decimal
    expected_out: Decimal
    minimum_received: Decimal
    slippage_bps: int
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "amountIn": str(self.amount_in),
            "price": str(self.price),
            "expectedOut": str(self.expected_out),
            "minimumReceived": str(self.minimum_received),
            "slippageBps": self.slippage_bps,
            "observedAt": to_ms(self.observed_at),
        }


@dataclass
class OrderStats:
    """Per-owner order statistics."""
    total_orders: int = 0
    active_orders: int = 0
    executing_orders: int = 0
    executed_orders: int = 0
    cancelled_orders: int = 0
    failed_orders: int = 0
    expired_orders: int = 0
    total_volume: Decimal = Decimal("0")

    @property
    def success_rate(self) -> float:
        finished = self.executed_orders + self.failed_orders
        if finished == 0:
            return 0.0
        return self.executed_orders / finished

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalOrders": self.total_orders,
            "activeOrders": self.active_orders,
            "executingOrders": self.executing_orders,
            "executedOrders": self.executed_orders,
            "cancelledOrders": self.cancelled_orders,
            "failedOrders": self.failed_orders,
            "expiredOrders": self.expired_orders,
            "totalVolume": str(self.total_volume),
            "successRate": self.success_rate,
        }
