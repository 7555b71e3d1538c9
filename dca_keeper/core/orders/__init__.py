"""
DCA Order Lifecycle

Price-triggered DCA orders: storage with atomic acquisition, trigger
evaluation, swap execution, notifications and the scheduler loop.
"""

from .models import (
    AssetPair,
    DCAOrder,
    OrderDirection,
    OrderStats,
    OrderStatus,
    OrderTransition,
    PricePoint,
    SwapFailure,
    SwapQuote,
    SwapResult,
    SwapSuccess,
    TransitionResult,
    TriggerCondition,
)
from .store import InMemoryOrderStore, OrderStore
from .price_feed import PriceFeed
from .evaluator import TriggerEvaluator, should_trigger
from .executor import SwapExecutor, minimum_received
from .notifications import (
    CallbackNotificationSink,
    CompositeNotificationSink,
    NotificationSink,
    OrderCancelled,
    OrderExecuted,
    OrderExpired,
    OrderFailed,
    WebhookNotificationSink,
)
from .scheduler import DCAScheduler, TickReport
from .service import DCAOrderService

__all__ = [
    # Models
    "AssetPair",
    "DCAOrder",
    "OrderDirection",
    "OrderStats",
    "OrderStatus",
    "OrderTransition",
    "PricePoint",
    "SwapFailure",
    "SwapQuote",
    "SwapResult",
    "SwapSuccess",
    "TransitionResult",
    "TriggerCondition",
    # Components
    "InMemoryOrderStore",
    "OrderStore",
    "PriceFeed",
    "TriggerEvaluator",
    "should_trigger",
    "SwapExecutor",
    "minimum_received",
    # Notifications
    "CallbackNotificationSink",
    "CompositeNotificationSink",
    "NotificationSink",
    "OrderCancelled",
    "OrderExecuted",
    "OrderExpired",
    "OrderFailed",
    "WebhookNotificationSink",
    # Orchestration
    "DCAScheduler",
    "TickReport",
    "DCAOrderService",
]
