"""
Trigger evaluation.

Pure functions: prices and thresholds are Decimals compared exactly, and no
order is ever mutated.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List

from .models import DCAOrder, OrderStatus, PricePoint, TriggerCondition


def should_trigger(order: DCAOrder, price_point: PricePoint) -> bool:
    """ABOVE fires at or above the trigger price, BELOW at or below it."""
    price = price_point.price
    if order.trigger_condition == TriggerCondition.ABOVE:
        return price >= order.trigger_price
    if order.trigger_condition == TriggerCondition.BELOW:
        return price <= order.trigger_price
    raise ValueError(f"Unknown trigger condition: {order.trigger_condition}")


def distance_to_trigger(order: DCAOrder, price_point: PricePoint) -> Decimal:
    """
    Signed percentage the price still has to move before the order fires.

    Zero or negative means the condition already holds.
    """
    price = price_point.price
    if price == 0:
        raise ValueError("Price must be non-zero")
    move = (order.trigger_price - price) / price * 100
    if order.trigger_condition == TriggerCondition.BELOW:
        move = -move
    return move


@dataclass
class Partition:
    expired: List[DCAOrder] = field(default_factory=list)
    triggered: List[DCAOrder] = field(default_factory=list)
    waiting: List[DCAOrder] = field(default_factory=list)


def partition_due(orders: Iterable[DCAOrder], price_point: PricePoint, now: datetime) -> Partition:
    """Split ACTIVE orders: expiry is checked before the trigger."""
    result = Partition()
    for order in orders:
        if order.status != OrderStatus.ACTIVE:
            continue
        if order.is_expired(now):
            result.expired.append(order)
        elif should_trigger(order, price_point):
            result.triggered.append(order)
        else:
            result.waiting.append(order)
    return result


class TriggerEvaluator:
    """Object form of the evaluation functions, for injection into the scheduler."""

    def should_trigger(self, order: DCAOrder, price_point: PricePoint) -> bool:
        return should_trigger(order, price_point)

    def partition(self, orders: Iterable[DCAOrder], price_point: PricePoint, now: datetime) -> Partition:
        return partition_due(orders, price_point, now)
