"""
DCA Order Service

High-level operations behind the order API: placing, listing, cancelling,
stats and quotes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Union

from ...config import settings
from ..recovery.errors import OrderNotFound, OrderValidationError
from .evaluator import distance_to_trigger
from .executor import expected_out_amount, min_received_amount
from .models import (
    AssetPair,
    DCAOrder,
    OrderDirection,
    OrderStats,
    OrderStatus,
    SwapQuote,
    TransitionResult,
    TriggerCondition,
    utcnow,
)
from .notifications import NotificationSink, event_for
from .price_feed import PriceFeed
from .store import OrderStore

logger = logging.getLogger(__name__)


def _to_decimal(value: Union[str, int, Decimal], name: str) -> Decimal:
    if isinstance(value, float):
        # Floats carry binary noise into thresholds
        value = repr(value)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise OrderValidationError(f"{name} is not a number: {value!r}") from e
    if not result.is_finite():
        raise OrderValidationError(f"{name} must be finite")
    return result


class DCAOrderService:
    """
    Service for managing DCA orders.

    Provides high-level operations for:
    - Creating orders with validation
    - Listing and cancelling an owner's orders
    - Viewing stats and quotes
    - Surfacing orders stuck in EXECUTING
    """

    def __init__(
        self,
        store: OrderStore,
        feed: Optional[PriceFeed] = None,
        sink: Optional[NotificationSink] = None,
        pair: Optional[AssetPair] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self._store = store
        self._feed = feed
        self._sink = sink
        self.pair = pair or AssetPair(settings.dca_base_asset, settings.dca_quote_asset)
        self._clock = clock
        self._new_id = id_factory

    # =========================================================================
    # Order CRUD
    # =========================================================================

    async def create_order(
        self,
        owner_id: str,
        direction: Union[OrderDirection, str],
        amount: Union[str, int, Decimal],
        trigger_price: Union[str, int, Decimal],
        trigger_condition: Union[TriggerCondition, str],
        slippage_bps: Optional[int] = None,
        expiration_days: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> DCAOrder:
        """
        Place a new ACTIVE order on the configured pair.

        BUY spends the quote asset for the base asset; SELL the reverse.

        Raises:
            OrderValidationError: invalid parameters
        """
        if not owner_id:
            raise OrderValidationError("owner_id is required")

        try:
            direction = OrderDirection(str(getattr(direction, "value", direction)).lower())
            trigger_condition = TriggerCondition(str(getattr(trigger_condition, "value", trigger_condition)).lower())
        except ValueError as e:
            raise OrderValidationError(str(e)) from e

        from_amount = _to_decimal(amount, "amount")
        if from_amount <= 0 or from_amount <= settings.min_order_amount:
            raise OrderValidationError(f"amount must be greater than {settings.min_order_amount}")

        price = _to_decimal(trigger_price, "trigger_price")
        if price <= 0:
            raise OrderValidationError("trigger_price must be positive")

        slippage = settings.default_slippage_bps if slippage_bps is None else int(slippage_bps)
        if not 0 <= slippage <= settings.max_slippage_bps:
            raise OrderValidationError(
                f"slippage_bps must be between 0 and {settings.max_slippage_bps}"
            )

        retries = settings.default_max_retries if max_retries is None else int(max_retries)
        if retries < 0:
            raise OrderValidationError("max_retries cannot be negative")

        now = self._clock()
        expires_at = None
        if expiration_days is not None:
            if expiration_days <= 0:
                raise OrderValidationError("expiration_days must be positive")
            expires_at = now + timedelta(days=expiration_days)

        if direction == OrderDirection.BUY:
            from_token, to_token = self.pair.quote, self.pair.base
        else:
            from_token, to_token = self.pair.base, self.pair.quote

        order = DCAOrder(
            id=self._new_id(),
            owner_id=owner_id,
            direction=direction,
            from_token=from_token,
            to_token=to_token,
            from_amount=from_amount,
            trigger_price=price,
            trigger_condition=trigger_condition,
            max_slippage_bps=slippage,
            max_retries=retries,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        stored = await self._store.create(order)
        logger.info(
            f"Created order {stored.id} for {owner_id}: {direction.value} {from_amount} {from_token} "
            f"when {self.pair} {trigger_condition.value} {price}"
        )
        return stored

    async def get_order(self, order_id: str, owner_id: Optional[str] = None) -> DCAOrder:
        order = await self._store.get(order_id)
        if owner_id is not None and order.owner_id != owner_id:
            raise OrderNotFound(order_id)
        return order

    async def list_orders(
        self,
        owner_id: str,
        status: Optional[Union[OrderStatus, str]] = None,
    ) -> List[DCAOrder]:
        if status is not None and not isinstance(status, OrderStatus):
            if status == "all":
                status = None
            else:
                status = OrderStatus(status)
        return await self._store.list_by_owner(owner_id, status)

    async def cancel_order(self, order_id: str, owner_id: str) -> TransitionResult:
        """
        Cancel an owner's order.

        An EXECUTING order is flagged and cancelled only if its in-flight
        attempt ends in a retry; the swap itself is never interrupted.
        """
        await self.get_order(order_id, owner_id)
        result = await self._store.cancel(order_id, self._clock())

        if result.changed and result.order.status == OrderStatus.CANCELLED:
            logger.info(f"Order {order_id} cancelled by {owner_id}")
            await self._notify(result.order)
        elif result.changed:
            logger.info(f"Cancel of executing order {order_id} deferred until its attempt resolves")
        return result

    # =========================================================================
    # Stats and quotes
    # =========================================================================

    async def get_stats(self, owner_id: str) -> OrderStats:
        orders = await self._store.list_by_owner(owner_id)
        stats = OrderStats(total_orders=len(orders))
        for order in orders:
            if order.status == OrderStatus.ACTIVE:
                stats.active_orders += 1
            elif order.status == OrderStatus.EXECUTING:
                stats.executing_orders += 1
            elif order.status == OrderStatus.EXECUTED:
                stats.executed_orders += 1
                if order.direction == OrderDirection.BUY:
                    stats.total_volume += order.from_amount
                elif order.executed_price is not None:
                    stats.total_volume += order.from_amount * order.executed_price
            elif order.status == OrderStatus.CANCELLED:
                stats.cancelled_orders += 1
            elif order.status == OrderStatus.FAILED:
                stats.failed_orders += 1
            elif order.status == OrderStatus.EXPIRED:
                stats.expired_orders += 1
        return stats

    async def get_quote(
        self,
        from_token: str,
        to_token: str,
        amount: Union[str, int, Decimal],
        slippage_bps: Optional[int] = None,
    ) -> SwapQuote:
        """
        Indicative quote at the live price.

        Raises:
            OrderValidationError: tokens are not the configured pair
            FeedUnavailable: no fresh price
        """
        if self._feed is None:
            raise RuntimeError("Quotes need a price feed")

        from_token, to_token = from_token.upper(), to_token.upper()
        if (from_token, to_token) == (self.pair.quote, self.pair.base):
            direction = OrderDirection.BUY
        elif (from_token, to_token) == (self.pair.base, self.pair.quote):
            direction = OrderDirection.SELL
        else:
            raise OrderValidationError(f"Unsupported pair {from_token}->{to_token}; trading {self.pair}")

        amount_in = _to_decimal(amount, "amount")
        if amount_in <= 0:
            raise OrderValidationError("amount must be positive")
        slippage = settings.default_slippage_bps if slippage_bps is None else int(slippage_bps)
        if not 0 <= slippage <= settings.max_slippage_bps:
            raise OrderValidationError(f"slippage_bps must be between 0 and {settings.max_slippage_bps}")

        point = await self._feed.get_current_price(self.pair)
        return SwapQuote(
            from_token=from_token,
            to_token=to_token,
            amount_in=amount_in,
            price=point.price,
            expected_out=expected_out_amount(direction, amount_in, point.price),
            minimum_received=min_received_amount(direction, amount_in, point.price, slippage),
            slippage_bps=slippage,
            observed_at=point.observed_at,
        )

    async def list_stuck_orders(self, older_than_seconds: Optional[int] = None) -> List[DCAOrder]:
        """EXECUTING orders that never got a recorded outcome."""
        seconds = older_than_seconds if older_than_seconds is not None else settings.stuck_execution_seconds
        stuck = await self._store.list_stuck(timedelta(seconds=seconds), now=self._clock())
        for order in stuck:
            logger.warning(
                f"Order {order.id} stuck in EXECUTING since {order.execution_started_at}; "
                f"check the signer for idempotency key {order.id}:{order.retry_count + 1}"
            )
        return stuck

    async def _notify(self, order: DCAOrder) -> None:
        if self._sink is None:
            return
        event = event_for(order)
        if event is None:
            return
        try:
            await asyncio.wait_for(self._sink.notify(event), timeout=settings.notification_timeout_seconds)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Notification for order {order.id} failed: {e}")

    def summary(self, order: DCAOrder) -> dict[str, Any]:
        """Order dict enriched with the distance to its trigger, when a price is known."""
        data = order.to_dict()
        data["assetPair"] = str(order.asset_pair)
        if self._feed is not None:
            last = self._feed.last_price(order.asset_pair)
            if last is not None and last.price > 0:
                data["distanceToTrigger"] = str(distance_to_trigger(order, last).quantize(Decimal("0.01")))
        return data
