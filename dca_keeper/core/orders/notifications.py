"""
Order lifecycle notifications.

Events are emitted after a status transition has been committed. Delivery is
best-effort: a failing sink never rolls back or blocks the store.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Union

import httpx
from pydantic import BaseModel, Field

from ...config import settings
from .models import DCAOrder, OrderStatus, utcnow


logger = logging.getLogger(__name__)


class OrderEventType(str, Enum):
    EXECUTED = "order_executed"
    FAILED = "order_failed"
    CANCELLED = "order_cancelled"
    EXPIRED = "order_expired"


class OrderEventBase(BaseModel):
    order_id: str
    owner_id: str
    occurred_at: datetime = Field(default_factory=utcnow)
    from_token: str
    to_token: str
    from_amount: Decimal


class OrderExecuted(OrderEventBase):
    event_type: Literal[OrderEventType.EXECUTED] = OrderEventType.EXECUTED
    executed_price: Decimal
    transaction_hash: str
    amount_out: Optional[Decimal] = None


class OrderFailed(OrderEventBase):
    event_type: Literal[OrderEventType.FAILED] = OrderEventType.FAILED
    failure_reason: str
    failure_kind: Optional[str] = None
    retry_count: int = 0


class OrderCancelled(OrderEventBase):
    event_type: Literal[OrderEventType.CANCELLED] = OrderEventType.CANCELLED
    reason: Optional[str] = None


class OrderExpired(OrderEventBase):
    event_type: Literal[OrderEventType.EXPIRED] = OrderEventType.EXPIRED
    expires_at: Optional[datetime] = None


OrderEvent = Union[OrderExecuted, OrderFailed, OrderCancelled, OrderExpired]

EventCallback = Callable[[OrderEvent], Awaitable[None]]


def event_for(order: DCAOrder) -> Optional[OrderEvent]:
    """Event describing an order's terminal status, or None for live orders."""
    common = dict(
        order_id=order.id,
        owner_id=order.owner_id,
        occurred_at=order.updated_at,
        from_token=order.from_token,
        to_token=order.to_token,
        from_amount=order.from_amount,
    )
    if order.status == OrderStatus.EXECUTED:
        return OrderExecuted(
            **common,
            executed_price=order.executed_price,
            transaction_hash=order.transaction_hash,
            amount_out=order.amount_out,
        )
    if order.status == OrderStatus.FAILED:
        return OrderFailed(
            **common,
            failure_reason=order.failure_reason or "unknown",
            failure_kind=order.failure_kind.value if order.failure_kind else None,
            retry_count=order.retry_count,
        )
    if order.status == OrderStatus.CANCELLED:
        reason = order.transitions[-1].reason if order.transitions else None
        return OrderCancelled(**common, reason=reason)
    if order.status == OrderStatus.EXPIRED:
        return OrderExpired(**common, expires_at=order.expires_at)
    return None


class NotificationSink(ABC):
    """Receives order lifecycle events."""

    @abstractmethod
    async def notify(self, event: OrderEvent) -> None:
        pass

    async def close(self) -> None:
        pass


class CallbackNotificationSink(NotificationSink):
    """
    Fans events out to registered async callbacks.

    This is where the socket layer and the points service attach.
    """

    def __init__(self):
        self._callbacks: Dict[OrderEventType, List[EventCallback]] = {}

    def register_callback(self, event_type: OrderEventType, callback: EventCallback) -> None:
        """Register a callback for an event type."""
        if event_type not in self._callbacks:
            self._callbacks[event_type] = []
        self._callbacks[event_type].append(callback)

    def unregister_callback(self, event_type: OrderEventType, callback: EventCallback) -> None:
        """Unregister a callback."""
        if event_type in self._callbacks:
            self._callbacks[event_type] = [
                cb for cb in self._callbacks[event_type] if cb != callback
            ]

    async def notify(self, event: OrderEvent) -> None:
        for callback in list(self._callbacks.get(event.event_type, [])):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Callback for {event.event_type.value} failed: {e}")


class WebhookNotificationSink(NotificationSink):
    """POSTs each event as JSON, optionally signed with HMAC-SHA256."""

    SIGNATURE_HEADER = "X-DCA-Signature"

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout_s: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.notification_webhook_url
        self.secret = settings.notification_webhook_secret if secret is None else secret
        self.timeout_s = timeout_s
        self._client = http_client

        if not self.url:
            raise ValueError("Webhook URL is required")

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.secret.encode(), payload, hashlib.sha256).hexdigest()

    async def notify(self, event: OrderEvent) -> None:
        payload = event.model_dump_json().encode()
        headers = {"Content-Type": "application/json", "X-DCA-Event": event.event_type.value}
        if self.secret:
            headers[self.SIGNATURE_HEADER] = self.sign(payload)

        if self._client is not None:
            response = await self._client.post(self.url, content=payload, headers=headers, timeout=self.timeout_s)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, content=payload, headers=headers, timeout=self.timeout_s)
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class CompositeNotificationSink(NotificationSink):
    """Delivers to every sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, event: OrderEvent) -> None:
        results = await asyncio.gather(
            *(sink.notify(event) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning(f"{type(sink).__name__} failed for {event.event_type.value}: {result}")

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
