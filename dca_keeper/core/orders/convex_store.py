"""
Convex-backed order store.

Orders live in the ``dcaOrders`` table. The compare-and-set is the
``dcaOrders:compareAndSet`` mutation, which Convex runs as a serializable
transaction:

    export const compareAndSet = mutation({
      args: { id: v.string(), expectedVersion: v.number(), order: v.any() },
      handler: async (ctx, { id, expectedVersion, order }) => {
        const doc = await ctx.db.query("dcaOrders")
          .withIndex("by_order_id", q => q.eq("id", id)).unique();
        if (!doc || doc.version !== expectedVersion) return null;
        await ctx.db.replace(doc._id, order);
        return order;
      },
    });

That makes acquisition safe across process restarts and across several
scheduler instances sharing one deployment.
"""

import logging
from typing import AsyncIterator, List, Optional

from ...db.convex_client import ConvexClient, ConvexError
from ..recovery.errors import OrderNotFound, StoreUnavailable
from .models import DCAOrder, OrderStatus
from .store import OrderStore


logger = logging.getLogger(__name__)


class ConvexOrderStore(OrderStore):
    """Order store over the Convex HTTP API."""

    def __init__(self, client: ConvexClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size

    async def create(self, order: DCAOrder) -> DCAOrder:
        try:
            stored = await self.client.create_order(order.to_dict())
        except ConvexError as e:
            raise StoreUnavailable(str(e), operation="create") from e
        return DCAOrder.from_dict(stored) if stored else order

    async def _load(self, order_id: str) -> DCAOrder:
        try:
            doc = await self.client.get_order(order_id)
        except ConvexError as e:
            raise StoreUnavailable(str(e), operation="get") from e
        if not doc:
            raise OrderNotFound(order_id)
        return DCAOrder.from_dict(doc)

    async def _compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        new_order: DCAOrder,
    ) -> bool:
        try:
            stored = await self.client.compare_and_set_order(
                order_id,
                expected_version,
                new_order.to_dict(),
            )
        except ConvexError as e:
            raise StoreUnavailable(str(e), operation="compareAndSet") from e
        return stored is not None

    async def _iter_status(self, status: OrderStatus) -> AsyncIterator[DCAOrder]:
        cursor: Optional[str] = None
        while True:
            try:
                page = await self.client.list_orders_page(
                    "dcaOrders:listByStatus",
                    {"status": status.value},
                    cursor=cursor,
                    page_size=self.page_size,
                )
            except ConvexError as e:
                raise StoreUnavailable(str(e), operation="listByStatus") from e

            for doc in page.get("page") or []:
                yield DCAOrder.from_dict(doc)

            if page.get("isDone", True):
                return
            cursor = page.get("continueCursor")

    async def list_by_owner(
        self,
        owner_id: str,
        status: Optional[OrderStatus] = None,
    ) -> List[DCAOrder]:
        args = {"ownerId": owner_id}
        if status is not None:
            args["status"] = status.value
        try:
            docs = await self.client.query("dcaOrders:listByOwner", args)
        except ConvexError as e:
            raise StoreUnavailable(str(e), operation="listByOwner") from e
        orders = [DCAOrder.from_dict(d) for d in docs or []]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    async def close(self) -> None:
        await self.client.close()
