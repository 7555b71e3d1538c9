"""
Tests for the Convex order store against a mocked Convex HTTP API.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from dca_keeper.core.orders.convex_store import ConvexOrderStore
from dca_keeper.core.orders.models import (
    DCAOrder,
    OrderDirection,
    OrderStatus,
    SwapSuccess,
    TriggerCondition,
)
from dca_keeper.core.recovery.errors import OrderNotFound, StoreUnavailable
from dca_keeper.db.convex_client import ConvexAuthError, ConvexClient


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_order(order_id="order_1", **overrides) -> DCAOrder:
    fields = dict(
        id=order_id,
        owner_id="user_1",
        direction=OrderDirection.BUY,
        from_token="USDT",
        to_token="XFI",
        from_amount=Decimal("100"),
        trigger_price=Decimal("0.08"),
        trigger_condition=TriggerCondition.BELOW,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return DCAOrder(**fields)


class FakeConvex:
    """Minimal in-process stand-in for the dcaOrders functions."""

    def __init__(self):
        self.docs = {}
        self.calls = []
        self.fail_with = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            return self.fail_with
        body = json.loads(request.content)
        path, args = body["path"], body["args"]
        self.calls.append((request.url.path, path, args))

        if path == "dcaOrders:get":
            value = self.docs.get(args["id"])
        elif path == "dcaOrders:create":
            self.docs[args["order"]["id"]] = args["order"]
            value = args["order"]
        elif path == "dcaOrders:compareAndSet":
            doc = self.docs.get(args["id"])
            if doc is None or doc["version"] != args["expectedVersion"]:
                value = None
            else:
                self.docs[args["id"]] = args["order"]
                value = args["order"]
        elif path == "dcaOrders:listByStatus":
            matching = [d for d in self.docs.values() if d["status"] == args["status"]]
            size = args["paginationOpts"]["numItems"]
            start = int(args["paginationOpts"]["cursor"] or 0)
            page = matching[start:start + size]
            done = start + size >= len(matching)
            value = {"page": page, "isDone": done, "continueCursor": str(start + size)}
        elif path == "dcaOrders:listByOwner":
            value = [d for d in self.docs.values() if d["ownerId"] == args["ownerId"]]
        else:
            return httpx.Response(200, json={"status": "error", "errorMessage": f"unknown {path}"})
        return httpx.Response(200, json={"status": "success", "value": value})


@pytest.fixture
def convex():
    return FakeConvex()


@pytest.fixture
def store(convex):
    client = ConvexClient(
        deployment_url="https://test.convex.cloud/",
        deploy_key="prod:key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(convex.handler)),
    )
    return ConvexOrderStore(client, page_size=2)


# =============================================================================
# CRUD and compare-and-set
# =============================================================================


class TestConvexOrderStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store, convex):
        await store.create(make_order())
        loaded = await store.get("order_1")

        assert loaded == make_order()
        assert convex.docs["order_1"]["fromAmount"] == "100"

    @pytest.mark.asyncio
    async def test_missing_order(self, store):
        with pytest.raises(OrderNotFound):
            await store.get("ghost")

    @pytest.mark.asyncio
    async def test_acquire_uses_compare_and_set(self, store, convex):
        await store.create(make_order())

        acquired = await store.try_acquire_for_execution("order_1", NOW)

        url_path, fn, args = convex.calls[-1]
        assert url_path == "/api/mutation"
        assert fn == "dcaOrders:compareAndSet"
        assert args["expectedVersion"] == 0
        assert args["order"]["status"] == "executing"
        assert args["order"]["version"] == 1
        assert acquired.acquired_version == 1

    @pytest.mark.asyncio
    async def test_record_and_replay(self, store, convex):
        await store.create(make_order())
        acquired = await store.try_acquire_for_execution("order_1", NOW)
        outcome = SwapSuccess(tx_hash="0xabc", executed_price=Decimal("0.075"))

        first = await store.record_execution_result("order_1", outcome, acquired.acquired_version, NOW)
        second = await store.record_execution_result("order_1", outcome, acquired.acquired_version, NOW)

        assert first.changed and not second.changed
        assert convex.docs["order_1"]["status"] == "executed"
        assert convex.docs["order_1"]["transactionHash"] == "0xabc"

    @pytest.mark.asyncio
    async def test_listing_pages_through_cursor(self, store, convex):
        for i in range(5):
            await store.create(make_order(f"order_{i}"))
        await store.create(make_order("old", expires_at=NOW - timedelta(days=1)))

        active = [o.id async for o in store.list_active(NOW)]
        expired = [o.id async for o in store.list_expired(NOW)]

        assert active == [f"order_{i}" for i in range(5)]
        assert expired == ["old"]
        cursors = [
            args["paginationOpts"]["cursor"]
            for _, fn, args in convex.calls
            if fn == "dcaOrders:listByStatus"
        ]
        assert cursors[:3] == [None, "2", "4"]

    @pytest.mark.asyncio
    async def test_list_by_owner(self, store):
        await store.create(make_order("a", created_at=NOW - timedelta(hours=1)))
        await store.create(make_order("b"))

        orders = await store.list_by_owner("user_1", OrderStatus.ACTIVE)
        assert [o.id for o in orders] == ["b", "a"]


# =============================================================================
# Failures
# =============================================================================


class TestConvexFailures:
    @pytest.mark.asyncio
    async def test_server_error_is_store_unavailable(self, store, convex):
        convex.fail_with = httpx.Response(503, text="unavailable")

        with pytest.raises(StoreUnavailable) as exc_info:
            await store.get("order_1")
        assert exc_info.value.operation == "get"

    @pytest.mark.asyncio
    async def test_listing_error_is_store_unavailable(self, store, convex):
        convex.fail_with = httpx.Response(200, json={"status": "error", "errorMessage": "index missing"})

        with pytest.raises(StoreUnavailable):
            [o async for o in store.list_active(NOW)]

    @pytest.mark.asyncio
    async def test_auth_error(self, convex):
        convex.fail_with = httpx.Response(401)
        client = ConvexClient(
            deployment_url="https://test.convex.cloud",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(convex.handler)),
        )

        with pytest.raises(ConvexAuthError):
            await client.query("dcaOrders:get", {"id": "x"})
