"""
Tests for the DCA scheduler tick: expiry, triggering, acquisition, recording
and notification, driven against the in-memory store.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dca_keeper.core.orders.models import (
    AssetPair,
    DCAOrder,
    OrderDirection,
    OrderStatus,
    PricePoint,
    SwapFailure,
    SwapSuccess,
    TriggerCondition,
)
from dca_keeper.core.orders.notifications import (
    CallbackNotificationSink,
    NotificationSink,
    OrderEventType,
    OrderExecuted,
)
from dca_keeper.core.orders.scheduler import DCAScheduler
from dca_keeper.core.orders.store import InMemoryOrderStore
from dca_keeper.core.recovery.errors import FeedUnavailable, StoreUnavailable, SwapFailureKind
from dca_keeper.core.recovery.retry import RetryConfig


PAIR = AssetPair("XFI", "USDT")
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

NETWORK_FAILURE = SwapFailure(kind=SwapFailureKind.NETWORK_ERROR, message="rpc down")


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
        max_retries=3,
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
    )
    fields.update(overrides)
    return DCAOrder(**fields)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeFeed:
    def __init__(self, price="0.075"):
        self.price = Decimal(price)
        self.error = None
        self.calls = 0

    async def get_current_price(self, pair):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return PricePoint(price=self.price, observed_at=NOW, source="test")

    def is_fresh(self, pair):
        return self.error is None and self.calls > 0

    def last_price(self, pair):
        return None


class FakeExecutor:
    def __init__(self, *results, delay=0, hook=None):
        self.results = list(results) or [SwapSuccess(tx_hash="0xfeed", executed_price=Decimal("0.075"))]
        self.delay = delay
        self.hook = hook
        self.calls = []

    async def execute(self, order, price_point):
        self.calls.append(order.id)
        if self.hook is not None:
            await self.hook(order)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class BrokenSink(NotificationSink):
    async def notify(self, event):
        raise RuntimeError("webhook down")


class HangingSink(NotificationSink):
    async def notify(self, event):
        await asyncio.sleep(10)


class DownStore(InMemoryOrderStore):
    async def _iter_status(self, status):
        raise StoreUnavailable("connection refused", operation="list")
        yield  # pragma: no cover


class BarrierStore(InMemoryOrderStore):
    """Holds every caller of list_active until ``parties`` callers have listed."""

    def __init__(self, parties: int):
        super().__init__()
        self.parties = parties
        self.arrived = 0
        self.gate = asyncio.Event()

    async def list_active(self, now=None):
        orders = [order async for order in super().list_active(now)]
        self.arrived += 1
        if self.arrived >= self.parties:
            self.gate.set()
        await self.gate.wait()
        for order in orders:
            yield order


class FlakyRecordStore(InMemoryOrderStore):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def record_execution_result(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("write failed", operation="record")
        return await super().record_execution_result(*args, **kwargs)


class SlowAckStore(InMemoryOrderStore):
    """Commits the first acquire, then acknowledges it too late."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.slow_acks = 1

    async def try_acquire_for_execution(self, *args, **kwargs):
        acquired = await super().try_acquire_for_execution(*args, **kwargs)
        if self.slow_acks > 0:
            self.slow_acks -= 1
            await asyncio.sleep(self.delay)
        return acquired


class LostAcquireStore(InMemoryOrderStore):
    async def try_acquire_for_execution(self, *args, **kwargs):
        raise StoreUnavailable("connection reset", operation="acquire")


def make_scheduler(store, feed=None, executor=None, sink=None, clock=None, **kwargs):
    kwargs.setdefault("interval_seconds", 30)
    kwargs.setdefault("store_timeout_seconds", 1)
    kwargs.setdefault("execution_timeout_seconds", 1)
    kwargs.setdefault("notification_timeout_seconds", 0.05)
    return DCAScheduler(
        store,
        feed or FakeFeed(),
        executor or FakeExecutor(),
        sink,
        pair=PAIR,
        order_backoff=RetryConfig(initial_delay_seconds=0, jitter=False),
        record_retry=RetryConfig(max_attempts=3, initial_delay_seconds=0, jitter=False),
        clock=clock or Clock(),
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


# =============================================================================
# Happy path
# =============================================================================


class TestExecution:
    @pytest.mark.asyncio
    async def test_below_trigger_executes(self, store):
        await store.create(make_order())
        sink = CallbackNotificationSink()
        on_executed = AsyncMock()
        sink.register_callback(OrderEventType.EXECUTED, on_executed)
        scheduler = make_scheduler(store, sink=sink)

        report = await scheduler.run_tick()

        order = await store.get("order_1")
        assert order.status == OrderStatus.EXECUTED
        assert order.transaction_hash == "0xfeed"
        assert order.executed_price == Decimal("0.075")
        assert report.triggered == ["order_1"]
        assert report.executed == ["order_1"]
        on_executed.assert_awaited_once()
        event = on_executed.await_args.args[0]
        assert isinstance(event, OrderExecuted)
        assert event.order_id == "order_1"

    @pytest.mark.asyncio
    async def test_untriggered_order_untouched(self, store):
        await store.create(make_order(trigger_price=Decimal("0.07")))
        executor = FakeExecutor()

        report = await make_scheduler(store, executor=executor).run_tick()

        assert report.triggered == []
        assert executor.calls == []
        assert (await store.get("order_1")).version == 0

    @pytest.mark.asyncio
    async def test_next_tick_does_not_reexecute(self, store):
        await store.create(make_order())
        executor = FakeExecutor()
        scheduler = make_scheduler(store, executor=executor)

        await scheduler.run_tick()
        await scheduler.run_tick()

        assert executor.calls == ["order_1"]


# =============================================================================
# Infrastructure outages
# =============================================================================


class TestOutages:
    @pytest.mark.asyncio
    async def test_feed_outage_changes_nothing(self, store):
        await store.create(make_order())
        feed = FakeFeed()
        feed.error = FeedUnavailable("upstream 503", asset_pair="XFI/USDT")
        executor = FakeExecutor()
        scheduler = make_scheduler(store, feed=feed, executor=executor)

        for _ in range(5):
            report = await scheduler.run_tick()
            assert report.skipped_reason == "feed_unavailable"

        order = await store.get("order_1")
        assert order.status == OrderStatus.ACTIVE
        assert order.version == 0
        assert executor.calls == []
        assert scheduler.status()["executor"]["systemHealth"]["lastError"] == "upstream 503"

    @pytest.mark.asyncio
    async def test_store_outage_skips_tick(self):
        executor = FakeExecutor()
        scheduler = make_scheduler(DownStore(), executor=executor)

        report = await scheduler.run_tick()

        assert report.skipped_reason == "store_unavailable"
        assert executor.calls == []
        assert scheduler.status()["executor"]["systemHealth"]["databaseConnected"] is False

    @pytest.mark.asyncio
    async def test_record_retried_on_store_error(self):
        store = FlakyRecordStore(failures=2)
        await store.create(make_order())

        report = await make_scheduler(store).run_tick()

        assert report.executed == ["order_1"]
        assert (await store.get("order_1")).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_unrecordable_result_leaves_order_executing(self):
        store = FlakyRecordStore(failures=10)
        await store.create(make_order())

        report = await make_scheduler(store).run_tick()

        assert report.errors == ["order_1"]
        assert (await store.get("order_1")).status == OrderStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_unacknowledged_acquire_is_released(self):
        store = SlowAckStore(delay=0.2)
        await store.create(make_order())
        executor = FakeExecutor()
        scheduler = make_scheduler(store, executor=executor, store_timeout_seconds=0.05)

        first = await scheduler.run_tick()

        order = await store.get("order_1")
        assert first.errors == ["order_1"]
        assert executor.calls == []
        assert order.status == OrderStatus.ACTIVE
        assert order.retry_count == 0
        assert order.transitions[-1].reason == "released before submission"

        second = await scheduler.run_tick()

        assert second.executed == ["order_1"]
        assert executor.calls == ["order_1"]
        assert (await store.get("order_1")).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_failed_acquire_leaves_order_active(self):
        store = LostAcquireStore()
        await store.create(make_order())
        executor = FakeExecutor()

        report = await make_scheduler(store, executor=executor).run_tick()

        assert report.errors == ["order_1"]
        assert executor.calls == []
        order = await store.get("order_1")
        assert order.status == OrderStatus.ACTIVE
        assert order.version == 0


# =============================================================================
# Expiry and retries
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_expiry_checked_before_trigger(self, store):
        await store.create(make_order(expires_at=NOW - timedelta(seconds=1)))
        sink = CallbackNotificationSink()
        on_expired = AsyncMock()
        sink.register_callback(OrderEventType.EXPIRED, on_expired)
        executor = FakeExecutor()

        report = await make_scheduler(store, executor=executor, sink=sink).run_tick()

        assert report.expired == ["order_1"]
        assert executor.calls == []
        assert (await store.get("order_1")).status == OrderStatus.EXPIRED
        on_expired.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_bound_across_ticks(self, store):
        await store.create(make_order(max_retries=2))
        executor = FakeExecutor(NETWORK_FAILURE)
        sink = CallbackNotificationSink()
        on_failed = AsyncMock()
        sink.register_callback(OrderEventType.FAILED, on_failed)
        scheduler = make_scheduler(store, executor=executor, sink=sink)

        statuses = []
        for _ in range(4):
            await scheduler.run_tick()
            order = await store.get("order_1")
            statuses.append((order.status, order.retry_count))

        assert statuses == [
            (OrderStatus.ACTIVE, 1),
            (OrderStatus.ACTIVE, 2),
            (OrderStatus.FAILED, 2),
            (OrderStatus.FAILED, 2),
        ]
        assert len(executor.calls) == 3
        on_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_success_after_retry_has_no_failure_reason(self, store):
        await store.create(make_order())
        scheduler = make_scheduler(
            store,
            executor=FakeExecutor(NETWORK_FAILURE, SwapSuccess(tx_hash="0xfeed", executed_price=Decimal("0.075"))),
        )

        await scheduler.run_tick()
        retried = await store.get("order_1")
        assert retried.status == OrderStatus.ACTIVE
        assert retried.failure_reason is None
        assert retried.last_error == "rpc down"

        await scheduler.run_tick()
        order = await store.get("order_1")
        assert order.status == OrderStatus.EXECUTED
        assert order.failure_reason is None
        assert order.failure_kind is None

    @pytest.mark.asyncio
    async def test_tick_time_used_throughout(self, store):
        await store.create(make_order())
        tick_at = NOW + timedelta(minutes=5)
        scheduler = make_scheduler(store, clock=Clock(NOW + timedelta(hours=1)))

        await scheduler.run_tick(now=tick_at)

        order = await store.get("order_1")
        assert order.execution_started_at == tick_at
        assert order.executed_at == tick_at

    @pytest.mark.asyncio
    async def test_non_retryable_fails_first_time(self, store):
        await store.create(make_order())
        executor = FakeExecutor(SwapFailure(kind=SwapFailureKind.INSUFFICIENT_FUNDS, message="no funds"))

        report = await make_scheduler(store, executor=executor).run_tick()

        assert report.failed == ["order_1"]
        order = await store.get("order_1")
        assert order.status == OrderStatus.FAILED
        assert order.retry_count == 0

    @pytest.mark.asyncio
    async def test_execution_timeout_is_terminal(self, store):
        await store.create(make_order())
        executor = FakeExecutor(delay=1.0)

        report = await make_scheduler(store, executor=executor, execution_timeout_seconds=0.05).run_tick()

        assert report.failed == ["order_1"]
        order = await store.get("order_1")
        assert order.failure_kind == SwapFailureKind.NETWORK_ERROR
        assert "outcome unknown" in order.failure_reason

    @pytest.mark.asyncio
    async def test_executor_exception_classified(self, store):
        await store.create(make_order())
        executor = FakeExecutor(RuntimeError("insufficient balance for transfer"))

        await make_scheduler(store, executor=executor).run_tick()

        order = await store.get("order_1")
        assert order.status == OrderStatus.FAILED
        assert order.failure_kind == SwapFailureKind.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_one_failing_order_does_not_affect_others(self, store):
        await store.create(make_order("a"))
        await store.create(make_order("b"))

        async def explode_on_a(order):
            if order.id == "a":
                raise RuntimeError("insufficient funds")

        report = await make_scheduler(store, executor=FakeExecutor(hook=explode_on_a)).run_tick()

        assert report.failed == ["a"]
        assert report.executed == ["b"]


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_two_schedulers_execute_once(self):
        store = BarrierStore(parties=2)
        await store.create(make_order())
        executor = FakeExecutor(delay=0.01)
        first = make_scheduler(store, executor=executor, name="first")
        second = make_scheduler(store, executor=executor, name="second")

        reports = await asyncio.gather(first.run_tick(), second.run_tick())

        assert executor.calls == ["order_1"]
        assert sum(len(r.executed) for r in reports) == 1
        assert sum(len(r.conflicts) for r in reports) == 1
        assert (await store.get("order_1")).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, store):
        await store.create(make_order())
        entered = asyncio.Event()
        release = asyncio.Event()

        async def block(order):
            entered.set()
            await release.wait()

        executor = FakeExecutor(hook=block)
        scheduler = make_scheduler(store, executor=executor)

        running = asyncio.create_task(scheduler.run_tick())
        await entered.wait()
        overlapping = await scheduler.run_tick()
        release.set()
        finished = await running

        assert overlapping.skipped_reason == "overlap"
        assert finished.executed == ["order_1"]
        assert executor.calls == ["order_1"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, store):
        for i in range(6):
            await store.create(make_order(f"order_{i}"))
        in_flight = 0
        peak = 0

        async def track(order):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        report = await make_scheduler(store, executor=FakeExecutor(hook=track), max_concurrency=2).run_tick()

        assert len(report.executed) == 6
        assert peak == 2


# =============================================================================
# Notifications and cancellation
# =============================================================================


class TestNotificationsAndCancel:
    @pytest.mark.asyncio
    async def test_notification_failure_keeps_transition(self, store):
        await store.create(make_order())

        report = await make_scheduler(store, sink=BrokenSink()).run_tick()

        assert report.executed == ["order_1"]
        assert (await store.get("order_1")).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_slow_notification_is_bounded(self, store):
        await store.create(make_order())

        report = await asyncio.wait_for(make_scheduler(store, sink=HangingSink()).run_tick(), timeout=2)

        assert report.executed == ["order_1"]

    @pytest.mark.asyncio
    async def test_cancel_during_execution_then_retryable_failure(self, store):
        await store.create(make_order())

        async def cancel_midway(order):
            await store.cancel(order.id, NOW)

        executor = FakeExecutor(NETWORK_FAILURE, hook=cancel_midway)
        report = await make_scheduler(store, executor=executor).run_tick()

        assert report.cancelled == ["order_1"]
        assert (await store.get("order_1")).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_execution_does_not_undo_swap(self, store):
        await store.create(make_order())

        async def cancel_midway(order):
            await store.cancel(order.id, NOW)

        report = await make_scheduler(store, executor=FakeExecutor(hook=cancel_midway)).run_tick()

        assert report.executed == ["order_1"]
        order = await store.get("order_1")
        assert order.status == OrderStatus.EXECUTED
        assert order.cancel_requested


# =============================================================================
# Lifecycle and status
# =============================================================================


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        await store.create(make_order())
        scheduler = make_scheduler(store, interval_seconds=0.05)

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(100):
            if (await store.get("order_1")).status == OrderStatus.EXECUTED:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.is_running
        assert (await store.get("order_1")).status == OrderStatus.EXECUTED
        assert scheduler.last_report is not None

    @pytest.mark.asyncio
    async def test_status_shape(self, store):
        await store.create(make_order())
        scheduler = make_scheduler(store)
        await scheduler.run_now()

        status = scheduler.status()

        executor = status["executor"]
        assert executor["isRunning"] is False
        assert executor["executionStats"]["totalExecutions"] == 1
        assert executor["executionStats"]["successfulExecutions"] == 1
        assert executor["systemHealth"]["databaseConnected"] is True
        assert executor["systemHealth"]["priceDataAvailable"] is True

        monitor = status["priceMonitor"]
        assert monitor["pair"] == "XFI/USDT"
        assert monitor["lastPrice"] == "0.075"
        assert monitor["totalChecks"] == 1
        assert monitor["executedOrders"] == 1
        assert "timestamp" in status

    @pytest.mark.asyncio
    async def test_report_serializes(self, store):
        await store.create(make_order())
        report = await make_scheduler(store).run_tick()

        data = report.to_dict()
        assert data["price"] == "0.075"
        assert data["executed"] == ["order_1"]
        assert data["skippedReason"] is None
