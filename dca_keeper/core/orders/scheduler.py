"""
DCA Scheduler

Fixed-interval loop that drives orders through their lifecycle:

    fetch price → list expired + active → expire → evaluate → acquire →
    execute → record → notify

Infrastructure failures (feed, store reads) skip the whole tick and leave
every order as it was. Failures inside one order's execution are converted
into a state transition and never affect the other orders of the tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ...config import settings
from ...logging_config import get_event_logger
from ..recovery.errors import (
    FeedUnavailable,
    InvalidTransitionError,
    OrderConflict,
    StoreUnavailable,
    SwapFailureKind,
    classify_error,
)
from ..recovery.retry import RetryConfig, retry_async
from .evaluator import TriggerEvaluator
from .executor import SwapExecutor
from .models import AssetPair, DCAOrder, OrderStatus, PricePoint, SwapFailure, SwapResult, SwapSuccess, utcnow
from .notifications import NotificationSink, OrderEvent, event_for
from .price_feed import PriceFeed
from .store import OrderStore

logger = logging.getLogger(__name__)
_slog = get_event_logger("dca.scheduler")


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


async def _collect(orders: AsyncIterator[DCAOrder]) -> List[DCAOrder]:
    return [order async for order in orders]


@dataclass
class TickReport:
    """What one tick did."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    price: Optional[PricePoint] = None
    skipped_reason: Optional[str] = None  # overlap | feed_unavailable | store_unavailable
    expired: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    acquired: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "price": str(self.price.price) if self.price else None,
            "skippedReason": self.skipped_reason,
            "expired": list(self.expired),
            "triggered": list(self.triggered),
            "acquired": list(self.acquired),
            "conflicts": list(self.conflicts),
            "executed": list(self.executed),
            "retried": list(self.retried),
            "failed": list(self.failed),
            "cancelled": list(self.cancelled),
            "errors": list(self.errors),
        }


@dataclass
class ExecutionStats:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_execution_seconds: float = 0.0

    @property
    def average_execution_time(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.total_execution_seconds / self.total_executions

    def record(self, result: SwapResult, duration_seconds: float) -> None:
        self.total_executions += 1
        self.total_execution_seconds += duration_seconds
        if isinstance(result, SwapSuccess):
            self.successful_executions += 1
        else:
            self.failed_executions += 1


class DCAScheduler:
    """
    Recurring evaluator and dispatcher for DCA orders.

    Each instance owns its overlap guard, so several schedulers (or tests)
    can run side by side; the store's acquisition keeps them from executing
    the same order twice.
    """

    def __init__(
        self,
        store: OrderStore,
        feed: PriceFeed,
        executor: SwapExecutor,
        sink: Optional[NotificationSink] = None,
        *,
        pair: Optional[AssetPair] = None,
        evaluator: Optional[TriggerEvaluator] = None,
        interval_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        store_timeout_seconds: Optional[float] = None,
        execution_timeout_seconds: Optional[float] = None,
        notification_timeout_seconds: Optional[float] = None,
        order_backoff: Optional[RetryConfig] = None,
        record_retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        name: str = "dca-scheduler",
    ) -> None:
        self.store = store
        self.feed = feed
        self.executor = executor
        self.sink = sink
        self.pair = pair or AssetPair(settings.dca_base_asset, settings.dca_quote_asset)
        self.evaluator = evaluator or TriggerEvaluator()
        self.name = name
        self._clock = clock

        self.interval_seconds = interval_seconds or settings.scheduler_interval_seconds
        self.max_concurrency = max_concurrency or settings.scheduler_max_concurrency
        self.store_timeout = store_timeout_seconds or settings.store_timeout_seconds
        self.notification_timeout = notification_timeout_seconds or settings.notification_timeout_seconds
        if execution_timeout_seconds is None:
            if isinstance(executor, SwapExecutor):
                bound = executor.max_duration_seconds
            else:
                bound = settings.execution_bound_seconds
            # Just past the executor's own deadlines, still inside the tick
            execution_timeout_seconds = bound + min(1.0, max(self.interval_seconds - bound, 0) / 2)
        self.execution_timeout = execution_timeout_seconds

        self._order_backoff = order_backoff or RetryConfig(
            initial_delay_seconds=settings.retry_backoff_initial_seconds,
            max_delay_seconds=settings.retry_backoff_max_seconds,
            jitter=settings.retry_backoff_jitter,
        )
        self._record_retry = record_retry or RetryConfig(
            max_attempts=3,
            initial_delay_seconds=0.5,
            max_delay_seconds=2.0,
        )

        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._running = False
        self._started_at: Optional[datetime] = None

        self._stats = ExecutionStats()
        self._total_ticks = 0
        self._tick_errors = 0
        self._executed_orders = 0
        self._last_tick_at: Optional[datetime] = None
        self._next_tick_at: Optional[datetime] = None
        self._last_price: Optional[PricePoint] = None
        self._last_error: Optional[str] = None
        self._store_reachable = True
        self._last_report: Optional[TickReport] = None

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._started_at = self._clock()
        self._wake.clear()
        logger.info(f"{self.name} starting: pair={self.pair} interval={self.interval_seconds}s")
        self._loop_task = asyncio.create_task(self._run_loop(), name=self.name)

    async def stop(self) -> None:
        """Stop the loop. An in-flight tick finishes first; no swap is cut off mid-submission."""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        logger.info(f"{self.name} stopping")
        if self._loop_task:
            await self._loop_task
            self._loop_task = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            tick_started = loop.time()
            try:
                await self.run_tick()
            except Exception as exc:  # noqa: BLE001
                self._tick_errors += 1
                self._last_error = str(exc)
                logger.error(f"{self.name} tick crashed: {exc}", exc_info=True)

            delay = max(self.interval_seconds - (loop.time() - tick_started), 0)
            self._next_tick_at = self._clock() + timedelta(seconds=delay)
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def run_now(self) -> TickReport:
        """Out-of-band tick through the same overlap guard."""
        return await self.run_tick()

    # ---------------------------
    # Tick
    # ---------------------------
    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        if self._tick_lock.locked():
            report = TickReport(started_at=now or self._clock(), skipped_reason="overlap")
            report.finished_at = report.started_at
            logger.debug(f"{self.name}: tick already running, skipping")
            return report

        async with self._tick_lock:
            report = await self._tick(now or self._clock())
            report.finished_at = self._clock()
            self._total_ticks += 1
            self._last_tick_at = report.started_at
            self._last_report = report
            _slog.info(
                "dca_tick_completed",
                scheduler=self.name,
                skipped_reason=report.skipped_reason,
                price=str(report.price.price) if report.price else None,
                expired=len(report.expired),
                triggered=len(report.triggered),
                executed=len(report.executed),
                retried=len(report.retried),
                failed=len(report.failed),
                conflicts=len(report.conflicts),
                errors=len(report.errors),
            )
            return report

    async def _tick(self, now: datetime) -> TickReport:
        report = TickReport(started_at=now)

        try:
            price = await self.feed.get_current_price(self.pair)
        except FeedUnavailable as e:
            self._tick_errors += 1
            self._last_error = str(e)
            logger.warning(f"{self.name}: price feed unavailable, skipping tick: {e}")
            report.skipped_reason = "feed_unavailable"
            return report
        report.price = price
        self._last_price = price

        try:
            expired = await asyncio.wait_for(_collect(self.store.list_expired(now)), timeout=self.store_timeout)
            active = await asyncio.wait_for(_collect(self.store.list_active(now)), timeout=self.store_timeout)
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            return self._store_down(report, e)
        self._store_reachable = True

        # Expiry before evaluation
        for order in expired:
            try:
                result = await asyncio.wait_for(self.store.expire(order.id, now), timeout=self.store_timeout)
            except InvalidTransitionError as e:
                logger.debug(f"Order {order.id} not expired: {e}")
                continue
            except (StoreUnavailable, asyncio.TimeoutError) as e:
                return self._store_down(report, e)
            if result.changed:
                report.expired.append(order.id)
                logger.info(f"Order {order.id} expired")
                await self._notify(event_for(result.order))

        partition = self.evaluator.partition(active, price, now)
        report.triggered = [o.id for o in partition.triggered]
        if partition.triggered:
            logger.info(
                f"{self.name}: {len(partition.triggered)} order(s) triggered at {price.price} {self.pair}"
            )

        semaphore = asyncio.Semaphore(self.max_concurrency)
        await asyncio.gather(
            *(self._process_order(order, price, now, report, semaphore) for order in partition.triggered)
        )
        return report

    def _store_down(self, report: TickReport, error: Exception) -> TickReport:
        self._tick_errors += 1
        self._store_reachable = False
        self._last_error = str(error) or "store timed out"
        logger.warning(f"{self.name}: order store unavailable, skipping tick: {self._last_error}")
        report.skipped_reason = "store_unavailable"
        return report

    async def _process_order(
        self,
        order: DCAOrder,
        price: PricePoint,
        now: datetime,
        report: TickReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            try:
                await self._execute_order(order, price, now, report)
            except Exception as exc:  # noqa: BLE001
                report.errors.append(order.id)
                self._last_error = str(exc)
                logger.error(f"Order {order.id} processing failed: {exc}", exc_info=True)

    async def _execute_order(
        self,
        order: DCAOrder,
        price: PricePoint,
        now: datetime,
        report: TickReport,
    ) -> None:
        acquisition_id = uuid.uuid4().hex
        try:
            acquired = await asyncio.wait_for(
                self.store.try_acquire_for_execution(order.id, now, acquisition_id=acquisition_id),
                timeout=self.store_timeout,
            )
        except OrderConflict as e:
            # Another worker or tick owns it
            logger.debug(f"Order {order.id} not acquired: {e.reason}")
            report.conflicts.append(order.id)
            return
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            # The write may have landed without an acknowledgment
            logger.warning(f"Acquire of order {order.id} unconfirmed: {str(e) or 'timed out'}")
            report.errors.append(order.id)
            await self._release_unacknowledged(order.id, acquisition_id, now)
            return
        report.acquired.append(order.id)

        _slog.info("dca_order_acquired", order_id=order.id, attempt=acquired.retry_count + 1)

        started = time.time()
        try:
            result = await asyncio.wait_for(
                self.executor.execute(acquired, price),
                timeout=self.execution_timeout,
            )
        except asyncio.TimeoutError:
            result = SwapFailure(
                kind=SwapFailureKind.NETWORK_ERROR,
                message=f"Execution exceeded {self.execution_timeout}s; outcome unknown",
                retryable_override=False,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Executor raised for order {order.id}: {exc}", exc_info=True)
            result = SwapFailure(kind=classify_error(exc), message=str(exc) or type(exc).__name__)
        self._stats.record(result, time.time() - started)

        retry_delay = 0.0
        if isinstance(result, SwapFailure) and self._order_backoff.initial_delay_seconds > 0:
            retry_delay = self._order_backoff.get_delay(acquired.retry_count)

        async def record():
            return await asyncio.wait_for(
                self.store.record_execution_result(
                    order.id,
                    result,
                    acquired_version=acquired.acquired_version,
                    now=now,
                    retry_delay_seconds=retry_delay,
                ),
                timeout=self.store_timeout,
            )

        try:
            transition = await retry_async(
                record,
                config=self._record_retry,
                retry_on=(StoreUnavailable, asyncio.TimeoutError),
                description=f"Recording result for order {order.id}",
            )
        except (StoreUnavailable, asyncio.TimeoutError):
            tx_hash = getattr(result, "tx_hash", None)
            logger.error(
                f"Could not record result for order {order.id} (tx={tx_hash}); "
                f"order stays EXECUTING until an operator resolves it"
            )
            raise

        updated = transition.order
        if not transition.changed:
            logger.debug(f"Result for order {order.id} already recorded")
            return

        if updated.status == OrderStatus.EXECUTED:
            report.executed.append(order.id)
            self._executed_orders += 1
            _slog.info(
                "dca_order_executed",
                order_id=order.id,
                tx_hash=updated.transaction_hash,
                executed_price=str(updated.executed_price),
            )
        elif updated.status == OrderStatus.ACTIVE:
            report.retried.append(order.id)
            _slog.info(
                "dca_order_retry_scheduled",
                order_id=order.id,
                retry_count=updated.retry_count,
                max_retries=updated.max_retries,
                next_attempt_at=_iso(updated.next_attempt_at),
            )
        elif updated.status == OrderStatus.FAILED:
            report.failed.append(order.id)
            _slog.warning("dca_order_failed", order_id=order.id, reason=updated.failure_reason)
        elif updated.status == OrderStatus.CANCELLED:
            report.cancelled.append(order.id)
            _slog.info("dca_order_cancelled", order_id=order.id, deferred=True)

        await self._notify(event_for(updated))

    async def _release_unacknowledged(self, order_id: str, acquisition_id: str, now: datetime) -> None:
        """
        Undo an acquisition whose write was never acknowledged.

        Nothing was submitted for it, so handing the order back to ACTIVE is
        safe; the release only matches this worker's ``acquisition_id``.
        """
        async def release():
            return await asyncio.wait_for(
                self.store.release(order_id, acquisition_id, now),
                timeout=self.store_timeout,
            )

        try:
            result = await retry_async(
                release,
                config=self._record_retry,
                retry_on=(StoreUnavailable, asyncio.TimeoutError),
                description=f"Releasing order {order_id}",
            )
        except (StoreUnavailable, asyncio.TimeoutError, OrderConflict) as e:
            logger.error(
                f"Could not release order {order_id} after an unconfirmed acquire: {str(e) or 'timed out'}; "
                f"no swap was submitted for acquisition {acquisition_id}"
            )
            return

        if result.changed:
            _slog.info("dca_order_released", order_id=order_id, status=result.order.status.value)
            if result.order.status == OrderStatus.CANCELLED:
                await self._notify(event_for(result.order))

    async def _notify(self, event: Optional[OrderEvent]) -> None:
        """Best-effort delivery; never affects the committed transition."""
        if self.sink is None or event is None:
            return
        try:
            await asyncio.wait_for(self.sink.notify(event), timeout=self.notification_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Notification {event.event_type.value} for {event.order_id} timed out")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Notification {event.event_type.value} for {event.order_id} failed: {exc}")

    # ---------------------------
    # Introspection
    # ---------------------------
    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        uptime = None
        if self._started_at and self._running:
            uptime = str(timedelta(seconds=int((now - self._started_at).total_seconds())))
        last_price = self._last_price or self.feed.last_price(self.pair)

        return {
            "executor": {
                "isRunning": self._running,
                "startTime": _iso(self._started_at),
                "uptime": uptime,
                "executionStats": {
                    "totalExecutions": self._stats.total_executions,
                    "successfulExecutions": self._stats.successful_executions,
                    "failedExecutions": self._stats.failed_executions,
                    "averageExecutionTime": round(self._stats.average_execution_time, 3),
                },
                "systemHealth": {
                    "priceDataAvailable": self.feed.is_fresh(self.pair),
                    "databaseConnected": self._store_reachable,
                    "lastError": self._last_error,
                },
            },
            "priceMonitor": {
                "isRunning": self._running,
                "pair": str(self.pair),
                "lastCheck": _iso(self._last_tick_at),
                "lastPrice": str(last_price.price) if last_price else None,
                "totalChecks": self._total_ticks,
                "executedOrders": self._executed_orders,
                "errors": self._tick_errors,
                "nextCheck": _iso(self._next_tick_at) if self._running else None,
            },
            "timestamp": _iso(datetime.now(timezone.utc)),
        }
