"""
Order Store

Single source of truth for DCA orders and the only component allowed to
change an order's status.

Every mutation follows the same path: load the current snapshot, apply a
pure transition from ``transitions.py``, and persist it with a
compare-and-set on ``version``. A lost compare-and-set means another caller
committed first; the mutation reloads and re-applies, so two callers can
never both acquire the same order.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, List, Optional

from ..recovery.errors import OrderConflict, OrderNotFound
from . import transitions
from .models import DCAOrder, OrderStatus, SwapResult, TransitionResult, utcnow


logger = logging.getLogger(__name__)

Mutation = Callable[[DCAOrder], TransitionResult]


class OrderStore(ABC):
    """
    Abstract order store.

    Backends implement loading, compare-and-set and listing primitives;
    the lifecycle operations are shared.
    """

    # Reload-and-reapply attempts before a contended mutation gives up
    max_cas_attempts: int = 5

    # =========================================================================
    # Backend primitives
    # =========================================================================

    @abstractmethod
    async def create(self, order: DCAOrder) -> DCAOrder:
        """Persist a new order."""

    @abstractmethod
    async def _load(self, order_id: str) -> DCAOrder:
        """Load the current snapshot or raise OrderNotFound."""

    @abstractmethod
    async def _compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        new_order: DCAOrder,
    ) -> bool:
        """Store ``new_order`` only if the stored version equals ``expected_version``."""

    @abstractmethod
    def _iter_status(self, status: OrderStatus) -> AsyncIterator[DCAOrder]:
        """Iterate every order currently in ``status``."""

    @abstractmethod
    async def list_by_owner(
        self,
        owner_id: str,
        status: Optional[OrderStatus] = None,
    ) -> List[DCAOrder]:
        """All orders of one owner, newest first."""

    async def close(self) -> None:
        pass

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, order_id: str) -> DCAOrder:
        return await self._load(order_id)

    async def list_active(self, now: Optional[datetime] = None) -> AsyncIterator[DCAOrder]:
        """
        ACTIVE orders that are not expired and whose retry backoff has passed.

        Lazy and restartable: every call starts a fresh read. Takes no locks;
        callers must still acquire before executing.
        """
        now = now or utcnow()
        async for order in self._iter_status(OrderStatus.ACTIVE):
            if order.is_expired(now) or not order.is_due(now):
                continue
            yield order

    async def list_expired(self, now: Optional[datetime] = None) -> AsyncIterator[DCAOrder]:
        """ACTIVE orders past their ``expires_at``."""
        now = now or utcnow()
        async for order in self._iter_status(OrderStatus.ACTIVE):
            if order.is_expired(now):
                yield order

    async def list_stuck(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> List[DCAOrder]:
        """
        EXECUTING orders whose execution started longer ago than ``older_than``.

        These are left behind when a process dies between submission and
        recording. They are reported for operators and never resolved
        automatically, since the swap may have landed.
        """
        now = now or utcnow()
        stuck = []
        async for order in self._iter_status(OrderStatus.EXECUTING):
            started = order.execution_started_at or order.updated_at
            if now - started > older_than:
                stuck.append(order)
        return stuck

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _mutate(self, order_id: str, mutation: Mutation) -> TransitionResult:
        for attempt in range(self.max_cas_attempts):
            current = await self._load(order_id)
            result = mutation(current)
            if not result.changed:
                return result
            if await self._compare_and_set(order_id, current.version, result.order):
                return result
            logger.debug(
                f"Version conflict on order {order_id} (v{current.version}), "
                f"attempt {attempt + 1}/{self.max_cas_attempts}"
            )
        raise OrderConflict(order_id, "concurrent modification")

    async def try_acquire_for_execution(
        self,
        order_id: str,
        now: Optional[datetime] = None,
        acquisition_id: Optional[str] = None,
    ) -> DCAOrder:
        """
        Atomically move an order from ACTIVE to EXECUTING.

        Returns the acquired snapshot; its ``acquired_version`` identifies this
        acquisition when the outcome is recorded, and ``acquisition_id`` lets
        the caller find its claim again if the write was never acknowledged.

        Raises:
            OrderConflict: another caller holds it, or it is not acquirable.
        """
        now = now or utcnow()
        result = await self._mutate(
            order_id,
            lambda order: TransitionResult(order=transitions.acquire(order, now, acquisition_id), changed=True),
        )
        return result.order

    async def record_execution_result(
        self,
        order_id: str,
        result: SwapResult,
        acquired_version: Optional[int] = None,
        now: Optional[datetime] = None,
        retry_delay_seconds: float = 0,
    ) -> TransitionResult:
        """
        Record a swap outcome. Replaying an outcome is a no-op (``changed=False``).
        """
        now = now or utcnow()
        return await self._mutate(
            order_id,
            lambda order: transitions.apply_outcome(
                order,
                result,
                now,
                acquired_version=acquired_version,
                retry_delay_seconds=retry_delay_seconds,
            ),
        )

    async def release(
        self,
        order_id: str,
        acquisition_id: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Return an acquisition that never reached the executor to ACTIVE."""
        now = now or utcnow()
        return await self._mutate(order_id, lambda order: transitions.release(order, acquisition_id, now))

    async def cancel(self, order_id: str, now: Optional[datetime] = None) -> TransitionResult:
        now = now or utcnow()
        return await self._mutate(order_id, lambda order: transitions.cancel(order, now))

    async def expire(self, order_id: str, now: Optional[datetime] = None) -> TransitionResult:
        now = now or utcnow()
        return await self._mutate(order_id, lambda order: transitions.expire(order, now))


class InMemoryOrderStore(OrderStore):
    """
    Process-local store.

    Snapshots are deep-copied on the way in and out so callers only ever hold
    values. The compare-and-set runs under an asyncio lock.
    """

    def __init__(self):
        self._orders: Dict[str, DCAOrder] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: DCAOrder) -> DCAOrder:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    async def _load(self, order_id: str) -> DCAOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return copy.deepcopy(order)

    async def _compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        new_order: DCAOrder,
    ) -> bool:
        async with self._lock:
            stored = self._orders.get(order_id)
            if stored is None:
                raise OrderNotFound(order_id)
            if stored.version != expected_version:
                return False
            self._orders[order_id] = copy.deepcopy(new_order)
            return True

    async def _iter_status(self, status: OrderStatus) -> AsyncIterator[DCAOrder]:
        for order_id in list(self._orders):
            order = self._orders.get(order_id)
            if order is not None and order.status == status:
                yield copy.deepcopy(order)

    async def list_by_owner(
        self,
        owner_id: str,
        status: Optional[OrderStatus] = None,
    ) -> List[DCAOrder]:
        orders = [
            copy.deepcopy(o)
            for o in self._orders.values()
            if o.owner_id == owner_id and (status is None or o.status == status)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def __len__(self) -> int:
        return len(self._orders)
