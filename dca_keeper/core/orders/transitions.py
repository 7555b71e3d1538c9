"""
Order State Machine

Pure transition functions over order snapshots. Stores load an order, apply
one of these functions and persist the result with a compare-and-set on
``version``; nothing here performs I/O or mutates its input.

    ACTIVE ──acquire──> EXECUTING ──success──> EXECUTED
      │                    │ ├──retryable, retries left──> ACTIVE
      │                    │ ├──release (nothing submitted)──> ACTIVE
      │                    │ └──otherwise──> FAILED
      ├──cancel──> CANCELLED (EXECUTING: deferred until the outcome lands)
      └──expire──> EXPIRED
"""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

from ..recovery.errors import InvalidTransitionError, OrderConflict
from .models import (
    DCAOrder,
    OrderStatus,
    OrderTransition,
    SwapFailure,
    SwapResult,
    SwapSuccess,
    TransitionResult,
)


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.ACTIVE: frozenset({
        OrderStatus.EXECUTING,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    }),
    OrderStatus.EXECUTING: frozenset({
        OrderStatus.EXECUTED,
        OrderStatus.ACTIVE,     # Retry
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,  # Deferred cancel resolved by a retryable failure
    }),
    OrderStatus.EXECUTED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def validate_transition(from_status: OrderStatus, to_status: OrderStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status.value, to_status.value)


def _bump(order: DCAOrder, now: datetime, **changes) -> DCAOrder:
    """New snapshot with the next version; the input is left untouched."""
    return replace(
        order,
        version=order.version + 1,
        updated_at=now,
        transitions=list(order.transitions),
        **changes,
    )


def _advance(
    order: DCAOrder,
    to_status: OrderStatus,
    now: datetime,
    reason: Optional[str] = None,
    **changes,
) -> DCAOrder:
    validate_transition(order.status, to_status)
    updated = _bump(order, now, status=to_status, **changes)
    updated.transitions.append(
        OrderTransition(from_status=order.status, to_status=to_status, at=now, reason=reason)
    )
    return updated


def acquire(order: DCAOrder, now: datetime, acquisition_id: Optional[str] = None) -> DCAOrder:
    """
    Claim an order for execution (ACTIVE → EXECUTING).

    ``acquisition_id`` lets the caller recognise its own claim after an
    unacknowledged write; a random one is generated when omitted.

    Raises:
        OrderConflict: the order is not ACTIVE, already expired, or still
            waiting out a retry backoff.
    """
    if order.status != OrderStatus.ACTIVE:
        raise OrderConflict(order.id, f"status is {order.status.value}")
    if order.is_expired(now):
        raise OrderConflict(order.id, "expired")
    if not order.is_due(now):
        raise OrderConflict(order.id, "retry backoff pending")

    return _advance(
        order,
        OrderStatus.EXECUTING,
        now,
        reason=f"attempt {order.retry_count + 1}",
        execution_started_at=now,
        acquired_version=order.version + 1,
        acquisition_id=acquisition_id or uuid.uuid4().hex,
        next_attempt_at=None,
    )


def apply_outcome(
    order: DCAOrder,
    result: SwapResult,
    now: datetime,
    acquired_version: Optional[int] = None,
    retry_delay_seconds: float = 0,
) -> TransitionResult:
    """
    Record a swap outcome for an EXECUTING order.

    Replays are no-ops: a terminal order, an order that is no longer
    EXECUTING, or one re-acquired since ``acquired_version`` was issued is
    returned unchanged with ``changed=False``.
    """
    if order.is_terminal or order.status != OrderStatus.EXECUTING:
        return TransitionResult(order=order, changed=False)
    if acquired_version is not None and order.acquired_version != acquired_version:
        return TransitionResult(order=order, changed=False)

    if isinstance(result, SwapSuccess):
        updated = _advance(
            order,
            OrderStatus.EXECUTED,
            now,
            reason="swap submitted" if not result.confirmed else "swap confirmed",
            executed_at=now,
            executed_price=result.executed_price,
            transaction_hash=result.tx_hash,
            amount_out=result.amount_out,
            failure_reason=None,
            failure_kind=None,
        )
        return TransitionResult(order=updated, changed=True)

    if not isinstance(result, SwapFailure):
        raise TypeError(f"Unsupported swap result: {type(result).__name__}")

    # A reverted transaction keeps its hash in the audit trail only
    tx_note = f" (tx {result.tx_hash})" if result.tx_hash else ""

    if result.retryable and order.retry_count < order.max_retries:
        retry_count = order.retry_count + 1
        if order.cancel_requested:
            updated = _advance(
                order,
                OrderStatus.CANCELLED,
                now,
                reason=f"cancel requested during execution: {result.kind.value}{tx_note}",
                last_error=result.message,
            )
            return TransitionResult(order=updated, changed=True)

        next_attempt_at = None
        if retry_delay_seconds > 0:
            next_attempt_at = now + timedelta(seconds=retry_delay_seconds)
        updated = _advance(
            order,
            OrderStatus.ACTIVE,
            now,
            reason=f"retry {retry_count}/{order.max_retries}: {result.kind.value}{tx_note}",
            retry_count=retry_count,
            last_error=result.message,
            next_attempt_at=next_attempt_at,
        )
        return TransitionResult(order=updated, changed=True)

    if result.retryable:
        reason = f"retries exhausted ({order.max_retries}): {result.message}"
    else:
        reason = result.message
    updated = _advance(
        order,
        OrderStatus.FAILED,
        now,
        reason=f"{result.kind.value}{tx_note}",
        failure_reason=reason,
        failure_kind=result.kind,
        last_error=result.message,
    )
    return TransitionResult(order=updated, changed=True)


def release(order: DCAOrder, acquisition_id: str, now: datetime) -> TransitionResult:
    """
    Hand an acquisition back (EXECUTING → ACTIVE) when no swap was submitted.

    Only the claim identified by ``acquisition_id`` can be released; anything
    else is returned unchanged. The retry budget is not touched. A cancel
    requested in the meantime is applied instead.
    """
    if order.status != OrderStatus.EXECUTING or order.acquisition_id != acquisition_id:
        return TransitionResult(order=order, changed=False)

    if order.cancel_requested:
        updated = _advance(order, OrderStatus.CANCELLED, now, reason="cancel requested during execution")
        return TransitionResult(order=updated, changed=True)

    updated = _advance(
        order,
        OrderStatus.ACTIVE,
        now,
        reason="released before submission",
        execution_started_at=None,
        acquired_version=None,
        acquisition_id=None,
    )
    return TransitionResult(order=updated, changed=True)


def cancel(order: DCAOrder, now: datetime) -> TransitionResult:
    """
    Cancel an order.

    ACTIVE orders are cancelled immediately. EXECUTING orders are flagged and
    resolved when their outcome is recorded; the in-flight swap is never
    interrupted.
    """
    if order.status == OrderStatus.CANCELLED:
        return TransitionResult(order=order, changed=False)

    if order.status == OrderStatus.EXECUTING:
        if order.cancel_requested:
            return TransitionResult(order=order, changed=False)
        return TransitionResult(order=_bump(order, now, cancel_requested=True), changed=True)

    updated = _advance(order, OrderStatus.CANCELLED, now, reason="cancelled by owner")
    return TransitionResult(order=updated, changed=True)


def expire(order: DCAOrder, now: datetime) -> TransitionResult:
    """Expire an ACTIVE order whose ``expires_at`` has passed."""
    if order.status == OrderStatus.EXPIRED:
        return TransitionResult(order=order, changed=False)

    validate_transition(order.status, OrderStatus.EXPIRED)
    if not order.is_expired(now):
        raise InvalidTransitionError(
            order.status.value,
            OrderStatus.EXPIRED.value,
            f"Order {order.id} has not reached its expiry",
        )

    updated = _advance(order, OrderStatus.EXPIRED, now, reason="past expiresAt")
    return TransitionResult(order=updated, changed=True)
