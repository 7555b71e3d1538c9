"""
Swap Executor

Turns one acquired order into a SwapResult. Swap-level problems never raise:
every failure comes back as a typed SwapFailure so the store can turn it into
a retry or a terminal FAILED.

Exclusive access is guaranteed upstream by the store's acquisition; the
executor does not lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from ...config import settings
from ...logging_config import get_event_logger
from ...providers.base import ReceiptProvider, SwapRequest, SwapSigner
from ...providers.rpc import receipt_succeeded
from ..recovery.errors import SwapError, SwapFailureKind, classify_error
from .models import DCAOrder, OrderDirection, PricePoint, SwapFailure, SwapResult, SwapSuccess

logger = logging.getLogger(__name__)
_slog = get_event_logger("dca.executor")

BPS_DENOMINATOR = Decimal("10000")
AMOUNT_QUANTUM = Decimal("1e-18")


def expected_out_amount(direction: OrderDirection, amount: Decimal, price: Decimal) -> Decimal:
    """Output at the reference price: BUY spends quote, SELL spends base."""
    if price <= 0:
        raise ValueError("Price must be positive")
    if direction == OrderDirection.BUY:
        return amount / price
    return amount * price


def min_received_amount(
    direction: OrderDirection,
    amount: Decimal,
    price: Decimal,
    slippage_bps: int,
) -> Decimal:
    """Expected output reduced by the slippage tolerance, rounded down."""
    if not 0 <= slippage_bps <= 10000:
        raise ValueError(f"Slippage out of range: {slippage_bps} bps")
    tolerance = (BPS_DENOMINATOR - Decimal(slippage_bps)) / BPS_DENOMINATOR
    return (expected_out_amount(direction, amount, price) * tolerance).quantize(
        AMOUNT_QUANTUM, rounding=ROUND_DOWN
    )


def expected_out(order: DCAOrder, price: Decimal) -> Decimal:
    return expected_out_amount(order.direction, order.from_amount, price)


def minimum_received(order: DCAOrder, price: Decimal) -> Decimal:
    return min_received_amount(order.direction, order.from_amount, price, order.max_slippage_bps)


def idempotency_key(order: DCAOrder) -> str:
    """Unique per attempt, so a retried attempt is never mistaken for a duplicate."""
    return f"{order.id}:{order.retry_count + 1}"


class SwapExecutor:
    """
    Executes swaps through a SwapSigner.

    Features:
    - Minimum received from price and slippage
    - Submission timeout (outcome unknown, never retried)
    - Optional on-chain confirmation via a ReceiptProvider
    """

    def __init__(
        self,
        signer: SwapSigner,
        receipts: Optional[ReceiptProvider] = None,
        require_confirmation: Optional[bool] = None,
        submission_timeout_seconds: Optional[float] = None,
        confirmation_timeout_seconds: Optional[float] = None,
        confirmation_poll_seconds: Optional[float] = None,
    ):
        self.signer = signer
        self.receipts = receipts
        self.require_confirmation = (
            settings.require_confirmation if require_confirmation is None else require_confirmation
        )
        self.submission_timeout_seconds = (
            submission_timeout_seconds
            if submission_timeout_seconds is not None
            else settings.swap_timeout_seconds
        )
        self.confirmation_timeout_seconds = (
            confirmation_timeout_seconds
            if confirmation_timeout_seconds is not None
            else settings.confirmation_timeout_seconds
        )
        self.confirmation_poll_seconds = (
            confirmation_poll_seconds
            if confirmation_poll_seconds is not None
            else settings.confirmation_poll_seconds
        )

        if self.require_confirmation and self.receipts is None:
            raise ValueError("require_confirmation needs a ReceiptProvider")

    @property
    def max_duration_seconds(self) -> float:
        """Upper bound on one execute() call."""
        total = self.submission_timeout_seconds
        if self.require_confirmation:
            total += self.confirmation_timeout_seconds
        return total

    def build_request(self, order: DCAOrder, price_point: PricePoint) -> SwapRequest:
        return SwapRequest(
            from_token=order.from_token,
            to_token=order.to_token,
            amount=order.from_amount,
            min_received=minimum_received(order, price_point.price),
            signer=order.owner_id,
            idempotency_key=idempotency_key(order),
            order_id=order.id,
        )

    async def execute(self, order: DCAOrder, price_point: PricePoint) -> SwapResult:
        """
        Submit the swap for ``order`` at ``price_point``.

        Returns SwapSuccess once the transaction hash is known (and the receipt
        succeeded, when confirmation is required), otherwise SwapFailure.
        """
        start_time = time.time()

        try:
            request = self.build_request(order, price_point)
        except (ValueError, ArithmeticError) as e:
            return SwapFailure(kind=SwapFailureKind.REJECTED, message=f"Invalid swap parameters: {e}")

        logger.info(
            f"Executing order {order.id}: {order.from_amount} {order.from_token} -> "
            f"{order.to_token} at {price_point.price} (min {request.min_received})"
        )
        _slog.info(
            "dca_swap_started",
            order_id=order.id,
            attempt=order.retry_count + 1,
            price=str(price_point.price),
            min_received=str(request.min_received),
        )

        try:
            tx_hash = await asyncio.wait_for(
                self.signer.submit_swap(request),
                timeout=self.submission_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = SwapFailure(
                kind=SwapFailureKind.NETWORK_ERROR,
                message=f"Swap submission timed out after {self.submission_timeout_seconds}s; outcome unknown",
                retryable_override=False,
            )
            return self._finish(order, result, start_time)
        except SwapError as e:
            result = SwapFailure(
                kind=e.kind,
                message=e.message or str(e),
                retryable_override=e.retryable,
                tx_hash=e.context.tx_hash,
            )
            return self._finish(order, result, start_time)
        except Exception as e:
            result = SwapFailure(kind=classify_error(e), message=str(e) or type(e).__name__)
            return self._finish(order, result, start_time)

        if not self.require_confirmation:
            result = SwapSuccess(tx_hash=tx_hash, executed_price=price_point.price)
            return self._finish(order, result, start_time)

        result = await self._await_confirmation(tx_hash, price_point)
        return self._finish(order, result, start_time)

    async def _await_confirmation(self, tx_hash: str, price_point: PricePoint) -> SwapResult:
        deadline = time.monotonic() + self.confirmation_timeout_seconds

        while True:
            try:
                receipt = await asyncio.wait_for(
                    self.receipts.get_receipt(tx_hash),
                    timeout=max(deadline - time.monotonic(), 0.01),
                )
            except asyncio.TimeoutError:
                receipt = None
            except Exception as e:
                logger.debug(f"Receipt lookup for {tx_hash} failed: {e}")
                receipt = None

            if receipt is not None:
                if receipt_succeeded(receipt):
                    return SwapSuccess(tx_hash=tx_hash, executed_price=price_point.price, confirmed=True)
                return SwapFailure(
                    kind=SwapFailureKind.CONTRACT_REVERTED,
                    message=f"Transaction {tx_hash} reverted",
                    tx_hash=tx_hash,
                )

            if time.monotonic() >= deadline:
                return SwapFailure(
                    kind=SwapFailureKind.NETWORK_ERROR,
                    message=f"No receipt for {tx_hash} within {self.confirmation_timeout_seconds}s",
                    retryable_override=False,
                    tx_hash=tx_hash,
                )

            await asyncio.sleep(min(self.confirmation_poll_seconds, max(deadline - time.monotonic(), 0)))

    def _finish(self, order: DCAOrder, result: SwapResult, start_time: float) -> SwapResult:
        duration_ms = int((time.time() - start_time) * 1000)
        if isinstance(result, SwapSuccess):
            logger.info(f"Swap submitted for order {order.id}: tx={result.tx_hash}")
            _slog.info(
                "dca_swap_submitted",
                order_id=order.id,
                tx_hash=result.tx_hash,
                confirmed=result.confirmed,
                duration_ms=duration_ms,
            )
        else:
            logger.warning(f"Swap failed for order {order.id}: {result.kind.value} - {result.message}")
            _slog.warning(
                "dca_swap_failed",
                order_id=order.id,
                kind=result.kind.value,
                retryable=result.retryable,
                error=result.message,
                duration_ms=duration_ms,
            )
        return result
