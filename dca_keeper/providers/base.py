from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from ..core.orders.models import AssetPair, PricePoint


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class PriceProvider(Provider):
    """Upstream source of spot prices"""

    @abstractmethod
    async def get_price(self, pair: AssetPair) -> PricePoint:
        """Current price of one base unit in quote units"""
        pass


@dataclass(frozen=True)
class SwapRequest:
    """What the signing service needs to build and submit one swap"""
    from_token: str
    to_token: str
    amount: Decimal
    min_received: Decimal
    signer: str
    idempotency_key: str
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "amount": str(self.amount),
            "minReceived": str(self.min_received),
            "signer": self.signer,
            "idempotencyKey": self.idempotency_key,
            "orderId": self.order_id,
        }


class SwapSigner(Provider):
    """Signed-transaction submission capability. The keeper never holds keys."""

    @abstractmethod
    async def submit_swap(self, request: SwapRequest) -> str:
        """Submit a swap and return its transaction hash; raise SwapError on failure"""
        pass


class ReceiptProvider(Provider):
    """Reads transaction receipts from a chain node"""

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt for a mined transaction, or None while it is pending"""
        pass
