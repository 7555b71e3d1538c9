from typing import Any, Dict, Optional

import httpx

from ..config import settings
from .base import ReceiptProvider


class RpcError(Exception):
    """JSON-RPC call failed"""
    pass


class JsonRpcReceiptProvider(ReceiptProvider):
    """Reads receipts with eth_getTransactionReceipt over JSON-RPC"""

    name = "rpc"
    timeout_s = 10

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url or settings.rpc_url
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client = http_client
        self._request_id = 0

    async def _call(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            if self._client is not None:
                response = await self._client.post(self.rpc_url, json=payload, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.rpc_url, json=payload, timeout=self.timeout_s)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RpcError(f"{method} failed: {e}") from e

        data = response.json()
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(f"{method} error: {message}")
        return data.get("result")

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "unavailable", "reason": "RPC_URL not configured"}
        try:
            block = await self._call("eth_blockNumber", [])
            return {"status": "healthy", "block": int(block, 16)}
        except Exception as e:
            return {"status": "error", "reason": str(e)}

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])


def receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    """EIP-658 status: 0x1 success, 0x0 reverted."""
    status = receipt.get("status")
    if isinstance(status, str):
        return int(status, 16) == 1
    return bool(status)
