"""
HTTP client for the swap signing service.

The signing service holds the wallet keys and submits the swap transaction;
the keeper only hands it a SwapRequest and receives a transaction hash.
The idempotency key lets the service drop a duplicate submission of the
same attempt.
"""

from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..core.recovery.errors import (
    ContractRevertedError,
    InsufficientFundsError,
    NetworkError,
    RejectedError,
    SlippageExceededError,
    SwapError,
    classify_error,
)
from .base import SwapRequest, SwapSigner


_ERROR_CODES = {
    "INSUFFICIENT_FUNDS": InsufficientFundsError,
    "SLIPPAGE_EXCEEDED": SlippageExceededError,
    "CONTRACT_REVERTED": ContractRevertedError,
    "REJECTED": RejectedError,
    "NETWORK_ERROR": NetworkError,
}


class HttpSwapSigner(SwapSigner):
    """Submits swaps through the signing service REST API"""

    name = "swap_signer"
    timeout_s = 15

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.swap_signer_url).rstrip("/")
        self.api_key = settings.swap_signer_api_key if api_key is None else api_key
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client = http_client

    def _build_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs)

    async def ready(self) -> bool:
        return bool(self.base_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "unavailable", "reason": "SWAP_SIGNER_URL not configured"}
        try:
            response = await self._request("GET", "/health", headers=self._build_headers())
            response.raise_for_status()
            return {"status": "healthy", "latency_ms": int(response.elapsed.total_seconds() * 1000)}
        except Exception as e:
            return {"status": "error", "reason": str(e)}

    async def submit_swap(self, request: SwapRequest) -> str:
        try:
            response = await self._request(
                "POST",
                "/swaps",
                json=request.to_dict(),
                headers=self._build_headers(request.idempotency_key),
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Nothing reached the service; safe to try again later
            raise NetworkError(f"Signing service unreachable: {e}") from e
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Swap submission timed out, outcome unknown: {e}",
                retryable=False,
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Swap submission failed: {e}") from e

        if response.status_code >= 400:
            raise self._to_swap_error(response)

        # Accepted from here on: an unreadable answer must not lead to a resubmission
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(
                f"Signing service accepted the swap but returned an unreadable body: {e}",
                retryable=False,
            ) from e
        tx_hash = (data.get("txHash") or data.get("transactionHash")) if isinstance(data, dict) else None
        if not tx_hash:
            raise NetworkError("Signing service returned no transaction hash", retryable=False)
        return tx_hash

    def _to_swap_error(self, response: httpx.Response) -> SwapError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            code = str(error.get("code", "")).upper()
            message = error.get("message") or response.text
        else:
            code = ""
            message = str(error or response.text or f"HTTP {response.status_code}")

        if code == "CONTRACT_REVERTED":
            return ContractRevertedError(
                message,
                tx_hash=error.get("txHash") if isinstance(error, dict) else None,
                reason=error.get("reason") if isinstance(error, dict) else None,
            )
        if code in _ERROR_CODES:
            return _ERROR_CODES[code](message)

        if response.status_code in (401, 403):
            return RejectedError(f"Signing service refused request: {message}")
        if response.status_code == 429 or response.status_code >= 500:
            return NetworkError(f"Signing service error {response.status_code}: {message}")

        kind = classify_error(Exception(message))
        for cls in _ERROR_CODES.values():
            if cls.kind == kind:
                return cls(message)
        return NetworkError(message)
