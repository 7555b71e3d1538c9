import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..core.orders.models import AssetPair, PricePoint
from .base import PriceProvider


class CoingeckoPriceProvider(PriceProvider):
    """Coingecko API provider for spot prices"""

    name = "coingecko"
    timeout_s = 10

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        asset_ids: Optional[Dict[str, str]] = None,
        quote_currencies: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = settings.coingecko_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.coingecko_base_url).rstrip("/")
        self.asset_ids = {k.upper(): v for k, v in (asset_ids or settings.coingecko_asset_ids).items()}
        self.quote_currencies = {
            k.upper(): v for k, v in (quote_currencies or settings.coingecko_quote_currencies).items()
        }
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client = http_client

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-CG-Demo-API-Key"] = self.api_key
        return headers

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(
                f"{self.base_url}{path}",
                headers=self._build_headers(),
                params=params,
                timeout=self.timeout_s,
            )
        async with httpx.AsyncClient() as client:
            return await client.get(
                f"{self.base_url}{path}",
                headers=self._build_headers(),
                params=params,
                timeout=self.timeout_s,
            )

    async def ready(self) -> bool:
        return True  # API key is optional for basic tier

    async def health_check(self) -> Dict[str, Any]:
        try:
            response = await self._get("/ping")
            response.raise_for_status()
            return {"status": "healthy", "latency_ms": int(response.elapsed.total_seconds() * 1000)}
        except Exception as e:
            return {"status": "error", "reason": str(e)}

    def _resolve(self, pair: AssetPair) -> tuple:
        coin_id = self.asset_ids.get(pair.base.upper())
        if not coin_id:
            raise ValueError(f"No Coingecko id configured for {pair.base}")
        vs_currency = self.quote_currencies.get(pair.quote.upper(), pair.quote.lower())
        return coin_id, vs_currency

    async def get_price(self, pair: AssetPair) -> PricePoint:
        """Spot price from /simple/price; decimals are parsed without going through float"""
        coin_id, vs_currency = self._resolve(pair)

        params = {
            "ids": coin_id,
            "vs_currencies": vs_currency,
            "include_last_updated_at": "true",
        }
        response = await self._get("/simple/price", params=params)
        response.raise_for_status()
        data = json.loads(response.text, parse_float=Decimal, parse_int=Decimal)

        coin = data.get(coin_id) or {}
        raw = coin.get(vs_currency)
        if raw is None:
            raise ValueError(f"Coingecko returned no {vs_currency} price for {coin_id}")

        try:
            price = Decimal(raw)
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"Unparseable price {raw!r} for {coin_id}") from e

        updated = coin.get("last_updated_at")
        if updated is not None:
            observed_at = datetime.fromtimestamp(int(updated), tz=timezone.utc)
        else:
            observed_at = datetime.now(timezone.utc)

        return PricePoint(price=price, observed_at=observed_at, source=self.name)
