"""
Price Feed

Caches the last successful upstream price per asset pair for a freshness
window. Callers either get a fresh price or ``FeedUnavailable``; a stale
price is never handed out for trading decisions.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ...cache import TTLCache
from ...config import settings
from ...providers.base import PriceProvider
from ..recovery.errors import FeedUnavailable
from .models import AssetPair, PricePoint, utcnow


logger = logging.getLogger(__name__)


@dataclass
class FeedStats:
    total_checks: int = 0
    cache_hits: int = 0
    upstream_fetches: int = 0
    upstream_errors: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalChecks": self.total_checks,
            "cacheHits": self.cache_hits,
            "upstreamFetches": self.upstream_fetches,
            "upstreamErrors": self.upstream_errors,
            "lastError": self.last_error,
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class PriceFeed:
    """Fresh-or-nothing price access over a PriceProvider."""

    def __init__(
        self,
        provider: PriceProvider,
        ttl_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.price_cache_ttl_seconds
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.price_fetch_timeout_seconds
        )
        self._cache = cache or TTLCache(default_ttl=self.ttl_seconds)
        self._fetch_lock = asyncio.Lock()
        self._last: Dict[str, PricePoint] = {}
        self.stats = FeedStats()

    async def get_current_price(self, pair: AssetPair) -> PricePoint:
        """
        Current price for ``pair``.

        Raises:
            FeedUnavailable: upstream failed, timed out or returned a
                non-positive price, and no fresh cached price exists.
        """
        key = str(pair)
        self.stats.total_checks += 1

        cached = self._cache.get(key)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached

        async with self._fetch_lock:
            # Another caller may have refreshed while we waited
            cached = self._cache.get(key)
            if cached is not None:
                self.stats.cache_hits += 1
                return cached

            self.stats.upstream_fetches += 1
            try:
                point = await asyncio.wait_for(self.provider.get_price(pair), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                self._record_error(f"timed out after {self.timeout_seconds}s")
                raise FeedUnavailable(f"Price fetch for {key} timed out", asset_pair=key) from e
            except Exception as e:
                self._record_error(str(e))
                raise FeedUnavailable(f"Price fetch for {key} failed: {e}", asset_pair=key) from e

            if point.price <= 0:
                self._record_error(f"non-positive price {point.price}")
                raise FeedUnavailable(f"Upstream returned non-positive price for {key}", asset_pair=key)

            self._cache.set(key, point)
            self._last[key] = point
            self.stats.last_success_at = utcnow()
            self.stats.last_error = None
            logger.debug(f"Price {key} = {point.price} from {point.source}")
            return point

    def is_fresh(self, pair: AssetPair) -> bool:
        return self._cache.is_fresh(str(pair))

    def last_price(self, pair: AssetPair) -> Optional[PricePoint]:
        """Last successful observation, fresh or not. For status reporting only."""
        return self._last.get(str(pair))

    def _record_error(self, message: str) -> None:
        self.stats.upstream_errors += 1
        self.stats.last_error = message
        logger.warning(f"Price feed upstream error: {message}")
