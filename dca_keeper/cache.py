import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """In-memory cache whose entries stop being served once their TTL passes"""

    def __init__(self, default_ttl: float = 30, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (value, self._clock() + ttl)

    def is_fresh(self, key: str) -> bool:
        """Non-mutating freshness check"""
        entry = self._entries.get(key)
        return entry is not None and self._clock() <= entry[1]
