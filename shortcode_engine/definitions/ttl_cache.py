"""TTL cache for definition reads. Injected into the repository; one per engine."""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    In-memory key/value cache with per-entry expiry.

    Expired entries are evicted on access. The clock is injectable so tests
    can move time forward without sleeping.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: Dict[str, Tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            self.misses += 1
            logger.debug("Definition cache entry expired: %s", key)
            return None

        self.hits += 1
        return value

    def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._store[key] = (self._clock() + ttl, value)

    def invalidate(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        """Drop every entry."""
        self._store.clear()

    @property
    def size(self) -> int:
        return len(self._store)

    def stats(self) -> dict:
        return {"size": self.size, "hits": self.hits, "misses": self.misses,
                "ttl_seconds": self.ttl_seconds}
