"""
Catalog Cache

Small in-process TTL cache for Square read calls, keyed by endpoint + params hash.
Expired entries are kept until cleanup so they can be served if a refresh fails.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union
import hashlib
import inspect
import json
import logging
import time

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class CatalogCache:
    """Time-boxed cache with stale-on-error fallback"""

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl if default_ttl is not None else settings.CATALOG_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    @staticmethod
    def make_key(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        digest = hashlib.sha256(
            json.dumps(params or {}, sort_keys=True, default=str).encode()
        ).hexdigest()[:16]
        return f"{endpoint}:{digest}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def get_or_compute(
        self,
        key: str,
        fetcher: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[float] = None,
        serve_stale: bool = True,
    ) -> Any:
        """
        Return the cached value for key, calling fetcher when missing or expired.

        If the fetcher fails and an expired entry exists, the stale value is returned
        unless serve_stale is False, in which case the error propagates.
        """
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            logger.debug("Cache hit for %s", key)
            return entry.value

        try:
            value = fetcher()
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            if entry is not None and serve_stale:
                logger.warning("Refresh of %s failed, serving stale data: %s", key, e)
                return entry.value
            raise

        ttl = ttl if ttl is not None else self.default_ttl
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
        return value

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key containing pattern"""
        keys = [key for key in self._entries if pattern in key]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("Invalidated %d cache entries matching '%s'", len(keys), pattern)
        return len(keys)

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


catalog_cache = CatalogCache()
