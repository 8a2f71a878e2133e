"""
In-memory TTL cache for short-lived metadata lookups.

Used to avoid repeated queries against slower stores (e.g. per-user file listings).
Single-process only: each instance keeps its own entries, nothing is shared across servers.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from filevault.config import get_settings
from filevault.schemas.upload import CacheStatsResponse
from filevault.utils.periodic import PeriodicTask
from filevault.utils.prometheus_metrics import cache_evictions_total, cache_requests_total

logger = logging.getLogger("filevault.cache")


def user_files_cache_key(user_id: Any) -> str:
    """Cache key for a user's file listing."""
    return f"files:user:{user_id}"


@dataclass
class CacheItem:
    value: Any
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class CacheService:
    """
    Thread-safe TTL cache keyed by string.

    - 만료는 조회 시 지연 삭제되거나, 주기적 정리(cleanup)로 삭제됨
    - 조회해도 TTL은 연장되지 않음 (LRU touch 없음)
    - 어떤 연산도 예외를 던지지 않음: 없음/만료 모두 miss(None)
    """

    def __init__(
        self,
        default_ttl: float = 300,
        cleanup_interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, CacheItem] = {}
        self._cleanup_task = PeriodicTask("cache_cleanup", cleanup_interval, self.cleanup)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    async def start(self) -> None:
        """Start the periodic expiry sweep."""
        await self._cleanup_task.start()

    async def stop(self) -> None:
        """Stop the periodic expiry sweep."""
        await self._cleanup_task.stop()

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value for key, replacing any existing entry."""
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._store[key] = CacheItem(value=value, inserted_at=self._clock(), ttl=ttl)
        logger.debug("Cache set: %s (TTL: %ss)", key, ttl, extra={"event": "cache"})

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            item = self._store.get(key)
            if item is None:
                cache_requests_total.labels(result="miss").inc()
                return None
            if item.is_expired(self._clock()):
                # Expired – prune and return None
                del self._store[key]
                cache_requests_total.labels(result="miss").inc()
                cache_evictions_total.labels(reason="expired_read").inc()
                logger.debug("Cache expired and removed: %s", key, extra={"event": "cache"})
                return None
            cache_requests_total.labels(result="hit").inc()
            return item.value

    def has(self, key: str) -> bool:
        """Same freshness check as get, without returning the value."""
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return False
            if item.is_expired(self._clock()):
                del self._store[key]
                cache_evictions_total.labels(reason="expired_read").inc()
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            deleted = self._store.pop(key, None) is not None
        if deleted:
            logger.debug("Cache deleted: %s", key, extra={"event": "cache"})
        return deleted

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
        logger.info("Cache cleared", extra={"event": "cache"})

    def cleanup(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired_keys = [key for key, item in self._store.items() if item.is_expired(now)]
            for key in expired_keys:
                del self._store[key]
        if expired_keys:
            cache_evictions_total.labels(reason="sweep").inc(len(expired_keys))
            logger.debug(
                "Cache cleanup: removed %d expired items",
                len(expired_keys),
                extra={"event": "cache", "removed": len(expired_keys)},
            )
        return len(expired_keys)

    def get_stats(self) -> CacheStatsResponse:
        """
        Entry count and a coarse memory estimate.

        The estimate is the JSON-serialized size of all stored entries,
        not the real interpreter footprint. Values JSON cannot encode
        (tuple keys, self-referencing containers) fall back to repr length.
        """
        with self._lock:
            size = len(self._store)
            snapshot = [
                [key, {"data": item.value, "timestamp": item.inserted_at, "ttl": item.ttl}]
                for key, item in self._store.items()
            ]
        try:
            estimated = len(json.dumps(snapshot, default=str, skipkeys=True))
        except (TypeError, ValueError, RecursionError):
            estimated = sum(len(key) + len(repr(entry["data"])) for key, entry in snapshot)
        return CacheStatsResponse(size=size, memory_usage=f"{round(estimated / 1024)} KB")


@lru_cache()
def get_cache_service() -> CacheService:
    """Get the process-wide cache instance configured from settings."""
    settings = get_settings()
    return CacheService(
        default_ttl=settings.cache_default_ttl_seconds,
        cleanup_interval=settings.cache_cleanup_interval_seconds,
    )
