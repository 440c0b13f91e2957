"""
Key-value cache used for short-lived secrets and counters.

Two interchangeable backends share one interface:

    cache.get(key)                           # decoded value or None
    cache.set(key, value, ttl_seconds)
    cache.delete(key)
    cache.clear_pattern("user-permissions:*")
    cache.increment_and_expire(key, window_seconds)  # post-increment count

RedisCache is the production backend. MemoryCache keeps everything in the
process and is only correct for a single worker (dev, tests).
"""

import fnmatch
import json
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

from redis import Redis

from crmgate.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
SWEEP_INTERVAL_SECONDS = 60


class Cache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear_pattern(self, pattern: str) -> int: ...

    def increment_and_expire(self, key: str, window_seconds: int) -> int: ...


class RedisCache:
    def __init__(self, client: Redis, key_prefix: str = "") -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "", socket_timeout: float = 5.0) -> "RedisCache":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Any:
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error("Failed to decode cached value for %s", key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def clear_pattern(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=self._key(pattern)))
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    def increment_and_expire(self, key: str, window_seconds: int) -> int:
        full_key = self._key(key)
        count = int(self.client.incr(full_key))
        # Window starts at the first hit; later hits never extend it.
        if count == 1:
            self.client.expire(full_key, window_seconds)
        return count

    def ping(self) -> None:
        self.client.ping()


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + SWEEP_INTERVAL_SECONDS

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def _sweep(self) -> None:
        # Called under the lock. Drops keys nobody reads again, e.g. stale login counters.
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        for key in [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]:
            del self._data[key]

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return raw

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._live(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        with self._lock:
            self._sweep()
            self._data[key] = (json.dumps(value), self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def increment_and_expire(self, key: str, window_seconds: int) -> int:
        with self._lock:
            self._sweep()
            raw = self._live(key)
            if raw is None:
                self._data[key] = ("1", self._clock() + window_seconds)
                return 1
            count = int(json.loads(raw)) + 1
            self._data[key] = (json.dumps(count), self._data[key][1])
            return count

    def ping(self) -> None:
        return None


def build_cache() -> RedisCache | MemoryCache:
    if settings.REDIS_URL:
        return RedisCache.from_url(settings.REDIS_URL, key_prefix=settings.CACHE_KEY_PREFIX or "")
    logger.warning("REDIS_URL not set; using in-process cache (single worker only)")
    return MemoryCache()
