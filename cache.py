"""Cache backends used by the cache-aside repositories."""

import logging
import threading
import time
from collections import OrderedDict
from typing import Dict, Optional

import redis

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """The cache backend could not complete an operation."""


class CacheStore:
    """Byte-oriented key/value cache with per-entry TTL."""

    name = "base"

    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None on a miss."""
        raise NotImplementedError

    def set(self, key: str, value: bytes, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class MemoryCache(CacheStore):
    """In-process cache with TTL expiry and LRU eviction."""

    name = "memory"

    def __init__(self, max_size: int = 10000):
        self._max_size = max_size
        self._store: "OrderedDict[str, bytes]" = OrderedDict()
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            if key not in self._store:
                return None
            if time.monotonic() >= self._expiry.get(key, float("inf")):
                del self._store[key]
                self._expiry.pop(key, None)
                return None
            self._store.move_to_end(key)
            return self._store[key]

    def set(self, key: str, value: bytes, ttl: int) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        with self._lock:
            if key in self._store:
                self._store.move_to_end(key)
            elif len(self._store) >= self._max_size:
                evicted, _ = self._store.popitem(last=False)
                self._expiry.pop(evicted, None)
            self._store[key] = value
            self._expiry[key] = time.monotonic() + ttl

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._expiry.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisCache(CacheStore):
    """Cache backed by a Redis server. Backend failures surface as CacheError."""

    name = "redis"

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.5) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise CacheError(f"GET {key}: {exc}") from exc

    def set(self, key: str, value: bytes, ttl: int) -> None:
        try:
            self._client.set(key, value, ex=ttl)
        except redis.RedisError as exc:
            raise CacheError(f"SET {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise CacheError(f"DEL {key}: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self._client.close()


def build_cache(url: str, socket_timeout: float = 0.5) -> CacheStore:
    """Create a cache from a URL: ``memory://`` or any redis-py URL."""
    if url.startswith("memory://"):
        logger.info("Using in-process memory cache")
        return MemoryCache()
    logger.info("Using redis cache at %s", url.split("@")[-1])
    return RedisCache.from_url(url, socket_timeout=socket_timeout)
