# keyshop/services/cache_service.py
"""
Cache and lock store.

Redis when ``REDIS_URL`` is configured, an in-process store otherwise.
Every caller treats the store as best-effort: an outage surfaces as
``CacheUnavailableError`` and must never abort checkout or a catalog sync.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

import redis

from keyshop.config import Config
from keyshop.errors import SyncInProgressError
from keyshop.observability.metrics import increment_counter

logger = logging.getLogger(__name__)

# Compare-and-delete in one round trip so a lock that expired and was taken
# over by another holder is never removed
_DELETE_IF_EQUALS_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class CacheUnavailableError(Exception):
    """The backing store could not be reached."""


class CacheStore:
    """Minimal string key/value interface with TTLs."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set only if absent; return whether the value was stored."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically delete ``key`` only while it holds ``value``."""
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class InMemoryCacheStore(CacheStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            entry = self._data.get(key)
            if entry is not None and not self._expired(entry[1]):
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            entry = self._data.get(key)
            if entry is None or self._expired(entry[1]) or entry[0] != value:
                return False
            del self._data[key]
            return True

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def ping(self) -> bool:
        return True


class RedisCacheStore(CacheStore):
    def __init__(self, url: str, client: Optional[redis.Redis] = None) -> None:
        self.url = url
        self._client = client or redis.Redis.from_url(
            url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2
        )

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            self._client.set(key, value, ex=ttl or None)
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        try:
            return bool(self._client.set(key, value, nx=True, ex=ttl or None))
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def delete_if_equals(self, key: str, value: str) -> bool:
        try:
            return bool(self._client.eval(_DELETE_IF_EQUALS_SCRIPT, 1, key, value))
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self._client.scan_iter(match=f"{prefix}*", count=500))
            if keys:
                self._client.delete(*keys)
            return len(keys)
        except redis.RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


def build_cache_store(url: Optional[str] = None) -> CacheStore:
    url = Config.REDIS_URL if url is None else url
    if url:
        logger.info("Using Redis cache store")
        return RedisCacheStore(url)
    logger.warning("REDIS_URL not set - using in-memory cache store (not shared between workers)")
    return InMemoryCacheStore()


_cache_store: Optional[CacheStore] = None
_cache_store_lock = threading.Lock()


def get_cache_store() -> CacheStore:
    global _cache_store
    with _cache_store_lock:
        if _cache_store is None:
            _cache_store = build_cache_store()
        return _cache_store


def invalidate_prefixes(cache: CacheStore, prefixes: Iterable[str]) -> int:
    """Best-effort prefix invalidation; returns the number of keys removed."""
    removed = 0
    for prefix in prefixes:
        try:
            removed += cache.delete_prefix(prefix)
        except CacheUnavailableError as exc:
            increment_counter("cache_errors_total", labels={"operation": "invalidate"})
            logger.warning(f"Cache invalidation failed for prefix {prefix!r}: {exc}")
    return removed


class CacheLock:
    """
    Named mutual-exclusion lock held in the cache store.

    The TTL bounds how long a crashed holder can block others. Release only
    deletes the key while it still carries this holder's token.
    """

    def __init__(self, cache: CacheStore, key: str, ttl: int) -> None:
        self.cache = cache
        self.key = key
        self.ttl = ttl
        self.token = uuid.uuid4().hex
        self.acquired = False

    def acquire(self) -> bool:
        try:
            self.acquired = self.cache.add(self.key, self.token, self.ttl)
        except CacheUnavailableError as exc:
            # Without a reachable store there is nothing to coordinate on
            increment_counter("cache_errors_total", labels={"operation": "lock_acquire"})
            logger.warning(f"Lock store unavailable, proceeding without {self.key}: {exc}")
            self.acquired = True
        return self.acquired

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        try:
            if not self.cache.delete_if_equals(self.key, self.token):
                logger.warning(f"Lock {self.key} expired before release; it is held by another owner or gone")
        except CacheUnavailableError as exc:
            increment_counter("cache_errors_total", labels={"operation": "lock_release"})
            logger.warning(f"Failed to release {self.key}; it expires after {self.ttl}s: {exc}")

    def is_held(self) -> bool:
        try:
            return self.cache.get(self.key) is not None
        except CacheUnavailableError:
            return False

    @contextmanager
    def hold(self) -> Iterator["CacheLock"]:
        if not self.acquire():
            raise SyncInProgressError()
        try:
            yield self
        finally:
            self.release()
