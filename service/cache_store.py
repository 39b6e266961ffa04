# cache store adapters - thin async wrappers over the key-value backend
# the cache manager only ever talks to a CacheStore, so redis can be swapped
# for the in-memory store in tests or single-process dev

import asyncio
import fnmatch
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from service.config import Settings

logger = logging.getLogger(__name__)

# keys per DEL when clearing a pattern
DELETE_BATCH_SIZE = 500

class CacheStoreError(Exception):
    """backend could not be reached or the operation failed"""

class CacheStore(ABC):
    """interface every cache backend implements"""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """stored bytes, or None if absent/expired"""
        ...

    @abstractmethod
    async def set_with_expiry(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """store value, overwriting unconditionally"""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """delete keys; missing keys are fine"""
        ...

    @abstractmethod
    async def delete_by_pattern(self, pattern: str) -> int:
        """delete every key matching a glob, returns how many went"""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """health probe - False on any failure, never raises"""
        ...

    async def purge_expired(self) -> int:
        # backends with native expiry have nothing to sweep
        return 0

    async def close(self) -> None:
        pass

class RedisCacheStore(CacheStore):
    """
    redis-backed store (redis.asyncio)
    every backend error surfaces as CacheStoreError
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheStore":
        """
        build the process-wide client from config
        no connection is opened until the first command
        """
        timeouts = dict(
            socket_timeout=settings.cache_socket_timeout,
            socket_connect_timeout=settings.cache_connect_timeout,
        )
        if settings.redis_url:
            client = aioredis.Redis.from_url(settings.redis_url, **timeouts)
        else:
            client = aioredis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                password=settings.redis_password,
                db=settings.redis_db,
                **timeouts
            )
        return cls(client)

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CacheStoreError(f"redis GET {key} failed: {e}") from e

    async def set_with_expiry(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=int(ttl_seconds))
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CacheStoreError(f"redis SET {key} failed: {e}") from e

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client.delete(*keys)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CacheStoreError(f"redis DEL failed: {e}") from e

    async def delete_by_pattern(self, pattern: str) -> int:
        # SCAN instead of KEYS so a big keyspace doesn't block redis
        deleted = 0
        batch: List[bytes] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=DELETE_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= DELETE_BATCH_SIZE:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CacheStoreError(f"redis pattern delete {pattern} failed: {e}") from e
        return deleted

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning("redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("error closing redis client: %s", e)

class InMemoryCacheStore(CacheStore):
    """
    time-to-live store kept in process memory
    each entry remembers its own expiry; expired entries are dropped lazily
    on read or by purge_expired()
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        args:
            clock: seconds source, injectable so tests can fast-forward time
        """
        self._entries: Dict[str, Tuple[bytes, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                # expired - delete it
                del self._entries[key]
                return None
            return value

    async def set_with_expiry(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    async def delete_by_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    async def ping(self) -> bool:
        return True

    async def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        """live and not-yet-swept keys (useful for testing)"""
        with self._lock:
            return list(self._entries)

    def clear(self):
        """drop every entry, expired or not"""
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """entries held right now, including expired ones not yet swept"""
        with self._lock:
            return len(self._entries)

def create_cache_store(settings: Settings) -> Optional[CacheStore]:
    """
    pick the cache backend once at process start

    returns:
        a CacheStore, or None when caching is disabled/unconfigured
        (the app keeps serving, just without a cache)
    """
    backend = settings.cache_backend.lower()

    if backend == "memory":
        logger.info("using in-process memory cache")
        return InMemoryCacheStore()

    if backend == "redis":
        if not (settings.redis_url or settings.redis_host):
            logger.warning("REDIS_URL / REDIS_HOST not set - running without cache")
            return None
        return RedisCacheStore.from_settings(settings)

    if backend != "none":
        logger.warning("unknown cache backend %r - running without cache", settings.cache_backend)
    else:
        logger.info("cache disabled by configuration")
    return None
