# cache manager - the caching api the rest of the app uses
# reads:  cached → instant return
#         missing / expired / backend down → None (caller fetches fresh)
# writes: best-effort, a failed write never fails the caller

import asyncio
import functools
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar, Union

from pydantic import BaseModel

from service import cache_keys
from service.cache_keys import CacheTTL
from service.cache_store import CacheStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

class CacheStats:
    """hit/miss/error counters for one cache manager"""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.errors = 0

    def hit_rate(self) -> float:
        """
        cache hit rate as percentage (0-100)
        """
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def as_dict(self) -> Dict[str, Union[int, float]]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate(), 2),
        }

def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return obj

class CacheManager:
    """
    fail-soft cache on top of a CacheStore

    a manager without a store is a disabled cache: every read misses and
    every write is a no-op, so callers never need to check
    """

    def __init__(self, store: Optional[CacheStore], single_flight: bool = False):
        """
        args:
            store: backend opened at process start (None = cache disabled)
            single_flight: share one upstream fetch between concurrent
                           callers that miss on the same key
        """
        self.store = store
        self.single_flight = single_flight
        self.stats = CacheStats()
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def enabled(self) -> bool:
        return self.store is not None

    @property
    def backend_name(self) -> str:
        return self.store.name if self.store is not None else "disabled"

    async def get(self, key: str) -> Optional[Any]:
        """
        get a value from cache

        returns:
            decoded value, or None on miss, expiry, backend error or
            undecodable payload (never raises)
        """
        if self.store is None:
            return None
        try:
            raw = await self.store.get(key)
        except Exception as e:
            self.stats.errors += 1
            logger.error("cache get error for %s: %s", key, e)
            return None

        if raw is None:
            self.stats.misses += 1
            logger.debug("cache miss: %s", key)
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.stats.errors += 1
            logger.error("cache payload for %s is not valid json: %s", key, e)
            return None

        self.stats.hits += 1
        logger.debug("cache hit: %s", key)
        return value

    async def set(self, key: str, value: Any, ttl: int = CacheTTL.MEDIUM) -> None:
        """
        store a value with a ttl (best-effort)

        args:
            key: cache key
            value: anything json-serializable (pydantic models are dumped)
            ttl: seconds until expiry
        """
        if self.store is None:
            return
        try:
            payload = json.dumps(_to_jsonable(value), default=str).encode("utf-8")
            await self.store.set_with_expiry(key, payload, int(ttl))
            logger.debug("cache set: %s (ttl: %ss)", key, int(ttl))
        except Exception as e:
            self.stats.errors += 1
            logger.error("cache set error for %s: %s", key, e)

    async def delete(self, keys: Union[str, Iterable[str]]) -> None:
        """delete one key or many; an empty list does nothing"""
        if self.store is None:
            return
        key_list = [keys] if isinstance(keys, str) else list(keys)
        if not key_list:
            return
        try:
            await self.store.delete(*key_list)
            logger.debug("cache delete: %d keys", len(key_list))
        except Exception as e:
            self.stats.errors += 1
            logger.error("cache delete error: %s", e)

    async def delete_pattern(self, pattern: str) -> None:
        """delete every key matching a glob pattern"""
        if self.store is None:
            return
        try:
            deleted = await self.store.delete_by_pattern(pattern)
            if deleted:
                logger.debug("cache pattern delete: %s (%d keys)", pattern, deleted)
        except Exception as e:
            self.stats.errors += 1
            logger.error("cache pattern delete error for %s: %s", pattern, e)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: int = CacheTTL.MEDIUM
    ) -> T:
        """
        read-through: cached value if present, else fetch + cache + return

        errors raised by fetch_fn propagate to the caller; only the cache's
        own failures are swallowed. a None result is returned but not cached,
        so a record created upstream after a miss shows up on the next call.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        if not self.single_flight:
            return await self._fetch_and_store(key, fetch_fn, ttl)

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("joining in-flight fetch for %s", key)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch_and_store(key, fetch_fn, ttl))
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _fetch_and_store(self, key: str, fetch_fn: Callable[[], Awaitable[T]], ttl: int) -> T:
        value = await fetch_fn()
        if value is None:
            logger.debug("fetch for %s returned nothing, not caching", key)
            return value
        await self.set(key, value, ttl)
        return value

    async def invalidate_related(self, entity, entity_id: Optional[str]) -> None:
        """
        clear every cache entry derived from one entity

        args:
            entity: "customer", "company" or "expenses" (unknown kinds are ignored)
            entity_id: the record id (or email for customers)
        """
        if not entity_id:
            logger.debug("no id given for %s invalidation, skipping", entity)
            return
        patterns = cache_keys.patterns_for(entity, entity_id)
        if not patterns:
            logger.debug("no invalidation patterns registered for %r", entity)
            return
        for pattern in patterns:
            await self.delete_pattern(pattern)
        logger.info("invalidated %s cache for %s (%d patterns)",
                    cache_keys.parse_entity(entity).value, entity_id, len(patterns))

    @staticmethod
    def generate_hash(obj: Any) -> str:
        """
        stable md5 of a json-serializable object
        keys are sorted at every level, so {"a":1,"b":2} and {"b":2,"a":1}
        hash the same
        """
        payload = json.dumps(_to_jsonable(obj), sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def memoize_async(
        self,
        fn: Callable[..., Awaitable[T]],
        key_fn: Optional[Callable[..., str]] = None,
        ttl: int = CacheTTL.MEDIUM
    ) -> Callable[..., Awaitable[T]]:
        """
        wrap an async function so its results go through get_or_fetch

        args:
            fn: the async function to cache
            key_fn: builds the cache key from fn's arguments
                    (default: "<qualname>:<hash of args>")
            ttl: seconds to keep each result

        example:
            get_customer = cache.memoize_async(fetch_customer, cache_keys.customer_by_id, CacheTTL.HOUR)
        """
        def default_key(*args, **kwargs) -> str:
            return cache_keys.key_for(
                fn.__qualname__,
                self.generate_hash({"args": list(args), "kwargs": kwargs})
            )

        build_key = key_fn or default_key

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            key = build_key(*args, **kwargs)
            return await self.get_or_fetch(key, lambda: fn(*args, **kwargs), ttl)

        return wrapper

    async def ping(self) -> bool:
        if self.store is None:
            return False
        return await self.store.ping()

    async def purge_expired(self) -> int:
        if self.store is None:
            return 0
        try:
            return await self.store.purge_expired()
        except Exception as e:
            logger.error("cache purge error: %s", e)
            return 0

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()
