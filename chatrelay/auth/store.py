"""
Counter stores for the admission-control gate.

The limiter only needs three primitives, all of which Redis provides natively:
- incr(key) -> new count (atomic)
- expire(key, seconds)
- ttl(key) -> seconds (-1: no expiry, -2: missing)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from chatrelay.auth.config import RateLimitConfig, load_rate_limit_config

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    async def incr(self, key: str) -> int:
        """Atomically increment `key` (creating it at 1) and return the new count."""

    async def expire(self, key: str, seconds: int) -> None:
        """Set the key's expiry relative to now."""

    async def ttl(self, key: str) -> int:
        """Seconds until the key expires; -1 if it has no expiry, -2 if it does not exist."""


class RedisCounterStore:
    """
    Redis-backed counters (shared across every process serving requests).

    INCR is atomic server-side, so concurrent requests never lose an increment and the
    compare happens on the value Redis returned.
    """

    def __init__(self, client) -> None:  # type: ignore[no-untyped-def]
        self._client = client

    @classmethod
    def from_config(cls, cfg: RateLimitConfig) -> "RedisCounterStore":
        from redis.asyncio import Redis  # type: ignore[import-not-found]
        from redis.asyncio.retry import Retry  # type: ignore[import-not-found]
        from redis.backoff import ExponentialBackoff  # type: ignore[import-not-found]
        from redis.exceptions import ConnectionError as RedisConnectionError  # type: ignore[import-not-found]
        from redis.exceptions import TimeoutError as RedisTimeoutError  # type: ignore[import-not-found]

        # Back off 50ms, 100ms, ... capped at 2s between attempts.
        retry = Retry(ExponentialBackoff(cap=2.0, base=0.05), cfg.redis_max_retries)
        client = Redis.from_url(
            cfg.redis_url,
            password=cfg.redis_password,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client)

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(key))

    async def expire(self, key: str, seconds: int) -> None:
        await self._client.expire(key, int(seconds))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def ping(self) -> bool:
        return bool(await self._client.ping())


class InMemoryCounterStore:
    """
    Process-local counters with Redis semantics.

    Used for single-process deployments (RATE_LIMIT_BACKEND=memory) and tests.
    The clock is injectable so window boundaries can be tested deterministically.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._lock = asyncio.Lock()
        # key -> (count, expires_at_epoch or None)
        self._counters: Dict[str, Tuple[int, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[int, Optional[float]]]:
        cur = self._counters.get(key)
        if cur is None:
            return None
        _count, expires_at = cur
        if expires_at is not None and expires_at <= self._clock():
            del self._counters[key]
            return None
        return cur

    async def incr(self, key: str) -> int:
        async with self._lock:
            cur = self._live(key)
            count = (cur[0] if cur else 0) + 1
            self._counters[key] = (count, cur[1] if cur else None)
            return count

    async def expire(self, key: str, seconds: int) -> None:
        async with self._lock:
            cur = self._live(key)
            if cur is None:
                return
            self._counters[key] = (cur[0], self._clock() + int(seconds))

    async def ttl(self, key: str) -> int:
        async with self._lock:
            cur = self._live(key)
            if cur is None:
                return -2
            if cur[1] is None:
                return -1
            return max(0, int(round(cur[1] - self._clock())))


_cache_lock = asyncio.Lock()
_cached: Optional[CounterStore] = None
_cached_key: Optional[Tuple[str, str]] = None


async def get_counter_store_from_env() -> CounterStore:
    """
    Cached counter store from env.

    Env:
    - RATE_LIMIT_BACKEND (default: redis)
    - REDIS_URL (default: redis://localhost:6379)
    - REDIS_PASSWORD
    """
    global _cached, _cached_key

    cfg = load_rate_limit_config()
    key = (cfg.backend, cfg.redis_url)

    async with _cache_lock:
        if _cached is not None and _cached_key == key:
            return _cached
        if cfg.backend == "memory":
            logger.info("Rate limit counters: in-process memory store (not shared across replicas)")
            _cached = InMemoryCounterStore()
        else:
            _cached = RedisCounterStore.from_config(cfg)
        _cached_key = key
        return _cached
