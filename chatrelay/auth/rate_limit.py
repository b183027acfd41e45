from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from chatrelay.auth.config import RateLimitConfig, load_rate_limit_config
from chatrelay.auth.store import CounterStore, get_counter_store_from_env
from chatrelay.core.errors import AdmissionDenied, BackingStoreUnavailable, RateLimitScope

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    # Scope closest to exhaustion; None when admission was bypassed.
    scope: Optional[RateLimitScope] = None


def is_valid_address(address: str) -> bool:
    """True for a syntactically valid IPv4 or IPv6 address (no ports, no hostnames)."""
    try:
        ipaddress.ip_address((address or "").strip())
        return True
    except ValueError:
        return False


def counter_key(scope: RateLimitScope, identifier: str) -> str:
    return f"{KEY_PREFIX}:{scope}:{identifier}"


class DualScopeRateLimiter:
    """
    Fixed-window admission control keyed by caller address and caller identity.

    The two scopes use independent counters and quotas: an abusive address is throttled
    even when it rotates identities, and an abusive identity is throttled even when it
    rotates addresses.

    Counter lifecycle per key: unseen -> counting (window active) -> expired -> unseen.
    The window starts at the first increment and is never extended by later ones.
    """

    def __init__(
        self,
        store: CounterStore,
        config: RateLimitConfig,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._cfg = config
        self._clock = clock or time.time

    @property
    def config(self) -> RateLimitConfig:
        return self._cfg

    def _at(self, seconds_from_now: float) -> datetime:
        return datetime.fromtimestamp(self._clock() + seconds_from_now, tz=timezone.utc)

    def _window_reset(self) -> datetime:
        return self._at(self._cfg.window_seconds)

    async def _consume(self, scope: RateLimitScope, identifier: str, limit: int) -> Tuple[int, datetime]:
        """
        Increment one scope's counter and check it against `limit`.

        Returns (count, reset_time); raises AdmissionDenied on breach.
        """
        key = counter_key(scope, identifier)
        count = await self._store.incr(key)
        if count == 1:
            await self._store.expire(key, self._cfg.window_seconds)
            ttl = self._cfg.window_seconds
        else:
            ttl = await self._store.ttl(key)
            if ttl < 0:
                # Key without expiry (e.g. the process died between INCR and EXPIRE).
                # Re-arm it so the counter cannot become permanent.
                logger.warning("Rate limit counter %s had no expiry; re-arming window", key)
                await self._store.expire(key, self._cfg.window_seconds)
                ttl = self._cfg.window_seconds

        reset_time = self._at(ttl)
        if count > limit:
            raise AdmissionDenied(scope=scope, reset_time=reset_time, limit=limit)
        return count, reset_time

    async def admit(self, address: str, identity: Optional[str] = None) -> RateLimitResult:
        """
        Consult the gate once for a request.

        Raises:
            AdmissionDenied: address invalid, or either scope's quota exceeded.
            BackingStoreUnavailable: the counter store failed for any other reason.
        """
        addr = (address or "").strip()
        if not is_valid_address(addr):
            # Reject before touching the store; shaped like a quota breach so callers
            # uniformly treat it as "not admitted".
            raise AdmissionDenied(
                scope="address", reset_time=self._window_reset(), limit=self._cfg.address_max_requests
            )

        ident = (identity or "").strip() or None
        consulted: List[Tuple[RateLimitScope, int, datetime]] = []
        try:
            count, reset = await self._consume("address", addr, self._cfg.address_max_requests)
            consulted.append(("address", self._cfg.address_max_requests - count, reset))

            if ident is not None:
                count, reset = await self._consume("identity", ident, self._cfg.identity_max_requests)
                consulted.append(("identity", self._cfg.identity_max_requests - count, reset))
        except AdmissionDenied:
            raise
        except Exception as e:
            logger.error("Rate limit check failed: %s: %s", type(e).__name__, str(e)[:200])
            raise BackingStoreUnavailable(reset_time=self._window_reset(), cause=e) from e

        # Report whichever scope is closer to exhaustion (first one wins ties).
        scope, remaining, reset = min(consulted, key=lambda c: c[1])
        return RateLimitResult(allowed=True, remaining=max(0, remaining), reset_time=reset, scope=scope)


def admission_bypass(
    config: Optional[RateLimitConfig] = None, *, clock: Optional[Callable[[], float]] = None
) -> RateLimitResult:
    cfg = config or load_rate_limit_config()
    now = (clock or time.time)()
    return RateLimitResult(
        allowed=True,
        remaining=cfg.address_max_requests,
        reset_time=datetime.fromtimestamp(now + cfg.window_seconds, tz=timezone.utc),
        scope=None,
    )


# Global limiter instance
_global_rate_limiter: Optional[DualScopeRateLimiter] = None


async def get_rate_limiter() -> DualScopeRateLimiter:
    """Get global rate limiter instance (shared counter store from env)."""
    global _global_rate_limiter
    if _global_rate_limiter is None:
        store = await get_counter_store_from_env()
        _global_rate_limiter = DualScopeRateLimiter(store, load_rate_limit_config())
    return _global_rate_limiter


def reset_rate_limiter() -> None:
    """Drop the global instance (config reload, tests)."""
    global _global_rate_limiter
    _global_rate_limiter = None
