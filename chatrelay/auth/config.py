from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


@dataclass(frozen=True)
class RateLimitConfig:
    # Quotas per fixed window
    address_max_requests: int
    identity_max_requests: int
    window_seconds: int

    # Store failure policy: False = reject (503), True = admit with a synthetic quota.
    fail_open: bool

    # Counter store
    backend: str  # 'redis' | 'memory'
    redis_url: str
    redis_password: Optional[str]
    redis_max_retries: int


@lru_cache(maxsize=1)
def load_rate_limit_config() -> RateLimitConfig:
    """
    Load admission-control configuration from environment variables.

    Defaults mirror a public demo deployment: 10 requests per address and per identity
    per 24h window, fail closed when Redis is unreachable.
    """
    window = _env_int("RATE_LIMIT_WINDOW_SECONDS", 24 * 60 * 60)
    if window < 1:
        window = 1

    backend = (os.getenv("RATE_LIMIT_BACKEND") or "").strip().lower() or "redis"
    if backend not in ("redis", "memory"):
        backend = "redis"

    return RateLimitConfig(
        address_max_requests=max(0, _env_int("RATE_LIMIT_ADDRESS_MAX", 10)),
        identity_max_requests=max(0, _env_int("RATE_LIMIT_IDENTITY_MAX", 10)),
        window_seconds=window,
        fail_open=_env_bool("RATE_LIMIT_FAIL_OPEN", False),
        backend=backend,
        redis_url=(os.getenv("REDIS_URL") or "").strip() or "redis://localhost:6379",
        redis_password=(os.getenv("REDIS_PASSWORD") or "").strip() or None,
        redis_max_retries=max(0, _env_int("REDIS_MAX_RETRIES", 3)),
    )
