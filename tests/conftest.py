"""
Pytest config.

Local imports like `import chatrelay` rely on the repo root being on sys.path. When
invoking a global `pytest` entrypoint that doesn't happen reliably during collection,
so we pin the behavior here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


_PG_ENV = (
    "POSTGRES_DSN",
    "DATABASE_URL",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "DB_AUTO_MIGRATE",
)


@pytest.fixture(autouse=True)
def _isolate_external_services(monkeypatch: pytest.MonkeyPatch):
    """
    Unit tests never talk to Redis, Postgres, LangSmith or an LLM provider.

    - Rate-limit counters use the in-process store.
    - Postgres env is cleared, so persistence returns "Postgres not configured".
    - Cached config and the global limiter are reset around every test.

    Tests that need a specific setup override the env and call the reset helpers.
    """
    import chatrelay.auth.store as store
    from chatrelay.auth.config import load_rate_limit_config
    from chatrelay.auth.rate_limit import reset_rate_limiter

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    for k in ("RATE_LIMIT_FAIL_OPEN", "RATE_LIMIT_ADDRESS_MAX", "RATE_LIMIT_IDENTITY_MAX", "REDIS_URL"):
        monkeypatch.delenv(k, raising=False)
    for k in _PG_ENV:
        monkeypatch.delenv(k, raising=False)
    for k in ("LANGSMITH_TRACING", "LANGCHAIN_TRACING_V2", "MCP_PROVISION_ALLOWLIST"):
        monkeypatch.delenv(k, raising=False)

    def _reset() -> None:
        load_rate_limit_config.cache_clear()
        reset_rate_limiter()
        store._cached = None
        store._cached_key = None

    _reset()
    yield
    _reset()
