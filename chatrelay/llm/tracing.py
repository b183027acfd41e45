from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatrelay.llm.client import _env_bool

logger = logging.getLogger(__name__)


def _trace_exclude_patterns() -> List[str]:
    """
    Comma-separated denylist of run names to skip sending to LangSmith.

    An entry ending in '*' matches by prefix, e.g. "tool:search_*".
    """
    raw = (os.getenv("LANGSMITH_TRACE_EXCLUDE") or "").strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]


def should_trace_run_name(name: str) -> bool:
    n = str(name or "").strip()
    if not n:
        return True
    for pat in _trace_exclude_patterns():
        if pat.endswith("*"):
            if n.startswith(pat[:-1]):
                return False
        elif n == pat:
            return False
    return True


def tracing_enabled() -> bool:
    """
    Return True when LangSmith tracing should be enabled.

    Env-gated so prod can run without traces unless explicitly enabled.
    """
    want = _env_bool("LANGSMITH_TRACING", False) or _env_bool("LANGCHAIN_TRACING_V2", False)
    if not want:
        return False
    key = (os.getenv("LANGSMITH_API_KEY") or "").strip() or (os.getenv("LANGCHAIN_API_KEY") or "").strip()
    if not key:
        logger.warning(
            "LangSmith tracing requested but no API key found (LANGSMITH_API_KEY/LANGCHAIN_API_KEY). Tracing disabled."
        )
        return False
    return True


def _project_name() -> str:
    return (
        (os.getenv("LANGSMITH_PROJECT") or "").strip() or (os.getenv("LANGCHAIN_PROJECT") or "").strip() or "chatrelay"
    )


def _tags() -> Optional[List[str]]:
    raw = (os.getenv("LANGSMITH_TAGS") or "").strip()
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


def build_langsmith_callbacks() -> List[Any]:
    """Returns [] when tracing is disabled."""
    if not tracing_enabled():
        return []

    try:
        # Lazy imports so non-tracing runs have no extra dependencies at import time.
        from langchain_core.tracers.langchain import LangChainTracer  # type: ignore[import-not-found]
        from langsmith import Client  # type: ignore[import-not-found]
    except Exception as e:
        logger.warning("LangSmith tracing enabled but dependencies unavailable: %s", type(e).__name__)
        return []

    key = (os.getenv("LANGSMITH_API_KEY") or "").strip() or (os.getenv("LANGCHAIN_API_KEY") or "").strip() or None
    return [LangChainTracer(project_name=_project_name(), client=Client(api_key=key), tags=_tags())]


def build_invoke_config(*, kind: str, run_name: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a RunnableConfig dict for one model step."""
    if not tracing_enabled() or not should_trace_run_name(run_name):
        return {}

    prefix = (os.getenv("LANGSMITH_RUN_NAME_PREFIX") or "").strip()
    md = dict(metadata or {})
    md["kind"] = str(kind or "unknown")

    cfg: Dict[str, Any] = {"metadata": md, "run_name": f"{prefix}{run_name}" if prefix else run_name}
    callbacks = build_langsmith_callbacks()
    if callbacks:
        cfg["callbacks"] = callbacks
    tags = _tags()
    if tags:
        cfg["tags"] = tags
    return cfg


async def trace_tool_call(*, tool: str, args: Dict[str, Any], fn: Callable[[], Awaitable[Any]]) -> Any:
    """
    Create a tool-level span in LangSmith (when tracing enabled) and await `fn()`.

    `fn` must be a zero-arg coroutine function. Tool errors propagate unchanged.
    """
    if not tracing_enabled() or not should_trace_run_name(f"tool:{tool}"):
        return await fn()

    try:
        from langsmith.run_helpers import traceable  # type: ignore[import-not-found]
    except Exception:
        return await fn()

    @traceable(name=f"tool:{tool}", run_type="tool")
    async def _wrapped(_tool: str, _args: Dict[str, Any]) -> Any:
        return await fn()

    return await _wrapped(str(tool), dict(args or {}))
