"""
Provider-agnostic LangChain chat model factory.

Goals:
- Provide a single, uniform way to build a streaming, tool-capable chat model.
- Let callers supply their own API key (and optionally model name) per request.
- Stable error classification so the chat loop can map failures to caller-safe messages.

Env (core):
- LLM_MOCK=1: no external calls; the streaming layer yields a deterministic stub
- LLM_TEMPERATURE: sampling temperature (default: 0.2, range: 0-1)
- LLM_MAX_OUTPUT_TOKENS: output cap (default: 4096, range: 64-8192)
- LLM_TIMEOUT_SECONDS: HTTP timeout for LLM requests (default: 120, range: 5-300)

Provider requirements:
- anthropic: ANTHROPIC_API_KEY (or a caller key)
- openai: OPENAI_API_KEY (or a caller key); OpenAI-compatible endpoints (Groq, xAI)
  use `base_url` plus their own key env var
- vertexai: GOOGLE_CLOUD_PROJECT, GOOGLE_CLOUD_LOCATION and Application Default
  Credentials. Caller keys are not accepted.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

THINKING_BUDGET_TOKENS = 1024


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class LLMConfig:
    temperature: float
    max_output_tokens: int
    timeout: int = 120


def _load_config() -> LLMConfig:
    try:
        temperature = float((os.getenv("LLM_TEMPERATURE") or "").strip() or "0.2")
    except Exception:
        temperature = 0.2
    try:
        max_output_tokens = int((os.getenv("LLM_MAX_OUTPUT_TOKENS") or "").strip() or "4096")
    except Exception:
        max_output_tokens = 4096
    try:
        timeout = int((os.getenv("LLM_TIMEOUT_SECONDS") or "").strip() or "120")
    except Exception:
        timeout = 120

    # Keep bounds sane
    temperature = max(0.0, min(temperature, 1.0))
    max_output_tokens = max(64, min(max_output_tokens, 8192))
    timeout = max(5, min(timeout, 300))

    return LLMConfig(temperature=temperature, max_output_tokens=max_output_tokens, timeout=timeout)


def _vertex_project_location_required() -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Return (project, location, err_code). Exactly one of (project/location) may be None only if err_code is set.
    """
    project = (os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip() or None
    location = (os.getenv("GOOGLE_CLOUD_LOCATION") or "").strip() or None
    if not project:
        return None, None, "missing_gcp_project"
    if not location:
        return None, None, "missing_gcp_location"
    return project, location, None


def _classify_error(e: BaseException, *, model: str = "") -> str:
    msg = str(e or "").replace("\n", " ").strip()
    up = msg.upper()

    # Timeouts first so status-code matching below can't misfile them.
    if isinstance(e, TimeoutError):
        return "timeout"
    if "408" in msg:
        return "timeout"
    if "504" in msg:
        return "gateway_timeout"
    if "DEADLINE_EXCEEDED" in up or "DEADLINE EXCEEDED" in up:
        return "deadline_exceeded"
    if "TIMEOUT" in up or "TIMED OUT" in up:
        return "timeout"

    if "API KEY" in up or "API_KEY" in up or "APIKEY" in up:
        return "unauthenticated"
    if "UNAUTHENTICATED" in up or "AUTHENTICATION" in up or "401" in msg:
        return "unauthenticated"
    if "PERMISSION_DENIED" in up or "403" in msg:
        return "permission_denied"
    if "RATE" in up and "LIMIT" in up:
        return "rate_limited"
    if "429" in msg or "OVERLOADED" in up or "RESOURCE_EXHAUSTED" in up:
        return "rate_limited"
    if "404" in msg or "NOT FOUND" in up:
        return f"model_not_found:{model}"
    if "MAX_TOKENS" in up or "MAX TOKENS" in up or "CONTEXT LENGTH" in up:
        return "max_tokens_truncated"

    return f"llm_error:{type(e).__name__}"


_CREDENTIAL_CODES = frozenset(
    {
        "unauthenticated",
        "permission_denied",
        "missing_api_key",
        "missing_adc_credentials",
        "missing_gcp_project",
        "missing_gcp_location",
        "caller_key_not_supported",
    }
)


def is_credential_error(code: str) -> bool:
    return str(code or "") in _CREDENTIAL_CODES


def _get_llm_instance(
    provider: str,
    cfg: LLMConfig,
    *,
    model: str,
    api_key: Optional[str] = None,
    api_key_env: Optional[str] = None,
    base_url: Optional[str] = None,
    enable_thinking: bool = False,
) -> Tuple[Any, Optional[str]]:
    """
    Factory function that returns the appropriate LangChain chat model.

    Args:
        provider: "anthropic" | "openai" | "vertexai"
        cfg: LLM configuration
        model: provider model name
        api_key: caller-supplied key; overrides the env key
        api_key_env: env var holding the service key (defaults per provider)
        base_url: OpenAI-compatible endpoint
        enable_thinking: enable extended thinking for Anthropic models

    Returns: (llm_instance, error_code). Exactly one is None.
    """
    key = (api_key or "").strip() or None

    if provider in ("vertexai", "vertex", "gcp_vertexai"):
        if key:
            return None, "caller_key_not_supported"
        project, location, err = _vertex_project_location_required()
        if err:
            return None, err

        # Preflight ADC so we return stable error codes
        try:
            import google.auth  # type: ignore[import-not-found]
        except Exception:
            return None, "adc_import_failed"
        try:
            google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        except Exception:
            return None, "missing_adc_credentials"

        try:
            from langchain_google_vertexai import ChatVertexAI  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_google_vertexai"

        llm = ChatVertexAI(
            model=model,
            temperature=cfg.temperature,
            max_output_tokens=cfg.max_output_tokens,
            project=str(project),
            location=str(location),
            timeout=cfg.timeout,
        )
        return llm, None

    elif provider == "anthropic":
        key = key or os.getenv(api_key_env or "ANTHROPIC_API_KEY", "").strip()
        if not key:
            return None, "missing_api_key"

        try:
            from langchain_anthropic import ChatAnthropic  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_anthropic"

        kwargs: Dict[str, Any] = {}
        max_tokens = cfg.max_output_tokens
        if enable_thinking:
            # Anthropic requires temperature 1 with extended thinking, and max_tokens
            # must exceed the thinking budget.
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
            max_tokens = THINKING_BUDGET_TOKENS + cfg.max_output_tokens
        llm = ChatAnthropic(
            model=model,
            temperature=1.0 if enable_thinking else cfg.temperature,
            max_tokens=max_tokens,
            anthropic_api_key=key,
            timeout=cfg.timeout,
            **kwargs,
        )
        return llm, None

    elif provider == "openai":
        key = key or os.getenv(api_key_env or "OPENAI_API_KEY", "").strip()
        if not key:
            return None, "missing_api_key"

        try:
            from langchain_openai import ChatOpenAI  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_openai"

        llm = ChatOpenAI(
            model=model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_output_tokens,
            api_key=key,
            base_url=base_url,
            timeout=cfg.timeout,
        )
        return llm, None

    else:
        return None, "provider_not_configured"
