from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from chatrelay.llm.client import _env_bool, _get_llm_instance, _load_config


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    provider: str
    default_model: str
    display_provider: str
    name: str
    description: str = ""
    capabilities: Tuple[str, ...] = ()
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    # Model emits its chain of thought inline as <think>...</think>.
    think_tags: bool = False


MODELS: Dict[str, ModelInfo] = {
    m.model_id: m
    for m in (
        ModelInfo(
            model_id="gpt-4.1-mini",
            provider="openai",
            default_model="gpt-4.1-mini",
            display_provider="OpenAI",
            name="GPT-4.1 Mini",
            description="Compact version of OpenAI's GPT-4.1 with a good balance of capabilities, including vision.",
            capabilities=("Balance", "Creative", "Vision"),
        ),
        ModelInfo(
            model_id="gemini-2-flash",
            provider="vertexai",
            default_model="gemini-2.0-flash-001",
            display_provider="Google",
            name="Gemini 2 Flash",
            description="Google's Gemini 2 Flash with strong reasoning and coding capabilities.",
            capabilities=("Balance", "Efficient", "Agentic"),
        ),
        ModelInfo(
            model_id="claude-sonnet",
            provider="anthropic",
            default_model="claude-sonnet-4-5",
            display_provider="Anthropic",
            name="Claude Sonnet",
            description="Anthropic's Claude Sonnet with strong tool use and coding capabilities.",
            capabilities=("Reasoning", "Agentic", "Coding"),
        ),
        ModelInfo(
            model_id="qwen-qwq",
            provider="openai",
            default_model="qwen-qwq-32b",
            display_provider="Groq",
            name="Qwen QWQ",
            description="Alibaba's Qwen QWQ served by Groq, with strong reasoning and coding capabilities.",
            capabilities=("Reasoning", "Efficient", "Agentic"),
            api_key_env="GROQ_API_KEY",
            base_url="https://api.groq.com/openai/v1",
            think_tags=True,
        ),
        ModelInfo(
            model_id="grok-3-mini-beta",
            provider="openai",
            default_model="grok-3-mini-beta",
            display_provider="XAI",
            name="Grok 3 Mini",
            description="xAI's Grok 3 Mini with strong reasoning and coding capabilities.",
            capabilities=("Reasoning", "Efficient", "Agentic"),
            api_key_env="XAI_API_KEY",
            base_url="https://api.x.ai/v1",
        ),
        ModelInfo(
            model_id="command-a",
            provider="openai",
            default_model="command-a-03-2025",
            display_provider="Cohere",
            name="Command A",
            description="Cohere's Command A through its OpenAI-compatible endpoint.",
            capabilities=("Smart", "Fast", "Reasoning"),
            api_key_env="COHERE_API_KEY",
            base_url="https://api.cohere.ai/compatibility/v1",
        ),
    )
}

DEFAULT_MODEL = "gemini-2-flash"


def list_models() -> List[Dict[str, Any]]:
    return [
        {
            "id": m.model_id,
            "provider": m.display_provider,
            "name": m.name,
            "description": m.description,
            "apiVersion": m.default_model,
            "capabilities": list(m.capabilities),
        }
        for m in MODELS.values()
    ]


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    return MODELS.get(str(model_id or "").strip())


_CALLER_KEY_PROVIDERS = frozenset({"anthropic", "openai"})
_CALLER_KEY_MIN_CHARS = 20
_CALLER_KEY_MAX_CHARS = 512


def caller_key_error(info: ModelInfo, api_key: str) -> Optional[str]:
    """
    Check a caller-supplied key before it is trusted to replace the service quota.

    Returns an error code, or None when the key is plausible for this model's provider.
    """
    if info.provider not in _CALLER_KEY_PROVIDERS:
        return "caller_key_not_supported"
    key = api_key or ""
    if not (_CALLER_KEY_MIN_CHARS <= len(key) <= _CALLER_KEY_MAX_CHARS):
        return "caller_key_malformed"
    if not key.isascii() or not key.isprintable() or any(c.isspace() for c in key):
        return "caller_key_malformed"
    return None


def resolve_model(
    model_id: str,
    *,
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
    enable_thinking: bool = False,
) -> Tuple[Any, Optional[str]]:
    """
    Build the chat model for a catalogue id.

    A caller key replaces the service key; a caller model name replaces the catalogue's
    default model name. Returns (llm, error_code) like `_get_llm_instance`.
    With LLM_MOCK=1 the model is (None, None) and the streaming layer answers with a stub.
    """
    info = get_model_info(model_id)
    if info is None:
        return None, f"unknown_model:{model_id}"
    if _env_bool("LLM_MOCK", False):
        return None, None
    return _get_llm_instance(
        info.provider,
        _load_config(),
        model=(model_name or "").strip() or info.default_model,
        api_key=api_key,
        api_key_env=info.api_key_env,
        base_url=info.base_url,
        enable_thinking=enable_thinking,
    )
