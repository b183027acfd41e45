from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from chatrelay.core.errors import DescriptorValidationError


class KeyValuePair(BaseModel):
    key: str = ""
    value: Optional[str] = None


class McpServerConfig(BaseModel):
    """
    Tool-provider descriptor as supplied by the caller.

    Deliberately permissive: one malformed entry must not fail request parsing for the
    others. Strict validation happens per entry in `to_descriptor()`.
    """

    type: str = "sse"
    url: str = ""
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: List[KeyValuePair] = Field(default_factory=list)
    headers: List[KeyValuePair] = Field(default_factory=list)


@dataclass(frozen=True)
class NetworkDescriptor:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        p = urlparse(self.url)
        return f"sse:{p.netloc}{p.path}"


@dataclass(frozen=True)
class ProcessDescriptor:
    command: str
    args: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"stdio:{self.command} {' '.join(self.args)}".strip()


ToolProviderDescriptor = Union[NetworkDescriptor, ProcessDescriptor]


def _pairs_to_dict(pairs: List[KeyValuePair]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for p in pairs or []:
        k = (p.key or "").strip()
        if k:
            out[k] = p.value or ""
    return out


def _is_http_url(url: str) -> bool:
    try:
        p = urlparse(url)
    except ValueError:
        return False
    return p.scheme in ("http", "https") and bool(p.netloc) and bool(p.hostname)


def to_descriptor(cfg: McpServerConfig) -> ToolProviderDescriptor:
    """
    Validate a caller-supplied config into a closed descriptor variant.

    Raises DescriptorValidationError; callers isolate the failure to this entry.
    """
    kind = (cfg.type or "").strip().lower()
    if kind == "sse":
        url = (cfg.url or "").strip()
        if not url:
            raise DescriptorValidationError("network descriptor requires a url", label="sse:<missing>")
        if not _is_http_url(url):
            raise DescriptorValidationError("network descriptor url must be absolute http(s)", label=f"sse:{url[:80]}")
        return NetworkDescriptor(url=url, headers=_pairs_to_dict(cfg.headers))

    if kind == "stdio":
        command = (cfg.command or "").strip()
        args = tuple(str(a) for a in (cfg.args or []))
        if not command or not args:
            raise DescriptorValidationError(
                "process descriptor requires a command and a non-empty argument list",
                label=f"stdio:{command or '<missing>'}",
            )
        return ProcessDescriptor(command=command, args=args, env=_pairs_to_dict(cfg.env))

    raise DescriptorValidationError(f"unsupported transport type: {kind or '<missing>'}", label=f"{kind}:?")


@dataclass(frozen=True)
class ToolSpec:
    """One tool as advertised by a provider's capability listing."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
