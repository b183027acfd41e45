from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from chatrelay.mcp.transport import ClientHandle

logger = logging.getLogger(__name__)


@dataclass
class ToolRegistryEntry:
    name: str
    handle: ClientHandle
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    provider_index: int = 0

    async def invoke(self, args: Dict[str, Any], *, timeout_seconds: float) -> Dict[str, Any]:
        return await self.handle.call_tool(self.name, args, timeout_seconds=timeout_seconds)


ToolRegistry = Dict[str, ToolRegistryEntry]


async def merge_tools(handles: Sequence[ClientHandle], *, list_timeout_seconds: float = 15.0) -> ToolRegistry:
    """
    Fold every handle's tools into one flat table keyed by tool name.

    Collision policy: last writer wins in handle order (= descriptor order). A handle that
    cannot answer its capability listing contributes zero tools.
    """
    registry: ToolRegistry = {}
    for h in handles:
        try:
            async with asyncio.timeout(list_timeout_seconds):
                specs = await h.list_tools()
        except Exception as e:
            logger.warning("Skipping tools from %s: capability query failed (%s)", h.label, type(e).__name__)
            continue

        for spec in specs:
            prev = registry.get(spec.name)
            if prev is not None:
                logger.info(
                    "Tool name collision for %r: %s overrides %s (last writer wins)", spec.name, h.label, prev.handle.label
                )
            registry[spec.name] = ToolRegistryEntry(
                name=spec.name,
                handle=h,
                description=spec.description,
                input_schema=spec.input_schema,
                provider_index=h.index,
            )
        logger.info("MCP tools from %s: %s", h.label, [s.name for s in specs])
    return registry


def to_model_tools(registry: ToolRegistry) -> List[Dict[str, Any]]:
    """Render registry entries as function-calling tool specs for the chat model."""
    tools: List[Dict[str, Any]] = []
    for name, entry in registry.items():
        schema = entry.input_schema if isinstance(entry.input_schema, dict) else {}
        if schema.get("type") != "object":
            schema = {"type": "object", "properties": {}}
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": entry.description or name,
                    "parameters": schema,
                },
            }
        )
    return tools
