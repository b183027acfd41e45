"""
Transport adapter: descriptor -> connected MCP client handle.

Network descriptors are reached over MCP's SSE transport (persistent HTTP event stream
plus POST endpoint); process descriptors are spawned as child processes speaking
line-delimited JSON-RPC over stdio. `connect()` is the only place that dispatches on
the descriptor variant.

A handle owns every resource its transport opened (socket or subprocess) through an
AsyncExitStack. The stack must be closed by the same task that opened it, which is why
the lifecycle manager brings handles up and tears them down from a single task.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from chatrelay.core.errors import TransportFailure
from chatrelay.mcp.provision import ProvisionPolicy, ensure_provisioned
from chatrelay.mcp.types import NetworkDescriptor, ProcessDescriptor, ToolProviderDescriptor, ToolSpec

logger = logging.getLogger(__name__)


def _jsonable_content(item: Any) -> Any:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", exclude_none=True)
    return item


def tool_result_to_dict(res: Any) -> Dict[str, Any]:
    """Flatten an MCP CallToolResult into JSON for the transcript."""
    if isinstance(res, dict):
        return res
    out: Dict[str, Any] = {
        "content": [_jsonable_content(c) for c in (getattr(res, "content", None) or [])],
        "isError": bool(getattr(res, "isError", False)),
    }
    structured = getattr(res, "structuredContent", None)
    if structured is not None:
        out["structuredContent"] = structured
    return out


class ClientHandle:
    """
    An open, capability-bearing MCP session to one tool provider.

    `aclose()` is idempotent; `close_count` counts real closes and never exceeds 1.
    """

    def __init__(self, *, session: Any, stack: AsyncExitStack, label: str, index: int = 0) -> None:
        self._session = session
        self._stack = stack
        self.label = label
        self.index = index
        self.close_count = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def list_tools(self) -> List[ToolSpec]:
        res = await self._session.list_tools()
        specs: List[ToolSpec] = []
        for t in getattr(res, "tools", None) or []:
            name = str(getattr(t, "name", "") or "").strip()
            if not name:
                continue
            schema = getattr(t, "inputSchema", None)
            specs.append(
                ToolSpec(
                    name=name,
                    description=str(getattr(t, "description", "") or ""),
                    input_schema=dict(schema) if isinstance(schema, dict) else {"type": "object", "properties": {}},
                )
            )
        return specs

    async def call_tool(self, name: str, args: Dict[str, Any], *, timeout_seconds: float) -> Dict[str, Any]:
        """Invoke one tool; raises TimeoutError when the round trip exceeds the bound."""
        if self._closed:
            raise RuntimeError(f"client handle {self.label} is closed")
        async with asyncio.timeout(timeout_seconds):
            res = await self._session.call_tool(name, arguments=dict(args or {}))
        return tool_result_to_dict(res)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        await self._stack.aclose()


async def _open_network(stack: AsyncExitStack, d: NetworkDescriptor):  # type: ignore[no-untyped-def]
    from mcp.client.sse import sse_client  # type: ignore[import-not-found]

    return await stack.enter_async_context(sse_client(d.url, headers=d.headers or None))


async def _open_process(stack: AsyncExitStack, d: ProcessDescriptor):  # type: ignore[no-untyped-def]
    from mcp import StdioServerParameters  # type: ignore[import-not-found]
    from mcp.client.stdio import stdio_client  # type: ignore[import-not-found]

    params = StdioServerParameters(command=d.command, args=list(d.args), env=dict(d.env) or None)
    return await stack.enter_async_context(stdio_client(params))


async def connect(
    descriptor: ToolProviderDescriptor,
    *,
    timeout_seconds: float = 30.0,
    provision_policy: Optional[ProvisionPolicy] = None,
    index: int = 0,
) -> ClientHandle:
    """
    Bring one tool provider online and complete the MCP handshake.

    Raises TransportFailure for any failure; partially opened resources are released
    before raising.

    Provisioning for process descriptors runs first, bounded only by the provisioning
    policy's own timeout; `timeout_seconds` covers the spawn and handshake. An install
    failure is logged and the spawn is still attempted.
    """
    label = descriptor.label
    if isinstance(descriptor, ProcessDescriptor):
        await ensure_provisioned(descriptor, provision_policy)

    stack = AsyncExitStack()
    try:
        async with asyncio.timeout(timeout_seconds):
            if isinstance(descriptor, NetworkDescriptor):
                read, write = await _open_network(stack, descriptor)
            elif isinstance(descriptor, ProcessDescriptor):
                read, write = await _open_process(stack, descriptor)
            else:
                raise TransportFailure(f"unsupported descriptor: {type(descriptor).__name__}", label=label)

            from mcp import ClientSession  # type: ignore[import-not-found]

            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
    except TransportFailure:
        await _release(stack, label)
        raise
    except TimeoutError as e:
        await _release(stack, label)
        raise TransportFailure(f"timed out after {timeout_seconds:.0f}s", label=label) from e
    except Exception as e:
        await _release(stack, label)
        raise TransportFailure(f"{type(e).__name__}: {str(e)[:200]}", label=label) from e
    except BaseException:
        # Cancelled mid-handshake: nothing may outlive the request.
        await _release(stack, label)
        raise

    logger.info("MCP client connected: %s", label)
    return ClientHandle(session=session, stack=stack, label=label, index=index)


async def _release(stack: AsyncExitStack, label: str) -> None:
    try:
        await stack.aclose()
    except Exception as e:
        logger.warning("Error releasing partially opened transport %s: %s", label, type(e).__name__)
