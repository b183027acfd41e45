"""
Per-request ownership of MCP client handles.

Usage:
    async with ToolOrchestrator(configs) as orch:
        ... orch.registry ...
    # every handle opened above is closed exactly once here, whether the block finished,
    # raised, or was cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from chatrelay.core.errors import DescriptorValidationError, TransportFailure
from chatrelay.mcp.provision import ProvisionPolicy
from chatrelay.mcp.registry import ToolRegistry, merge_tools
from chatrelay.mcp.transport import ClientHandle, connect
from chatrelay.mcp.types import McpServerConfig, ToolProviderDescriptor, to_descriptor

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[ClientHandle]]


class ToolOrchestrator:
    """
    Owns the set of client handles for one request.

    Handles are brought online one at a time in descriptor order, from the task that
    enters the context; the same task closes them in `__aexit__`. Individual failures
    are logged and skipped, so the handle set may be a strict subset of the descriptors.
    """

    def __init__(
        self,
        configs: Sequence[McpServerConfig],
        *,
        connect_timeout_seconds: float = 30.0,
        close_timeout_seconds: float = 5.0,
        provision_policy: Optional[ProvisionPolicy] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._configs = list(configs or [])
        self._connect_timeout = float(connect_timeout_seconds)
        self._close_timeout = float(close_timeout_seconds)
        self._provision_policy = provision_policy
        self._connect = connector or connect
        self.handles: List[ClientHandle] = []
        self.registry: ToolRegistry = {}
        self.failures: List[str] = []
        self._cleaned_up = False

    async def __aenter__(self) -> "ToolOrchestrator":
        try:
            await self.open()
        except BaseException:
            await self.cleanup()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        if exc_type is not None and exc_type is not asyncio.CancelledError:
            logger.info("Closing MCP clients after error: %s", exc_type.__name__)
        await self.cleanup()

    async def open(self) -> ToolRegistry:
        for i, cfg in enumerate(self._configs):
            try:
                descriptor: ToolProviderDescriptor = to_descriptor(cfg)
            except DescriptorValidationError as e:
                logger.warning("Skipping MCP server %s: %s", e.label, e)
                self.failures.append(e.label)
                continue

            try:
                handle = await self._connect(
                    descriptor,
                    timeout_seconds=self._connect_timeout,
                    provision_policy=self._provision_policy,
                    index=i,
                )
            except TransportFailure as e:
                logger.error("Failed to initialize MCP client %s: %s", e.label or descriptor.label, e)
                self.failures.append(e.label or descriptor.label)
                continue
            self.handles.append(handle)

        self.registry = await merge_tools(self.handles)
        return self.registry

    def drop_tool(self, name: str) -> None:
        """Remove a tool for the rest of the request (e.g. after its provider timed out)."""
        if self.registry.pop(name, None) is not None:
            logger.info("Dropped tool %r from registry for this request", name)

    async def cleanup(self) -> None:
        """
        Close every still-open handle, best effort.

        Idempotent: completion and cancellation may both reach here. A failure to close
        one handle is logged and the rest are still closed.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True
        for handle in reversed(self.handles):
            if handle.closed:
                continue
            try:
                async with asyncio.timeout(self._close_timeout):
                    await handle.aclose()
            except Exception as e:
                logger.error("Error closing MCP client %s: %s", handle.label, type(e).__name__)
        self.registry = {}

    def summary(self) -> Dict[str, Any]:
        return {
            "requested": len(self._configs),
            "connected": [h.label for h in self.handles],
            "failed": list(self.failures),
            "tools": sorted(self.registry.keys()),
        }
