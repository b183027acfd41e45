"""
Tool registry merge and per-request handle lifecycle, with fake MCP handles.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest


class _FakeHandle:
    def __init__(self, label: str, tools: List[str], *, index: int = 0, list_error: bool = False) -> None:
        self.label = label
        self.index = index
        self.tools = tools
        self.list_error = list_error
        self.close_count = 0
        self.calls: List[Any] = []

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    async def list_tools(self):  # type: ignore[no-untyped-def]
        from chatrelay.mcp.types import ToolSpec

        if self.list_error:
            raise RuntimeError("listing failed")
        return [ToolSpec(name=t, description=f"{t} from {self.label}") for t in self.tools]

    async def call_tool(self, name: str, args: Dict[str, Any], *, timeout_seconds: float) -> Dict[str, Any]:
        self.calls.append((name, args))
        return {"content": [{"type": "text", "text": f"{self.label}:{name}"}], "isError": False}

    async def aclose(self) -> None:
        if self.close_count:
            return
        self.close_count += 1


def _connector(handles_by_label: Dict[str, _FakeHandle], opened: List[_FakeHandle]):
    from chatrelay.core.errors import TransportFailure

    async def _connect(descriptor, *, timeout_seconds, provision_policy, index):  # type: ignore[no-untyped-def]
        h = handles_by_label.get(descriptor.label)
        if h is None:
            raise TransportFailure("connection refused", label=descriptor.label)
        h.index = index
        opened.append(h)
        return h

    return _connect


def _sse(url: str):
    from chatrelay.mcp.types import McpServerConfig

    return McpServerConfig(type="sse", url=url)


@pytest.mark.asyncio
async def test_later_provider_wins_tool_name_collision() -> None:
    from chatrelay.mcp.registry import merge_tools

    a = _FakeHandle("a", ["search", "read"], index=0)
    b = _FakeHandle("b", ["search"], index=1)
    registry = await merge_tools([a, b])

    assert sorted(registry) == ["read", "search"]
    assert registry["search"].handle is b
    assert registry["read"].handle is a

    out = await registry["search"].invoke({"q": "x"}, timeout_seconds=1)
    assert out["content"][0]["text"] == "b:search"
    assert a.calls == []


@pytest.mark.asyncio
async def test_handle_failing_capability_listing_contributes_no_tools() -> None:
    from chatrelay.mcp.registry import merge_tools, to_model_tools

    a = _FakeHandle("a", ["search"], list_error=True)
    b = _FakeHandle("b", ["time"])
    registry = await merge_tools([a, b])

    assert list(registry) == ["time"]
    tools = to_model_tools(registry)
    assert tools[0]["function"]["name"] == "time"
    assert tools[0]["function"]["parameters"] == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_invalid_and_unreachable_descriptors_do_not_block_the_rest() -> None:
    from chatrelay.mcp.lifecycle import ToolOrchestrator
    from chatrelay.mcp.types import McpServerConfig

    good = _FakeHandle("sse:good.example/sse", ["search"])
    opened: List[_FakeHandle] = []
    configs = [
        McpServerConfig(type="stdio", command="", args=[]),
        _sse("https://down.example/sse"),
        _sse("https://good.example/sse"),
    ]

    async with ToolOrchestrator(configs, connector=_connector({good.label: good}, opened)) as orch:
        assert list(orch.registry) == ["search"]
        assert orch.handles == [good]
        assert len(orch.failures) == 2
        summary = orch.summary()
        assert summary["requested"] == 3
        assert summary["connected"] == [good.label]

    assert good.close_count == 1
    assert orch.registry == {}


@pytest.mark.asyncio
async def test_every_handle_closed_once_after_cancellation() -> None:
    from chatrelay.mcp.lifecycle import ToolOrchestrator

    handles = {
        "sse:a.example/sse": _FakeHandle("sse:a.example/sse", ["one"]),
        "sse:b.example/sse": _FakeHandle("sse:b.example/sse", ["two"]),
    }
    opened: List[_FakeHandle] = []
    entered = asyncio.Event()

    async def _request() -> None:
        async with ToolOrchestrator(
            [_sse("https://a.example/sse"), _sse("https://b.example/sse")],
            connector=_connector(handles, opened),
        ):
            entered.set()
            await asyncio.sleep(3600)

    task = asyncio.create_task(_request())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(opened) == 2
    assert [h.close_count for h in opened] == [1, 1]


@pytest.mark.asyncio
async def test_cleanup_is_idempotent_and_survives_close_errors() -> None:
    from chatrelay.mcp.lifecycle import ToolOrchestrator

    class _BadClose(_FakeHandle):
        async def aclose(self) -> None:
            self.close_count += 1
            raise RuntimeError("broken pipe")

    bad = _BadClose("sse:bad.example/sse", ["x"])
    ok = _FakeHandle("sse:ok.example/sse", ["y"])
    opened: List[_FakeHandle] = []
    orch = ToolOrchestrator(
        [_sse("https://ok.example/sse"), _sse("https://bad.example/sse")],
        connector=_connector({bad.label: bad, ok.label: ok}, opened),
    )
    await orch.open()
    await orch.cleanup()
    await orch.cleanup()

    assert bad.close_count == 1
    assert ok.close_count == 1


@pytest.mark.asyncio
async def test_drop_tool_removes_it_from_the_shared_registry() -> None:
    from chatrelay.mcp.lifecycle import ToolOrchestrator

    h = _FakeHandle("sse:a.example/sse", ["slow", "fast"])
    async with ToolOrchestrator([_sse("https://a.example/sse")], connector=_connector({h.label: h}, [])) as orch:
        registry = orch.registry
        orch.drop_tool("slow")
        orch.drop_tool("missing")
        assert list(registry) == ["fast"]


@pytest.mark.asyncio
async def test_handle_call_tool_enforces_timeout() -> None:
    from contextlib import AsyncExitStack

    from chatrelay.mcp.transport import ClientHandle

    class _SlowSession:
        async def call_tool(self, name, arguments=None):  # type: ignore[no-untyped-def]
            await asyncio.sleep(10)

    handle = ClientHandle(session=_SlowSession(), stack=AsyncExitStack(), label="slow")
    with pytest.raises(TimeoutError):
        await handle.call_tool("x", {}, timeout_seconds=0.01)

    await handle.aclose()
    await handle.aclose()
    assert handle.close_count == 1
    assert handle.closed is True


@pytest.mark.asyncio
async def test_connect_wraps_transport_errors(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    import chatrelay.mcp.transport as transport
    from chatrelay.core.errors import TransportFailure
    from chatrelay.mcp.types import NetworkDescriptor

    async def _refused(stack, d):  # type: ignore[no-untyped-def]
        raise ConnectionRefusedError("nope")

    monkeypatch.setattr(transport, "_open_network", _refused)
    with pytest.raises(TransportFailure) as ei:
        await transport.connect(NetworkDescriptor(url="https://down.example/sse"), timeout_seconds=1)
    assert ei.value.label == "sse:down.example/sse"


def test_tool_result_to_dict_flattens_sdk_objects() -> None:
    from chatrelay.mcp.transport import tool_result_to_dict

    class _Content:
        def model_dump(self, **kw):  # type: ignore[no-untyped-def]
            return {"type": "text", "text": "ok"}

    class _Result:
        content = [_Content()]
        isError = False
        structuredContent = {"n": 1}

    assert tool_result_to_dict(_Result()) == {
        "content": [{"type": "text", "text": "ok"}],
        "isError": False,
        "structuredContent": {"n": 1},
    }
