"""
Tests for the streaming model/tool loop.

The chat model is a fake LangChain-like runnable (bind_tools + astream) scripted with
AIMessageChunks, so no provider SDK or network is involved.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest


class _ScriptedLLM:
    """Each astream() call plays the next scripted step (a list of chunks or an exception)."""

    def __init__(self, steps: List[Any]) -> None:
        self.steps = list(steps)
        self.bound_tools: List[Any] = []
        self.seen: List[List[Any]] = []

    def bind_tools(self, tools):  # type: ignore[no-untyped-def]
        self.bound_tools.append([t["function"]["name"] for t in tools])
        return self

    async def astream(self, messages, config=None):  # type: ignore[no-untyped-def]
        self.seen.append(list(messages))
        step = self.steps.pop(0)
        for item in step:
            if isinstance(item, BaseException):
                raise item
            yield item


class _Handle:
    def __init__(self, label: str = "sse:tools.example/sse") -> None:
        self.label = label
        self.calls: List[Any] = []
        self.behaviour: Dict[str, Any] = {}

    async def call_tool(self, name: str, args: Dict[str, Any], *, timeout_seconds: float) -> Dict[str, Any]:
        self.calls.append((name, args))
        b = self.behaviour.get(name)
        if isinstance(b, BaseException):
            raise b
        if b is not None:
            return b
        return {"content": [{"type": "text", "text": f"{name} result"}], "isError": False}


def _text(s: str):
    from langchain_core.messages import AIMessageChunk

    return AIMessageChunk(content=s)


def _tool_calls(*calls: Any):
    from langchain_core.messages import AIMessageChunk

    return AIMessageChunk(
        content="",
        tool_call_chunks=[
            {"name": name, "args": args_json, "id": call_id, "index": i}
            for i, (name, args_json, call_id) in enumerate(calls)
        ],
    )


def _registry(handle: _Handle, *names: str):
    from chatrelay.mcp.registry import ToolRegistryEntry

    return {n: ToolRegistryEntry(name=n, handle=handle, description=n) for n in names}  # type: ignore[arg-type]


def _user(text: str):
    from chatrelay.chat.types import TextPart, UIMessage

    return UIMessage(id="m-user", role="user", content=text, parts=[TextPart(text=text)])


async def _collect(assembler) -> List[Any]:  # type: ignore[no-untyped-def]
    return [ev async for ev in assembler.run()]


@pytest.mark.asyncio
async def test_tool_events_stream_in_call_order_and_results_feed_next_step() -> None:
    from langchain_core.messages import ToolMessage

    from chatrelay.chat.runtime_streaming import StreamingAssembler
    from chatrelay.chat.types import StepStartPart, TextPart, ToolInvocationPart

    handle = _Handle()
    llm = _ScriptedLLM(
        [
            [_text("Let me check. "), _tool_calls(("search", '{"q": "weather"}', "call-1"), ("time", "{}", "call-2"))],
            [_text("It is "), _text("sunny.")],
        ]
    )
    asm = StreamingAssembler(llm, [_user("weather?")], _registry(handle, "search", "time"))
    events = await _collect(asm)

    types = [e.event_type for e in events]
    assert types[0] == "token"
    assert types[1:5] == ["tool_start", "tool_start", "tool_end", "tool_end"]
    assert types[-1] == "done"

    starts = [e for e in events if e.event_type == "tool_start"]
    ends = [e for e in events if e.event_type == "tool_end"]
    assert [e.tool for e in starts] == ["search", "time"]
    assert [e.metadata["toolCallId"] for e in ends] == ["call-1", "call-2"]
    assert starts[0].metadata["args"] == {"q": "weather"}
    assert ends[0].metadata["outcome"] == "ok"

    assert sorted(handle.calls) == [("search", {"q": "weather"}), ("time", {})]
    assert llm.bound_tools == [["search", "time"], ["search", "time"]]

    # Second step sees both tool results, in call order.
    tool_msgs = [m for m in llm.seen[1] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_msgs] == ["call-1", "call-2"]
    assert "search result" in tool_msgs[0].content

    assert asm.state == "finished"
    assert asm.steps == 2
    tokens = "".join(e.content for e in events if e.event_type == "token")
    assert tokens == "Let me check. It is sunny."
    assert events[-1].content == "Let me check. It is sunny."

    parts = asm.response.parts
    assert isinstance(parts[0], StepStartPart)
    invocations = [p for p in parts if isinstance(p, ToolInvocationPart)]
    assert [p.tool_invocation.state for p in invocations] == ["result", "result"]
    assert isinstance(parts[-1], TextPart)
    assert sum(isinstance(p, StepStartPart) for p in parts) == 2

    transcript = asm.transcript()
    assert [m.role for m in transcript] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_unknown_tool_returns_error_result_to_the_model() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler

    handle = _Handle()
    llm = _ScriptedLLM([[_tool_calls(("nope", "{}", "call-1"))], [_text("Sorry.")]])
    asm = StreamingAssembler(llm, [_user("hi")], _registry(handle, "search"))
    events = await _collect(asm)

    end = next(e for e in events if e.event_type == "tool_end")
    assert end.metadata["outcome"] == "unknown_tool"
    assert end.metadata["result"]["isError"] is True
    assert handle.calls == []
    assert events[-1].event_type == "done"


@pytest.mark.asyncio
async def test_tool_timeout_drops_tool_for_the_rest_of_the_request() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler

    handle = _Handle()
    handle.behaviour["slow"] = TimeoutError()
    registry = _registry(handle, "slow", "fast")
    dropped: List[str] = []

    def _drop(name: str) -> None:
        dropped.append(name)
        registry.pop(name, None)

    llm = _ScriptedLLM([[_tool_calls(("slow", "{}", "call-1"))], [_text("Gave up.")]])
    asm = StreamingAssembler(llm, [_user("hi")], registry, on_tool_timeout=_drop, tool_timeout_seconds=1)
    events = await _collect(asm)

    end = next(e for e in events if e.event_type == "tool_end")
    assert end.metadata["outcome"] == "timeout"
    assert dropped == ["slow"]
    # The next step no longer offers the dropped tool.
    assert llm.bound_tools == [["slow", "fast"], ["fast"]]


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler

    handle = _Handle()
    handle.behaviour["search"] = RuntimeError("password=supersecret123 leaked")
    llm = _ScriptedLLM([[_tool_calls(("search", "{}", "call-1"))], [_text("ok")]])
    asm = StreamingAssembler(llm, [_user("hi")], _registry(handle, "search"))
    events = await _collect(asm)

    end = next(e for e in events if e.event_type == "tool_end")
    assert end.metadata["outcome"] == "error"
    assert "supersecret" not in end.content
    assert events[-1].event_type == "done"


@pytest.mark.asyncio
async def test_max_steps_caps_the_loop() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler

    handle = _Handle()
    llm = _ScriptedLLM([[_tool_calls(("search", "{}", f"call-{i}"))] for i in range(5)])
    asm = StreamingAssembler(llm, [_user("loop")], _registry(handle, "search"), max_steps=2)
    events = await _collect(asm)

    assert asm.steps == 2
    assert len(handle.calls) == 2
    assert events[-1].event_type == "done"
    assert events[-1].metadata["steps"] == 2


@pytest.mark.asyncio
async def test_credential_error_maps_to_model_unavailable() -> None:
    from chatrelay.chat.runtime_streaming import MODEL_UNAVAILABLE_MESSAGE, StreamingAssembler

    llm = _ScriptedLLM([[_text("partial "), Exception("Error code: 401 - invalid x-api-key")]])
    asm = StreamingAssembler(llm, [_user("hi")], {})
    events = await _collect(asm)

    assert [e.event_type for e in events] == ["token", "error"]
    assert events[0].content == "partial "
    assert events[-1].content == MODEL_UNAVAILABLE_MESSAGE
    assert asm.state == "aborted"
    # The partial response is still part of the transcript.
    assert asm.transcript()[-1].text() == "partial "


def test_rate_limit_and_generic_errors_are_caller_safe() -> None:
    from chatrelay.chat.runtime_streaming import (
        GENERIC_ERROR_MESSAGE,
        RATE_LIMITED_MESSAGE,
        caller_safe_error,
    )

    assert caller_safe_error(Exception("429 Too Many Requests")) == RATE_LIMITED_MESSAGE
    assert caller_safe_error(ValueError("boom")) == GENERIC_ERROR_MESSAGE


def test_provider_errors_map_onto_the_error_taxonomy() -> None:
    from chatrelay.chat.runtime_streaming import as_generation_error
    from chatrelay.core.errors import GenerationError, ModelCredentialError

    assert isinstance(as_generation_error(Exception("invalid api key")), ModelCredentialError)
    err = as_generation_error(Exception("429 Too Many Requests"))
    assert isinstance(err, GenerationError)
    assert err.code == "rate_limited"


@pytest.mark.asyncio
async def test_cancellation_marks_assembler_aborted() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler

    class _HangingLLM:
        async def astream(self, messages, config=None):  # type: ignore[no-untyped-def]
            yield _text("first")
            await asyncio.sleep(3600)
            yield _text("never")

    asm = StreamingAssembler(_HangingLLM(), [_user("hi")], {})
    seen: List[Any] = []

    async def _consume() -> None:
        async for ev in asm.run():
            seen.append(ev)

    task = asyncio.create_task(_consume())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert asm.state == "aborted"


@pytest.mark.asyncio
async def test_llm_mock_streams_stub_without_provider(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("LLM_MOCK", "1")

    from chatrelay.chat.runtime_streaming import StreamingAssembler
    from chatrelay.llm.client_streaming import MOCK_REPLY

    asm = StreamingAssembler(None, [_user("hi")], {})
    events = await _collect(asm)
    assert [e.event_type for e in events] == ["token", "done"]
    assert events[0].content == MOCK_REPLY
    assert events[-1].metadata["message"]["role"] == "assistant"


@pytest.mark.asyncio
async def test_think_tags_become_reasoning_events() -> None:
    from chatrelay.chat.runtime_streaming import StreamingAssembler
    from chatrelay.chat.types import ReasoningPart, TextPart

    llm = _ScriptedLLM([[_text("<thi"), _text("nk>weighing options</th"), _text("ink>Answer")]])
    asm = StreamingAssembler(llm, [_user("hi")], {}, think_tags=True)
    events = await _collect(asm)

    reasoning = "".join(e.content for e in events if e.event_type == "reasoning")
    tokens = "".join(e.content for e in events if e.event_type == "token")
    assert reasoning == "weighing options"
    assert tokens == "Answer"
    assert [type(p) for p in asm.response.parts[1:]] == [ReasoningPart, TextPart]


def test_think_tag_splitter_handles_tags_split_across_chunks() -> None:
    from chatrelay.llm.client_streaming import ThinkTagSplitter

    s = ThinkTagSplitter()
    assert s.feed("a<thi") == [(False, "a")]
    assert s.feed("nk>reason</th") == [(True, "reason")]
    assert s.feed("ink>b") == [(False, "b")]
    assert s.feed("x <") == [(False, "x ")]
    assert s.flush() == [(False, "<")]


def test_split_content_reads_anthropic_thinking_blocks_and_reasoning_content() -> None:
    from types import SimpleNamespace

    from chatrelay.llm.client_streaming import split_content

    chunk = SimpleNamespace(
        content=[{"type": "thinking", "thinking": "deep"}, {"type": "text", "text": "ok"}], additional_kwargs={}
    )
    assert split_content(chunk) == ("ok", "deep")

    chunk = SimpleNamespace(content="hi", additional_kwargs={"reasoning_content": "because"})
    assert split_content(chunk) == ("hi", "because")


@pytest.mark.asyncio
async def test_missing_tool_call_id_is_filled_on_both_sides_of_the_pair() -> None:
    from langchain_core.messages import AIMessage, ToolMessage

    from chatrelay.chat.runtime_streaming import StreamingAssembler

    handle = _Handle()
    llm = _ScriptedLLM([[_tool_calls(("search", '{"q": "x"}', None))], [_text("done")]])
    asm = StreamingAssembler(llm, [_user("find x")], _registry(handle, "search"))
    events = await _collect(asm)

    start = next(e for e in events if e.event_type == "tool_start")
    call_id = start.metadata["toolCallId"]
    assert call_id == "call-0-0"

    ai = [m for m in llm.seen[1] if isinstance(m, AIMessage)][-1]
    tool_msg = [m for m in llm.seen[1] if isinstance(m, ToolMessage)][-1]
    assert ai.tool_calls[0]["id"] == call_id
    assert tool_msg.tool_call_id == call_id
