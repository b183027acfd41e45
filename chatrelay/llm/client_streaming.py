"""
Streaming LLM client for one model step of the chat loop.

A step streams text and reasoning fragments as they arrive and ends with the
aggregated assistant message (including any tool calls the model requested).

Key features:
- Token batching (5 tokens or 100ms) for smooth visual feedback
- Reasoning detection: Anthropic thinking blocks, `reasoning_content` from
  OpenAI-compatible providers, and inline `<think>...</think>` tags
- Provider-agnostic (anything LangChain can `astream`)
- LLM_MOCK=1 yields a deterministic stub and a plain assistant message

Usage:
    async for chunk in stream_model_step(llm, messages, tools=tools):
        if chunk.message is not None:
            final = chunk.message
        elif chunk.thinking:
            print(f"[THINKING] {chunk.content}")
        else:
            print(chunk.content, end="", flush=True)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from chatrelay.llm.client import _env_bool

MOCK_REPLY = "LLM_MOCK enabled: no external call was made."

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"


@dataclass
class LLMStreamChunk:
    """Single chunk of streamed content, or the final aggregated message."""

    content: str = ""
    thinking: bool = False
    message: Optional[Any] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ThinkTagSplitter:
    """
    Incrementally splits text into (is_reasoning, fragment) pieces on <think> tags.

    Tags may be split across chunks, so a possible tag prefix at the end of a chunk is
    held back until the next chunk decides it.
    """

    def __init__(self) -> None:
        self._in_think = False
        self._pending = ""

    def feed(self, text: str) -> List[Tuple[bool, str]]:
        buf = self._pending + (text or "")
        self._pending = ""
        out: List[Tuple[bool, str]] = []
        while buf:
            tag = _THINK_CLOSE if self._in_think else _THINK_OPEN
            idx = buf.find(tag)
            if idx >= 0:
                if idx:
                    out.append((self._in_think, buf[:idx]))
                buf = buf[idx + len(tag) :]
                self._in_think = not self._in_think
                continue
            keep = _partial_suffix(buf, tag)
            if keep:
                self._pending = buf[-keep:]
                buf = buf[:-keep]
            if buf:
                out.append((self._in_think, buf))
            break
        return out

    def flush(self) -> List[Tuple[bool, str]]:
        if not self._pending:
            return []
        out = [(self._in_think, self._pending)]
        self._pending = ""
        return out


def _partial_suffix(text: str, tag: str) -> int:
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:n]):
            return n
    return 0


def split_content(chunk: Any) -> Tuple[str, str]:
    """Return (text, reasoning) carried by one message chunk."""
    text = ""
    reasoning = ""
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        # Anthropic returns a list of typed content blocks
        for block in content:
            if isinstance(block, str):
                text += block
            elif isinstance(block, dict):
                if block.get("type") == "text":
                    text += str(block.get("text") or "")
                elif block.get("type") == "thinking":
                    reasoning += str(block.get("thinking") or "")
            elif hasattr(block, "text"):
                text += str(block.text)
    extra = getattr(chunk, "additional_kwargs", None) or {}
    if isinstance(extra, dict) and extra.get("reasoning_content"):
        reasoning += str(extra.get("reasoning_content"))
    return text, reasoning


def _aggregate_to_message(aggregate: Any) -> Any:
    from langchain_core.messages import AIMessage, message_chunk_to_message  # type: ignore[import-not-found]

    if aggregate is None:
        return AIMessage(content="")
    return message_chunk_to_message(aggregate)


async def stream_model_step(
    llm: Any,
    messages: List[Any],
    *,
    tools: Optional[List[Dict[str, Any]]] = None,
    config: Optional[Dict[str, Any]] = None,
    think_tags: bool = False,
    batch_size: int = 5,
    batch_timeout_ms: int = 100,
) -> AsyncGenerator[LLMStreamChunk, None]:
    """
    Stream one model step.

    Text is batched (batch_size fragments or batch_timeout_ms, whichever first); reasoning
    is emitted immediately. The final chunk carries `message`, the aggregated AIMessage.
    Provider errors propagate to the caller after any buffered text has been flushed.
    """
    if llm is None and _env_bool("LLM_MOCK", False):
        from langchain_core.messages import AIMessage  # type: ignore[import-not-found]

        yield LLMStreamChunk(content=MOCK_REPLY)
        yield LLMStreamChunk(message=AIMessage(content=MOCK_REPLY))
        return

    runnable = llm.bind_tools(tools) if tools else llm
    splitter = ThinkTagSplitter() if think_tags else None
    buffer: List[str] = []
    last_flush_time = time.time()
    batch_timeout_sec = batch_timeout_ms / 1000.0
    aggregate: Any = None
    # Text with the <think> sections removed; the aggregated message must not carry them.
    visible_text: List[str] = []

    try:
        async for chunk in runnable.astream(messages, config=config or {}):
            aggregate = chunk if aggregate is None else aggregate + chunk
            text, reasoning = split_content(chunk)

            if reasoning:
                if buffer:
                    yield LLMStreamChunk(content="".join(buffer))
                    buffer.clear()
                    last_flush_time = time.time()
                yield LLMStreamChunk(content=reasoning, thinking=True)

            if not text:
                continue

            pieces = splitter.feed(text) if splitter is not None else [(False, text)]
            for is_reasoning, piece in pieces:
                if is_reasoning:
                    if buffer:
                        yield LLMStreamChunk(content="".join(buffer))
                        buffer.clear()
                        last_flush_time = time.time()
                    yield LLMStreamChunk(content=piece, thinking=True)
                    continue
                buffer.append(piece)
                visible_text.append(piece)

            elapsed = time.time() - last_flush_time
            if buffer and (len(buffer) >= batch_size or elapsed >= batch_timeout_sec):
                yield LLMStreamChunk(content="".join(buffer))
                buffer.clear()
                last_flush_time = time.time()

        if splitter is not None:
            for is_reasoning, piece in splitter.flush():
                if is_reasoning:
                    yield LLMStreamChunk(content=piece, thinking=True)
                else:
                    buffer.append(piece)
                    visible_text.append(piece)
    except Exception:
        # Emit any buffered content before the error surfaces
        if buffer:
            yield LLMStreamChunk(content="".join(buffer))
        raise

    if buffer:
        yield LLMStreamChunk(content="".join(buffer))

    message = _aggregate_to_message(aggregate)
    if splitter is not None:
        message.content = "".join(visible_text)
    yield LLMStreamChunk(message=message)
