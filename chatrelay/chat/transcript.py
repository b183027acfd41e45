"""
Conversions between the UI message format and LangChain messages.

UI assistant messages carry a whole multi-step turn in their parts: `step-start`
markers separate steps, and each completed `tool-invocation` part holds both the call
and its result. For the model, every step becomes one AIMessage (text + tool calls)
followed by one ToolMessage per call.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, List

from chatrelay.chat.types import StepStartPart, TextPart, ToolInvocationPart, UIMessage


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:24]}"


def tool_result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _assistant_to_langchain(msg: UIMessage) -> List[Any]:
    from langchain_core.messages import AIMessage, ToolMessage  # type: ignore[import-not-found]

    if not msg.parts:
        return [AIMessage(content=msg.content or "")]

    out: List[Any] = []
    text: List[str] = []
    calls: List[ToolInvocationPart] = []

    def _flush() -> None:
        if not text and not calls:
            return
        out.append(
            AIMessage(
                content="".join(text),
                tool_calls=[
                    {"id": c.tool_invocation.tool_call_id, "name": c.tool_invocation.tool_name, "args": c.tool_invocation.args}
                    for c in calls
                ],
            )
        )
        for c in calls:
            out.append(
                ToolMessage(content=tool_result_text(c.tool_invocation.result), tool_call_id=c.tool_invocation.tool_call_id)
            )
        text.clear()
        calls.clear()

    for part in msg.parts:
        if isinstance(part, StepStartPart):
            _flush()
        elif isinstance(part, TextPart):
            text.append(part.text)
        elif isinstance(part, ToolInvocationPart):
            # A call without a result cannot be replayed to the model.
            if part.tool_invocation.state == "result":
                calls.append(part)
    _flush()
    return out or [AIMessage(content=msg.content or "")]


def to_langchain_messages(messages: List[UIMessage], *, system_prompt: str = "") -> List[Any]:
    from langchain_core.messages import HumanMessage, SystemMessage  # type: ignore[import-not-found]

    out: List[Any] = []
    if system_prompt:
        out.append(SystemMessage(content=system_prompt))
    for m in messages:
        if m.role == "system":
            out.append(SystemMessage(content=m.text()))
        elif m.role == "user":
            out.append(HumanMessage(content=m.text()))
        else:
            out.extend(_assistant_to_langchain(m))
    return out


def append_response(messages: List[UIMessage], response: UIMessage) -> List[UIMessage]:
    """
    Return the conversation with the response appended.

    When the conversation already ends on an assistant message (a continued turn),
    the response's parts are merged into it instead.
    """
    out = list(messages)
    if out and out[-1].role == "assistant" and response.role == "assistant":
        last = out[-1]
        out[-1] = last.model_copy(
            update={
                "content": (last.content or "") + (response.content or ""),
                "parts": list(last.parts) + list(response.parts),
            }
        )
        return out
    out.append(response)
    return out


def response_text(msg: UIMessage) -> str:
    return "".join(p.text for p in msg.parts if isinstance(p, TextPart))
