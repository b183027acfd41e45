"""
Streaming chat runtime: the multi-step model/tool loop.

Flow per step:
1. Stream the model (text -> `token`, reasoning -> `reasoning`)
2. If the model requested tools: announce each (`tool_start`), dispatch them
   concurrently, feed results back in call order (`tool_end`), and run another step
3. Otherwise finish with `done`

The assembler mirrors everything it streams into a single assistant UIMessage so the
transcript can be persisted on completion, and partially on abort.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Literal, Optional

from chatrelay.chat.policy import redact_text
from chatrelay.chat.tool_summaries import compact_args_for_log, error_result, summarize_tool_result
from chatrelay.chat.transcript import (
    append_response,
    new_message_id,
    response_text,
    to_langchain_messages,
    tool_result_text,
)
from chatrelay.chat.types import (
    ChatStreamEvent,
    ReasoningPart,
    StepStartPart,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
    UIMessage,
)
from chatrelay.core.errors import ChatRelayError, GenerationError, ModelCredentialError
from chatrelay.llm.client import _classify_error, is_credential_error
from chatrelay.llm.client_streaming import stream_model_step
from chatrelay.llm.tracing import trace_tool_call
from chatrelay.mcp.registry import ToolRegistry, to_model_tools

logger = logging.getLogger(__name__)

AssemblerState = Literal["idle", "generating", "tool_invocation_pending", "finished", "aborted"]

SYSTEM_PROMPT = """You are a helpful assistant with access to a variety of tools.

The tools are very powerful, and you can use them to answer the user's question.
So choose the tool that is most relevant to the user's question.

You can use multiple tools in a single response.
Always respond after using the tools for better user experience.
You can run multiple steps using all the tools.
Make sure to use the right tool to respond to the user's question.

Multiple tools can be used in a single response and multiple steps can be used to answer the user's question.

## Response Format
- Markdown is supported.
- Respond according to tool's response.
- Use the tools to answer the user's question.
- If you don't know the answer, use the tools to find the answer or say you don't know.
"""

MODEL_UNAVAILABLE_MESSAGE = "This model is currently unavailable. Please try another model."
RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."
GENERIC_ERROR_MESSAGE = "An error occurred."


def as_generation_error(e: BaseException) -> ChatRelayError:
    """Place a provider/SDK exception in the relay's error taxonomy."""
    if isinstance(e, (ModelCredentialError, GenerationError)):
        return e
    code = _classify_error(e)
    if is_credential_error(code):
        return ModelCredentialError(code)
    return GenerationError(f"{type(e).__name__}: {e}", code=code)


def caller_safe_error(e: BaseException) -> str:
    """
    Map a generation failure to the message shown to the caller.

    Credential failures are expected when a model is not configured and are not logged.
    """
    err = as_generation_error(e)
    if isinstance(err, ModelCredentialError):
        return MODEL_UNAVAILABLE_MESSAGE
    code = getattr(err, "code", "")
    if code == "rate_limited":
        logger.warning("Model provider rate limited the request: %s", redact_text(str(err))[:300])
        return RATE_LIMITED_MESSAGE
    logger.error("Chat generation failed (%s): %s", code, redact_text(str(err)))
    return GENERIC_ERROR_MESSAGE


class StreamingAssembler:
    """
    Drives one chat turn and yields ChatStreamEvents.

    States: idle -> generating -> (tool_invocation_pending -> generating)* -> finished | aborted.
    `aborted` covers both cancellation and a terminal error.
    """

    def __init__(
        self,
        llm: Any,
        messages: List[UIMessage],
        registry: ToolRegistry,
        *,
        max_steps: int = 20,
        tool_timeout_seconds: float = 60.0,
        on_tool_timeout: Optional[Callable[[str], None]] = None,
        invoke_config: Optional[Dict[str, Any]] = None,
        think_tags: bool = False,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self._llm = llm
        self._messages = list(messages)
        self._registry = registry
        self._max_steps = max(1, int(max_steps))
        self._tool_timeout = float(tool_timeout_seconds)
        self._on_tool_timeout = on_tool_timeout
        self._invoke_config = dict(invoke_config or {})
        self._think_tags = think_tags
        self._system_prompt = system_prompt
        self.state: AssemblerState = "idle"
        self.steps = 0
        self.response = UIMessage(id=new_message_id(), role="assistant", content="", parts=[])

    def transcript(self) -> List[UIMessage]:
        """Original messages plus the response so far (partial when aborted)."""
        if not self.response.parts:
            return list(self._messages)
        return append_response(self._messages, self.response)

    def _add_text(self, text: str) -> None:
        self.response.content += text
        last = self.response.parts[-1] if self.response.parts else None
        if isinstance(last, TextPart):
            last.text += text
        else:
            self.response.parts.append(TextPart(text=text))

    def _add_reasoning(self, text: str) -> None:
        last = self.response.parts[-1] if self.response.parts else None
        if isinstance(last, ReasoningPart):
            last.reasoning += text
        else:
            self.response.parts.append(ReasoningPart(reasoning=text))

    def _drop_tool(self, name: str) -> None:
        if self._on_tool_timeout is not None:
            self._on_tool_timeout(name)
        else:
            self._registry.pop(name, None)

    async def _invoke(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        entry = self._registry.get(name)
        if entry is None:
            logger.warning("Model requested unknown tool %r", name)
            return error_result(f"Unknown tool: {name}", outcome="unknown_tool")
        try:
            return await trace_tool_call(
                tool=name, args=args, fn=lambda: entry.invoke(args, timeout_seconds=self._tool_timeout)
            )
        except TimeoutError:
            logger.warning(
                "Tool %s on %s timed out after %.0fs; dropping it for this request",
                name,
                entry.handle.label,
                self._tool_timeout,
            )
            self._drop_tool(name)
            return error_result(f"Tool {name} timed out after {self._tool_timeout:.0f}s", outcome="timeout")
        except Exception as e:
            logger.error(
                "Tool %s failed with args %s: %s",
                name,
                compact_args_for_log(args),
                redact_text(f"{type(e).__name__}: {e}")[:300],
            )
            return error_result(f"Tool {name} failed: {type(e).__name__}")

    async def run(self) -> AsyncGenerator[ChatStreamEvent, None]:
        from langchain_core.messages import ToolMessage  # type: ignore[import-not-found]

        lc_messages = to_langchain_messages(self._messages, system_prompt=self._system_prompt)
        self.state = "generating"
        try:
            for step in range(self._max_steps):
                self.steps = step + 1
                self.response.parts.append(StepStartPart())

                ai_message = None
                async for chunk in stream_model_step(
                    self._llm,
                    lc_messages,
                    tools=to_model_tools(self._registry),
                    config=self._invoke_config,
                    think_tags=self._think_tags,
                ):
                    if chunk.message is not None:
                        ai_message = chunk.message
                    elif chunk.thinking:
                        self._add_reasoning(chunk.content)
                        yield ChatStreamEvent(event_type="reasoning", content=chunk.content)
                    elif chunk.content:
                        self._add_text(chunk.content)
                        yield ChatStreamEvent(event_type="token", content=chunk.content)

                if ai_message is None:
                    break
                lc_messages.append(ai_message)
                tool_calls = list(getattr(ai_message, "tool_calls", None) or [])
                if not tool_calls:
                    break

                self.state = "tool_invocation_pending"
                pending: List[ToolInvocationPart] = []
                for i, tc in enumerate(tool_calls):
                    name = str(tc.get("name") or "")
                    args = tc.get("args") if isinstance(tc.get("args"), dict) else {}
                    call_id = str(tc.get("id") or f"call-{step}-{i}")
                    # The ToolMessage below must pair with the call the model sees next step.
                    tc["id"] = call_id
                    part = ToolInvocationPart(
                        tool_invocation=ToolInvocation(
                            state="call", tool_call_id=call_id, tool_name=name, args=args, step=step
                        )
                    )
                    self.response.parts.append(part)
                    pending.append(part)
                    yield ChatStreamEvent(
                        event_type="tool_start",
                        tool=name,
                        content=f"Calling {name}...",
                        metadata={"toolCallId": call_id, "args": args},
                    )

                results = await asyncio.gather(
                    *(self._invoke(p.tool_invocation.tool_name, p.tool_invocation.args) for p in pending)
                )

                for part, result in zip(pending, results):
                    inv = part.tool_invocation
                    inv.state = "result"
                    inv.result = result
                    lc_messages.append(ToolMessage(content=tool_result_text(result), tool_call_id=inv.tool_call_id))
                    outcome, summary = summarize_tool_result(tool=inv.tool_name, result=result)
                    yield ChatStreamEvent(
                        event_type="tool_end",
                        tool=inv.tool_name,
                        content=summary,
                        metadata={"toolCallId": inv.tool_call_id, "outcome": outcome, "result": result},
                    )
                self.state = "generating"
            else:
                logger.info("Chat loop stopped at max steps (%d)", self._max_steps)

            self.state = "finished"
            yield ChatStreamEvent(
                event_type="done",
                content=response_text(self.response),
                metadata={"message": self.response.to_wire(), "steps": self.steps},
            )
        except (asyncio.CancelledError, GeneratorExit):
            self.state = "aborted"
            raise
        except Exception as e:
            self.state = "aborted"
            yield ChatStreamEvent(event_type="error", content=caller_safe_error(e))
