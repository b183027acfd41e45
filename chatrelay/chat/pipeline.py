"""
One chat request, end to end: tool providers up, model/tool loop, providers down, persist.

The work runs in a producer task that owns the ToolOrchestrator and the assembler;
events reach the HTTP response through a queue. When the response stops consuming
(client disconnect), the consumer cancels the producer. That cancellation is the only
abort signal: the producer's `async with` closes every handle it opened, then the
partial transcript is persisted within CHAT_PERSIST_TIMEOUT_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Callable, Optional, Set, Tuple

from chatrelay.chat.policy import ChatPolicy, load_chat_policy, redact_text
from chatrelay.chat.runtime_streaming import StreamingAssembler, caller_safe_error
from chatrelay.chat.types import ChatRequest, ChatStreamEvent
from chatrelay.llm.tracing import build_invoke_config
from chatrelay.mcp.lifecycle import Connector, ToolOrchestrator
from chatrelay.mcp.provision import ProvisionPolicy
from chatrelay.memory.chat import append_transcript

logger = logging.getLogger(__name__)

PersistFn = Callable[..., Tuple[bool, str]]

_END = object()

# Producers cancelled by a departed consumer finish their cleanup on their own.
_detached: Set["asyncio.Task[None]"] = set()


def _on_detached_done(task: "asyncio.Task[None]") -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Chat producer failed after client disconnect: %s", type(exc).__name__)


class ChatPipeline:
    def __init__(
        self,
        request: ChatRequest,
        *,
        chat_id: str,
        llm: Any,
        think_tags: bool = False,
        policy: Optional[ChatPolicy] = None,
        provision_policy: Optional[ProvisionPolicy] = None,
        connector: Optional[Connector] = None,
        persist: Optional[PersistFn] = None,
    ) -> None:
        self.request = request
        self.chat_id = chat_id
        self._llm = llm
        self._think_tags = think_tags
        self._policy = policy or load_chat_policy()
        self._provision_policy = provision_policy
        self._connector = connector
        self._persist_fn = persist or append_transcript
        self.orchestrator: Optional[ToolOrchestrator] = None
        self.assembler: Optional[StreamingAssembler] = None
        self.persisted: Optional[bool] = None

    async def events(self) -> AsyncGenerator[ChatStreamEvent, None]:
        queue: "asyncio.Queue[Any]" = asyncio.Queue()
        producer = asyncio.create_task(self._produce(queue))
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                _detached.add(producer)
                producer.add_done_callback(_on_detached_done)

    async def _produce(self, queue: "asyncio.Queue[Any]") -> None:
        try:
            async with ToolOrchestrator(
                self.request.mcp_servers,
                connect_timeout_seconds=self._policy.connect_timeout_seconds,
                close_timeout_seconds=self._policy.close_timeout_seconds,
                provision_policy=self._provision_policy,
                connector=self._connector,
            ) as orch:
                self.orchestrator = orch
                logger.info("Chat %s tools: %s", self.chat_id, orch.summary())
                self.assembler = StreamingAssembler(
                    self._llm,
                    self.request.messages,
                    orch.registry,
                    max_steps=self._policy.max_steps,
                    tool_timeout_seconds=self._policy.tool_timeout_seconds,
                    on_tool_timeout=orch.drop_tool,
                    invoke_config=build_invoke_config(
                        kind="chat",
                        run_name="chat",
                        metadata={"chat_id": self.chat_id, "model": self.request.selected_model},
                    ),
                    think_tags=self._think_tags,
                )
                async for ev in self.assembler.run():
                    await queue.put(ev)
        except asyncio.CancelledError:
            logger.info("Chat %s aborted by client", self.chat_id)
            await self._persist_bounded()
            raise
        except Exception as e:
            await queue.put(ChatStreamEvent(event_type="error", content=caller_safe_error(e)))
            await self._persist_bounded()
        else:
            await self._persist_bounded()
        finally:
            queue.put_nowait(_END)

    async def _persist_bounded(self) -> None:
        """Persist the transcript so far; never blocks longer than the persist timeout."""
        if self.assembler is None:
            return
        messages = self.assembler.transcript()
        try:
            ok, msg = await asyncio.wait_for(
                asyncio.to_thread(
                    self._persist_fn, chat_id=self.chat_id, user_id=self.request.user_id or "", messages=messages
                ),
                timeout=self._policy.persist_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Persisting chat %s timed out after %.0fs", self.chat_id, self._policy.persist_timeout_seconds
            )
            self.persisted = False
            return
        except Exception as e:
            logger.error("Persisting chat %s failed: %s", self.chat_id, redact_text(f"{type(e).__name__}: {e}"))
            self.persisted = False
            return
        self.persisted = bool(ok)
        if not ok:
            logger.info("Chat %s not persisted: %s", self.chat_id, msg)
