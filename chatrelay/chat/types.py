from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.llm.models import DEFAULT_MODEL
from chatrelay.mcp.types import McpServerConfig

ChatRole = Literal["system", "user", "assistant"]
ToolInvocationState = Literal["partial-call", "call", "result"]


class _Wire(BaseModel):
    # camelCase on the wire, snake_case in code
    model_config = ConfigDict(populate_by_name=True)


class TextPart(_Wire):
    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(_Wire):
    type: Literal["reasoning"] = "reasoning"
    reasoning: str = ""
    details: List[Dict[str, Any]] = Field(default_factory=list)


class ToolInvocation(_Wire):
    state: ToolInvocationState = "call"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    step: Optional[int] = None


class ToolInvocationPart(_Wire):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation = Field(alias="toolInvocation")


class StepStartPart(_Wire):
    type: Literal["step-start"] = "step-start"


class OtherPart(BaseModel):
    """Part types this service does not interpret (files, sources); passed through unchanged."""

    model_config = ConfigDict(extra="allow")

    type: str


# First match wins, so unknown part types fall through to OtherPart.
MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolInvocationPart, StepStartPart, OtherPart], Field(union_mode="left_to_right")
]


class UIMessage(_Wire):
    id: str = ""
    role: ChatRole
    content: str = ""
    parts: List[MessagePart] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    def text(self) -> str:
        """Plain text of the message: text parts when present, else `content`."""
        texts = [p.text for p in self.parts if isinstance(p, TextPart)]
        return "".join(texts) if texts else (self.content or "")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChatRequest(_Wire):
    messages: List[UIMessage] = Field(default_factory=list)
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    selected_model: str = Field(default=DEFAULT_MODEL, alias="selectedModel")
    user_id: Optional[str] = Field(default=None, alias="userId")
    mcp_servers: List[McpServerConfig] = Field(default_factory=list, alias="mcpServers")
    user_api_key: Optional[str] = Field(default=None, alias="userApiKey")
    user_model_name: Optional[str] = Field(default=None, alias="userModelName")


ChatEventType = Literal["token", "reasoning", "tool_start", "tool_end", "done", "error"]


@dataclass
class ChatStreamEvent:
    """Single event in the chat stream."""

    event_type: ChatEventType
    content: str = ""
    tool: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
