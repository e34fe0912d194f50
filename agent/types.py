"""Provider-agnostic conversation types.

Turns and ToolCalls are what the Session Store persists; ChatRequest and
ChatResponse are the ephemeral shapes exchanged with the Provider Adapter.
All of them serialize to plain dicts so the session log stays human readable.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

VALID_ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})

# Either plain text or a list of OpenAI-style content parts (text / image_url).
Content = Union[str, List[Dict[str, Any]]]


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolCall:
    """A structured request from the model to invoke a named tool."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_call_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            name=data["name"],
            arguments=dict(data.get("arguments") or {}),
            id=data.get("id") or new_call_id(),
        )

    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False)


@dataclass(frozen=True)
class Turn:
    """One message unit in a conversation.

    Assistant turns may carry ``tool_calls``; tool turns reference the call
    they answer through ``tool_call_id``.
    """

    role: str
    content: Content = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    is_error: bool = False
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid turn role: {self.role!r}")
        if self.role == ROLE_TOOL and not self.tool_call_id:
            raise ValueError("Tool turns require a tool_call_id")

    # -- Constructors ---------------------------------------------------------

    @classmethod
    def user(cls, content: Content) -> "Turn":
        return cls(role=ROLE_USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> "Turn":
        return cls(role=ROLE_ASSISTANT, content=content or "", tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, call: ToolCall, content: str, *, is_error: bool = False) -> "Turn":
        return cls(
            role=ROLE_TOOL,
            content=content,
            tool_call_id=call.id,
            name=call.name,
            is_error=is_error,
        )

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=ROLE_SYSTEM, content=content)

    # -- Helpers --------------------------------------------------------------

    @property
    def has_tool_calls(self) -> bool:
        return self.role == ROLE_ASSISTANT and bool(self.tool_calls)

    @property
    def text(self) -> str:
        """Plain-text view of the content (image parts are dropped)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            part.get("text", "") for part in self.content if part.get("type") == "text"
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        if self.is_error:
            data["is_error"] = True
        data["created_at"] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        return cls(
            role=data["role"],
            content=data.get("content") if data.get("content") is not None else "",
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            is_error=bool(data.get("is_error", False)),
            created_at=data.get("created_at") or datetime.now().isoformat(),
        )


@dataclass
class ChatRequest:
    """Everything a provider needs for one inference call."""

    turns: List[Turn]
    model: str
    tools: List[Dict[str, Any]] = field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResponse:
    """Normalized provider response: final text, or tool calls plus optional partial text."""

    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Dict[str, int] = field(default_factory=dict)
    reasoning: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ToolResult:
    """Successful tool output, already rendered as the tool-turn content."""

    call_id: str
    name: str
    content: str
    duration: float = 0.0


@dataclass(frozen=True)
class MemoryEntry:
    scope: str
    content: str
    last_modified: datetime
