"""Inbound and outbound message envelopes.

Every collaborator that talks to the agent (CLI, chat bridge, scheduler)
submits an ``InboundMessage`` and gets an ``OutboundMessage`` back. Bridges
translate their platform payloads into these and nothing else.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

STATUS_OK = "ok"
STATUS_BUDGET_EXCEEDED = "budget_exceeded"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"


@dataclass
class InboundMessage:
    conversation_id: str
    text: str
    channel: str = "cli"
    sender: str = ""
    attachments: List[str] = field(default_factory=list)
    # Platform chat id when it differs from the conversation id.
    chat_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    received_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def target_chat_id(self) -> str:
        return self.chat_id or self.conversation_id


@dataclass
class OutboundMessage:
    conversation_id: str
    text: str
    status: str = STATUS_OK
    channel: str = "cli"
    chat_id: Optional[str] = None
    tool_trace: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "conversation_id": self.conversation_id,
            "text": self.text,
            "status": self.status,
            "channel": self.channel,
            "chat_id": self.chat_id or self.conversation_id,
        }
        if self.tool_trace is not None:
            data["tool_trace"] = self.tool_trace
        return data
