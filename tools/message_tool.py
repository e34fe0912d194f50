"""
Message tool -- proactively send a message to a chat channel.

Defaults to the conversation the call came from; ``channel``/``chat_id``
retarget it. Delivery goes through a send callback supplied by the gateway
(``async send(OutboundMessage)``); without one the tool is hidden.
"""

import json
import logging
from typing import Awaitable, Callable, Optional

from agent.errors import ToolFailed
from gateway.events import OutboundMessage
from tools.registry import ToolContext

logger = logging.getLogger(__name__)

SendCallback = Callable[[OutboundMessage], Awaitable[None]]


class MessageSender:
    """Late-bound holder so the gateway can attach its callback after registration."""

    def __init__(self, callback: Optional[SendCallback] = None):
        self.callback = callback

    def set_callback(self, callback: Optional[SendCallback]) -> None:
        self.callback = callback

    def configured(self) -> bool:
        return self.callback is not None

    async def handle(self, args: dict, context: ToolContext = None, **kwargs) -> str:
        content = args["content"]
        channel = args.get("channel") or (context.channel if context else "")
        chat_id = args.get("chat_id") or (context.chat_id if context else "")
        if not channel or not chat_id:
            raise ToolFailed("No target channel/chat specified")
        if self.callback is None:
            raise ToolFailed("Message sending not configured")

        conversation_id = context.conversation_id if context else chat_id
        message = OutboundMessage(
            conversation_id=conversation_id,
            text=content,
            channel=channel,
            chat_id=chat_id,
        )
        try:
            await self.callback(message)
        except Exception as e:
            raise ToolFailed(f"Error sending message: {e}") from e
        logger.info("Message tool sent %d chars to %s:%s", len(content), channel, chat_id)
        return json.dumps({"success": True, "message": f"Message sent to {channel}:{chat_id}"})


def register(registry, sender: Optional[MessageSender] = None) -> MessageSender:
    """Register the message tool with the tool registry."""
    sender = sender or MessageSender()
    registry.register(
        name="message",
        capability="messaging",
        description="Send a message to the user. Use this when you want to communicate something.",
        schema={
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The message content to send"},
                "channel": {
                    "type": "string",
                    "description": "Optional: target channel (telegram, discord, etc.)",
                },
                "chat_id": {"type": "string", "description": "Optional: target chat/user ID"},
            },
            "required": ["content"],
        },
        handler=sender.handle,
        check_fn=sender.configured,
    )
    return sender
