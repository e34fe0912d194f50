"""Tests for tools.message_tool."""

import json

import pytest

from agent.errors import ToolFailed, UnknownTool
from agent.types import ToolCall
from tools import message_tool
from tools.message_tool import MessageSender
from tools.registry import ToolContext


class _Outbox:
    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)


@pytest.fixture()
def context():
    return ToolContext(conversation_id="telegram:42", channel="telegram", chat_id="42")


class TestMessageTool:
    @pytest.mark.asyncio
    async def test_hidden_until_callback_attached(self, registry, context):
        sender = message_tool.register(registry)
        assert "message" not in registry.visible_names()
        with pytest.raises(UnknownTool):
            await registry.dispatch(ToolCall(name="message", arguments={"content": "hi"}), context)

        sender.set_callback(_Outbox())
        assert "message" in registry.visible_names()

    @pytest.mark.asyncio
    async def test_defaults_to_originating_chat(self, registry, context):
        outbox = _Outbox()
        message_tool.register(registry, MessageSender(outbox))
        result = await registry.dispatch(ToolCall(name="message", arguments={"content": "reminder"}), context)

        assert json.loads(result.content)["success"]
        [sent] = outbox.sent
        assert (sent.channel, sent.chat_id, sent.text) == ("telegram", "42", "reminder")
        assert sent.conversation_id == "telegram:42"

    @pytest.mark.asyncio
    async def test_explicit_target(self, context):
        outbox = _Outbox()
        await MessageSender(outbox).handle(
            {"content": "hey", "channel": "discord", "chat_id": "9"}, context=context)
        assert (outbox.sent[0].channel, outbox.sent[0].chat_id) == ("discord", "9")

    @pytest.mark.asyncio
    async def test_send_failure_is_tool_failed(self, context):
        async def broken(message):
            raise LookupError("no such channel")

        with pytest.raises(ToolFailed, match="no such channel"):
            await MessageSender(broken).handle({"content": "x"}, context=context)

    @pytest.mark.asyncio
    async def test_missing_target(self):
        with pytest.raises(ToolFailed, match="No target"):
            await MessageSender(_Outbox()).handle({"content": "x"}, context=ToolContext(channel="", chat_id=""))
