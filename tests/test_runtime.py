"""Tests for nanobot_cli.runtime and the run_agent CLI helpers."""

import pytest

import run_agent
from agent.compaction import SummarizePolicy, TruncatePolicy
from agent.types import ToolCall
from gateway.events import InboundMessage
from nanobot_cli.config import build_config
from nanobot_cli.runtime import build_runtime, compaction_policy_for, loop_config_from
from tests.fakes.fake_provider import ScriptedProvider, text_response, tool_response


def _config(workspace, **agent):
    return build_config({"workspace": str(workspace), "agent": agent}, env_get=lambda key: None)


class _Outbox:
    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)


class TestBuildRuntime:
    @pytest.mark.asyncio
    async def test_registers_every_tool(self, workspace):
        runtime = build_runtime(_config(workspace), provider=ScriptedProvider([]), load_hooks=False)
        try:
            names = set(runtime.registry.get_all_tool_names())
            assert names == {
                "read_file", "write_file", "edit_file", "list_dir", "exec", "web_search", "web_fetch",
                "memory", "message", "spawn", "schedule_task", "list_tasks", "remove_task",
            }
            # No Brave key configured, so search stays hidden.
            assert "web_search" not in runtime.registry.visible_names()
            assert "message" in runtime.registry.visible_names()
        finally:
            await runtime.aclose()

    @pytest.mark.asyncio
    async def test_message_tool_delivers_through_gateway(self, workspace):
        provider = ScriptedProvider([
            tool_response(ToolCall(name="message", arguments={"content": "heads up"})),
            text_response("Sent you a note."),
        ])
        runtime = build_runtime(_config(workspace), provider=provider, load_hooks=False)
        outbox = _Outbox()
        runtime.gateway.register_channel("telegram", outbox)
        try:
            out = await runtime.gateway.submit(InboundMessage(
                conversation_id="telegram:3", text="ping me", channel="telegram", chat_id="3"))
        finally:
            await runtime.aclose()

        assert out.text == "Sent you a note."
        [sent] = outbox.sent
        assert (sent.chat_id, sent.text) == ("3", "heads up")
        assert provider.closed

    def test_loop_config_mirrors_settings(self, workspace):
        config = _config(workspace, max_rounds=4, capabilities=["research"])
        loop_config = loop_config_from(config)
        assert loop_config.max_rounds == 4
        assert loop_config.capabilities == frozenset({"filesystem", "network", "memory"})
        assert loop_config.model == config.provider.model

    def test_compaction_policy_choice(self, workspace):
        provider = ScriptedProvider([])
        assert isinstance(compaction_policy_for(_config(workspace), provider), TruncatePolicy)
        summarize = _config(workspace, compaction_strategy="summarize")
        assert isinstance(compaction_policy_for(summarize, provider), SummarizePolicy)


class TestCli:
    @pytest.mark.asyncio
    async def test_ask_prints_answer(self, workspace, capsys):
        runtime = build_runtime(_config(workspace), provider=ScriptedProvider([text_response("Hello there")]),
                                load_hooks=False)
        try:
            await run_agent._ask(runtime, "cli:test", "hi", stream=False)
        finally:
            await runtime.aclose()
        assert "Hello there" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_streamed_answer(self, workspace, capsys):
        provider = ScriptedProvider([text_response("one two")], streaming=True)
        runtime = build_runtime(_config(workspace), provider=provider, load_hooks=False)
        try:
            await run_agent._ask(runtime, "cli:test", "count", stream=True)
        finally:
            await runtime.aclose()
        assert capsys.readouterr().out.startswith("one two")

    def test_list_tools(self, workspace, capsys):
        runtime = build_runtime(_config(workspace), provider=ScriptedProvider([]), load_hooks=False)
        run_agent._print_tools(runtime)
        out = capsys.readouterr().out
        assert "filesystem" in out
        assert "read_file" in out
        assert "research" in out
