"""Tests for gateway.run -- routing, supersede-on-new-message and the queue path."""

import asyncio
import logging

import pytest

from agent.agent_loop import AgentLoop, LoopConfig, LoopResult
from agent.types import ROLE_USER, ToolCall
from gateway.events import InboundMessage, OutboundMessage
from gateway.hooks import HookRegistry
from gateway.run import INTERNAL_ERROR_TEXT, GatewayRunner, configure_logging
from tests.fakes.fake_provider import ScriptedProvider, text_response, tool_response


class _GatedAgent:
    """Agent stand-in whose runs block until ``gate`` is set."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = []

    async def run(self, conversation_id, text, **kwargs):
        self.started.append(conversation_id)
        await self.gate.wait()
        return LoopResult(session_id=conversation_id, text=f"echo {text}")


class _CrashingAgent:
    async def run(self, conversation_id, text, **kwargs):
        raise RuntimeError("boom")


class _Outbox:
    def __init__(self):
        self.sent = []
        self.arrived = asyncio.Event()

    async def __call__(self, message):
        self.sent.append(message)
        self.arrived.set()


def _loop(provider, registry, store, hooks=None):
    return AgentLoop(provider, registry, store, config=LoopConfig(model="test-model"), hooks=hooks)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_response_envelope(self, registry, store):
        registry.register(name="note", capability="memory", schema={"type": "object"},
                          handler=lambda args, **kw: "noted")
        provider = ScriptedProvider([tool_response(ToolCall(name="note")), text_response("Saved.")])
        gateway = GatewayRunner(_loop(provider, registry, store))

        out = await gateway.submit(InboundMessage(conversation_id="telegram:5", text="remember this",
                                                  channel="telegram", chat_id="5"))

        assert (out.status, out.text, out.channel, out.chat_id) == ("ok", "Saved.", "telegram", "5")
        assert [entry["tool"] for entry in out.tool_trace] == ["note"]
        assert not gateway.is_busy("telegram:5")

    @pytest.mark.asyncio
    async def test_crash_becomes_error_status(self):
        gateway = GatewayRunner(_CrashingAgent())
        out = await gateway.submit(InboundMessage(conversation_id="cli:x", text="hi"))
        assert out.status == "error"
        assert out.text == INTERNAL_ERROR_TEXT
        assert "boom" not in out.text

    @pytest.mark.asyncio
    async def test_different_conversations_run_concurrently(self):
        agent = _GatedAgent()
        gateway = GatewayRunner(agent)
        first = asyncio.create_task(gateway.submit(InboundMessage(conversation_id="a", text="1")))
        second = asyncio.create_task(gateway.submit(InboundMessage(conversation_id="b", text="2")))
        while len(agent.started) < 2:
            await asyncio.sleep(0.01)
        assert gateway.is_busy("a") and gateway.is_busy("b")

        agent.gate.set()
        results = await asyncio.gather(first, second)
        assert [r.text for r in results] == ["echo 1", "echo 2"]


class TestSupersede:
    @pytest.mark.asyncio
    async def test_new_message_cancels_in_flight_run(self, registry, store):
        entered = asyncio.Event()

        async def never_finishes(request):
            entered.set()
            await asyncio.Event().wait()

        provider = ScriptedProvider([never_finishes, text_response("fresh answer")])
        hooks = HookRegistry()
        cancelled = []
        hooks.register("message:cancelled", lambda e, ctx: cancelled.append(ctx["session_id"]))
        gateway = GatewayRunner(_loop(provider, registry, store), hooks=hooks)

        stale = asyncio.create_task(gateway.submit(InboundMessage(conversation_id="cli:s", text="first")))
        await entered.wait()
        fresh = await gateway.submit(InboundMessage(conversation_id="cli:s", text="second"))
        stale_out = await stale

        assert stale_out.status == "cancelled"
        assert stale_out.text == ""
        assert fresh.status == "ok"
        assert fresh.text == "fresh answer"
        assert cancelled == ["cli:s"]

        session = await store.load("cli:s")
        assert [t.text for t in session.turns if t.role == ROLE_USER] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_external_cancellation_still_propagates(self):
        agent = _GatedAgent()
        gateway = GatewayRunner(agent)
        task = asyncio.create_task(gateway.submit(InboundMessage(conversation_id="c", text="x")))
        while not agent.started:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestDelivery:
    @pytest.mark.asyncio
    async def test_deliver_routes_by_channel(self):
        gateway = GatewayRunner(_GatedAgent())
        outbox = _Outbox()
        gateway.register_channel("telegram", outbox)
        message = OutboundMessage(conversation_id="telegram:1", text="hi", channel="telegram", chat_id="1")
        await gateway.deliver(message)
        assert outbox.sent == [message]

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        gateway = GatewayRunner(_GatedAgent())
        with pytest.raises(LookupError):
            await gateway.deliver(OutboundMessage(conversation_id="x", text="hi", channel="pager"))


class TestServe:
    @pytest.mark.asyncio
    async def test_queue_to_channel(self, registry, store):
        provider = ScriptedProvider([text_response("pong")])
        hooks = HookRegistry()
        startups = []
        hooks.register("gateway:startup", lambda e, ctx: startups.append(ctx["channels"]))
        gateway = GatewayRunner(_loop(provider, registry, store), hooks=hooks)
        outbox = _Outbox()
        gateway.register_channel("telegram", outbox)

        stop = asyncio.Event()
        serving = asyncio.create_task(gateway.serve(stop))
        await gateway.put(InboundMessage(conversation_id="telegram:9", text="ping",
                                         channel="telegram", chat_id="9"))
        await asyncio.wait_for(outbox.arrived.wait(), timeout=5)
        stop.set()
        await asyncio.wait_for(serving, timeout=5)

        [sent] = outbox.sent
        assert (sent.text, sent.chat_id) == ("pong", "9")
        assert startups == [["telegram"]]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_runs(self):
        agent = _GatedAgent()
        gateway = GatewayRunner(agent)
        stop = asyncio.Event()
        serving = asyncio.create_task(gateway.serve(stop))
        await gateway.put(InboundMessage(conversation_id="slow", text="x", channel="cli"))
        while not agent.started:
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(serving, timeout=5)
        assert not gateway.is_busy("slow")


def test_configure_logging_writes_rotating_file(tmp_path):
    log_file = configure_logging(log_dir=tmp_path / "logs")
    try:
        logging.getLogger("nanobot.test").info("hello log")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert log_file.exists()
        assert "hello log" in log_file.read_text(encoding="utf-8")
        # Reconfiguring replaces our handlers instead of stacking them.
        configure_logging(log_dir=tmp_path / "logs")
        ours = [h for h in logging.getLogger().handlers if getattr(h, "_nanobot_handler", False)]
        assert len(ours) == 2
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, "_nanobot_handler", False):
                root.removeHandler(handler)
                handler.close()
