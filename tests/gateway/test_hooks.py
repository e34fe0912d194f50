"""Tests for the gateway HookRegistry -- discover, load, and emit.

Covers:
- discover_and_load: skips invalid dirs, loads valid hooks
- emit: exact match, wildcard (agent:*), combined
- async and sync handlers both supported
- errors in handlers are swallowed (never block pipeline)
- lifecycle events emitted by a real AgentLoop run
"""

import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest

from agent.agent_loop import AgentLoop, LoopConfig
from agent.types import ToolCall
from gateway.hooks import HookRegistry
from tests.fakes.fake_provider import ScriptedProvider, text_response, tool_response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _write_hook(hooks_dir: Path, name: str, events: list, handler_code: str) -> Path:
    """Create a minimal hook directory with HOOK.yaml + handler.py."""
    hook_dir = hooks_dir / name
    hook_dir.mkdir(parents=True, exist_ok=True)
    (hook_dir / "HOOK.yaml").write_text(
        f"name: {name}\ndescription: test\nevents:\n"
        + "".join(f"  - {e}\n" for e in events),
        encoding="utf-8",
    )
    (hook_dir / "handler.py").write_text(
        textwrap.dedent(handler_code), encoding="utf-8"
    )
    return hook_dir


@pytest.fixture()
def hooks_dir(tmp_path):
    path = tmp_path / "hooks"
    path.mkdir()
    return path


# ---------------------------------------------------------------------------
# discover_and_load
# ---------------------------------------------------------------------------

class TestHookRegistryDiscovery:
    def test_empty_hooks_dir_loads_zero_hooks(self, hooks_dir):
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_nonexistent_hooks_dir_does_not_raise(self, tmp_path):
        reg = HookRegistry()
        with patch("gateway.hooks.HOOKS_DIR", tmp_path / "does_not_exist"):
            reg.discover_and_load()  # should not raise
        assert reg.loaded_hooks == []

    def test_default_dir_is_nanobot_home(self, nanobot_home):
        _write_hook(nanobot_home / "hooks", "home_hook", ["agent:end"], "def handle(e, c): pass\n")
        reg = HookRegistry()
        reg.discover_and_load()
        assert [h["name"] for h in reg.loaded_hooks] == ["home_hook"]

    def test_valid_sync_hook_is_loaded(self, hooks_dir):
        _write_hook(
            hooks_dir, "my_hook", ["agent:start"],
            "def handle(event_type, ctx): pass\n",
        )
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert len(reg.loaded_hooks) == 1
        assert reg.loaded_hooks[0]["name"] == "my_hook"
        assert "agent:start" in reg.loaded_hooks[0]["events"]

    def test_hook_missing_yaml_is_skipped(self, hooks_dir):
        hook_dir = hooks_dir / "incomplete_hook"
        hook_dir.mkdir()
        (hook_dir / "handler.py").write_text("def handle(e, c): pass\n")
        # No HOOK.yaml
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_hook_missing_handler_is_skipped(self, hooks_dir):
        hook_dir = hooks_dir / "no_handler"
        hook_dir.mkdir()
        (hook_dir / "HOOK.yaml").write_text(
            "name: no_handler\nevents:\n  - agent:start\n"
        )
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_hook_with_no_handle_function_is_skipped(self, hooks_dir):
        _write_hook(
            hooks_dir, "bad_handler", ["agent:start"],
            "# no handle() function here\nfoo = 42\n",
        )
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_hook_with_invalid_yaml_is_skipped(self, hooks_dir):
        hook_dir = hooks_dir / "bad_yaml"
        hook_dir.mkdir()
        (hook_dir / "HOOK.yaml").write_text(":\n::invalid yaml::\n")
        (hook_dir / "handler.py").write_text("def handle(e, c): pass\n")
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_hook_without_events_is_skipped(self, hooks_dir):
        _write_hook(hooks_dir, "idle", [], "def handle(e, c): pass\n")
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert reg.loaded_hooks == []

    def test_multiple_hooks_all_loaded(self, hooks_dir):
        for i in range(3):
            _write_hook(hooks_dir, f"hook_{i}", [f"event:{i}"], "def handle(e,c): pass\n")
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        assert len(reg.loaded_hooks) == 3

    @pytest.mark.asyncio
    async def test_loaded_handler_is_called(self, hooks_dir, tmp_path):
        out = tmp_path / "fired.txt"
        _write_hook(
            hooks_dir, "writer", ["agent:end"],
            f"""
            def handle(event_type, ctx):
                with open({str(out)!r}, "a") as f:
                    f.write(event_type + ":" + ctx["status"] + "\\n")
            """,
        )
        reg = HookRegistry()
        reg.discover_and_load(hooks_dir)
        await reg.emit("agent:end", {"status": "ok"})
        assert out.read_text() == "agent:end:ok\n"


# ---------------------------------------------------------------------------
# emit -- exact match
# ---------------------------------------------------------------------------

class TestHookRegistryEmitExact:
    @pytest.mark.asyncio
    async def test_sync_handler_called_for_matching_event(self):
        reg = HookRegistry()
        received = []
        reg.register("agent:start", lambda et, ctx: received.append((et, ctx)))

        await reg.emit("agent:start", {"foo": "bar"})
        assert len(received) == 1
        assert received[0][0] == "agent:start"
        assert received[0][1]["foo"] == "bar"

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self):
        reg = HookRegistry()
        received = []

        async def async_handle(event_type, ctx):
            received.append(event_type)

        reg.register("agent:end", async_handle)
        await reg.emit("agent:end", {})
        assert received == ["agent:end"]

    @pytest.mark.asyncio
    async def test_non_matching_event_not_fired(self):
        reg = HookRegistry()
        called = []
        reg.register("session:start", lambda e, c: called.append(e))
        await reg.emit("agent:start", {})
        assert called == []

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers_does_not_raise(self):
        reg = HookRegistry()
        await reg.emit("some:unknown:event", {"x": 1})  # should not raise

    @pytest.mark.asyncio
    async def test_emit_none_context_defaults_to_empty_dict(self):
        reg = HookRegistry()
        received_ctx = []
        reg.register("test:event", lambda e, ctx: received_ctx.append(ctx))
        await reg.emit("test:event", None)
        assert received_ctx == [{}]


# ---------------------------------------------------------------------------
# emit -- wildcard (agent:*)
# ---------------------------------------------------------------------------

class TestHookRegistryWildcard:
    @pytest.mark.asyncio
    async def test_wildcard_fires_for_any_agent_subtype(self):
        reg = HookRegistry()
        received = []
        reg.register("agent:*", lambda e, c: received.append(e))

        await reg.emit("agent:start", {})
        await reg.emit("agent:step", {})
        await reg.emit("agent:end", {})

        assert received == ["agent:start", "agent:step", "agent:end"]

    @pytest.mark.asyncio
    async def test_wildcard_does_not_fire_for_other_prefixes(self):
        reg = HookRegistry()
        received = []
        reg.register("agent:*", lambda e, c: received.append(e))

        await reg.emit("gateway:startup", {})
        await reg.emit("session:start", {})

        assert received == []

    @pytest.mark.asyncio
    async def test_exact_and_wildcard_both_fire(self):
        reg = HookRegistry()
        exact_calls = []
        wildcard_calls = []
        reg.register("agent:step", lambda e, c: exact_calls.append(e))
        reg.register("agent:*", lambda e, c: wildcard_calls.append(e))

        await reg.emit("agent:step", {"round": 1})

        assert exact_calls == ["agent:step"]
        assert wildcard_calls == ["agent:step"]


# ---------------------------------------------------------------------------
# Error isolation
# ---------------------------------------------------------------------------

class TestHookRegistryErrorIsolation:
    @pytest.mark.asyncio
    async def test_exception_in_handler_does_not_propagate(self):
        reg = HookRegistry()

        def bad_handler(event_type, ctx):
            raise RuntimeError("kaboom")

        reg.register("agent:start", bad_handler)
        # Should not raise
        await reg.emit("agent:start", {})

    @pytest.mark.asyncio
    async def test_subsequent_handlers_still_called_after_exception(self):
        reg = HookRegistry()
        called = []

        def bad_handler(event_type, ctx):
            raise ValueError("oops")

        def good_handler(event_type, ctx):
            called.append("good")

        reg.register("agent:start", bad_handler)
        reg.register("agent:start", good_handler)
        await reg.emit("agent:start", {})
        assert called == ["good"]


# ---------------------------------------------------------------------------
# Lifecycle events from a real loop
# ---------------------------------------------------------------------------

class TestAgentLoopEvents:
    @pytest.mark.asyncio
    async def test_context_shapes(self, registry, store):
        registry.register(name="note", capability="memory", schema={"type": "object"},
                          handler=lambda args, **kw: "noted")
        provider = ScriptedProvider([
            tool_response(ToolCall(name="note")),
            text_response("all done"),
        ])
        reg = HookRegistry()
        captured = []
        for event in ("session:start", "agent:*"):
            reg.register(event, lambda e, ctx: captured.append((e, ctx)))
        loop = AgentLoop(provider, registry, store, config=LoopConfig(model="test-model"), hooks=reg)

        await loop.run("telegram:1", "take a note", channel="telegram")

        events = [e for e, _ in captured]
        assert events == ["session:start", "agent:start", "agent:step", "agent:end"]
        contexts = dict(captured)
        assert contexts["session:start"] == {"session_id": "telegram:1", "channel": "telegram"}
        assert contexts["agent:step"]["tool_names"] == ["note"]
        assert contexts["agent:step"]["round"] == 1
        assert contexts["agent:end"]["status"] == "ok"
        assert contexts["agent:end"]["response"] == "all done"

    @pytest.mark.asyncio
    async def test_session_start_only_for_new_sessions(self, registry, store):
        provider = ScriptedProvider([text_response("one"), text_response("two")])
        reg = HookRegistry()
        starts = []
        reg.register("session:start", lambda e, ctx: starts.append(ctx["session_id"]))
        loop = AgentLoop(provider, registry, store, config=LoopConfig(model="test-model"), hooks=reg)

        await loop.run("cli:x", "first")
        await loop.run("cli:x", "second")

        assert starts == ["cli:x"]
