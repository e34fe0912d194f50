"""Tests for agent.session_store -- append-only JSONL session logs."""

import json
import logging

import pytest

from agent.compaction import CompactionPlan, TruncatePolicy
from agent.errors import SessionNotFound
from agent.session_store import SUMMARY_PREFIX, SessionStore, session_filename
from agent.types import ROLE_SYSTEM, ToolCall, Turn


def _records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class FixedCut:
    """Policy stub that always proposes the same cut."""

    def __init__(self, cut, summary=None):
        self.cut = cut
        self.summary = summary

    async def plan(self, turns, *, previous_summary=None, budget_tokens=None):
        return CompactionPlan(cut=self.cut, summary=self.summary)


# ---------------------------------------------------------------------------
# Load / append / replay
# ---------------------------------------------------------------------------

class TestAppendAndReplay:
    @pytest.mark.asyncio
    async def test_new_session_writes_meta_record(self, store):
        session = await store.load("telegram:42")
        assert session.turns == []
        records = _records(store.path_for("telegram:42"))
        assert records[0]["type"] == "meta"
        assert records[0]["session_id"] == "telegram:42"

    @pytest.mark.asyncio
    async def test_load_without_create_raises(self, store):
        with pytest.raises(SessionNotFound):
            await store.load("missing", create=False)

    @pytest.mark.asyncio
    async def test_turns_survive_a_restart(self, store, workspace):
        call = ToolCall(name="read_file", arguments={"path": "a.txt"})
        await store.append("s", Turn.user("read a.txt"))
        await store.append_many("s", [Turn.assistant("", [call]), Turn.tool(call, "contents")])
        await store.append("s", Turn.assistant("a.txt says contents"))

        reopened = await SessionStore(workspace).load("s")

        assert [t.role for t in reopened.turns] == ["user", "assistant", "tool", "assistant"]
        assert reopened.turns[1].tool_calls[0] == call
        assert reopened.turns[2].tool_call_id == call.id
        seqs = [r["seq"] for r in _records(store.path_for("s")) if r["type"] == "turn"]
        assert seqs == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_tool_turn_must_answer_a_pending_call(self, store):
        await store.append("s", Turn.user("hi"))
        stray = ToolCall(name="x")
        with pytest.raises(ValueError):
            await store.append("s", Turn.tool(stray, "orphan"))
        assert len(await store.load("s")) == 1

    @pytest.mark.asyncio
    async def test_torn_trailing_record_is_dropped(self, store, workspace):
        await store.append("s", Turn.user("one"))
        await store.append("s", Turn.assistant("two"))
        path = store.path_for("s")
        with open(path, "ab") as f:
            f.write(b'{"type": "turn", "seq": 2, "turn": {"role": "us')

        reopened = await SessionStore(workspace).load("s")

        assert [t.text for t in reopened.turns] == ["one", "two"]
        assert path.read_bytes().endswith(b"\n")
        # Appending after recovery produces a clean log.
        fresh = SessionStore(workspace)
        await fresh.append("s", Turn.user("three"))
        assert [t.text for t in (await SessionStore(workspace).load("s")).turns] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_corrupt_middle_record_stops_replay(self, store, workspace, caplog):
        await store.append("s", Turn.user("one"))
        path = store.path_for("s")
        with open(path, "ab") as f:
            f.write(b"not json at all\n")
            f.write(json.dumps({"type": "turn", "seq": 1, "turn": Turn.user("two").to_dict()}).encode() + b"\n")

        original = path.read_bytes()

        with caplog.at_level(logging.ERROR, logger="agent.session_store"):
            reopened = await SessionStore(workspace).load("s")

        assert [t.text for t in reopened.turns] == ["one"]
        [backup] = list(path.parent.glob(f"{path.name}.corrupt-*"))
        assert backup.read_bytes() == original
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_corrupt_tail_record_keeps_no_backup(self, store, workspace):
        await store.append("s", Turn.user("one"))
        path = store.path_for("s")
        with open(path, "ab") as f:
            f.write(b"not json at all\n")

        reopened = await SessionStore(workspace).load("s")

        assert [t.text for t in reopened.turns] == ["one"]
        assert list(path.parent.glob(f"{path.name}.corrupt-*")) == []

    @pytest.mark.asyncio
    async def test_sequence_gap_is_treated_as_corruption(self, store, workspace):
        await store.append("s", Turn.user("one"))
        path = store.path_for("s")
        with open(path, "ab") as f:
            f.write(json.dumps({"type": "turn", "seq": 5, "turn": Turn.user("gap").to_dict()}).encode() + b"\n")

        reopened = await SessionStore(workspace).load("s")
        assert [t.text for t in reopened.turns] == ["one"]

    @pytest.mark.asyncio
    async def test_unreadable_log_is_quarantined(self, store, workspace):
        path = store.path_for("s")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00\x01garbage\n")

        session = await store.load("s")

        assert session.turns == []
        assert list(path.parent.glob(f"{path.name}.corrupt-*"))
        assert _records(path)[0]["type"] == "meta"

    @pytest.mark.asyncio
    async def test_pending_tool_calls(self, store):
        a, b = ToolCall(name="a"), ToolCall(name="b")
        await store.append("s", Turn.user("go"))
        await store.append("s", Turn.assistant("", [a, b]))
        session = await store.load("s")
        assert session.pending_tool_calls() == [a, b]

        await store.append("s", Turn.tool(a, "done"))
        assert session.pending_tool_calls() == [b]


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

class TestCompaction:
    @pytest.mark.asyncio
    async def test_compaction_marker_is_replayed(self, store, workspace):
        for i in range(6):
            await store.append("s", Turn.user(f"u{i}") if i % 2 == 0 else Turn.assistant(f"a{i}"))

        record = await store.compact("s", FixedCut(4, summary="earlier stuff"))

        assert record.cut == 4
        reopened = await SessionStore(workspace).load("s")
        assert len(reopened.turns) == 6
        context = reopened.context_turns()
        assert context[0].role == ROLE_SYSTEM
        assert context[0].text.startswith(SUMMARY_PREFIX)
        assert "earlier stuff" in context[0].text
        assert [t.text for t in context[1:]] == ["u4", "a5"]

    @pytest.mark.asyncio
    async def test_cut_never_splits_call_from_result(self, store):
        call = ToolCall(name="x")
        await store.append("s", Turn.user("go"))
        await store.append("s", Turn.assistant("", [call]))
        await store.append("s", Turn.tool(call, "r"))
        await store.append("s", Turn.assistant("done"))

        # A cut at 2 would put the tool result at the head of the context.
        record = await store.compact("s", FixedCut(2))

        assert record.cut == 1
        session = await store.load("s")
        assert session.context_turns()[0].has_tool_calls

    @pytest.mark.asyncio
    async def test_second_compaction_is_relative_to_first(self, store):
        for i in range(10):
            await store.append("s", Turn.user(f"u{i}") if i % 2 == 0 else Turn.assistant(f"a{i}"))
        await store.compact("s", FixedCut(2))
        record = await store.compact("s", FixedCut(2))
        assert record.cut == 4

    @pytest.mark.asyncio
    async def test_nothing_to_compact_returns_none(self, store):
        await store.append("s", Turn.user("only"))
        assert await store.compact("s", TruncatePolicy(keep_last=12)) is None


# ---------------------------------------------------------------------------
# Listing / naming
# ---------------------------------------------------------------------------

class TestNaming:
    def test_safe_ids_map_directly(self):
        assert session_filename("cli-direct") == "cli-direct.jsonl"

    def test_unsafe_ids_are_escaped_and_disambiguated(self):
        a = session_filename("telegram:42")
        b = session_filename("telegram/42")
        assert a != b
        assert "/" not in a and ":" not in a

    @pytest.mark.asyncio
    async def test_list_sessions_reports_original_ids(self, store):
        await store.append("telegram:1", Turn.user("a"))
        await store.append("cli:2", Turn.user("b"))
        ids = {s["session_id"] for s in store.list_sessions()}
        assert ids == {"telegram:1", "cli:2"}

    @pytest.mark.asyncio
    async def test_evict_forces_replay(self, store):
        await store.append("s", Turn.user("a"))
        first = await store.load("s")
        store.evict("s")
        second = await store.load("s")
        assert first is not second
        assert [t.text for t in second.turns] == ["a"]
