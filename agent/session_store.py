"""Session store -- append-only JSONL conversation logs.

One file per conversation under ``<workspace>/sessions/``. Every record is a
single JSON line written with one ``write()`` call:

    {"type": "meta", "session_id": ..., "created_at": ..., "version": 1}
    {"type": "turn", "seq": 0, "turn": {...}}
    {"type": "compaction", "cut": 12, "summary": "...", "at": ...}

Turns are never rewritten. Compaction appends a marker recording which
prefix of the turn sequence left the context window and what replaced it,
so the full history stays on disk while the context view shrinks.

Replay is truncation tolerant: a torn or unparseable trailing record is cut
off the file and the session resumes from the last valid turn; when valid
records follow a corrupt one, a copy of the whole log is kept aside first.
A file with no valid records at all is moved aside and a fresh session
started.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from agent.compaction import safe_cut
from agent.errors import CorruptSessionLog, SessionNotFound
from agent.types import ROLE_TOOL, Turn, ToolCall

logger = logging.getLogger(__name__)

LOG_VERSION = 1
SUMMARY_PREFIX = "[Summary of earlier conversation]"

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class CompactionRecord:
    cut: int
    summary: Optional[str] = None
    at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict:
        return {"type": "compaction", "cut": self.cut, "summary": self.summary, "at": self.at}


@dataclass
class Session:
    """In-memory view of one conversation log.

    ``turns`` holds the complete history. ``context_turns()`` is what the
    loop sends to the model: the compaction summary (if any) followed by the
    turns after the most recent cut.
    """

    id: str
    path: Path
    turns: List[Turn] = field(default_factory=list)
    compaction: Optional[CompactionRecord] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def cut(self) -> int:
        return self.compaction.cut if self.compaction else 0

    @property
    def summary(self) -> Optional[str]:
        return self.compaction.summary if self.compaction else None

    def context_turns(self) -> List[Turn]:
        turns = list(self.turns[self.cut:])
        if self.summary:
            turns.insert(0, Turn.system(f"{SUMMARY_PREFIX}\n{self.summary}"))
        return turns

    def pending_tool_calls(self) -> List[ToolCall]:
        """Calls in the trailing assistant turn that have no result yet."""
        for idx in range(len(self.turns) - 1, -1, -1):
            turn = self.turns[idx]
            if turn.role == ROLE_TOOL:
                continue
            if not turn.has_tool_calls:
                return []
            answered = {t.tool_call_id for t in self.turns[idx + 1:]}
            pending = []
            for tc in turn.tool_calls:
                # Logs written before ids were deduplicated may repeat one.
                if tc.id not in answered:
                    answered.add(tc.id)
                    pending.append(tc)
            return pending
        return []

    def __len__(self) -> int:
        return len(self.turns)


def session_filename(session_id: str) -> str:
    """Filesystem-safe name; ids that needed escaping get a hash suffix to stay unique."""
    safe = _SAFE_ID_RE.sub("_", session_id)[:120] or "session"
    if safe != session_id:
        safe = f"{safe}-{hashlib.sha1(session_id.encode('utf-8')).hexdigest()[:8]}"
    return f"{safe}.jsonl"


def _replay(session_id: str, path: Path) -> Tuple[Session, int, bool]:
    """Parse a log file.

    Returns the session, the byte offset just past the last valid record,
    and whether any valid record was found.
    """
    session = Session(id=session_id, path=path)
    data = path.read_bytes()
    offset = 0
    valid_end = 0
    found_valid = False

    while offset < len(data):
        newline = data.find(b"\n", offset)
        if newline == -1:
            logger.warning("Session %s: dropping incomplete trailing record (%d bytes)",
                           session_id, len(data) - offset)
            break
        line = data[offset:newline]
        next_offset = newline + 1
        if not line.strip():
            offset = valid_end = next_offset
            continue
        try:
            record = json.loads(line.decode("utf-8"))
            _apply_record(session, record)
        except (ValueError, KeyError, TypeError, CorruptSessionLog) as e:
            logger.warning("Session %s: corrupt record at byte %d, truncating: %s", session_id, offset, e)
            break
        found_valid = True
        offset = valid_end = next_offset

    return session, valid_end, found_valid


def _apply_record(session: Session, record: Dict) -> None:
    kind = record.get("type")
    if kind == "meta":
        session.created_at = record.get("created_at") or session.created_at
    elif kind == "turn":
        seq = record.get("seq")
        if seq is not None and seq != len(session.turns):
            raise CorruptSessionLog(f"expected seq {len(session.turns)}, got {seq}")
        session.turns.append(Turn.from_dict(record["turn"]))
    elif kind == "compaction":
        cut = int(record["cut"])
        if not 0 <= cut <= len(session.turns):
            raise CorruptSessionLog(f"compaction cut {cut} out of range")
        session.compaction = CompactionRecord(cut=cut, summary=record.get("summary"), at=record.get("at", ""))
    else:
        raise CorruptSessionLog(f"unknown record type {kind!r}")


class SessionStore:
    """Durable, per-conversation turn logs.

    Operations on the same session id are serialized by an asyncio lock;
    different ids proceed independently. Loaded sessions are cached so the
    loop and the store always agree on the in-memory view.
    """

    def __init__(self, workspace: Path, *, sessions_dir: Optional[Path] = None):
        self.workspace = Path(workspace)
        self.sessions_dir = Path(sessions_dir) if sessions_dir else self.workspace / "sessions"
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, session_id: str) -> Path:
        return self.sessions_dir / session_filename(session_id)

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions or self.path_for(session_id).exists()

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -- Load -----------------------------------------------------------------

    async def load(self, session_id: str, *, create: bool = True) -> Session:
        """Return the session, replaying its log on first access.

        Raises:
            SessionNotFound: no log exists and ``create`` is False.
        """
        async with self.lock_for(session_id):
            cached = self._sessions.get(session_id)
            if cached is not None:
                return cached
            session = self._load_from_disk(session_id, create=create)
            self._sessions[session_id] = session
            return session

    def _load_from_disk(self, session_id: str, *, create: bool) -> Session:
        path = self.path_for(session_id)
        if not path.exists():
            if not create:
                raise SessionNotFound(f"No session log for {session_id!r}")
            return self._create(session_id, path)

        try:
            session, valid_end, found_valid = _replay(session_id, path)
        except OSError as e:
            logger.error("Session %s unreadable (%s); starting fresh", session_id, e)
            self._quarantine(path)
            return self._create(session_id, path)

        if not found_valid and path.stat().st_size > 0:
            logger.error("Session %s has no valid records; starting fresh", session_id)
            self._quarantine(path)
            return self._create(session_id, path)

        if valid_end < path.stat().st_size:
            with open(path, "rb") as f:
                f.seek(valid_end)
                dropped = f.read()
            if dropped.rstrip(b"\n").count(b"\n"):
                # Valid-looking records follow the bad one; keep a copy before cutting them off.
                logger.error("Session %s: corrupt record mid-log, %d bytes dropped from replay",
                             session_id, len(dropped))
                self._backup(path)
            os.truncate(path, valid_end)
        logger.debug("Loaded session %s: %d turns", session_id, len(session.turns))
        return session

    def _create(self, session_id: str, path: Path) -> Session:
        session = Session(id=session_id, path=path)
        self._write_lines(path, [{
            "type": "meta",
            "session_id": session_id,
            "created_at": session.created_at,
            "version": LOG_VERSION,
        }])
        return session

    @staticmethod
    def _corrupt_name(path: Path) -> Path:
        return path.with_name(f"{path.name}.corrupt-{int(time.time())}")

    @classmethod
    def _backup(cls, path: Path) -> None:
        aside = cls._corrupt_name(path)
        try:
            shutil.copy2(path, aside)
            logger.error("Copied corrupt session log to %s", aside)
        except OSError as e:
            logger.error("Could not copy corrupt session log %s: %s", path, e)

    @classmethod
    def _quarantine(cls, path: Path) -> None:
        aside = cls._corrupt_name(path)
        try:
            path.replace(aside)
            logger.error("Moved corrupt session log to %s", aside)
        except OSError as e:
            logger.error("Could not move corrupt session log %s: %s", path, e)

    # -- Append ---------------------------------------------------------------

    async def append(self, session_id: str, turn: Turn) -> None:
        await self.append_many(session_id, [turn])

    async def append_many(self, session_id: str, turns: List[Turn]) -> None:
        """Durably append turns as one write; readers never see half the group.

        Raises:
            ValueError: a tool turn answers no pending call.
        """
        if not turns:
            return
        session = await self.load(session_id)
        async with self.lock_for(session_id):
            self._check_tool_results(session, turns)
            records = [
                {"type": "turn", "seq": len(session.turns) + i, "turn": turn.to_dict()}
                for i, turn in enumerate(turns)
            ]
            self._write_lines(session.path, records)
            session.turns.extend(turns)

    @staticmethod
    def _check_tool_results(session: Session, turns: List[Turn]) -> None:
        pending = {tc.id for tc in session.pending_tool_calls()}
        for turn in turns:
            if turn.has_tool_calls:
                pending = {tc.id for tc in turn.tool_calls}
            elif turn.role == ROLE_TOOL:
                if turn.tool_call_id not in pending:
                    raise ValueError(
                        f"Tool result {turn.tool_call_id!r} does not answer a pending call"
                    )
                pending.discard(turn.tool_call_id)

    @staticmethod
    def _write_lines(path: Path, records: List[Dict]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = "".join(
            json.dumps(r, ensure_ascii=False, default=str) + "\n" for r in records
        ).encode("utf-8")
        with open(path, "ab") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())

    # -- Compaction -----------------------------------------------------------

    async def compact(self, session_id: str, policy, *, budget_tokens: Optional[int] = None) -> Optional[CompactionRecord]:
        """Ask ``policy`` for a cut over the current context and record it.

        Returns the new record, or None when nothing was compacted.
        """
        session = await self.load(session_id)
        base = session.cut
        window = session.turns[base:]
        plan = await policy.plan(window, previous_summary=session.summary, budget_tokens=budget_tokens)
        if plan is None:
            return None

        async with self.lock_for(session_id):
            cut = safe_cut(session.turns, base + plan.cut)
            if cut <= base:
                return None
            record = CompactionRecord(cut=cut, summary=plan.summary)
            self._write_lines(session.path, [record.to_dict()])
            session.compaction = record
        logger.info("Compacted session %s: %d turns out of context", session_id, cut)
        return record

    # -- Listing --------------------------------------------------------------

    def list_sessions(self) -> List[Dict]:
        """Session files on disk, most recently modified first."""
        if not self.sessions_dir.exists():
            return []
        results = []
        for path in self.sessions_dir.glob("*.jsonl"):
            session_id = path.stem
            try:
                with open(path, "r", encoding="utf-8") as f:
                    first = json.loads(f.readline() or "{}")
                session_id = first.get("session_id", session_id)
            except (OSError, ValueError):
                pass
            stat = path.stat()
            results.append({
                "session_id": session_id,
                "path": str(path),
                "size": stat.st_size,
                "updated_at": datetime.fromtimestamp(stat.st_mtime).isoformat(),
            })
        return sorted(results, key=lambda r: r["updated_at"], reverse=True)

    def evict(self, session_id: str) -> None:
        """Drop the cached view; the next load replays from disk."""
        self._sessions.pop(session_id, None)
