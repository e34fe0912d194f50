"""Durable memory: daily notes and long-term keyed notes.

Layout under the workspace::

    memory/
      daily/2026-10-19.md        append-only, one file per day
      long_term/MEMORY.md        whole-value replace, one file per key

Scopes are addressed as ``daily:<YYYY-MM-DD>`` and ``long-term:<key>``.
Each read/write is a short independent operation guarded by a per-file lock,
so concurrent conversations can share one MemoryManager safely. Nothing is
ever deleted implicitly.
"""

import logging
import os
import re
import tempfile
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from agent.types import MemoryEntry

logger = logging.getLogger(__name__)

DAILY_PREFIX = "daily:"
LONG_TERM_PREFIX = "long-term:"
DEFAULT_LONG_TERM_KEY = "MEMORY"

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_DATE_FMT = "%Y-%m-%d"


def today_date() -> str:
    return date.today().strftime(_DATE_FMT)


def daily_scope(day: Optional[str] = None) -> str:
    return f"{DAILY_PREFIX}{day or today_date()}"


def long_term_scope(key: str = DEFAULT_LONG_TERM_KEY) -> str:
    return f"{LONG_TERM_PREFIX}{key}"


def parse_scope(scope: str) -> Tuple[str, str]:
    """Split a scope into (kind, name). Raises ValueError if malformed."""
    scope = (scope or "").strip()
    if scope.startswith(DAILY_PREFIX):
        day = scope[len(DAILY_PREFIX):]
        try:
            datetime.strptime(day, _DATE_FMT)
        except ValueError:
            raise ValueError(f"Invalid daily scope date: {day!r} (expected YYYY-MM-DD)") from None
        return "daily", day
    if scope.startswith(LONG_TERM_PREFIX):
        key = scope[len(LONG_TERM_PREFIX):]
        if not _KEY_RE.match(key) or key.endswith(".md"):
            raise ValueError(f"Invalid long-term key: {key!r}")
        return "long-term", key
    raise ValueError(f"Unknown memory scope: {scope!r} (use 'daily:<date>' or 'long-term:<key>')")


class MemoryManager:
    """Key-scoped durable notes shared by all conversations in a workspace."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)
        self.memory_dir = self.workspace / "memory"
        self.daily_dir = self.memory_dir / "daily"
        self.long_term_dir = self.memory_dir / "long_term"
        self._locks: Dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- Paths & locks ------------------------------------------------------

    def path_for(self, scope: str) -> Path:
        kind, name = parse_scope(scope)
        if kind == "daily":
            return self.daily_dir / f"{name}.md"
        return self.long_term_dir / f"{name}.md"

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = self._locks[path] = threading.Lock()
            return lock

    # -- Contract -----------------------------------------------------------

    def read(self, scope: str) -> Optional[str]:
        """Return the scope's content, or None if nothing was ever written."""
        path = self.path_for(scope)
        with self._lock_for(path):
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def read_entry(self, scope: str) -> Optional[MemoryEntry]:
        path = self.path_for(scope)
        with self._lock_for(path):
            if not path.exists():
                return None
            return MemoryEntry(
                scope=scope,
                content=path.read_text(encoding="utf-8"),
                last_modified=datetime.fromtimestamp(path.stat().st_mtime),
            )

    def write(self, scope: str, content: str) -> MemoryEntry:
        """Replace a long-term key, or append to a daily note."""
        kind, name = parse_scope(scope)
        if kind == "daily":
            return self._append_daily(name, content)

        path = self.path_for(scope)
        with self._lock_for(path):
            self._atomic_write(path, content)
        logger.debug("Wrote long-term memory %s (%d chars)", name, len(content))
        return MemoryEntry(scope=scope, content=content, last_modified=datetime.now())

    def append_daily(self, content: str) -> MemoryEntry:
        """Append to today's note, creating it with a date header if needed."""
        return self._append_daily(today_date(), content)

    # -- Helpers ------------------------------------------------------------

    def _append_daily(self, day: str, content: str) -> MemoryEntry:
        path = self.daily_dir / f"{day}.md"
        with self._lock_for(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                existing = path.read_text(encoding="utf-8")
                full = f"{existing}\n{content}"
            else:
                full = f"# {day}\n\n{content}"
            self._atomic_write(path, full)
        return MemoryEntry(scope=daily_scope(day), content=full, last_modified=datetime.now())

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".mem_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def list_daily_files(self) -> List[Path]:
        """Daily note files, newest first."""
        if not self.daily_dir.exists():
            return []
        files = []
        for path in self.daily_dir.glob("*.md"):
            try:
                datetime.strptime(path.stem, _DATE_FMT)
            except ValueError:
                continue
            files.append(path)
        return sorted(files, reverse=True)

    def list_long_term_files(self) -> List[Path]:
        """Long-term note files whose name is a valid key, sorted by name."""
        if not self.long_term_dir.exists():
            return []
        files = []
        for path in sorted(self.long_term_dir.glob("*.md")):
            try:
                parse_scope(long_term_scope(path.stem))
            except ValueError:
                logger.warning("Ignoring long-term memory file with invalid key: %s", path.name)
                continue
            files.append(path)
        return files

    def list_scopes(self) -> List[str]:
        scopes = [daily_scope(p.stem) for p in self.list_daily_files()]
        scopes.extend(long_term_scope(p.stem) for p in self.list_long_term_files())
        return scopes

    def get_recent(self, days: int) -> str:
        """Daily notes from the last ``days`` days, newest first."""
        today = date.today()
        memories = []
        for i in range(max(days, 0)):
            day = (today - timedelta(days=i)).strftime(_DATE_FMT)
            content = self.read(daily_scope(day))
            if content:
                memories.append(content)
        return "\n\n---\n\n".join(memories)

    def get_memory_context(self, days: int = 1) -> str:
        """Long-term notes plus recent daily notes, formatted for the system turn."""
        parts = []
        for path in self.list_long_term_files():
            content = self.read(long_term_scope(path.stem))
            if content and content.strip():
                title = "Long-term Memory" if path.stem == DEFAULT_LONG_TERM_KEY else f"Long-term Memory: {path.stem}"
                parts.append(f"## {title}\n{content.strip()}")
        if days <= 1:
            today = self.read(daily_scope())
            if today and today.strip():
                parts.append(f"## Today's Notes\n{today.strip()}")
        else:
            recent = self.get_recent(days)
            if recent.strip():
                parts.append(f"## Recent Notes\n{recent.strip()}")
        return "\n\n".join(parts)
