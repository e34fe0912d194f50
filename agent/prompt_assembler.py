"""System context assembly.

Owns the system-level context turn the loop prepends to every request:
identity, workspace bootstrap files, memory context and the current
session block. Rebuilt for every request and never persisted, so memory
writes made earlier in the same run are visible on the next round.

Also shapes inbound user content: image attachments are inlined as base64
``image_url`` parts ahead of the text.
"""

import base64
import logging
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from agent.memory import MemoryManager
from agent.types import Content, Turn

logger = logging.getLogger(__name__)

BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md"]

# Bootstrap files larger than this are cut so one runaway file can't eat the context.
MAX_BOOTSTRAP_CHARS = 20_000

MESSAGE_TOOL_GUIDANCE = (
    "When responding to direct questions or conversations, reply directly with "
    "your text response. Only use the 'message' tool when you need to send a "
    "message to a specific chat channel. For normal conversation, just respond "
    "with text - do not call the message tool."
)

MEMORY_GUIDANCE = (
    "You have durable memory. Use the memory tool to save facts worth keeping "
    "across conversations (long-term) and to jot down today's notes (daily)."
)

SPAWN_GUIDANCE = (
    "For self-contained sub-tasks that need several tool calls, you can spawn a "
    "subagent. It works with a restricted toolset and reports back a summary."
)


class PromptAssembler:
    """Assembles the system context turn from layered components.

    Args:
        workspace: Workspace root (bootstrap files are read from here).
        memory: Memory manager whose context is folded in, if any.
        memory_days: How many days of daily notes to include.
        skip_context_files: Skip bootstrap files (subagents use this).
    """

    def __init__(self, workspace: Path, *, memory: Optional[MemoryManager] = None,
                 memory_days: int = 1, skip_context_files: bool = False):
        self.workspace = Path(workspace)
        self.memory = memory
        self.memory_days = memory_days
        self.skip_context_files = skip_context_files

    def build(self, *, valid_tool_names: Iterable[str] = (), channel: Optional[str] = None,
              chat_id: Optional[str] = None, system_message: Optional[str] = None) -> str:
        """Assemble the full system prompt for one request."""
        valid_tool_names = set(valid_tool_names)
        parts = [self._identity()]

        tool_guidance = []
        if "message" in valid_tool_names:
            tool_guidance.append(MESSAGE_TOOL_GUIDANCE)
        if "memory" in valid_tool_names:
            tool_guidance.append(MEMORY_GUIDANCE)
        if "spawn" in valid_tool_names:
            tool_guidance.append(SPAWN_GUIDANCE)
        if tool_guidance:
            parts.append("\n\n".join(tool_guidance))

        if system_message:
            parts.append(system_message)

        if not self.skip_context_files:
            bootstrap = self.load_bootstrap_files()
            if bootstrap:
                parts.append(bootstrap)

        if self.memory is not None:
            try:
                memory_context = self.memory.get_memory_context(self.memory_days)
            except OSError as e:
                logger.warning("Could not read memory context: %s", e)
                memory_context = ""
            if memory_context:
                parts.append(f"# Memory\n\n{memory_context}")

        prompt = "\n\n---\n\n".join(parts)
        if channel and chat_id:
            prompt += f"\n\n## Current Session\nChannel: {channel}\nChat ID: {chat_id}"
        return prompt

    def build_turn(self, **kwargs) -> Turn:
        return Turn.system(self.build(**kwargs))

    def _identity(self) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        try:
            workspace = str(self.workspace.resolve())
        except OSError:
            workspace = str(self.workspace)
        return (
            "# nanobot\n\n"
            "You are nanobot, a helpful AI assistant. You can use the tools you are "
            "given to read and write files, run shell commands, search the web, "
            "send messages and delegate sub-tasks.\n\n"
            f"## Current Time\n{now}\n\n"
            f"## Workspace\nYour workspace is at: {workspace}\n"
            f"- Long-term memory: {workspace}/memory/long_term/MEMORY.md\n"
            f"- Daily notes: {workspace}/memory/daily/YYYY-MM-DD.md\n\n"
            "Always be helpful, accurate, and concise. When using tools, explain what you're doing."
        )

    def load_bootstrap_files(self) -> str:
        parts = []
        for filename in BOOTSTRAP_FILES:
            path = self.workspace / filename
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping bootstrap file %s: %s", path, e)
                continue
            if len(content) > MAX_BOOTSTRAP_CHARS:
                content = content[:MAX_BOOTSTRAP_CHARS] + "\n\n[... truncated ...]"
            parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)


def build_user_content(text: str, attachments: Optional[List[str]] = None) -> Content:
    """Plain text, or image parts followed by the text part.

    Attachments that are not readable image files are skipped.
    """
    if not attachments:
        return text

    parts = []
    for attachment in attachments:
        path = Path(attachment)
        mime, _ = mimetypes.guess_type(str(path))
        if not path.is_file() or not mime or not mime.startswith("image/"):
            continue
        try:
            encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as e:
            logger.warning("Could not read attachment %s: %s", path, e)
            continue
        parts.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}})

    if not parts:
        return text
    parts.append({"type": "text", "text": text})
    return parts
