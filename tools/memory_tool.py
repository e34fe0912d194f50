#!/usr/bin/env python3
"""
Memory tool -- lets the model read and write durable notes.

Actions:
  read          return one scope (``daily:<date>`` or ``long-term:<key>``)
  write         replace a long-term key, or append to a daily note
  append_daily  append to today's note
  list          list every scope that has content

Nothing here deletes: forgetting is an explicit write of new content.
"""

import json
import logging

from agent.errors import InvalidToolInput
from agent.memory import MemoryManager, long_term_scope

logger = logging.getLogger(__name__)

MEMORY_ACTIONS = ("read", "write", "append_daily", "list")


def memory_tool(args: dict, memory: MemoryManager) -> str:
    """Run one memory action and return a JSON string."""
    action = args.get("action")
    scope = args.get("scope") or long_term_scope()
    content = args.get("content")

    try:
        if action == "read":
            entry = memory.read_entry(scope)
            if entry is None:
                return json.dumps({"success": True, "scope": scope, "content": None,
                                   "message": "Nothing stored for this scope yet."})
            return json.dumps({
                "success": True,
                "scope": scope,
                "content": entry.content,
                "last_modified": entry.last_modified.isoformat(),
            }, ensure_ascii=False)

        if action in ("write", "append_daily") and not content:
            raise InvalidToolInput(f"'content' is required for action '{action}'")

        if action == "write":
            entry = memory.write(scope, content)
            return json.dumps({"success": True, "scope": entry.scope, "chars": len(entry.content)})

        if action == "append_daily":
            entry = memory.append_daily(content)
            return json.dumps({"success": True, "scope": entry.scope, "chars": len(entry.content)})

        if action == "list":
            return json.dumps({"success": True, "scopes": memory.list_scopes()})
    except ValueError as e:
        raise InvalidToolInput(str(e)) from e

    raise InvalidToolInput(f"Unknown action {action!r}; use one of {', '.join(MEMORY_ACTIONS)}")


MEMORY_SCHEMA = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": list(MEMORY_ACTIONS)},
        "scope": {
            "type": "string",
            "description": (
                "'long-term:<key>' (e.g. 'long-term:MEMORY', 'long-term:projects') or "
                "'daily:YYYY-MM-DD'. Defaults to 'long-term:MEMORY'."
            ),
        },
        "content": {
            "type": "string",
            "description": "Text to store. 'write' replaces a long-term key entirely.",
        },
    },
    "required": ["action"],
}


def register(registry, memory: MemoryManager):
    """Register the memory tool with the tool registry."""
    registry.register(
        name="memory",
        capability="memory",
        description=(
            "Read and write durable memory that persists across conversations. "
            "Long-term keys hold facts and preferences (write replaces the whole key, "
            "so read first and rewrite). Daily notes are append-only."
        ),
        schema=MEMORY_SCHEMA,
        handler=lambda args, **kw: memory_tool(args, memory),
    )
