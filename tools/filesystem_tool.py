"""
Filesystem tools: read_file, write_file, edit_file, list_dir.

Relative paths resolve against the calling conversation's workspace. With
``restrict_to_workspace`` every resolved path must stay inside it.

Dependencies: none (stdlib only)
"""

import json
import logging
from pathlib import Path
from typing import Optional

from agent.errors import ToolFailed
from tools.registry import ToolContext

logger = logging.getLogger(__name__)

MAX_LIST_ENTRIES = 500


def resolve_path(raw: str, context: Optional[ToolContext], restrict: bool) -> Path:
    """Expand ``~``, anchor relative paths at the workspace, enforce the restriction."""
    path = Path(raw).expanduser()
    workspace = context.workspace if context and context.workspace else None
    if not path.is_absolute() and workspace is not None:
        path = Path(workspace) / path
    path = path.resolve()
    if restrict and workspace is not None:
        root = Path(workspace).resolve()
        if path != root and root not in path.parents:
            raise ToolFailed(f"Path {raw!r} is outside the workspace")
    return path


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _make_handlers(restrict: bool):

    def read_file(args: dict, context: ToolContext = None, **kwargs) -> str:
        path = resolve_path(args["path"], context, restrict)
        if not path.exists():
            raise ToolFailed(f"File not found: {args['path']}")
        if not path.is_file():
            raise ToolFailed(f"Not a file: {args['path']}")
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            raise ToolFailed(f"Permission denied: {args['path']}") from None

    def write_file(args: dict, context: ToolContext = None, **kwargs) -> str:
        path = resolve_path(args["path"], context, restrict)
        content = args["content"]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except PermissionError:
            raise ToolFailed(f"Permission denied: {args['path']}") from None
        return json.dumps({
            "success": True,
            "message": f"Wrote {len(content.encode('utf-8'))} bytes to {args['path']}",
        })

    def edit_file(args: dict, context: ToolContext = None, **kwargs) -> str:
        path = resolve_path(args["path"], context, restrict)
        if not path.is_file():
            raise ToolFailed(f"File not found: {args['path']}")
        content = path.read_text(encoding="utf-8")
        old_text, new_text = args["old_text"], args["new_text"]

        count = content.count(old_text)
        if count == 0:
            raise ToolFailed("old_text not found in file. Make sure it matches exactly.")
        if count > 1:
            raise ToolFailed(
                f"old_text appears {count} times. Please provide more context to make it unique."
            )
        path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        return json.dumps({"success": True, "message": f"Edited {args['path']}"})

    def list_dir(args: dict, context: ToolContext = None, **kwargs) -> str:
        path = resolve_path(args.get("path") or ".", context, restrict)
        if not path.exists():
            raise ToolFailed(f"Directory not found: {args.get('path')}")
        if not path.is_dir():
            raise ToolFailed(f"Not a directory: {args.get('path')}")
        entries = []
        for child in sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
            entries.append(f"{'[dir] ' if child.is_dir() else ''}{child.name}")
            if len(entries) >= MAX_LIST_ENTRIES:
                entries.append(f"... (truncated at {MAX_LIST_ENTRIES} entries)")
                break
        if not entries:
            return f"Directory {args.get('path') or '.'} is empty"
        return "\n".join(entries)

    return read_file, write_file, edit_file, list_dir


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register(registry, *, restrict_to_workspace: bool = False):
    """Register filesystem tools with the tool registry."""
    read_file, write_file, edit_file, list_dir = _make_handlers(restrict_to_workspace)

    registry.register(
        name="read_file",
        capability="filesystem",
        description="Read the contents of a file at the given path.",
        schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to read"},
            },
            "required": ["path"],
        },
        handler=read_file,
    )

    registry.register(
        name="write_file",
        capability="filesystem",
        description="Write content to a file at the given path. Creates parent directories if needed.",
        schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        },
        handler=write_file,
    )

    registry.register(
        name="edit_file",
        capability="filesystem",
        description=(
            "Edit a file by replacing old_text with new_text. "
            "The old_text must appear exactly once in the file."
        ),
        schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to edit"},
                "old_text": {"type": "string", "description": "The exact text to find and replace"},
                "new_text": {"type": "string", "description": "The text to replace with"},
            },
            "required": ["path", "old_text", "new_text"],
        },
        handler=edit_file,
    )

    registry.register(
        name="list_dir",
        capability="filesystem",
        description="List the contents of a directory.",
        schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path to list"},
            },
            "required": ["path"],
        },
        handler=list_dir,
    )
