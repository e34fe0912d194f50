"""
Shell execution tool (``exec``).

Runs a command through ``sh -c`` with a timeout. A safety guard rejects
obviously destructive commands (deny patterns), optionally enforces an
allow-list, and with ``restrict_to_workspace`` refuses path traversal and
absolute paths outside the working directory.

The subprocess is killed on timeout and when the calling run is cancelled.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from agent.errors import ToolFailed
from tools.registry import ToolContext

logger = logging.getLogger(__name__)

DEFAULT_DENY_PATTERNS = [
    r"\brm\s+-[rf]{1,2}\b",
    r"\bdel\s+/[fq]\b",
    r"\brmdir\s+/s\b",
    r"\b(format|mkfs|diskpart)\b",
    r"\bdd\s+if=",
    r">\s*/dev/sd",
    r"\b(shutdown|reboot|poweroff)\b",
    r":\(\)\s*\{.*\};\s*:",
]

DEFAULT_EXEC_TIMEOUT = 60
MAX_OUTPUT_CHARS = 10_000

_POSIX_PATH_RE = re.compile(r"""/[^\s"']+""")
_WINDOWS_PATH_RE = re.compile(r"""[A-Za-z]:\\[^\\"']+""")


class ShellGuard:
    """Decides whether a command may run. ``check`` returns a reason or None."""

    def __init__(self, deny_patterns: Optional[List[str]] = None,
                 allow_patterns: Optional[List[str]] = None,
                 restrict_to_workspace: bool = False):
        patterns = DEFAULT_DENY_PATTERNS if deny_patterns is None else deny_patterns
        self.deny = [re.compile(p) for p in patterns]
        self.allow = [re.compile(p) for p in allow_patterns or []]
        self.restrict_to_workspace = restrict_to_workspace

    def check(self, command: str, cwd: str) -> Optional[str]:
        cmd = command.strip()
        lower = cmd.lower()

        if any(p.search(lower) for p in self.deny):
            return "Command blocked by safety guard (dangerous pattern detected)"

        if self.allow and not any(p.search(lower) for p in self.allow):
            return "Command blocked by safety guard (not in allowlist)"

        if self.restrict_to_workspace:
            if "../" in cmd or "..\\" in cmd:
                return "Command blocked by safety guard (path traversal detected)"
            cwd_path = Path(cwd).resolve()
            for raw in _POSIX_PATH_RE.findall(cmd) + _WINDOWS_PATH_RE.findall(cmd):
                try:
                    path = Path(raw).resolve(strict=True)
                except (OSError, RuntimeError):
                    continue
                if path != cwd_path and cwd_path not in path.parents:
                    return "Command blocked by safety guard (path outside working dir)"
        return None


def _format_output(stdout: bytes, stderr: bytes, returncode: int) -> str:
    parts = []
    out = stdout.decode("utf-8", errors="replace")
    if out:
        parts.append(out)
    err = stderr.decode("utf-8", errors="replace")
    if err.strip():
        parts.append(f"STDERR:\n{err}")
    if returncode != 0:
        parts.append(f"\nExit code: {returncode}")
    output = "\n".join(parts) if parts else "(no output)"
    if len(output) > MAX_OUTPUT_CHARS:
        overflow = len(output) - MAX_OUTPUT_CHARS
        output = output[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {overflow} more chars)"
    return output


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


def make_exec_handler(guard: ShellGuard, timeout: float = DEFAULT_EXEC_TIMEOUT,
                      working_dir: Optional[str] = None):

    async def exec_command(args: dict, context: ToolContext = None, **kwargs) -> str:
        command = args["command"]
        cwd = args.get("working_dir") or working_dir
        if not cwd and context is not None and context.workspace is not None:
            cwd = str(context.workspace)
        cwd = cwd or os.getcwd()
        if not os.path.isdir(cwd):
            raise ToolFailed(f"Working directory does not exist: {cwd}")

        reason = guard.check(command, cwd)
        if reason:
            logger.warning("Blocked command %r: %s", command[:200], reason)
            raise ToolFailed(reason)

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            raise ToolFailed(f"Command timed out after {timeout:g} seconds") from None
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        return _format_output(stdout, stderr, proc.returncode)

    return exec_command


def register(registry, *, timeout: float = DEFAULT_EXEC_TIMEOUT,
             working_dir: Optional[str] = None,
             deny_patterns: Optional[List[str]] = None,
             allow_patterns: Optional[List[str]] = None,
             restrict_to_workspace: bool = False):
    """Register the shell tool with the tool registry."""
    guard = ShellGuard(deny_patterns, allow_patterns, restrict_to_workspace)
    registry.register(
        name="exec",
        capability="shell",
        description="Execute a shell command and return its output. Use with caution.",
        schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory for the command",
                },
            },
            "required": ["command"],
        },
        handler=make_exec_handler(guard, timeout, working_dir),
        # Leave headroom so the command's own timeout fires first.
        timeout=timeout + 5,
    )
