"""Tool registry -- name -> validated handler, tagged by capability.

Tools register a JSON-schema for their input, a handler and a capability tag.
Dispatch validates the model-supplied arguments against the schema, runs the
handler under a timeout and converts anything the handler throws into a
``ToolFailed`` so a misbehaving tool can never take down the agent loop.

Handlers follow the ``handler(args: dict, **kwargs) -> str`` convention and
may be sync (run in a worker thread) or async. ``kwargs`` always contains
``context`` (a ``ToolContext``) so tools can see who is calling them.

Usage:
    registry = ToolRegistry()
    registry.register(
        name="hello",
        capability="messaging",
        schema={"type": "object", "properties": {"name": {"type": "string"}}},
        handler=lambda args, **kw: f"Hello {args.get('name', 'world')}",
        description="Say hello to someone.",
    )
    result = await registry.dispatch(ToolCall(name="hello", arguments={"name": "Ada"}))
"""

import asyncio
import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from agent.errors import InvalidToolInput, ToolError, ToolFailed, ToolTimeout, UnknownTool
from agent.types import ToolCall, ToolResult
from toolsets import ALL_CAPABILITIES, CAPABILITIES, normalize_capabilities

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 60.0

# Guard against tools returning content that would blow up the context window.
MAX_TOOL_RESULT_CHARS = 100_000


@dataclass
class ToolContext:
    """Who is invoking a tool. Threaded through every dispatch."""

    conversation_id: str = ""
    channel: str = "cli"
    chat_id: str = "direct"
    sender: str = ""
    workspace: Optional[Path] = None
    depth: int = 0
    capabilities: frozenset = field(default_factory=lambda: frozenset(ALL_CAPABILITIES))


@dataclass
class ToolEntry:
    name: str
    capability: str
    schema: Dict[str, Any]
    handler: Callable
    description: str = ""
    is_async: bool = False
    timeout: Optional[float] = None
    check_fn: Optional[Callable[[], bool]] = None
    validator: Any = None

    def definition(self) -> Dict[str, Any]:
        """OpenAI tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema,
            },
        }

    def available(self) -> bool:
        if self.check_fn is None:
            return True
        try:
            return bool(self.check_fn())
        except Exception as e:
            logger.debug("check_fn for %s raised: %s", self.name, e)
            return False


def render_result(value: Any) -> str:
    """Normalize handler output to tool-turn content."""
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > MAX_TOOL_RESULT_CHARS:
        original_len = len(text)
        text = (
            text[:MAX_TOOL_RESULT_CHARS]
            + f"\n\n[Truncated: tool response was {original_len:,} chars, "
            f"exceeding the {MAX_TOOL_RESULT_CHARS:,} char limit]"
        )
    return text


class ToolRegistry:
    """Read-mostly registry shared by every conversation in the process."""

    def __init__(self, *, default_timeout: float = DEFAULT_TOOL_TIMEOUT):
        self._tools: Dict[str, ToolEntry] = {}
        self._lock = threading.Lock()
        self.default_timeout = default_timeout

    # -- Registration ---------------------------------------------------------

    def register(
        self,
        name: str,
        schema: Dict[str, Any],
        handler: Callable,
        capability: str,
        *,
        description: str = "",
        is_async: Optional[bool] = None,
        timeout: Optional[float] = None,
        check_fn: Optional[Callable[[], bool]] = None,
    ) -> ToolEntry:
        """Register (or replace) a tool.

        Raises:
            ValueError: unknown capability tag or an invalid JSON schema.
        """
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability tag {capability!r} for tool {name!r}")
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"Invalid input schema for tool {name!r}: {e.message}") from e

        if is_async is None:
            is_async = inspect.iscoroutinefunction(handler)

        entry = ToolEntry(
            name=name,
            capability=capability,
            schema=schema,
            handler=handler,
            description=description,
            is_async=is_async,
            timeout=timeout,
            check_fn=check_fn,
            validator=Draft202012Validator(schema),
        )
        with self._lock:
            if name in self._tools:
                logger.debug("Replacing tool registration for %s", name)
            self._tools[name] = entry
        return entry

    def unregister(self, name: str) -> None:
        with self._lock:
            self._tools.pop(name, None)

    # -- Lookup ---------------------------------------------------------------

    def get(self, name: str) -> Optional[ToolEntry]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all_tool_names(self) -> List[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def _visible(self, capabilities: Optional[Iterable[str]]) -> List[ToolEntry]:
        caps = None if capabilities is None else normalize_capabilities(capabilities)
        entries = list(self._tools.values())
        return [
            e for e in entries
            if (caps is None or e.capability in caps) and e.available()
        ]

    def get_definitions(self, capabilities: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Tool schemas for the model, optionally restricted to capability tags."""
        return [e.definition() for e in self._visible(capabilities)]

    def visible_names(self, capabilities: Optional[Iterable[str]] = None) -> List[str]:
        return [e.name for e in self._visible(capabilities)]

    # -- Dispatch -------------------------------------------------------------

    def validate(self, call: ToolCall, entry: ToolEntry) -> None:
        errors = sorted(entry.validator.iter_errors(call.arguments), key=lambda err: list(err.path))
        if errors:
            details = "; ".join(
                f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors[:5]
            )
            raise InvalidToolInput(
                f"Invalid arguments for {call.name}: {details}",
                tool_name=call.name,
                call_id=call.id,
            )

    async def dispatch(self, call: ToolCall, context: Optional[ToolContext] = None) -> ToolResult:
        """Validate and run one tool call.

        Raises:
            UnknownTool: name not registered or hidden by the caller's capabilities.
            InvalidToolInput: arguments fail schema validation.
            ToolTimeout: handler exceeded its timeout.
            ToolFailed: handler raised.
        """
        context = context or ToolContext()
        entry = self._tools.get(call.name)
        if entry is None or entry.capability not in context.capabilities or not entry.available():
            raise UnknownTool(
                f"Unknown tool '{call.name}'. Available tools: "
                f"{sorted(self.visible_names(context.capabilities))}",
                tool_name=call.name,
                call_id=call.id,
            )

        self.validate(call, entry)

        timeout = entry.timeout if entry.timeout is not None else self.default_timeout
        start = time.monotonic()
        try:
            if entry.is_async:
                coro = entry.handler(call.arguments, context=context)
            else:
                coro = asyncio.to_thread(entry.handler, call.arguments, context=context)
            value = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeout(
                f"Tool '{call.name}' timed out after {timeout:.0f}s",
                tool_name=call.name,
                call_id=call.id,
            ) from e
        except ToolError as e:
            e.tool_name = e.tool_name or call.name
            e.call_id = e.call_id or call.id
            raise
        except Exception as e:
            logger.warning("Tool '%s' raised %s: %s", call.name, type(e).__name__, e)
            raise ToolFailed(
                f"Tool execution failed: {type(e).__name__}: {e}",
                tool_name=call.name,
                call_id=call.id,
            ) from e

        return ToolResult(
            call_id=call.id,
            name=call.name,
            content=render_result(value),
            duration=time.monotonic() - start,
        )
