"""
Spawn tool -- delegate a bounded sub-task to a subagent.

The subagent runs to completion (or budget exhaustion) inside this tool
call and its condensed summary becomes the tool result. Spawn failures are
surfaced as failed tool results so the parent model can react.
"""

import logging

from agent.errors import SpawnBudgetExceeded, SpawnDepthExceeded, SpawnError, ToolFailed
from agent.subagent import SubagentSpawner
from tools.registry import ToolContext
from toolsets import CAPABILITIES, PRESETS

logger = logging.getLogger(__name__)

# Generous: the child loop enforces its own round and wall-clock budgets.
SPAWN_TOOL_TIMEOUT = 900


def make_spawn_handler(spawner: SubagentSpawner):

    async def spawn(args: dict, context: ToolContext = None, **kwargs) -> str:
        try:
            return await spawner.spawn(
                args["task"],
                args.get("capabilities"),
                args.get("turn_budget"),
                context=context,
                label=args.get("label"),
            )
        except SpawnBudgetExceeded as e:
            raise ToolFailed(
                f"{e}. Partial result:\n\n{e.partial}" if e.partial else str(e)
            ) from e
        except SpawnDepthExceeded as e:
            raise ToolFailed(f"{e}. Do this task yourself instead of delegating.") from e
        except SpawnError as e:
            raise ToolFailed(str(e)) from e

    return spawn


def register(registry, spawner: SubagentSpawner):
    """Register the spawn tool with the tool registry."""
    registry.register(
        name="spawn",
        capability="spawn",
        description=(
            "Spawn a subagent to handle a self-contained task. Use this for "
            "complex work that needs several tool calls but whose details the "
            "conversation doesn't need. The subagent reports back a summary."
        ),
        schema={
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "The task for the subagent to complete"},
                "label": {"type": "string", "description": "Optional short label for the task (for display)"},
                "capabilities": {
                    "type": "array",
                    "items": {"type": "string", "enum": sorted(set(CAPABILITIES) | set(PRESETS))},
                    "description": "Capability tags or presets the subagent may use. Defaults to all of yours.",
                },
                "turn_budget": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 50,
                    "description": "Maximum model rounds for the subagent.",
                },
            },
            "required": ["task"],
        },
        handler=make_spawn_handler(spawner),
        timeout=SPAWN_TOOL_TIMEOUT,
    )
