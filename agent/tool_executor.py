"""Tool call execution for one assistant turn.

All calls from a single assistant turn are dispatched concurrently through
the registry. Results come back as tool Turns in the original call order,
whatever order the handlers finish in; the caller appends them as one group.
Tool errors never escape: they are folded into error tool Turns so the model
can react to them.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from agent.errors import ToolError
from agent.types import ToolCall, Turn
from tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

CANCELLED_RESULT = "[Tool execution cancelled - the run was interrupted before this call finished]"


@dataclass(frozen=True)
class ToolExecConfig:
    """Immutable configuration for tool execution.

    Args:
        registry: Registry the calls are dispatched through.
        tool_progress_callback: ``callback(tool_name, args_preview)`` fired
            before each dispatch.
        log_prefix: Prepended to log lines (usually the conversation id).
        log_prefix_chars: Max chars of args/results shown in debug logs.
    """

    registry: ToolRegistry
    tool_progress_callback: Optional[Callable[[str, str], None]] = None
    log_prefix: str = ""
    log_prefix_chars: int = 100


def _preview(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


async def _run_one(config: ToolExecConfig, call: ToolCall, context: ToolContext) -> Turn:
    args_str = call.arguments_json()
    logger.debug("%s tool %s(%s)", config.log_prefix, call.name,
                 _preview(args_str, config.log_prefix_chars))

    if config.tool_progress_callback:
        try:
            config.tool_progress_callback(call.name, _preview(args_str, config.log_prefix_chars))
        except Exception as cb_err:
            logger.debug("Tool progress callback error: %s", cb_err)

    try:
        result = await config.registry.dispatch(call, context)
    except ToolError as e:
        logger.warning("%s tool %s -> %s: %s", config.log_prefix, call.name, e.kind, e)
        return Turn.tool(call, e.to_payload(), is_error=True)

    logger.debug("%s tool %s completed in %.2fs - %s", config.log_prefix, call.name,
                 result.duration, _preview(result.content, config.log_prefix_chars))
    return Turn.tool(call, result.content)


async def execute_tool_calls(config: ToolExecConfig, calls: List[ToolCall],
                             context: ToolContext) -> List[Turn]:
    """Dispatch every call concurrently; return tool Turns in call order.

    Cancellation propagates to every in-flight dispatch and nothing is
    returned, so the caller never appends a partial group.
    """
    if not calls:
        return []
    return list(await asyncio.gather(*(_run_one(config, call, context) for call in calls)))


def cancelled_results(calls: List[ToolCall], reason: str = CANCELLED_RESULT) -> List[Turn]:
    """Synthetic error results for calls that will never run."""
    payload = json.dumps({"error": reason, "kind": "cancelled"})
    return [Turn.tool(call, payload, is_error=True) for call in calls]
