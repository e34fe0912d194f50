"""Subagent spawner -- bounded delegation to a nested agent loop.

A child runs in its own session (``<parent>::sub-<id>``) with a tool view
that is the intersection of what was asked for and what the parent itself
can see, so delegation can only narrow capabilities. Depth is threaded
explicitly through ``ToolContext.depth``; exceeding ``max_depth`` fails
before anything runs.

Only the condensed summary returns to the parent, as the result of its
``spawn`` tool call. The child's own turns stay in the child's session.
"""

import dataclasses
import logging
import uuid
from typing import Iterable, Optional

from agent.agent_loop import STATUS_BUDGET_EXCEEDED, STATUS_OK, AgentLoop, LoopConfig
from agent.errors import SpawnBudgetExceeded, SpawnDepthExceeded, SpawnError
from agent.prompt_assembler import PromptAssembler
from tools.registry import ToolContext
from toolsets import normalize_capabilities

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2
DEFAULT_TURN_BUDGET = 10
MAX_SUMMARY_CHARS = 4000

SUBAGENT_SYSTEM_MESSAGE = (
    "You are a subagent working on one delegated task. Stay focused on it, use "
    "your tools as needed, and finish with a concise report of what you found "
    "or did. Your final answer is passed back to the agent that delegated to you."
)


def _condense(text: str, limit: int = MAX_SUMMARY_CHARS) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n[... {len(text) - limit:,} more chars omitted ...]"


class SubagentSpawner:
    """Creates and runs child loops that share the parent's stores and provider.

    Args:
        provider: Provider used by child loops.
        registry: Shared tool registry (children see a filtered view).
        sessions: Shared session store (children get their own session ids).
        memory: Shared memory manager.
        base_config: Loop config the child config is derived from.
        max_depth: Deepest nesting allowed; depth 0 is the top-level loop.
        default_turn_budget: Child round budget when the caller gives none.
    """

    def __init__(self, provider, registry, sessions, *, memory=None,
                 base_config: Optional[LoopConfig] = None,
                 max_depth: int = DEFAULT_MAX_DEPTH,
                 default_turn_budget: int = DEFAULT_TURN_BUDGET,
                 hooks=None):
        self.provider = provider
        self.registry = registry
        self.sessions = sessions
        self.memory = memory
        self.base_config = base_config or LoopConfig()
        self.max_depth = max_depth
        self.default_turn_budget = default_turn_budget
        self.hooks = hooks

    async def spawn(
        self,
        task: str,
        capabilities: Optional[Iterable[str]] = None,
        turn_budget: Optional[int] = None,
        *,
        context: Optional[ToolContext] = None,
        label: Optional[str] = None,
    ) -> str:
        """Run ``task`` in a child loop and return its condensed summary.

        Raises:
            SpawnDepthExceeded: the child would be deeper than ``max_depth``.
            SpawnBudgetExceeded: the child ran out of rounds or time; the
                best-effort answer is on ``partial``.
            SpawnError: the child loop failed.
        """
        context = context or ToolContext()
        child_depth = context.depth + 1
        if child_depth > self.max_depth:
            raise SpawnDepthExceeded(
                f"Subagent depth {child_depth} exceeds the maximum of {self.max_depth}"
            )

        requested = normalize_capabilities(capabilities)
        child_caps = frozenset(requested & context.capabilities)
        budget = turn_budget or self.default_turn_budget
        label = label or (task[:30] + ("..." if len(task) > 30 else ""))
        parent_id = context.conversation_id or "detached"
        child_id = f"{parent_id}::sub-{uuid.uuid4().hex[:8]}"

        child_config = dataclasses.replace(
            self.base_config,
            max_rounds=budget,
            capabilities=child_caps,
            system_message=SUBAGENT_SYSTEM_MESSAGE,
        )
        child = AgentLoop(
            self.provider,
            self.registry,
            self.sessions,
            memory=self.memory,
            config=child_config,
            prompt=PromptAssembler(self.sessions.workspace, memory=self.memory, skip_context_files=True),
            hooks=self.hooks,
        )

        logger.info("Spawning subagent %s (depth %d, caps=%s, budget=%d): %s",
                    child_id, child_depth, sorted(child_caps), budget, label)
        result = await child.run(
            child_id,
            task,
            channel=context.channel,
            chat_id=context.chat_id,
            sender=context.sender,
            depth=child_depth,
        )
        logger.info("Subagent %s finished: status=%s rounds=%d", child_id, result.status, result.rounds)

        if result.status == STATUS_BUDGET_EXCEEDED:
            raise SpawnBudgetExceeded(
                f"Subagent '{label}' exhausted its budget of {budget} rounds",
                partial=_condense(result.text),
            )
        if result.status != STATUS_OK:
            raise SpawnError(f"Subagent '{label}' failed: {result.error or result.status}")
        return f"[Subagent '{label}' completed]\n\n{_condense(result.text)}"
