"""Pluggable compaction policies for long sessions.

A policy looks at the turns currently in context and proposes a cut: every
turn before the cut leaves the context window, optionally replaced by a
summary. The Session Store records the decision durably and passes every
proposal through ``safe_cut`` first, so no policy can separate a tool call
from its result.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from agent.model_metadata import estimate_turns_tokens
from agent.types import ROLE_TOOL, ChatRequest, Turn

logger = logging.getLogger(__name__)

Summarizer = Callable[[List[Turn], Optional[str]], Awaitable[str]]


@dataclass(frozen=True)
class CompactionPlan:
    """``cut`` is an index into the turns the policy was shown."""

    cut: int
    summary: Optional[str] = None


def safe_cut(turns: List[Turn], cut: int) -> int:
    """Move ``cut`` earlier until it does not split a call from its result.

    A boundary is unsafe when the turn right after it is a tool result (its
    call would be dropped) or the turn right before it carries tool calls
    (their results are, or will be, on the retained side).
    """
    cut = max(0, min(cut, len(turns)))
    while cut > 0:
        if cut < len(turns) and turns[cut].role == ROLE_TOOL:
            cut -= 1
        elif turns[cut - 1].has_tool_calls:
            cut -= 1
        else:
            break
    return cut


def _cut_for_budget(turns: List[Turn], keep_last: int, budget_tokens: Optional[int]) -> int:
    """Smallest cut that keeps at least ``keep_last`` turns and fits the budget."""
    cut = max(0, len(turns) - keep_last)
    if budget_tokens is None:
        return cut
    # Already keeping only keep_last; trim further only if even those overflow.
    while cut < len(turns) - 1 and estimate_turns_tokens(turns[cut:]) > budget_tokens:
        cut += 1
    return cut


class TruncatePolicy:
    """Drop everything but the most recent ``keep_last`` turns."""

    def __init__(self, keep_last: int = 12):
        if keep_last < 1:
            raise ValueError("keep_last must be at least 1")
        self.keep_last = keep_last

    async def plan(self, turns: List[Turn], *, previous_summary: Optional[str] = None,
                   budget_tokens: Optional[int] = None) -> Optional[CompactionPlan]:
        cut = _cut_for_budget(turns, self.keep_last, budget_tokens)
        if cut <= 0:
            return None
        return CompactionPlan(cut=cut, summary=previous_summary)


class SummarizePolicy:
    """Replace dropped turns with a model-written summary.

    Args:
        summarizer: ``async (dropped_turns, previous_summary) -> str``.
        keep_last: Number of most recent turns always kept verbatim.
    """

    def __init__(self, summarizer: Summarizer, keep_last: int = 12):
        if keep_last < 1:
            raise ValueError("keep_last must be at least 1")
        self.summarizer = summarizer
        self.keep_last = keep_last

    async def plan(self, turns: List[Turn], *, previous_summary: Optional[str] = None,
                   budget_tokens: Optional[int] = None) -> Optional[CompactionPlan]:
        cut = safe_cut(turns, _cut_for_budget(turns, self.keep_last, budget_tokens))
        if cut <= 0:
            return None
        try:
            summary = await self.summarizer(turns[:cut], previous_summary)
        except Exception as e:
            # Losing the summary is better than failing the turn.
            logger.warning("Summarizer failed, falling back to truncation: %s", e)
            summary = previous_summary
        return CompactionPlan(cut=cut, summary=summary)


SUMMARY_INSTRUCTION = (
    "Summarize the conversation below for your own future reference. Keep "
    "facts, decisions, open tasks, file paths and user preferences. Be concise."
)


def provider_summarizer(provider, model: Optional[str] = None, max_tokens: int = 1024) -> Summarizer:
    """Build a summarizer that asks the provider itself for the summary."""

    async def _summarize(dropped: List[Turn], previous_summary: Optional[str]) -> str:
        lines = []
        if previous_summary:
            lines.append(f"[Earlier summary]\n{previous_summary}")
        for turn in dropped:
            if turn.role == ROLE_TOOL:
                lines.append(f"[tool {turn.name} result]\n{turn.text[:2000]}")
            elif turn.has_tool_calls:
                calls = ", ".join(f"{tc.name}({tc.arguments_json()[:200]})" for tc in turn.tool_calls)
                lines.append(f"[assistant called] {calls}\n{turn.text}".strip())
            else:
                lines.append(f"[{turn.role}]\n{turn.text}")
        request = ChatRequest(
            turns=[Turn.system(SUMMARY_INSTRUCTION), Turn.user("\n\n".join(lines))],
            model=model or provider.default_model,
            max_tokens=max_tokens,
        )
        response = await provider.complete(request)
        return response.content.strip()

    return _summarize
