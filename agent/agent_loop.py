"""Agent loop -- the inference/tool-dispatch state machine.

    AwaitingUserInput -> BuildingContext -> ModelInference
        -> (ToolDispatch <-> ModelInference)* -> Finalizing -> Terminal

One ``run()`` handles one inbound user message for one conversation. It
loads the session, appends the user turn, and alternates between the
provider and the tool registry until the model answers in plain text or a
budget runs out. Every assistant turn with tool calls is followed by exactly
one tool turn per call before the next inference.

Failure policy:
    - Transient provider errors are retried with exponential backoff and
      counted in ``LoopResult.provider_retries``; the caller never sees them
      unless retries run out. A stream that fails after text was already
      forwarded is not retried, so the caller never sees a repeated prefix.
    - Tool errors (unknown tool, invalid input, timeout, crash) become error
      tool turns and the loop continues.
    - Budget exhaustion finalizes with a best-effort answer and status
      ``budget_exceeded``.
    - Cancellation propagates; tool results of the interrupted round are
      either appended as a group or not at all, and the next run repairs
      any calls left without results.
"""

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from agent.compaction import TruncatePolicy
from agent.errors import ProviderError, TerminalProviderError, TransientProviderError
from agent.memory import MemoryManager
from agent.model_metadata import (
    context_budget_for,
    estimate_tokens_rough,
    estimate_tools_tokens,
    estimate_turns_tokens,
)
from agent.prompt_assembler import PromptAssembler, build_user_content
from agent.session_store import Session, SessionStore
from agent.tool_executor import ToolExecConfig, cancelled_results, execute_tool_calls
from agent.types import ChatRequest, ChatResponse, Turn
from tools.registry import ToolContext, ToolRegistry
from toolsets import ALL_CAPABILITIES, normalize_capabilities

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_BUDGET_EXCEEDED = "budget_exceeded"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"

# What chat channels see instead of raw error text.
FRIENDLY_ERROR_TEXT = (
    "Sorry, I ran into a problem reaching the language model and couldn't "
    "finish that. Please try again in a moment."
)
BUDGET_FALLBACK_TEXT = (
    "I ran out of time or steps before finishing this task. Here is where I got to:"
)

SUMMARY_REQUEST = (
    "You've reached the maximum number of tool-calling rounds allowed. "
    "Please provide a final response summarizing what you've found and "
    "accomplished so far, without calling any more tools."
)


class LoopState(enum.Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    BUILDING_CONTEXT = "building_context"
    MODEL_INFERENCE = "model_inference"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


@dataclass
class ToolTraceEntry:
    round: int
    tool_name: str
    call_id: str
    arguments: str
    is_error: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "tool": self.tool_name,
            "call_id": self.call_id,
            "arguments": self.arguments,
            "is_error": self.is_error,
        }


@dataclass
class LoopResult:
    """What the caller gets back from one run."""

    session_id: str
    text: str = ""
    status: str = STATUS_OK
    rounds: int = 0
    provider_retries: int = 0
    tool_trace: List[ToolTraceEntry] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    # Internal diagnostic; never shown on chat channels.
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


@dataclass(frozen=True)
class LoopConfig:
    """Per-loop knobs. Immutable for the duration of a run."""

    model: Optional[str] = None
    max_rounds: int = 20
    wall_clock_seconds: Optional[float] = 600.0
    provider_max_retries: int = 6
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 60.0
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 4096
    context_budget_tokens: Optional[int] = None
    compaction_threshold: float = 0.85
    capabilities: FrozenSet[str] = ALL_CAPABILITIES
    system_message: Optional[str] = None


class AgentLoop:
    """Drives one conversation turn through provider and tools.

    Args:
        provider: Anything with ``complete()`` (and optionally ``stream()``,
            ``supports_streaming``, ``default_model``).
        registry: Shared tool registry.
        sessions: Session store the turns are appended to.
        memory: Memory manager whose context is folded into the system turn.
        config: Loop budgets and generation parameters.
        prompt: System context assembler; built from the store's workspace
            when omitted.
        compaction_policy: Applied when context nears the model's budget.
        hooks: Object with ``async emit(event, context)`` (HookRegistry).
        sleep: Backoff sleep, injectable for tests.
    """

    def __init__(
        self,
        provider,
        registry: ToolRegistry,
        sessions: SessionStore,
        *,
        memory: Optional[MemoryManager] = None,
        config: Optional[LoopConfig] = None,
        prompt: Optional[PromptAssembler] = None,
        compaction_policy=None,
        hooks=None,
        tool_progress_callback: Optional[Callable[[str, str], None]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.provider = provider
        self.registry = registry
        self.sessions = sessions
        self.memory = memory
        self.config = config or LoopConfig()
        self.prompt = prompt or PromptAssembler(sessions.workspace, memory=memory)
        self.compaction_policy = compaction_policy or TruncatePolicy()
        self.hooks = hooks
        self.tool_progress_callback = tool_progress_callback
        self._sleep = sleep
        self.state = LoopState.AWAITING_USER_INPUT

    @property
    def model(self) -> str:
        return self.config.model or getattr(self.provider, "default_model", "") or ""

    def _transition(self, new_state: LoopState, session_id: str) -> None:
        logger.debug("[%s] %s -> %s", session_id, self.state.value, new_state.value)
        self.state = new_state

    async def _emit(self, event: str, context: Dict[str, Any]) -> None:
        if self.hooks is None:
            return
        try:
            await self.hooks.emit(event, context)
        except Exception as e:
            logger.warning("Hook emit for %s failed: %s", event, e)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        session_id: str,
        user_text: str,
        *,
        attachments: Optional[List[str]] = None,
        channel: str = "cli",
        chat_id: Optional[str] = None,
        sender: str = "",
        depth: int = 0,
        on_text_delta: Optional[Callable[[str], None]] = None,
    ) -> LoopResult:
        """Process one user message to completion.

        Raises:
            asyncio.CancelledError: the run was cancelled externally.
        """
        self.state = LoopState.AWAITING_USER_INPUT
        result = LoopResult(session_id=session_id)
        started = time.monotonic()
        deadline = started + self.config.wall_clock_seconds if self.config.wall_clock_seconds else None

        session = await self.sessions.load(session_id)
        if not session.turns:
            await self._emit("session:start", {"session_id": session_id, "channel": channel})
        await self._repair_dangling_calls(session)
        await self.sessions.append(session_id, Turn.user(build_user_content(user_text, attachments)))

        capabilities = normalize_capabilities(self.config.capabilities)
        context = ToolContext(
            conversation_id=session_id,
            channel=channel,
            chat_id=chat_id or session_id,
            sender=sender,
            workspace=self.sessions.workspace,
            depth=depth,
            capabilities=capabilities,
        )
        tool_defs = self.registry.get_definitions(capabilities)
        tool_names = [d["function"]["name"] for d in tool_defs]
        exec_config = ToolExecConfig(
            registry=self.registry,
            tool_progress_callback=self.tool_progress_callback,
            log_prefix=f"[{session_id}]",
        )

        await self._emit("agent:start", {
            "session_id": session_id, "channel": channel, "message": user_text[:500],
        })

        last_partial = ""
        try:
            while True:
                if result.rounds >= self.config.max_rounds:
                    logger.info("[%s] round budget (%d) exhausted", session_id, self.config.max_rounds)
                    await self._finalize_budget(session, result, tool_names, context, last_partial, summarize=True)
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.info("[%s] wall-clock budget exhausted", session_id)
                    await self._finalize_budget(session, result, tool_names, context, last_partial, summarize=False)
                    break

                self._transition(LoopState.BUILDING_CONTEXT, session_id)
                system_turn = self.prompt.build_turn(
                    valid_tool_names=tool_names,
                    channel=context.channel,
                    chat_id=context.chat_id,
                    system_message=self.config.system_message,
                )
                await self._maybe_compact(session, system_turn, tool_defs)
                request = self._request([system_turn] + session.context_turns(), tool_defs)

                self._transition(LoopState.MODEL_INFERENCE, session_id)
                api_start = time.monotonic()
                try:
                    response = await self._with_deadline(
                        self._infer(request, result, on_text_delta), deadline,
                    )
                except asyncio.TimeoutError:
                    logger.info("[%s] wall-clock budget exhausted during inference", session_id)
                    await self._finalize_budget(session, result, tool_names, context, last_partial, summarize=False)
                    break
                api_elapsed = time.monotonic() - api_start
                result.rounds += 1
                for key, value in response.usage.items():
                    result.usage[key] = result.usage.get(key, 0) + value
                logger.info("[%s] round %d: api=%.1fs, %d tools",
                            session_id, result.rounds, api_elapsed, len(response.tool_calls))

                if not response.has_tool_calls:
                    self._transition(LoopState.FINALIZING, session_id)
                    result.text = response.content
                    result.status = STATUS_OK
                    await self.sessions.append(session_id, Turn.assistant(response.content))
                    break

                await self.sessions.append(session_id, Turn.assistant(response.content, response.tool_calls))
                if response.content:
                    last_partial = response.content

                self._transition(LoopState.TOOL_DISPATCH, session_id)
                try:
                    tool_turns = await self._with_deadline(
                        execute_tool_calls(exec_config, response.tool_calls, context), deadline,
                    )
                except asyncio.TimeoutError:
                    tool_turns = cancelled_results(
                        response.tool_calls, "[Tool execution cancelled - time budget exhausted]",
                    )
                await self.sessions.append_many(session_id, tool_turns)
                for call, turn in zip(response.tool_calls, tool_turns):
                    result.tool_trace.append(ToolTraceEntry(
                        round=result.rounds,
                        tool_name=call.name,
                        call_id=call.id,
                        arguments=call.arguments_json()[:200],
                        is_error=turn.is_error,
                    ))
                await self._emit("agent:step", {
                    "session_id": session_id,
                    "round": result.rounds,
                    "tool_names": [tc.name for tc in response.tool_calls],
                })

        except ProviderError as e:
            logger.error("[%s] provider failed after %d retries: %s", session_id, result.provider_retries, e)
            result.status = STATUS_ERROR
            result.error = f"{type(e).__name__}: {e}"
            result.text = FRIENDLY_ERROR_TEXT
        except asyncio.CancelledError:
            logger.info("[%s] run cancelled in state %s", session_id, self.state.value)
            result.status = STATUS_CANCELLED
            raise
        finally:
            self._transition(LoopState.TERMINAL, session_id)

        await self._emit("agent:end", {
            "session_id": session_id,
            "status": result.status,
            "rounds": result.rounds,
            "response": result.text[:500],
        })
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _request(self, turns: List[Turn], tool_defs: List[Dict[str, Any]]) -> ChatRequest:
        return ChatRequest(
            turns=turns,
            model=self.model,
            tools=tool_defs,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

    @staticmethod
    async def _with_deadline(coro, deadline: Optional[float]):
        if deadline is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=max(deadline - time.monotonic(), 0.0))

    async def _infer(self, request: ChatRequest, result: LoopResult,
                     on_text_delta: Optional[Callable[[str], None]] = None) -> ChatResponse:
        """One logical inference call, with bounded retries on transient errors."""
        retry = 0
        while True:
            try:
                return await self._call_provider(request, on_text_delta)
            except ProviderError as e:
                if not e.retryable or retry >= self.config.provider_max_retries:
                    raise
                retry += 1
                result.provider_retries += 1
                wait = e.retry_after if e.retry_after is not None else min(
                    self.config.retry_backoff_base ** retry, self.config.retry_backoff_max,
                )
                logger.warning("Provider error (%s), retry %d/%d in %.1fs",
                               e, retry, self.config.provider_max_retries, wait)
                await self._sleep(wait)

    async def _call_provider(self, request: ChatRequest,
                             on_text_delta: Optional[Callable[[str], None]]) -> ChatResponse:
        if on_text_delta is None or not getattr(self.provider, "supports_streaming", False):
            return await self.provider.complete(request)
        response = None
        forwarded = False
        try:
            async for item in self.provider.stream(request):
                if isinstance(item, ChatResponse):
                    response = item
                else:
                    forwarded = True
                    on_text_delta(item)
            if response is None:
                raise TransientProviderError("Stream ended without a final response")
        except TransientProviderError as e:
            if not forwarded:
                raise
            # The caller already holds part of the answer; a retry would replay it.
            raise TerminalProviderError(
                f"Stream interrupted after partial output: {e}", status_code=e.status_code,
            ) from e
        return response

    async def _repair_dangling_calls(self, session: Session) -> None:
        pending = session.pending_tool_calls()
        if not pending:
            return
        logger.warning("[%s] repairing %d tool call(s) left without results",
                       session.id, len(pending))
        await self.sessions.append_many(session.id, cancelled_results(pending))

    async def _maybe_compact(self, session: Session, system_turn: Turn,
                             tool_defs: List[Dict[str, Any]]) -> None:
        budget = context_budget_for(self.model, self.config.max_tokens or 0, self.config.context_budget_tokens)
        threshold = int(budget * self.config.compaction_threshold)
        fixed = estimate_tokens_rough(system_turn.text) + estimate_tools_tokens(tool_defs)
        used = fixed + estimate_turns_tokens(session.context_turns())
        if used <= threshold:
            return
        logger.info("[%s] context ~%d tokens exceeds %d, compacting", session.id, used, threshold)
        await self.sessions.compact(
            session.id, self.compaction_policy, budget_tokens=max(threshold - fixed, 1),
        )

    async def _finalize_budget(self, session: Session, result: LoopResult, tool_names: List[str],
                               context: ToolContext, last_partial: str, *, summarize: bool) -> None:
        """Best-effort answer once a budget runs out."""
        self._transition(LoopState.FINALIZING, session.id)
        result.status = STATUS_BUDGET_EXCEEDED
        text = ""
        if summarize:
            system_turn = self.prompt.build_turn(
                valid_tool_names=tool_names, channel=context.channel, chat_id=context.chat_id,
                system_message=self.config.system_message,
            )
            # The instruction is ephemeral: sent once, never persisted.
            request = self._request(
                [system_turn] + session.context_turns() + [Turn.user(SUMMARY_REQUEST)], [],
            )
            try:
                response = await self.provider.complete(request)
                text = response.content.strip()
            except ProviderError as e:
                logger.warning("[%s] budget summary request failed: %s", session.id, e)
        if not text:
            text = f"{BUDGET_FALLBACK_TEXT}\n\n{last_partial}" if last_partial else BUDGET_FALLBACK_TEXT
        result.text = text
        await self.sessions.append(session.id, Turn.assistant(text))


def format_tool_trace(trace: List[ToolTraceEntry]) -> str:
    return json.dumps([entry.to_dict() for entry in trace], ensure_ascii=False)
