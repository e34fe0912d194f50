"""Provider adapter -- one calling convention over OpenAI-compatible endpoints.

Every backend is reached through the ``openai`` SDK pointed at the provider's
base URL. What differs between providers is captured in ``ProviderConfig``
and handled by a small per-format translation table rather than subclasses:

    "tools"      current OpenAI tool calling (tools= / message.tool_calls)
    "functions"  legacy function calling (functions= / message.function_call)

The adapter never retries. It classifies failures as transient (rate limit,
5xx, timeout, dropped connection) or terminal (auth, malformed request) and
leaves retry policy to the agent loop.
"""

import json
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from agent.errors import ProviderError, TerminalProviderError, TransientProviderError
from agent.types import (
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ChatRequest,
    ChatResponse,
    ToolCall,
    Turn,
    new_call_id,
)
from nanobot_constants import DEFAULT_MODEL, OPENROUTER_BASE_URL

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying besides 5xx.
_TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})


class ProviderConfig(BaseModel):
    """Connection settings for one provider. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    provider: str = "openrouter"
    base_url: str = OPENROUTER_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    supports_streaming: bool = True
    tool_format: str = "tools"
    extra_body: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float = 120.0


# ---------------------------------------------------------------------------
# Request translation
# ---------------------------------------------------------------------------

def _tool_call_wire(tc: ToolCall) -> Dict[str, Any]:
    return {
        "id": tc.id,
        "type": "function",
        "function": {"name": tc.name, "arguments": tc.arguments_json()},
    }


def _messages_tools_format(turns: List[Turn]) -> List[Dict[str, Any]]:
    messages = []
    for turn in turns:
        if turn.role == ROLE_ASSISTANT and turn.tool_calls:
            messages.append({
                "role": "assistant",
                "content": turn.content or None,
                "tool_calls": [_tool_call_wire(tc) for tc in turn.tool_calls],
            })
        elif turn.role == ROLE_TOOL:
            messages.append({
                "role": "tool",
                "tool_call_id": turn.tool_call_id,
                "content": turn.content,
            })
        else:
            messages.append({"role": turn.role, "content": turn.content})
    return messages


def _messages_functions_format(turns: List[Turn]) -> List[Dict[str, Any]]:
    """Legacy format allows one call per assistant message.

    Multi-call assistant turns are split into (function_call, function result)
    pairs in the original call order.
    """
    results = {t.tool_call_id: t for t in turns if t.role == ROLE_TOOL}
    emitted = set()
    messages = []
    for turn in turns:
        if turn.role == ROLE_ASSISTANT and turn.tool_calls:
            for i, tc in enumerate(turn.tool_calls):
                messages.append({
                    "role": "assistant",
                    "content": (turn.content or None) if i == 0 else None,
                    "function_call": {"name": tc.name, "arguments": tc.arguments_json()},
                })
                result = results.get(tc.id)
                if result is not None:
                    messages.append({"role": "function", "name": tc.name, "content": result.content})
                    emitted.add(tc.id)
        elif turn.role == ROLE_TOOL:
            if turn.tool_call_id in emitted:
                continue
            messages.append({"role": "function", "name": turn.name or "", "content": turn.content})
        else:
            messages.append({"role": turn.role, "content": turn.content})
    return messages


def _tools_param_tools_format(tools: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not tools:
        return {}
    return {"tools": tools, "tool_choice": "auto"}


def _tools_param_functions_format(tools: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not tools:
        return {}
    return {"functions": [t["function"] for t in tools if t.get("type") == "function"]}


_TRANSLATORS: Dict[str, Dict[str, Callable]] = {
    "tools": {
        "messages": _messages_tools_format,
        "tools": _tools_param_tools_format,
    },
    "functions": {
        "messages": _messages_functions_format,
        "tools": _tools_param_functions_format,
    },
}


def build_request_kwargs(config: ProviderConfig, request: ChatRequest) -> Dict[str, Any]:
    """Shape a ChatRequest into ``chat.completions.create`` keyword arguments."""
    translator = _TRANSLATORS.get(config.tool_format)
    if translator is None:
        raise TerminalProviderError(f"Unsupported tool format: {config.tool_format}")

    kwargs: Dict[str, Any] = {
        "model": request.model or config.model,
        "messages": translator["messages"](request.turns),
    }
    kwargs.update(translator["tools"](request.tools))
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.max_tokens is not None:
        kwargs["max_tokens"] = request.max_tokens

    extra_body = dict(config.extra_body)
    extra_body.update(request.extra)
    if extra_body:
        kwargs["extra_body"] = extra_body
    return kwargs


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _parse_arguments(raw: Any) -> Dict[str, Any]:
    """Arguments arrive as a JSON string, an object, or garbage."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        if isinstance(decoded, dict):
            return decoded
        return {"raw": decoded}
    return {"raw": raw}


def _extract_reasoning(message: Dict[str, Any]) -> Optional[str]:
    for key in ("reasoning_content", "reasoning"):
        if message.get(key):
            return message[key]
    for detail in message.get("reasoning_details") or []:
        if isinstance(detail, dict) and detail.get("text"):
            return detail["text"]
    return None


def _unique_call_ids(tool_calls: List[ToolCall]) -> List[ToolCall]:
    """Give every call in one response a distinct id.

    Some compatible backends repeat one id (``call_0``) for every call in a
    response; results are matched back by id.
    """
    seen = set()
    unique = []
    for call in tool_calls:
        if call.id in seen:
            logger.debug("Replacing duplicate tool call id %r", call.id)
            call = replace(call, id=new_call_id())
        seen.add(call.id)
        unique.append(call)
    return unique


def parse_completion(data: Dict[str, Any]) -> ChatResponse:
    """Normalize a chat-completion payload regardless of tool-call flavour."""
    choices = data.get("choices") or []
    if not choices:
        # Providers answer rate limiting with an empty body surprisingly often.
        raise TransientProviderError("Provider returned no choices")

    choice = choices[0]
    message = choice.get("message") or {}
    tool_calls: List[ToolCall] = []

    for tc in message.get("tool_calls") or []:
        function = tc.get("function") or {}
        name = function.get("name") or tc.get("name") or ""
        raw_args = function.get("arguments", tc.get("arguments"))
        tool_calls.append(ToolCall(
            name=name,
            arguments=_parse_arguments(raw_args),
            id=tc.get("id") or new_call_id(),
        ))

    function_call = message.get("function_call")
    if function_call and not tool_calls:
        tool_calls.append(ToolCall(
            name=function_call.get("name") or "",
            arguments=_parse_arguments(function_call.get("arguments")),
        ))

    usage = {
        k: v for k, v in (data.get("usage") or {}).items() if isinstance(v, int)
    }
    return ChatResponse(
        content=message.get("content") or "",
        tool_calls=_unique_call_ids(tool_calls),
        finish_reason=choice.get("finish_reason") or ("tool_calls" if tool_calls else "stop"),
        usage=usage,
        reasoning=_extract_reasoning(message),
    )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def _retry_after(response: Optional[httpx.Response]) -> Optional[float]:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_error(exc: Exception) -> ProviderError:
    """Map SDK/transport exceptions onto transient vs terminal."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return TransientProviderError("Provider request timed out")
    if isinstance(exc, openai.APIConnectionError):
        return TransientProviderError(f"Connection to provider failed: {exc}")
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in _TRANSIENT_STATUSES or status >= 500:
            return TransientProviderError(
                f"Provider returned HTTP {status}",
                status_code=status,
                retry_after=_retry_after(exc.response),
            )
        return TerminalProviderError(f"Provider rejected request (HTTP {status})", status_code=status)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientProviderError(f"Transport error: {exc}")
    return TerminalProviderError(f"Unexpected provider failure: {type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class ProviderAdapter:
    """``complete(ChatRequest) -> ChatResponse`` over an OpenAI-compatible endpoint.

    Args:
        config: Immutable provider settings.
        http_client: Optional ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    def __init__(self, config: ProviderConfig, *, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = AsyncOpenAI(
            api_key=config.api_key or "not-set",
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,  # retries belong to the agent loop
            http_client=http_client,
        )

    @property
    def default_model(self) -> str:
        return self.config.model

    @property
    def supports_streaming(self) -> bool:
        return self.config.supports_streaming

    async def complete(self, request: ChatRequest) -> ChatResponse:
        kwargs = build_request_kwargs(self.config, request)
        try:
            completion = await self._client.chat.completions.create(**kwargs)
        except Exception as e:
            raise classify_error(e) from e
        return parse_completion(completion.model_dump())

    async def stream(self, request: ChatRequest) -> AsyncIterator[Union[str, ChatResponse]]:
        """Yield text deltas as they arrive, then one terminal ChatResponse."""
        if not self.config.supports_streaming:
            yield await self.complete(request)
            return

        kwargs = build_request_kwargs(self.config, request)
        kwargs["stream"] = True

        text_parts: List[str] = []
        partial_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason = "stop"
        usage: Dict[str, int] = {}

        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async for chunk in stream:
                data = chunk.model_dump()
                if data.get("usage"):
                    usage = {k: v for k, v in data["usage"].items() if isinstance(v, int)}
                for choice in data.get("choices") or []:
                    delta = choice.get("delta") or {}
                    if delta.get("content"):
                        text_parts.append(delta["content"])
                        yield delta["content"]
                    for tc in delta.get("tool_calls") or []:
                        slot = partial_calls.setdefault(
                            tc.get("index", len(partial_calls)),
                            {"id": None, "name": "", "arguments": ""},
                        )
                        if tc.get("id"):
                            slot["id"] = tc["id"]
                        function = tc.get("function") or {}
                        if function.get("name"):
                            slot["name"] += function["name"]
                        if function.get("arguments"):
                            slot["arguments"] += function["arguments"]
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except ProviderError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        tool_calls = [
            ToolCall(
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
                id=slot["id"] or new_call_id(),
            )
            for _, slot in sorted(partial_calls.items())
        ]
        yield ChatResponse(
            content="".join(text_parts),
            tool_calls=_unique_call_ids(tool_calls),
            finish_reason=finish_reason,
            usage=usage,
        )

    async def close(self) -> None:
        await self._client.close()
