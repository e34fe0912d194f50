"""Model context lengths and rough token estimation.

Pure utility functions used by compaction and the agent loop for pre-flight
context checks. No network lookups: known models come from a built-in table,
everything else from the ``MODEL_CONTEXT_LENGTH`` override or a safe floor.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Conservative floor for unknown models. Override with MODEL_CONTEXT_LENGTH.
SAFE_DEFAULT_CONTEXT_LENGTH = 8192

DEFAULT_CONTEXT_LENGTHS = {
    "anthropic/claude-opus-4": 200000,
    "anthropic/claude-opus-4-5": 200000,
    "anthropic/claude-sonnet-4": 200000,
    "anthropic/claude-haiku-4.5": 200000,
    "openai/gpt-4o": 128000,
    "openai/gpt-4o-mini": 128000,
    "openai/gpt-4.1": 1047576,
    "google/gemini-2.0-flash": 1048576,
    "google/gemini-2.5-pro": 1048576,
    "meta-llama/llama-3.3-70b-instruct": 131072,
    "deepseek-chat": 65536,
    "deepseek/deepseek-chat-v3": 65536,
    "llama-3.3-70b-versatile": 131072,
    "qwen/qwen-2.5-72b-instruct": 32768,
}

# Fixed per-image cost; base64 payloads would wildly overestimate otherwise.
_IMAGE_TOKEN_ESTIMATE = 1000


def _get_fallback_context_length() -> int:
    env_override = os.getenv("MODEL_CONTEXT_LENGTH")
    if env_override:
        try:
            return int(env_override)
        except ValueError:
            logger.warning("Invalid MODEL_CONTEXT_LENGTH value: %s, using default", env_override)
    return SAFE_DEFAULT_CONTEXT_LENGTH


def get_model_context_length(model: str) -> int:
    """Context length for a model.

    Resolution order:
    1. Built-in DEFAULT_CONTEXT_LENGTHS table (substring match either way)
    2. MODEL_CONTEXT_LENGTH env var
    3. SAFE_DEFAULT_CONTEXT_LENGTH
    """
    fallback_length = _get_fallback_context_length()
    if model in DEFAULT_CONTEXT_LENGTHS:
        return DEFAULT_CONTEXT_LENGTHS[model]
    for default_model, length in DEFAULT_CONTEXT_LENGTHS.items():
        if default_model in model or model in default_model:
            return length

    logger.warning(
        "Unknown model '%s' - using context length of %s tokens. "
        "Set MODEL_CONTEXT_LENGTH to override.", model, f"{fallback_length:,}",
    )
    return fallback_length


def estimate_tokens_rough(text: str) -> int:
    """Rough token estimate (~4 chars/token) for pre-flight checks."""
    if not text:
        return 0
    return len(text) // 4


def _content_tokens(content: Any) -> int:
    if isinstance(content, str):
        return estimate_tokens_rough(content)
    total = 0
    for part in content or []:
        if part.get("type") == "text":
            total += estimate_tokens_rough(part.get("text", ""))
        else:
            total += _IMAGE_TOKEN_ESTIMATE
    return total


def estimate_turns_tokens(turns: List[Any]) -> int:
    """Rough token estimate for a list of Turns."""
    total = 0
    for turn in turns:
        total += 4 + _content_tokens(turn.content)
        for tc in turn.tool_calls:
            total += estimate_tokens_rough(tc.name) + estimate_tokens_rough(tc.arguments_json())
    return total


def estimate_tools_tokens(tools: Optional[List[Dict[str, Any]]]) -> int:
    if not tools:
        return 0
    return estimate_tokens_rough(json.dumps(tools))


def context_budget_for(model: str, max_tokens: int, override: Optional[int] = None) -> int:
    """Tokens available for the prompt once the reply allowance is reserved."""
    if override:
        return override
    return max(get_model_context_length(model) - max_tokens, 1024)
