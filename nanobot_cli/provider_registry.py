"""
Central provider registry for nanobot inference providers.

This module is intentionally lightweight and dependency-safe so config
loading, the runtime builder and the CLI can share the same provider
metadata and resolution behavior.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from nanobot_constants import (
    DEEPSEEK_BASE_URL,
    GROQ_BASE_URL,
    OPENAI_BASE_URL,
    OPENROUTER_BASE_URL,
)

EnvGetter = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    supports_streaming: bool = True
    tool_format: str = "tools"  # "tools" or legacy "functions"


PROVIDERS: Dict[str, ProviderMeta] = {
    "openrouter": ProviderMeta(
        id="openrouter",
        label="OpenRouter",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
    ),
    "deepseek": ProviderMeta(
        id="deepseek",
        label="DeepSeek",
        default_base_url=DEEPSEEK_BASE_URL,
        api_key_env_vars=("DEEPSEEK_API_KEY",),
        base_url_env_var="DEEPSEEK_BASE_URL",
    ),
    "groq": ProviderMeta(
        id="groq",
        label="Groq",
        default_base_url=GROQ_BASE_URL,
        api_key_env_vars=("GROQ_API_KEY",),
        base_url_env_var="GROQ_BASE_URL",
    ),
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        default_base_url=OPENAI_BASE_URL,
        api_key_env_vars=("OPENAI_API_KEY",),
    ),
    "custom": ProviderMeta(
        id="custom",
        label="Custom endpoint",
        default_base_url="",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
        aliases=("local", "vllm"),
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = "auto") -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def is_supported_provider(provider_id: str) -> bool:
    return normalize_provider_id(provider_id) in PROVIDERS


def list_provider_ids() -> List[str]:
    return list(PROVIDERS)


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    meta = get_provider(provider_id)
    if not meta:
        return None
    for env_var in meta.api_key_env_vars:
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve a base URL with consistent precedence.

    Order:
    1) explicit value (config.yaml / NANOBOT_BASE_URL)
    2) provider-specific base URL env override
    3) provider default base URL
    """
    if isinstance(explicit_base_url, str) and explicit_base_url.strip():
        return explicit_base_url.strip().rstrip("/")
    meta = get_provider(provider_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


def detect_provider(
    *,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    """
    Guess the provider when none is named.

    Priority:
    1) OpenRouter key prefix (sk-or-) or an openrouter base URL
    2) "deepseek" in the model name
    3) "groq" in the model name
    4) fallback openrouter
    """
    if (api_key or "").startswith("sk-or-") or "openrouter" in (base_url or "").lower():
        return "openrouter"
    model_lower = (model or "").lower()
    if "deepseek" in model_lower:
        return "deepseek"
    if "groq" in model_lower:
        return "groq"
    return "openrouter"
