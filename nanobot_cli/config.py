"""
Configuration loading for nanobot.

Sources, lowest to highest precedence:
  1. model defaults below
  2. $NANOBOT_HOME/config.yaml
  3. environment (NANOBOT_MODEL, NANOBOT_PROVIDER, NANOBOT_BASE_URL,
     NANOBOT_MAX_ROUNDS, NANOBOT_WORKSPACE, BRAVE_API_KEY, provider keys)

``.env`` files are loaded into the environment first ($NANOBOT_HOME/.env,
then the project .env as a fallback that never overrides).
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from agent.errors import NanobotError
from agent.provider import ProviderConfig
from nanobot_cli.provider_registry import (
    detect_provider,
    get_provider,
    normalize_provider_id,
    resolve_provider_api_key,
    resolve_provider_base_url,
)
from nanobot_constants import DEFAULT_MODEL, get_nanobot_home
from toolsets import normalize_capabilities

logger = logging.getLogger(__name__)


class ConfigError(NanobotError):
    """config.yaml is unreadable or fails validation."""


class AgentSettings(BaseModel):
    max_rounds: int = Field(20, ge=1)
    wall_clock_seconds: Optional[float] = Field(600.0, gt=0)
    provider_max_retries: int = Field(6, ge=0)
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 60.0
    tool_timeout_seconds: float = Field(60.0, gt=0)
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 4096
    max_subagent_depth: int = Field(2, ge=0)
    subagent_turn_budget: int = Field(10, ge=1)
    context_budget_tokens: Optional[int] = None
    compaction_threshold: float = Field(0.85, gt=0, le=1)
    keep_recent_turns: int = Field(12, ge=1)
    compaction_strategy: str = Field("truncate", pattern="^(truncate|summarize)$")
    memory_days: int = Field(1, ge=1)
    capabilities: Optional[List[str]] = None


class ToolSettings(BaseModel):
    restrict_to_workspace: bool = False
    exec_timeout: float = Field(60.0, gt=0)
    exec_deny_patterns: Optional[List[str]] = None
    exec_allow_patterns: List[str] = Field(default_factory=list)
    brave_api_key: str = ""
    web_max_chars: int = 50_000
    web_max_results: int = 5


class Config(BaseModel):
    workspace: Path = Field(default_factory=lambda: get_nanobot_home() / "workspace")
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    @property
    def capabilities(self):
        return normalize_capabilities(self.agent.capabilities)


def load_env_files(home: Optional[Path] = None) -> None:
    """Load $NANOBOT_HOME/.env, then the project .env without overriding."""
    env_path = (home or get_nanobot_home()) / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


def read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def resolve_provider_config(raw: Dict[str, Any], env_get=os.getenv) -> ProviderConfig:
    """Turn the ``provider:`` section plus environment into a ProviderConfig."""
    raw = dict(raw or {})
    model = env_get("NANOBOT_MODEL") or raw.get("model") or DEFAULT_MODEL
    explicit_base_url = env_get("NANOBOT_BASE_URL") or raw.get("base_url")
    explicit_key = raw.get("api_key")

    provider_id = normalize_provider_id(env_get("NANOBOT_PROVIDER") or raw.get("provider"))
    if provider_id == "auto":
        provider_id = detect_provider(api_key=explicit_key, base_url=explicit_base_url, model=model)
    meta = get_provider(provider_id)
    if meta is None:
        raise ConfigError(f"Unknown provider '{provider_id}'")

    base_url = resolve_provider_base_url(provider_id, env_get=env_get, explicit_base_url=explicit_base_url)
    if not base_url:
        raise ConfigError(f"Provider '{provider_id}' needs a base_url (set NANOBOT_BASE_URL or OPENAI_BASE_URL)")
    api_key = resolve_provider_api_key(provider_id, env_get=env_get, explicit_api_key=explicit_key) or ""
    if not api_key:
        logger.warning("No API key found for provider '%s'", provider_id)

    return ProviderConfig(
        provider=provider_id,
        base_url=base_url,
        api_key=api_key,
        model=model,
        supports_streaming=raw.get("supports_streaming", meta.supports_streaming),
        tool_format=raw.get("tool_format", meta.tool_format),
        extra_body=raw.get("extra_body") or {},
        timeout_seconds=raw.get("timeout_seconds", 120.0),
    )


def build_config(data: Dict[str, Any], env_get=os.getenv) -> Config:
    """Validate a raw config mapping, applying environment overrides."""
    data = dict(data)
    agent = dict(data.get("agent") or {})
    tools = dict(data.get("tools") or {})

    max_rounds = env_get("NANOBOT_MAX_ROUNDS")
    if max_rounds:
        try:
            agent["max_rounds"] = int(max_rounds)
        except ValueError as e:
            raise ConfigError(f"NANOBOT_MAX_ROUNDS must be an integer, got {max_rounds!r}") from e
    brave_key = env_get("BRAVE_API_KEY")
    if brave_key and not tools.get("brave_api_key"):
        tools["brave_api_key"] = brave_key

    values: Dict[str, Any] = {"agent": agent, "tools": tools}
    workspace = env_get("NANOBOT_WORKSPACE") or data.get("workspace")
    if workspace:
        values["workspace"] = Path(workspace).expanduser()

    try:
        values["provider"] = resolve_provider_config(data.get("provider") or {}, env_get=env_get)
        return Config.model_validate(values)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def load_config(path: Optional[Path] = None, *, load_env: bool = True) -> Config:
    """Load .env files, read config.yaml and return a validated Config."""
    home = get_nanobot_home()
    if load_env:
        load_env_files(home)
    path = Path(path) if path else home / "config.yaml"
    config = build_config(read_config_file(path))
    logger.debug("Loaded config: provider=%s model=%s workspace=%s",
                 config.provider.provider, config.provider.model, config.workspace)
    return config
