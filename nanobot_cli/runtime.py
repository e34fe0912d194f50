"""
Runtime assembly -- builds the full object graph from a Config.

provider -> registry (+ every tool) -> session store / memory -> agent loop
-> gateway. Callers (CLI, scheduler, chat bridges) get one Runtime and
close it with ``await runtime.aclose()``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from agent.agent_loop import AgentLoop, LoopConfig
from agent.compaction import SummarizePolicy, TruncatePolicy, provider_summarizer
from agent.memory import MemoryManager
from agent.prompt_assembler import PromptAssembler
from agent.provider import ProviderAdapter
from agent.session_store import SessionStore
from agent.subagent import SubagentSpawner
from gateway.hooks import HookRegistry
from gateway.run import GatewayRunner
from nanobot_cli.config import Config, load_config
from tools import (
    cron_tool,
    filesystem_tool,
    memory_tool,
    message_tool,
    shell_tool,
    spawn_tool,
    web_tool,
)
from tools.message_tool import MessageSender
from tools.registry import ToolRegistry
from tools.web_tool import WebTools

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    provider: ProviderAdapter
    registry: ToolRegistry
    sessions: SessionStore
    memory: MemoryManager
    hooks: HookRegistry
    spawner: SubagentSpawner
    loop: AgentLoop
    gateway: GatewayRunner
    web: WebTools
    messages: MessageSender

    async def aclose(self) -> None:
        await self.gateway.shutdown()
        await self.web.close()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()


def loop_config_from(config: Config) -> LoopConfig:
    settings = config.agent
    return LoopConfig(
        model=config.provider.model,
        max_rounds=settings.max_rounds,
        wall_clock_seconds=settings.wall_clock_seconds,
        provider_max_retries=settings.provider_max_retries,
        retry_backoff_base=settings.retry_backoff_base,
        retry_backoff_max=settings.retry_backoff_max,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        context_budget_tokens=settings.context_budget_tokens,
        compaction_threshold=settings.compaction_threshold,
        capabilities=config.capabilities,
    )


def compaction_policy_for(config: Config, provider):
    settings = config.agent
    if settings.compaction_strategy == "summarize":
        return SummarizePolicy(provider_summarizer(provider, config.provider.model),
                               keep_last=settings.keep_recent_turns)
    return TruncatePolicy(keep_last=settings.keep_recent_turns)


def build_runtime(config: Optional[Config] = None, *, provider=None, load_hooks: bool = True) -> Runtime:
    """Wire every component together. ``provider`` overrides the HTTP adapter (tests)."""
    config = config or load_config()
    workspace = config.workspace.expanduser()
    workspace.mkdir(parents=True, exist_ok=True)

    provider = provider or ProviderAdapter(config.provider)
    registry = ToolRegistry(default_timeout=config.agent.tool_timeout_seconds)
    sessions = SessionStore(workspace)
    memory = MemoryManager(workspace)
    hooks = HookRegistry()
    if load_hooks:
        hooks.discover_and_load()

    loop_config = loop_config_from(config)
    spawner = SubagentSpawner(
        provider, registry, sessions,
        memory=memory,
        base_config=loop_config,
        max_depth=config.agent.max_subagent_depth,
        default_turn_budget=config.agent.subagent_turn_budget,
        hooks=hooks,
    )

    tool_settings = config.tools
    filesystem_tool.register(registry, restrict_to_workspace=tool_settings.restrict_to_workspace)
    shell_tool.register(
        registry,
        timeout=tool_settings.exec_timeout,
        working_dir=str(workspace),
        deny_patterns=tool_settings.exec_deny_patterns,
        allow_patterns=tool_settings.exec_allow_patterns,
        restrict_to_workspace=tool_settings.restrict_to_workspace,
    )
    web = web_tool.register(
        registry,
        api_key=tool_settings.brave_api_key or None,
        max_results=tool_settings.web_max_results,
        max_chars=tool_settings.web_max_chars,
    )
    memory_tool.register(registry, memory)
    messages = message_tool.register(registry)
    spawn_tool.register(registry, spawner)
    cron_tool.register(registry)

    loop = AgentLoop(
        provider, registry, sessions,
        memory=memory,
        config=loop_config,
        prompt=PromptAssembler(workspace, memory=memory, memory_days=config.agent.memory_days),
        compaction_policy=compaction_policy_for(config, provider),
        hooks=hooks,
    )
    gateway = GatewayRunner(loop, hooks=hooks)
    messages.set_callback(gateway.deliver)

    logger.info("Runtime ready: %s via %s, %d tools, workspace %s",
                config.provider.model, config.provider.provider, len(registry.visible_names()), workspace)
    return Runtime(
        config=config,
        provider=provider,
        registry=registry,
        sessions=sessions,
        memory=memory,
        hooks=hooks,
        spawner=spawner,
        loop=loop,
        gateway=gateway,
        web=web,
        messages=messages,
    )
