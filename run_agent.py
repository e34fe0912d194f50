#!/usr/bin/env python3
"""
nanobot command-line runner

Talk to the agent from a terminal. With ``--query`` it answers once and
exits; without it, it opens a small REPL on one persistent session.

Usage:
    python run_agent.py --query="What's in my workspace?"
    python run_agent.py --session=cli:notes --model=deepseek/deepseek-chat
    python run_agent.py --capabilities=research --query="summarize README.md"
    python run_agent.py --list_tools
"""

import asyncio
import logging
import sys

import fire

from agent.agent_loop import STATUS_OK
from gateway.events import OutboundMessage
from gateway.run import configure_logging
from nanobot_cli.config import ConfigError, load_config
from nanobot_cli.runtime import build_runtime
from toolsets import CAPABILITIES, PRESETS, get_preset_info

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}


def _print_tools(runtime) -> None:
    print("Capabilities:")
    for name, description in CAPABILITIES.items():
        tools = runtime.registry.visible_names([name])
        print(f"  {name:12} - {description}")
        print(f"    Tools: {', '.join(tools) if tools else 'none'}")
    print("\nPresets:")
    for name in PRESETS:
        info = get_preset_info(name)
        print(f"  {name:12} - {info['description']}")
        print(f"    Capabilities: {', '.join(info['resolved_capabilities'])}")


async def _print_message(message: OutboundMessage) -> None:
    print(f"\n[message -> {message.chat_id}] {message.text}\n")


def _on_delta(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def _ask(runtime, session: str, text: str, stream: bool) -> None:
    result = await runtime.loop.run(
        session,
        text,
        channel="cli",
        chat_id=session,
        sender="user",
        on_text_delta=_on_delta if stream else None,
    )
    if not stream or result.status != STATUS_OK:
        print(result.text)
    else:
        print()
    if result.status != STATUS_OK:
        print(f"[{result.status}] rounds={result.rounds} retries={result.provider_retries}", file=sys.stderr)
    logger.info("%s: %s after %d rounds, %d tool calls", session, result.status, result.rounds,
                len(result.tool_trace))


async def _run(config, query, session, stream, list_tools) -> None:
    runtime = build_runtime(config)
    runtime.gateway.register_channel("cli", _print_message)
    try:
        if list_tools:
            _print_tools(runtime)
            return
        if query is not None:
            await _ask(runtime, session, query, stream)
            return

        print(f"nanobot ({config.provider.model}) -- session {session}. Type 'exit' to quit.")
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, input, "\nyou> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line.lower() in EXIT_COMMANDS:
                break
            print("bot> ", end="", flush=True)
            await _ask(runtime, session, line, stream)
    finally:
        await runtime.aclose()


def main(
    query: str = None,
    session: str = "cli:direct",
    model: str = None,
    max_rounds: int = None,
    capabilities: str = None,
    stream: bool = True,
    list_tools: bool = False,
    verbose: bool = False,
):
    """
    Run the agent from the command line.

    Args:
        query (str): One message to answer. Opens a REPL when omitted.
        session (str): Session id; history persists across invocations.
        model (str): Override the configured model.
        max_rounds (int): Override the per-message round budget.
        capabilities (str): Comma-separated capability tags or presets
            (e.g. "research" or "filesystem,memory").
        stream (bool): Print text as it arrives when the provider supports it.
        list_tools (bool): List capabilities, presets and tools, then exit.
        verbose (bool): Debug logging on the console.
    """
    configure_logging(verbose=verbose)
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    agent_updates = {}
    if max_rounds is not None:
        agent_updates["max_rounds"] = int(max_rounds)
    if capabilities:
        if isinstance(capabilities, (list, tuple)):
            agent_updates["capabilities"] = [str(c).strip() for c in capabilities]
        else:
            agent_updates["capabilities"] = [c.strip() for c in str(capabilities).split(",")]
    updates = {}
    if agent_updates:
        updates["agent"] = config.agent.model_copy(update=agent_updates)
    if model:
        updates["provider"] = config.provider.model_copy(update={"model": model})
    if updates:
        config = config.model_copy(update=updates)

    try:
        asyncio.run(_run(config, query, session, stream, list_tools))
    except KeyboardInterrupt:
        print()


def cli():
    fire.Fire(main)


if __name__ == "__main__":
    cli()
