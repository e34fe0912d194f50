"""
Event Hook System

A lightweight event-driven system that fires handlers at key lifecycle points.
Hooks are discovered from $NANOBOT_HOME/hooks/, each directory containing:
  - HOOK.yaml  (metadata: name, description, events list)
  - handler.py (Python handler with ``handle(event_type, context)``, sync or async)

Events:
  - gateway:startup     -- Gateway starts accepting messages
  - session:start       -- First message of a new session
  - agent:start         -- Agent begins processing a message
  - agent:step          -- Each tool-dispatch round
  - agent:end           -- Agent finishes processing
  - message:cancelled   -- An in-flight run was superseded

Errors in hooks are caught and logged but never block the main pipeline.
"""

import asyncio
import importlib.util
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from nanobot_constants import get_nanobot_home

logger = logging.getLogger(__name__)

HOOKS_DIR = get_nanobot_home() / "hooks"


class HookRegistry:
    """
    Discovers, loads, and fires event hooks.

    Usage:
        registry = HookRegistry()
        registry.discover_and_load()
        await registry.emit("agent:start", {"session_id": "telegram:42", ...})
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}
        self._loaded_hooks: List[dict] = []

    @property
    def loaded_hooks(self) -> List[dict]:
        return list(self._loaded_hooks)

    def register(self, event: str, handler: Callable) -> None:
        """Attach an in-process handler (no HOOK.yaml needed)."""
        self._handlers.setdefault(event, []).append(handler)

    def discover_and_load(self, hooks_dir: Optional[Path] = None) -> None:
        """Load every valid hook directory under ``hooks_dir`` (default HOOKS_DIR)."""
        hooks_dir = hooks_dir or HOOKS_DIR
        if not hooks_dir.exists():
            return

        for hook_dir in sorted(hooks_dir.iterdir()):
            if not hook_dir.is_dir():
                continue

            manifest_path = hook_dir / "HOOK.yaml"
            handler_path = hook_dir / "handler.py"
            if not manifest_path.exists() or not handler_path.exists():
                continue

            try:
                manifest = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
                if not manifest or not isinstance(manifest, dict):
                    logger.warning("Skipping hook %s: invalid HOOK.yaml", hook_dir.name)
                    continue

                hook_name = manifest.get("name", hook_dir.name)
                events = manifest.get("events", [])
                if not events:
                    logger.warning("Skipping hook %s: no events declared", hook_name)
                    continue

                spec = importlib.util.spec_from_file_location(f"nanobot_hook_{hook_name}", handler_path)
                if spec is None or spec.loader is None:
                    logger.warning("Skipping hook %s: could not load handler.py", hook_name)
                    continue
                module = importlib.util.module_from_spec(spec)
                spec.loader.exec_module(module)

                handle_fn = getattr(module, "handle", None)
                if handle_fn is None:
                    logger.warning("Skipping hook %s: no 'handle' function found", hook_name)
                    continue

                for event in events:
                    self._handlers.setdefault(event, []).append(handle_fn)

                self._loaded_hooks.append({
                    "name": hook_name,
                    "description": manifest.get("description", ""),
                    "events": events,
                    "path": str(hook_dir),
                })
                logger.info("Loaded hook '%s' for events: %s", hook_name, events)

            except Exception as e:
                logger.error("Error loading hook %s: %s", hook_dir.name, e)

    async def emit(self, event_type: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Fire all handlers registered for an event.

        Handlers registered for "agent:*" fire for every "agent:..." event;
        otherwise only exact matches fire.
        """
        if context is None:
            context = {}

        handlers = list(self._handlers.get(event_type, []))
        if ":" in event_type:
            base = event_type.split(":")[0]
            handlers.extend(self._handlers.get(f"{base}:*", []))

        for fn in handlers:
            try:
                result = fn(event_type, context)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Error in hook handler for '%s': %s", event_type, e)
