#!/usr/bin/env python3
"""
Capability tags and presets.

Every tool is registered under exactly one capability tag. A loop instance
sees only the tools whose tag is in its capability set, which is how a parent
hands a subagent a restricted view of the registry.

Presets bundle tags (and may include other presets) so config files and the
spawn tool can name a whole group at once, e.g. ``"readonly"`` or ``"all"``.
"""

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


CAPABILITIES: Dict[str, str] = {
    "filesystem": "Read, write, edit and list files",
    "shell": "Execute shell commands",
    "network": "Web search and page fetching",
    "messaging": "Send messages to chat channels",
    "spawn": "Delegate bounded sub-tasks to subagents",
    "scheduling": "Schedule, list and remove timed tasks",
    "memory": "Read and write durable memory notes",
}

ALL_CAPABILITIES: FrozenSet[str] = frozenset(CAPABILITIES)


PRESETS: Dict[str, Dict[str, Any]] = {
    "readonly": {
        "description": "Look but don't touch: web research and memory recall",
        "capabilities": ["network", "memory"],
        "includes": [],
    },
    "research": {
        "description": "Research subagent: files and web, no shell or messaging",
        "capabilities": ["filesystem"],
        "includes": ["readonly"],
    },
    "safe": {
        "description": "Everything except shell execution and spawning",
        "capabilities": ["messaging", "scheduling"],
        "includes": ["research"],
    },
    "all": {
        "description": "Every capability",
        "capabilities": sorted(ALL_CAPABILITIES),
        "includes": [],
    },
}


def resolve_preset(name: str, visited: Set[str] = None) -> List[str]:
    if visited is None:
        visited = set()
    if name == "*":
        name = "all"
    if name in visited:
        logger.warning("Circular include detected in capability preset '%s'", name)
        return []
    visited.add(name)
    preset = PRESETS.get(name)
    if not preset:
        return []
    caps = set(preset.get("capabilities", []))
    for included in preset.get("includes", []):
        caps.update(resolve_preset(included, visited.copy()))
    return sorted(caps)


def normalize_capabilities(names: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Expand presets and drop unknown tags.

    ``None`` means "no restriction" and yields every capability.
    """
    if names is None:
        return ALL_CAPABILITIES
    if isinstance(names, str):
        names = [names]
    caps: Set[str] = set()
    for raw in names:
        name = str(raw).strip().lower()
        if name in CAPABILITIES:
            caps.add(name)
        elif name in PRESETS or name == "*":
            caps.update(resolve_preset(name))
        else:
            logger.warning("Ignoring unknown capability '%s'", raw)
    return frozenset(caps)


def validate_capability(name: str) -> bool:
    name = name.strip().lower()
    return name in CAPABILITIES or name in PRESETS or name == "*"


def get_preset_info(name: str) -> Optional[Dict[str, Any]]:
    preset = PRESETS.get(name)
    if not preset:
        return None
    resolved = resolve_preset(name)
    return {
        "name": name,
        "description": preset["description"],
        "direct_capabilities": preset["capabilities"],
        "includes": preset["includes"],
        "resolved_capabilities": resolved,
        "is_composite": len(preset["includes"]) > 0,
    }
