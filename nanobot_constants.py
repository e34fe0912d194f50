"""Shared constants for nanobot.

Import-safe module with no dependencies; can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

DEFAULT_MODEL = "anthropic/claude-opus-4-5"

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


def get_nanobot_home() -> Path:
    """Resolve the nanobot home directory (respects NANOBOT_HOME override)."""
    return Path(os.getenv("NANOBOT_HOME", Path.home() / ".nanobot")).expanduser()
