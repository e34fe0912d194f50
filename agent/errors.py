"""Error kinds raised across the agent runtime.

Provider errors split into retryable (transient) and surfaced-immediately
(terminal). Tool errors are never fatal to the loop: they render themselves
into a tool-result payload so the model can react. Session and spawn errors
are handled at the loop/tool seams.
"""

import json
from typing import Optional


class NanobotError(Exception):
    """Base class for all runtime errors."""


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ProviderError(NanobotError):
    """Inference call failed."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Rate limit, 5xx, timeout or connection failure -- safe to retry."""

    retryable = True


class TerminalProviderError(ProviderError):
    """Auth rejected or malformed request -- retrying will not help."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(NanobotError):
    """A tool call could not produce a result."""

    kind = "failed"

    def __init__(self, message: str, *, tool_name: str = "", call_id: str = ""):
        super().__init__(message)
        self.tool_name = tool_name
        self.call_id = call_id

    def to_payload(self) -> str:
        """Render as the content of a tool-result turn."""
        return json.dumps({"error": str(self), "kind": self.kind}, ensure_ascii=False)


class InvalidToolInput(ToolError):
    kind = "invalid_input"


class ToolTimeout(ToolError):
    kind = "timeout"


class ToolFailed(ToolError):
    kind = "failed"


class UnknownTool(ToolError):
    kind = "unknown_tool"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionError(NanobotError):
    pass


class CorruptSessionLog(SessionError):
    pass


class SessionNotFound(SessionError):
    pass


# ---------------------------------------------------------------------------
# Subagents
# ---------------------------------------------------------------------------

class SpawnError(NanobotError):
    pass


class SpawnDepthExceeded(SpawnError):
    pass


class SpawnBudgetExceeded(SpawnError):
    """Child loop ran out of budget; ``partial`` holds its best-effort answer."""

    def __init__(self, message: str, *, partial: str = ""):
        super().__init__(message)
        self.partial = partial
