"""Exception hierarchy for the agent core.

Only exceptional conditions are raised. Security blocks, iteration limits and
cancellation are returned as result variants (see ``agentloop.models.agent``).
"""

from typing import Any


class AgentError(Exception):
    """Base class for all agent errors."""


class DriverError(AgentError):
    """Backend HTTP or transport failure."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        """Whether the failure class is one the adapter retries."""
        return self.status_code is not None and (self.status_code == 429 or self.status_code >= 500)


class RateLimitExceeded(DriverError):
    """Backend kept answering 429 until retries ran out."""

    def __init__(self, message: str, body: Any = None, retry_after: float | None = None):
        super().__init__(message, status_code=429, body=body)
        self.retry_after = retry_after


class ToolError(AgentError):
    """Base class for tool pipeline failures."""

    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFound(ToolError):
    """Requested tool is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found", tool_name)


class ToolValidationError(ToolError):
    """Tool arguments failed schema validation."""

    def __init__(self, tool_name: str, errors: dict[str, list[str]]):
        details = "; ".join(f"{field}: {', '.join(messages)}" for field, messages in errors.items())
        super().__init__(f"Invalid arguments for tool '{tool_name}': {details}", tool_name)
        self.errors = errors


class ExecutionDenied(ToolError):
    """The authorization collaborator refused the tool's permission."""

    def __init__(self, tool_name: str, permission: str):
        super().__init__(f"Permission '{permission}' denied for tool '{tool_name}'", tool_name)
        self.permission = permission


class LoopOverflowError(AgentError):
    """The agent loop ran past its hard iteration cap."""
