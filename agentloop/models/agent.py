"""Tagged results returned by the agent orchestrator."""

from dataclasses import dataclass, field

from agentloop.models.llm import Usage
from agentloop.models.messages import ToolResult


@dataclass
class AgentResult:
    """Outcome of one orchestrator run."""

    content: str
    finish_reason: str | None
    conversation_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return isinstance(self, Completed)


@dataclass
class Completed(AgentResult):
    """The model produced a final answer."""


@dataclass
class InputRejected(AgentResult):
    """The user message failed input moderation."""

    finish_reason: str | None = "input_rejected"


@dataclass
class SecurityBlocked(AgentResult):
    """A requested tool call was denied."""

    finish_reason: str | None = "security_blocked"
    tool_name: str | None = None


@dataclass
class IterationLimitReached(AgentResult):
    """The loop hit the security gate's iteration limit."""

    finish_reason: str | None = "iteration_limit"


@dataclass
class Stopped(AgentResult):
    """The caller cancelled the run."""

    finish_reason: str | None = "stopped"
