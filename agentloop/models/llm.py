"""Provider-agnostic backend request and response types."""

from dataclasses import dataclass, field

from agentloop.models.messages import ToolCall


@dataclass
class Usage:
    """Token usage reported by a backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: "Usage") -> None:
        """Accumulate another usage report into this one."""
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class DriverResponse:
    """Normalized response from any backend adapter."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class PromptOptions:
    """Per-request options passed to a backend adapter."""

    system: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
