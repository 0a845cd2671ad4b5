"""Security gate decision types."""

from dataclasses import dataclass, field


@dataclass
class SecurityDecision:
    """Verdict on a single tool call."""

    allowed: bool
    reason: str | None = None
    requires_confirmation: bool = False
    confirmation_message: str | None = None

    @classmethod
    def allow(cls) -> "SecurityDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "SecurityDecision":
        return cls(allowed=False, reason=reason)


@dataclass
class InputValidation:
    """Verdict on an incoming user message."""

    allowed: bool
    sanitized: str
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ModerationResult:
    """Findings from the content moderator."""

    flagged: bool = False
    matched_patterns: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
