"""Request-scoped security policy for the agent loop."""

import re
import unicodedata
from typing import Any

from agentloop.config import SecurityConfig
from agentloop.events import EventSink, NullEventSink, SecurityViolation
from agentloop.models.security import InputValidation, SecurityDecision
from agentloop.security.moderation import ContentModerator
from agentloop.security.sanitizer import OutputSanitizer
from agentloop.services.prompts import SECURITY_PROMPT
from agentloop.tools.base import ToolDefinition
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

DESTRUCTIVE_VERBS: frozenset[str] = frozenset(
    {"delete", "remove", "cancel", "destroy", "drop", "truncate", "wipe", "clear", "reset"}
)
# Matched as substrings since these names are not split on case or underscores
LOCALIZED_DESTRUCTIVE_VERBS: tuple[str, ...] = ("حذف", "إلغاء", "مسح")

_NAME_TOKENS = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+")


def tool_name_tokens(name: str) -> list[str]:
    """Split ``deleteOrder`` / ``delete_order`` / ``DeleteOrder`` into lowercase words."""
    return [token.lower() for token in _NAME_TOKENS.findall(name)]


class SecurityGate:
    """Input moderation, per-request quotas, destructive-action detection and output sanitization.

    Counters are per instance; use a fresh gate (or ``reset()``) for every chat request.
    """

    def __init__(
        self,
        config: SecurityConfig | None = None,
        events: EventSink | None = None,
        moderator: ContentModerator | None = None,
        sanitizer: OutputSanitizer | None = None,
    ):
        self.config = config or SecurityConfig()
        self.events = events or NullEventSink()
        self.moderator = moderator or ContentModerator()
        self.sanitizer = sanitizer or OutputSanitizer(
            redact_secrets=self.config.redact_secrets,
            prevent_xss=self.config.prevent_xss,
        )
        self.tool_call_count = 0

    def reset(self) -> None:
        """Clear per-request counters."""
        self.tool_call_count = 0

    def validate_input(self, message: str) -> InputValidation:
        """Moderate an incoming user message.

        Args:
            message: Raw user message

        Returns:
            Whether the message may proceed, its sanitized form and any warnings
        """
        sanitized = _clean_text(message)

        if not self.config.enabled:
            return InputValidation(allowed=True, sanitized=sanitized)

        if len(sanitized) > self.config.max_message_length:
            reason = f"Message is too long (maximum {self.config.max_message_length} characters)."
            self._violation("message_too_long", {"length": len(sanitized), "limit": self.config.max_message_length})
            return InputValidation(allowed=False, sanitized=sanitized, reason=reason)

        if not self.config.moderation_enabled:
            return InputValidation(allowed=True, sanitized=sanitized)

        moderation = self.moderator.moderate(sanitized)
        warnings = list(moderation.warnings)

        if moderation.flagged:
            self._violation("prompt_injection", {"patterns": moderation.matched_patterns})
            if self.config.block_injections:
                return InputValidation(
                    allowed=False,
                    sanitized=sanitized,
                    reason="Your message was blocked because it contains disallowed instructions.",
                    warnings=warnings,
                )
            warnings.append("Message resembles a prompt-injection attempt")

        return InputValidation(allowed=True, sanitized=sanitized, warnings=warnings)

    def check_tool_call(
        self, name: str, arguments: dict[str, Any] | None = None, definition: ToolDefinition | None = None
    ) -> SecurityDecision:
        """Decide whether a requested tool call may run.

        Every call counts against the per-request quota, whichever tool it names.

        Args:
            name: Tool name
            arguments: Tool arguments, used for audit details only
            definition: Registered definition, if known

        Returns:
            The security decision
        """
        if not self.config.enabled:
            return SecurityDecision.allow()

        self.tool_call_count += 1
        limit = self.config.max_tool_calls_per_request
        if self.tool_call_count > limit:
            self._violation("tool_call_limit", {"tool": name, "count": self.tool_call_count, "limit": limit})
            return SecurityDecision.deny(f"Maximum tool calls exceeded (limit {limit}).")

        flagged_by_definition = definition is not None and definition.requires_confirmation
        if flagged_by_definition or (self.config.confirm_destructive and self.is_destructive(name)):
            logger.info(f"Tool {name} requires confirmation")
            return SecurityDecision(
                allowed=True,
                requires_confirmation=True,
                confirmation_message=f"The action '{name}' may change or remove data. Do you want to proceed?",
            )

        return SecurityDecision.allow()

    def check_iteration_limit(self, iterations: int) -> bool:
        """Whether another model call is permitted after ``iterations`` calls."""
        if not self.config.enabled:
            return True
        return iterations < self.config.max_iterations

    def sanitize_output(self, text: str) -> str:
        """Redact secrets, prompt leakage and unsafe HTML. Never raises."""
        if not (self.config.enabled and self.config.sanitize_output):
            return text
        return self.sanitizer.sanitize(text)

    def security_prompt(self) -> str | None:
        """Hardening rules appended to the system prompt."""
        if self.config.enabled and self.config.prompt_hardening:
            return SECURITY_PROMPT
        return None

    @staticmethod
    def is_destructive(name: str) -> bool:
        if any(token in DESTRUCTIVE_VERBS for token in tool_name_tokens(name)):
            return True
        return any(verb in name for verb in LOCALIZED_DESTRUCTIVE_VERBS)

    def _violation(self, violation_type: str, details: dict[str, Any]) -> None:
        logger.warning(f"Security violation: {violation_type} {details}")
        self.events.emit(SecurityViolation(type=violation_type, details=details))


def _clean_text(message: str) -> str:
    """Trim and drop control characters other than newlines and tabs."""
    return "".join(
        char for char in (message or "").strip() if char in "\n\t" or unicodedata.category(char) != "Cc"
    )
