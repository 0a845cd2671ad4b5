"""Prompt-injection and dangerous-content detection for user input."""

import re

from agentloop.models.security import ModerationResult
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

INJECTION_PATTERNS: dict[str, str] = {
    # Instruction override
    "ignore_instructions": r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
    "forget_instructions": r"forget\s+(all\s+)?(previous|prior|your)\s+(instructions?|prompts?|rules?)",
    "disregard_instructions": r"disregard\s+(all\s+)?(previous|prior|your)\s+(instructions?|prompts?|rules?)",
    # Role hijack
    "role_switch": r"you\s+are\s+now\s+(a|an)\s+",
    "pretend": r"pretend\s+(to\s+be|you\s*'?re)\s+",
    "act_as": r"act\s+as\s+(a|an|if)\s+",
    "role_play": r"role\s*-?\s*play\s+as",
    # Jailbreak keywords
    "dan": r"\bDAN\b.*do\s+anything\s+now",
    "developer_mode": r"developer\s+mode",
    "jailbreak": r"jailbreak",
    "bypass": r"bypass\s+(the\s+)?(restrictions?|filters?|safety)",
    # System prompt extraction
    "prompt_question": r"what\s+(is|are)\s+your\s+(system\s+)?prompt",
    "show_instructions": r"show\s+(me\s+)?your\s+(system\s+)?instructions?",
    "reveal_prompt": r"reveal\s+your\s+(system\s+)?prompt",
    "print_instructions": r"print\s+your\s+(initial\s+)?instructions?",
    # Credential extraction
    "api_key_question": r"what\s+(is|are)\s+your\s+api\s*key",
    "show_key": r"show\s+(me\s+)?your\s+(secret|api)\s*key",
    "reveal_credentials": r"reveal\s+(your\s+)?(credentials?|secrets?|keys?)",
}

DANGEROUS_KEYWORDS: tuple[str, ...] = (
    "drop table",
    "truncate table",
    "delete all",
    "remove all",
    "destroy",
    "wipe",
    "clear all",
    "reset all",
)


class ContentModerator:
    """Scans user messages for injection attempts and risky phrasing."""

    def __init__(self, extra_patterns: dict[str, str] | None = None):
        patterns = {**INJECTION_PATTERNS, **(extra_patterns or {})}
        self.patterns = {name: re.compile(pattern, re.IGNORECASE) for name, pattern in patterns.items()}

    def moderate(self, message: str) -> ModerationResult:
        """Check a message.

        Args:
            message: Raw user message

        Returns:
            Matched injection pattern names and dangerous-keyword warnings
        """
        matched = [name for name, pattern in self.patterns.items() if pattern.search(message)]

        lowered = message.lower()
        warnings = [
            f"Message mentions a potentially dangerous operation: '{keyword}'"
            for keyword in DANGEROUS_KEYWORDS
            if keyword in lowered
        ]

        if matched:
            logger.warning(f"Possible prompt injection detected: {', '.join(matched)}")

        return ModerationResult(flagged=bool(matched), matched_patterns=matched, warnings=warnings)
