"""Output sanitization: secret redaction, prompt-leakage removal and XSS stripping."""

import re
from dataclasses import dataclass, field

from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

SECRET_PATTERNS: dict[str, str] = {
    "anthropic_key": r"sk-ant-[a-zA-Z0-9-]{20,}",
    "openai_key": r"sk-[a-zA-Z0-9]{20,}",
    "google_key": r"AIza[a-zA-Z0-9_-]{35}",
    "api_key_assignment": r"api[_-]?key\s*[:=]\s*['\"]?[\w-]{20,}",
    "secret_key_assignment": r"secret[_-]?key\s*[:=]\s*['\"]?[\w-]{20,}",
    "password_assignment": r"password\s*[:=]\s*['\"]?[^\s'\"]{8,}",
    "system_prompt_marker": r"\[SYSTEM\s*PROMPT\]",
    "instructions_marker": r"\[INSTRUCTIONS?\]",
    "llama_system_marker": r"<<SYS>>",
}

# Credentials inside connection strings; the scheme and host are kept
DATABASE_URL_PATTERN = re.compile(r"\b(mysql|postgres(?:ql)?|mongodb(?:\+srv)?)://[^@\s/]+@", re.IGNORECASE)

LEAKAGE_PHRASES: tuple[str, ...] = (
    "my instructions are",
    "my system prompt is",
    "i was instructed to",
    "my programming says",
    "according to my instructions",
    "here are my instructions",
    "my initial prompt is",
)

_SCRIPT_BLOCK = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_DANGEROUS_TAGS = re.compile(r"</?(script|iframe|object|embed)\b[^>]*>", re.IGNORECASE)
_JAVASCRIPT_URL = re.compile(r"javascript\s*:", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[a-zA-Z][^>]*>")
_EVENT_HANDLER = re.compile(r"\s+on\w+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)


@dataclass
class SanitizationReport:
    """What was removed from a piece of output."""

    text: str
    redactions: list[str] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.redactions)


class OutputSanitizer:
    """Cleans model output before it reaches the user."""

    def __init__(self, redact_secrets: bool = True, prevent_xss: bool = True, redact_leakage: bool = True):
        self.redact_secrets = redact_secrets
        self.prevent_xss = prevent_xss
        self.redact_leakage = redact_leakage
        self.secret_patterns = {name: re.compile(p, re.IGNORECASE) for name, p in SECRET_PATTERNS.items()}
        self.leakage_patterns = {phrase: re.compile(re.escape(phrase), re.IGNORECASE) for phrase in LEAKAGE_PHRASES}

    def sanitize(self, text: str) -> str:
        """Return sanitized text. Never raises."""
        return self.inspect(text).text

    def inspect(self, text: str) -> SanitizationReport:
        """Sanitize text and report what was changed."""
        report = SanitizationReport(text=text or "")
        try:
            if self.redact_secrets:
                self._redact_secrets(report)
            if self.redact_leakage:
                self._redact_leakage(report)
            if self.prevent_xss:
                self._strip_xss(report)
        except Exception as e:
            logger.error(f"Output sanitization failed, returning partially sanitized text: {e}", exc_info=True)
            return report

        if report.modified:
            logger.warning(f"Sanitized model output: {', '.join(report.redactions)}")
        return report

    def _redact_secrets(self, report: SanitizationReport) -> None:
        for name, pattern in self.secret_patterns.items():
            report.text, count = pattern.subn(REDACTED, report.text)
            if count:
                report.redactions.append(f"{name} x{count}")

        report.text, count = DATABASE_URL_PATTERN.subn(lambda m: f"{m.group(1)}://{REDACTED}@", report.text)
        if count:
            report.redactions.append(f"database_url x{count}")

    def _redact_leakage(self, report: SanitizationReport) -> None:
        for phrase, pattern in self.leakage_patterns.items():
            report.text, count = pattern.subn(REDACTED, report.text)
            if count:
                report.redactions.append(f"leakage '{phrase}' x{count}")

    def _strip_xss(self, report: SanitizationReport) -> None:
        original = report.text
        text = _SCRIPT_BLOCK.sub("", original)
        text = _DANGEROUS_TAGS.sub("", text)
        text = _JAVASCRIPT_URL.sub("", text)
        text = _HTML_TAG.sub(lambda m: _EVENT_HANDLER.sub("", m.group(0)), text)
        if text != original:
            report.text = text
            report.redactions.append("html")
