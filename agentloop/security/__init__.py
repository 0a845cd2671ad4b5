"""Input moderation, output sanitization and request-scoped security policy."""

from agentloop.security.audit import AuditLogger
from agentloop.security.gate import SecurityGate
from agentloop.security.moderation import ContentModerator
from agentloop.security.sanitizer import OutputSanitizer

__all__ = ["AuditLogger", "ContentModerator", "OutputSanitizer", "SecurityGate"]
