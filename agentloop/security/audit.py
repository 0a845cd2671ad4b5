"""Audit logging of tool and security events."""

from collections.abc import Mapping
from typing import Any

from agentloop.events import (
    AgentCompleted,
    AgentStarted,
    Event,
    SecurityViolation,
    ToolCalled,
    ToolExecuted,
    ToolFailed,
)
from agentloop.utils.logging import AUDIT_LOGGER, get_logger

SENSITIVE_KEY_PARTS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")
MASK = "********"


def redact_arguments(arguments: Any) -> Any:
    """Mask values whose keys look sensitive, recursively."""
    if isinstance(arguments, Mapping):
        return {
            key: MASK if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS) else redact_arguments(value)
            for key, value in arguments.items()
        }
    if isinstance(arguments, list | tuple):
        return [redact_arguments(item) for item in arguments]
    return arguments


class AuditLogger:
    """Event sink writing an audit trail to the ``agentloop.audit`` logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER, max_result_length: int = 500):
        self.logger = get_logger(logger_name)
        self.max_result_length = max_result_length

    def emit(self, event: Event) -> None:
        match event:
            case ToolCalled(tool=tool, arguments=arguments):
                self.logger.info(f"tool_called tool={tool} arguments={redact_arguments(arguments)}")
            case ToolExecuted(tool=tool, arguments=arguments, result=result, duration_ms=duration_ms):
                preview = str(result)[: self.max_result_length]
                self.logger.info(
                    f"tool_executed tool={tool} duration_ms={duration_ms:.1f} "
                    f"arguments={redact_arguments(arguments)} result={preview}"
                )
            case ToolFailed(tool=tool, arguments=arguments, error=error):
                self.logger.warning(f"tool_failed tool={tool} arguments={redact_arguments(arguments)} error={error}")
            case SecurityViolation(type=violation_type, details=details):
                self.logger.warning(f"security_violation type={violation_type} details={redact_arguments(details)}")
            case AgentStarted(conversation_id=conversation_id):
                self.logger.info(f"agent_started conversation={conversation_id}")
            case AgentCompleted(conversation_id=conversation_id, finish_reason=reason, iterations=iterations):
                self.logger.info(
                    f"agent_completed conversation={conversation_id} finish_reason={reason} iterations={iterations}"
                )
            case _:
                self.logger.debug(f"event {type(event).__name__}")
