"""Server-sent events framing for the streaming chat endpoint."""

import json
from typing import Any

from agentloop.exceptions import DriverError

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ERROR_MESSAGES: dict[int, str] = {
    429: "Rate limit exceeded. Please try again later.",
    401: "Authentication failed.",
    403: "Access denied.",
}
GENERIC_ERROR_MESSAGE = "An error occurred while processing your request."


def format_event(event: str, data: dict[str, Any]) -> str:
    """Frame one named event: ``event: <name>\\ndata: <json>\\n\\n``."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def error_message(error: Exception) -> str:
    """User-facing text for a failed run."""
    if isinstance(error, DriverError) and error.status_code is not None:
        return ERROR_MESSAGES.get(error.status_code, GENERIC_ERROR_MESSAGE)
    return GENERIC_ERROR_MESSAGE
