"""History normalization for backends with strict turn rules."""

from agentloop.models.messages import Message, Role
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_history(messages: list[Message]) -> list[Message]:
    """Drop tool-call structure that is not fully answered.

    An assistant message keeps its tool calls only when every call id has a
    matching tool reply later in the history. Otherwise only its text is kept
    and its tool replies are dropped. Tool replies not tied to a retained
    assistant call are dropped as orphans.

    Args:
        messages: Raw conversation history

    Returns:
        A new list safe to send to any backend
    """
    # Tool reply ids that appear after each position
    answered_after: list[set[str]] = [set() for _ in messages]
    seen: set[str] = set()
    for index in range(len(messages) - 1, -1, -1):
        answered_after[index] = set(seen)
        if messages[index].role == Role.TOOL and messages[index].tool_call_id:
            seen.add(messages[index].tool_call_id)

    retained_ids: set[str] = set()
    normalized: list[Message] = []
    dropped = 0

    for index, message in enumerate(messages):
        if message.role == Role.ASSISTANT and message.tool_calls:
            call_ids = {call.id for call in message.tool_calls}
            if call_ids <= answered_after[index]:
                retained_ids |= call_ids
                normalized.append(message)
            else:
                dropped += len(message.tool_calls)
                if message.content:
                    normalized.append(message.model_copy(update={"tool_calls": []}))
            continue

        if message.role == Role.TOOL:
            if message.tool_call_id in retained_ids:
                normalized.append(message)
                # A reply answers its call once
                retained_ids.discard(message.tool_call_id)
            else:
                dropped += 1
            continue

        normalized.append(message)

    if dropped:
        logger.debug(f"History normalization dropped {dropped} unmatched tool call(s) or reply(ies)")

    return normalized
