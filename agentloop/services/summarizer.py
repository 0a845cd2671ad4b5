"""Conversation summarization for long-running memory."""

from agentloop.clients.base import BackendAdapter
from agentloop.models.conversation import MAX_SUMMARY_LENGTH
from agentloop.models.llm import PromptOptions
from agentloop.models.messages import Message, Role
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

SUMMARY_INSTRUCTIONS = (
    "Summarize this conversation concisely in the SAME LANGUAGE the user is speaking. "
    "Focus on: what the user wanted, what actions were taken, and key outcomes. Keep it under 300 words."
)


class Summarizer:
    """Folds older messages into a running summary.

    Uses the backend when AI summarization is enabled, otherwise (or when the
    backend call fails) builds a compact bullet list locally.
    """

    def __init__(self, backend: BackendAdapter | None = None, use_ai: bool = False):
        self.backend = backend
        self.use_ai = use_ai

    async def summarize(self, messages: list[Message], existing: str | None = None) -> str:
        """Merge ``messages`` into ``existing`` and return the new summary (at most 2000 chars)."""
        if self.use_ai and self.backend is not None:
            summary = await self._ai_summary(messages, existing)
            if summary:
                return summary[:MAX_SUMMARY_LENGTH]
        return manual_summary(messages, existing)

    async def _ai_summary(self, messages: list[Message], existing: str | None) -> str | None:
        transcript = _transcript(messages)
        if existing:
            prompt = (
                f"{SUMMARY_INSTRUCTIONS}\n\nPrevious summary:\n{existing}\n\n"
                f"New messages to merge:\n{transcript}\n\nMerge into one unified summary:"
            )
        else:
            prompt = f"{SUMMARY_INSTRUCTIONS}\n\nConversation:\n{transcript}\n\nSummary:"

        try:
            response = await self.backend.prompt(prompt, [], [], PromptOptions(max_tokens=200, temperature=0.3))
        except Exception as e:
            logger.warning(f"AI summarization failed, using manual summary: {e}")
            return None

        summary = response.content.strip()
        # Very short output is treated as a failed summary
        return summary if len(summary) > 10 else None


def manual_summary(messages: list[Message], existing: str | None = None) -> str:
    """Bullet-list summary of user requests and tool activity."""
    parts: list[str] = []
    for message in messages:
        if message.role == Role.USER:
            parts.append(f"- User asked: {_one_line(message.content)[:80]}")
        elif message.role == Role.ASSISTANT and message.tool_calls:
            parts.append(f"- AI called: {', '.join(call.name for call in message.tool_calls)}")
        elif message.role == Role.ASSISTANT and message.content:
            parts.append(f"- AI answered: {_one_line(message.content)[:80]}")

    summary = "\n".join(parts)
    if existing:
        summary = f"{existing}\n{summary}" if summary else existing
    return summary[-MAX_SUMMARY_LENGTH:]


def _transcript(messages: list[Message]) -> str:
    lines: list[str] = []
    for message in messages:
        if message.role == Role.USER:
            lines.append(f"User: {message.content}")
        elif message.role == Role.ASSISTANT and message.tool_calls:
            lines.append(f"Assistant: [Called tools: {', '.join(call.name for call in message.tool_calls)}]")
        elif message.role == Role.ASSISTANT:
            lines.append(f"Assistant: {message.content[:100]}")
        elif message.role == Role.TOOL:
            lines.append(f"Tool result: {message.content[:80]}")
    return "\n".join(lines)


def _one_line(text: str) -> str:
    return " ".join(text.split())
