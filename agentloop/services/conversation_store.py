"""Key-value storage backends for conversations."""

import asyncio
import hashlib
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from cuid2 import cuid_wrapper

from agentloop.models.conversation import Conversation
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


def generate_conversation_id() -> str:
    """Generate a new CUID-based conversation ID."""
    return cuid()


class ConversationStore(Protocol):
    """Persistence contract used by ``ConversationMemory``."""

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def save(self, conversation: Conversation) -> None: ...

    async def delete(self, conversation_id: str) -> bool: ...

    async def list_all(self) -> list[Conversation]: ...


class InMemoryConversationStore:
    """In-process store; conversations expire after a period of inactivity."""

    def __init__(self, session_timeout_minutes: int = 60):
        """Initialize the store.

        Args:
            session_timeout_minutes: Minutes of inactivity before a conversation is discarded
        """
        self.conversations: dict[str, Conversation] = {}
        self.session_timeout = timedelta(minutes=session_timeout_minutes)

    async def get(self, conversation_id: str) -> Conversation | None:
        self._cleanup_expired()
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def save(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation.model_copy(deep=True)

    async def delete(self, conversation_id: str) -> bool:
        return self.conversations.pop(conversation_id, None) is not None

    async def list_all(self) -> list[Conversation]:
        self._cleanup_expired()
        return [c.model_copy(deep=True) for c in self.conversations.values()]

    def _cleanup_expired(self) -> None:
        """Remove conversations idle for longer than the timeout."""
        current_time = datetime.now(UTC)
        expired = [
            conversation_id
            for conversation_id, conversation in self.conversations.items()
            if current_time - conversation.metadata.updated_at > self.session_timeout
        ]
        for conversation_id in expired:
            logger.debug(f"Expiring idle conversation {conversation_id}")
            del self.conversations[conversation_id]


class JsonFileConversationStore:
    """Durable store keeping one JSON document per conversation."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    async def get(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return Conversation.model_validate_json(raw)

    async def save(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        temporary = path.with_suffix(".tmp")
        await asyncio.to_thread(temporary.write_text, conversation.model_dump_json(indent=2), encoding="utf-8")
        await asyncio.to_thread(temporary.replace, path)

    async def delete(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        return True

    async def list_all(self) -> list[Conversation]:
        conversations: list[Conversation] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
                conversations.append(Conversation.model_validate_json(raw))
            except ValueError as e:
                logger.error(f"Skipping unreadable conversation file {path.name}: {e}")
        return conversations

    def _path(self, conversation_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_-]", "_", conversation_id)
        if safe != conversation_id:
            safe = f"{safe[:64]}-{hashlib.sha256(conversation_id.encode()).hexdigest()[:12]}"
        return self.directory / f"{safe}.json"
