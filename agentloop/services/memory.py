"""Per-conversation memory with pointer-based summarization."""

import asyncio
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from agentloop.clients.base import BackendAdapter
from agentloop.config import MemoryConfig
from agentloop.models.conversation import Conversation, ConversationSummary
from agentloop.models.messages import Message, Role
from agentloop.services.conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    JsonFileConversationStore,
)
from agentloop.services.prompts import SUMMARY_HEADER
from agentloop.services.summarizer import Summarizer
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

TITLE_LENGTH = 60
DEFAULT_TITLE = "New conversation"


class MemoryBackend(Protocol):
    """Contract the orchestrator uses to persist and recall conversations."""

    async def remember(self, conversation_id: str, message: Message) -> None: ...

    async def recall(self, conversation_id: str, limit: int = 50) -> list[Message]: ...

    async def forget(self, conversation_id: str) -> bool: ...

    async def list_conversations(self) -> list[ConversationSummary]: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...


class ConversationMemory:
    """Append-only message log per conversation, backed by a ``ConversationStore``.

    Messages before ``metadata.summary_pointer`` (inclusive) are represented by
    ``metadata.summary_text`` when the conversation is recalled; everything
    after the pointer is returned verbatim.
    """

    def __init__(
        self,
        store: ConversationStore | None = None,
        config: MemoryConfig | None = None,
        summarizer: Summarizer | None = None,
    ):
        """Initialize the memory.

        Args:
            store: Storage backend, defaults to an in-process store
            config: Summarization and retention settings
            summarizer: Summary builder, defaults to the manual summarizer
        """
        self.config = config or MemoryConfig()
        self.store = store or InMemoryConversationStore(self.config.session_timeout_minutes)
        self.summarizer = summarizer or Summarizer()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    async def remember(self, conversation_id: str, message: Message) -> None:
        """Append a message, then summarize and trim as configured."""
        async with self._conversation_lock(conversation_id):
            conversation = await self.store.get(conversation_id) or Conversation(id=conversation_id)

            conversation.messages.append(message)
            if conversation.metadata.title == DEFAULT_TITLE and message.role == Role.USER and message.content:
                conversation.metadata.title = derive_title(message.content)

            await self._summarize_if_needed(conversation)
            self._enforce_max_messages(conversation)

            conversation.touch()
            await self.store.save(conversation)

        logger.debug(f"Stored {message.role} message in conversation {conversation_id}")

    async def recall(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Return context for the model: the summary (if any) plus unsummarized messages.

        At most ``limit`` verbatim messages are returned, starting at a user or
        system message so that no tool reply is separated from its call.
        """
        limit = limit if limit is not None else self.config.recall_limit
        conversation = await self.store.get(conversation_id)
        if conversation is None:
            return []

        metadata = conversation.metadata
        recent = conversation.messages[metadata.summary_pointer + 1 :]
        if limit > 0:
            recent = recent[-limit:]
        else:
            recent = []
        recent = _from_clean_boundary(recent)

        if metadata.summary_text:
            return [Message.system(f"{SUMMARY_HEADER}\n{metadata.summary_text}"), *recent]
        return recent

    async def forget(self, conversation_id: str) -> bool:
        async with self._conversation_lock(conversation_id):
            deleted = await self.store.delete(conversation_id)
        if deleted:
            logger.info(f"Forgot conversation {conversation_id}")
        return deleted

    async def list_conversations(self) -> list[ConversationSummary]:
        conversations = await self.store.list_all()
        conversations.sort(key=lambda c: c.metadata.updated_at, reverse=True)
        return [
            ConversationSummary(id=c.id, title=c.metadata.title, updated_at=c.metadata.updated_at)
            for c in conversations
        ]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await self.store.get(conversation_id)

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize writers of one conversation; the lock lives only while someone holds or awaits it."""
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def _summarize_if_needed(self, conversation: Conversation) -> None:
        metadata = conversation.metadata
        unsummarized = conversation.messages[metadata.summary_pointer + 1 :]
        if len(unsummarized) < self.config.summarize_after:
            return

        to_summarize = unsummarized[: len(unsummarized) - self.config.recent_messages]
        if not to_summarize:
            return

        metadata.summary_text = await self.summarizer.summarize(to_summarize, metadata.summary_text)
        metadata.summary_pointer += len(to_summarize)
        logger.info(
            f"Summarized {len(to_summarize)} messages of conversation {conversation.id}, "
            f"pointer now {metadata.summary_pointer}"
        )

    def _enforce_max_messages(self, conversation: Conversation) -> None:
        overflow = len(conversation.messages) - self.config.max_messages
        if overflow <= 0:
            return

        del conversation.messages[:overflow]
        metadata = conversation.metadata
        metadata.summary_pointer = max(metadata.summary_pointer - overflow, -1)
        logger.debug(f"Dropped {overflow} oldest messages from conversation {conversation.id}")


class NullMemory:
    """Memory backend that stores nothing."""

    async def remember(self, conversation_id: str, message: Message) -> None:
        return None

    async def recall(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        return []

    async def forget(self, conversation_id: str) -> bool:
        return False

    async def list_conversations(self) -> list[ConversationSummary]:
        return []

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return None


def create_memory(config: MemoryConfig, backend: BackendAdapter | None = None) -> ConversationMemory | NullMemory:
    """Build the memory backend selected by ``config.driver``."""
    if config.driver == "null":
        return NullMemory()

    if config.driver == "file":
        store: ConversationStore = JsonFileConversationStore(config.storage_path)
    else:
        store = InMemoryConversationStore(config.session_timeout_minutes)

    summarizer = Summarizer(backend=backend, use_ai=config.ai_summarization)
    return ConversationMemory(store=store, config=config, summarizer=summarizer)


def derive_title(content: str) -> str:
    title = " ".join(content.split())
    if len(title) > TITLE_LENGTH:
        return title[:TITLE_LENGTH].rstrip() + "..."
    return title or DEFAULT_TITLE


def _from_clean_boundary(messages: list[Message]) -> list[Message]:
    for index, message in enumerate(messages):
        if message.role in (Role.USER, Role.SYSTEM):
            return messages[index:]
    return []
