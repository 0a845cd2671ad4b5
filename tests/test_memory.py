"""Tests for conversation memory, summarization and conversation stores."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from agentloop.clients.fake import FakeBackend, text_response
from agentloop.config import MemoryConfig
from agentloop.exceptions import DriverError
from agentloop.models.conversation import Conversation, ConversationMetadata
from agentloop.models.messages import Message, Role, ToolCall, ToolResult
from agentloop.services.conversation_store import InMemoryConversationStore, JsonFileConversationStore
from agentloop.services.memory import ConversationMemory, NullMemory, create_memory, derive_title
from agentloop.services.prompts import SUMMARY_HEADER
from agentloop.services.summarizer import Summarizer, manual_summary


def alternating(count: int) -> list[Message]:
    """User/assistant messages numbered from 0."""
    return [
        Message.user(f"question {i}") if i % 2 == 0 else Message.assistant(f"answer {i}") for i in range(count)
    ]


class TestSummarization:
    """Tests for pointer-based summarization."""

    @pytest.mark.asyncio
    async def test_summarizes_all_but_recent_messages(self, memory):
        """Test that crossing the threshold folds everything except the recent tail into the summary."""
        await memory.store.save(Conversation(id="conv", messages=alternating(13)))

        await memory.remember("conv", Message.assistant("answer 13"))

        conversation = await memory.get_conversation("conv")
        assert len(conversation.messages) == 14
        assert conversation.metadata.summary_pointer == 9
        assert "- User asked: question 0" in conversation.metadata.summary_text
        assert "- AI answered: answer 9" in conversation.metadata.summary_text
        assert "question 10" not in conversation.metadata.summary_text

        recalled = await memory.recall("conv")
        assert len(recalled) == 5
        assert recalled[0].role == Role.SYSTEM
        assert recalled[0].content.startswith(f"{SUMMARY_HEADER}\n")
        assert [m.content for m in recalled[1:]] == ["question 10", "answer 11", "question 12", "answer 13"]

    @pytest.mark.asyncio
    async def test_below_threshold_keeps_everything(self, memory):
        """Test that no summary is produced until the threshold is reached."""
        for message in alternating(9):
            await memory.remember("conv", message)

        conversation = await memory.get_conversation("conv")
        assert conversation.metadata.summary_pointer == -1
        assert conversation.metadata.summary_text is None
        assert len(await memory.recall("conv")) == 9

    @pytest.mark.asyncio
    async def test_incremental_summaries_are_merged(self):
        """Test that later summaries extend the existing summary."""
        memory = ConversationMemory(config=MemoryConfig(summarize_after=4, recent_messages=2))

        for message in alternating(8):
            await memory.remember("conv", message)

        metadata = (await memory.get_conversation("conv")).metadata
        # Threshold reached at 4, 6 and 8 messages
        assert metadata.summary_pointer == 5
        assert metadata.summary_text.splitlines()[0] == "- User asked: question 0"
        assert metadata.summary_text.splitlines()[-1] == "- AI answered: answer 5"

    @pytest.mark.asyncio
    async def test_messages_are_never_removed_by_summarization(self, memory):
        """Test that summarization only moves the pointer."""
        for message in alternating(20):
            await memory.remember("conv", message)

        conversation = await memory.get_conversation("conv")
        assert [m.content for m in conversation.messages] == [m.content for m in alternating(20)]

    @pytest.mark.asyncio
    async def test_recall_limit(self, memory):
        """Test that recall returns at most ``limit`` verbatim messages."""
        for message in alternating(6):
            await memory.remember("conv", message)

        recalled = await memory.recall("conv", limit=2)

        assert [m.content for m in recalled] == ["question 4", "answer 5"]
        assert await memory.recall("conv", limit=0) == []

    @pytest.mark.asyncio
    async def test_recall_starts_at_clean_boundary(self, memory):
        """Test that a tail beginning with a tool reply is advanced to the next user message."""
        call = ToolCall(id="c1", name="getWeather", arguments={"city": "Riyadh"})
        messages = [
            Message.user("Weather?"),
            Message.assistant("", [call]),
            Message.tool(ToolResult(tool_call_id="c1", name="getWeather", success=True, result="Sunny")),
            Message.assistant("It is sunny."),
            Message.user("Thanks"),
        ]
        await memory.store.save(Conversation(id="conv", messages=messages))

        recalled = await memory.recall("conv", limit=3)

        assert [m.content for m in recalled] == ["Thanks"]

    @pytest.mark.asyncio
    async def test_unknown_conversation_recalls_nothing(self, memory):
        """Test recall for a conversation that was never stored."""
        assert await memory.recall("missing") == []


class TestRetention:
    """Tests for titles, message caps and forgetting."""

    @pytest.mark.asyncio
    async def test_title_from_first_user_message(self, memory):
        """Test that the first user message becomes the title."""
        await memory.remember("conv", Message.user("  What's   the weather\nin Riyadh?"))
        await memory.remember("conv", Message.user("And in Jeddah?"))

        conversation = await memory.get_conversation("conv")
        assert conversation.metadata.title == "What's the weather in Riyadh?"

    def test_long_titles_are_truncated(self):
        """Test title truncation."""
        title = derive_title("x" * 100)

        assert title == "x" * 60 + "..."

    @pytest.mark.asyncio
    async def test_max_messages_drops_oldest_and_shifts_pointer(self):
        """Test that the oldest messages are dropped and the pointer follows them."""
        memory = ConversationMemory(config=MemoryConfig(max_messages=5, summarize_after=100))
        await memory.store.save(
            Conversation(
                id="conv",
                messages=alternating(5),
                metadata=ConversationMetadata(summary_pointer=3, summary_text="- User asked: question 0"),
            )
        )

        await memory.remember("conv", Message.assistant("answer 5"))

        conversation = await memory.get_conversation("conv")
        assert [m.content for m in conversation.messages][0] == "answer 1"
        assert len(conversation.messages) == 5
        assert conversation.metadata.summary_pointer == 2

    @pytest.mark.asyncio
    async def test_pointer_never_goes_below_minus_one(self):
        """Test that dropping past the summarized range resets the pointer."""
        memory = ConversationMemory(config=MemoryConfig(max_messages=2, summarize_after=100))

        for message in alternating(4):
            await memory.remember("conv", message)

        conversation = await memory.get_conversation("conv")
        assert conversation.metadata.summary_pointer == -1
        assert [m.content for m in conversation.messages] == ["question 2", "answer 3"]

    @pytest.mark.asyncio
    async def test_forget_and_list(self, memory):
        """Test listing by recency and deleting conversations."""
        await memory.remember("first", Message.user("First conversation"))
        await memory.remember("second", Message.user("Second conversation"))

        listed = await memory.list_conversations()
        assert [c.id for c in listed] == ["second", "first"]
        assert listed[0].title == "Second conversation"

        assert await memory.forget("first") is True
        assert await memory.forget("first") is False
        assert [c.id for c in await memory.list_conversations()] == ["second"]

    @pytest.mark.asyncio
    async def test_stored_conversation_is_isolated_from_callers(self, memory):
        """Test that mutating a fetched conversation does not change the stored copy."""
        await memory.remember("conv", Message.user("Hello"))

        fetched = await memory.get_conversation("conv")
        fetched.messages.clear()

        assert len((await memory.get_conversation("conv")).messages) == 1

    @pytest.mark.asyncio
    async def test_locks_are_released_after_writes(self, memory):
        """Test that one-off conversations leave no per-conversation lock behind."""
        for i in range(50):
            await memory.remember(f"conv-{i}", Message.user("Hello"))

        assert memory._locks == {}
        assert not memory._lock_users

    @pytest.mark.asyncio
    async def test_concurrent_writers_share_one_lock(self, memory):
        """Test that concurrent appends to one conversation are all kept."""
        await asyncio.gather(*(memory.remember("conv", Message.user(f"question {i}")) for i in range(5)))

        conversation = await memory.get_conversation("conv")
        assert sorted(m.content for m in conversation.messages) == [f"question {i}" for i in range(5)]
        assert memory._locks == {}


class TestSummarizer:
    """Tests for manual and AI summaries."""

    def test_manual_summary(self):
        """Test the bullet format for user requests, tool calls and answers."""
        messages = [
            Message.user("Find order 42 for me please"),
            Message.assistant("", [ToolCall(id="a", name="getOrder"), ToolCall(id="b", name="getCustomer")]),
            Message.assistant("Order 42 is open."),
        ]

        summary = manual_summary(messages, existing="- User asked: hello")

        assert summary.splitlines() == [
            "- User asked: hello",
            "- User asked: Find order 42 for me please",
            "- AI called: getOrder, getCustomer",
            "- AI answered: Order 42 is open.",
        ]

    def test_manual_summary_keeps_most_recent_text(self):
        """Test that long summaries keep their tail."""
        summary = manual_summary([Message.user("new request")], existing="x" * 3000)

        assert len(summary) == 2000
        assert summary.endswith("- User asked: new request")

    @pytest.mark.asyncio
    async def test_ai_summary(self):
        """Test that the backend is asked to merge with the previous summary."""
        backend = FakeBackend([text_response("The user asked about orders and got order 42.")])
        summarizer = Summarizer(backend=backend, use_ai=True)

        summary = await summarizer.summarize([Message.user("Order 42?")], existing="Earlier: greeting")

        assert summary == "The user asked about orders and got order 42."
        prompt = backend.prompts[0]
        assert "Previous summary:\nEarlier: greeting" in prompt.message
        assert "User: Order 42?" in prompt.message
        assert prompt.options.max_tokens == 200
        assert prompt.tools == []
        assert prompt.history == []

    @pytest.mark.asyncio
    async def test_ai_summary_falls_back_on_error(self):
        """Test that a backend failure falls back to the manual summary."""
        backend = FakeBackend([DriverError("unavailable", 503)])
        summarizer = Summarizer(backend=backend, use_ai=True)

        summary = await summarizer.summarize([Message.user("Order 42?")])

        assert summary == "- User asked: Order 42?"

    @pytest.mark.asyncio
    async def test_short_ai_summary_is_rejected(self):
        """Test that a near-empty AI summary falls back to the manual summary."""
        summarizer = Summarizer(backend=FakeBackend([text_response("ok")]), use_ai=True)

        assert await summarizer.summarize([Message.user("Hi")]) == "- User asked: Hi"


class TestStores:
    """Tests for conversation store backends and memory construction."""

    @pytest.mark.asyncio
    async def test_in_memory_store_expires_idle_conversations(self):
        """Test that conversations idle past the timeout are discarded."""
        store = InMemoryConversationStore(session_timeout_minutes=1)
        stale = Conversation(id="old")
        stale.metadata.updated_at = datetime.now(UTC) - timedelta(minutes=2)
        await store.save(stale)
        await store.save(Conversation(id="fresh"))

        assert await store.get("old") is None
        assert [c.id for c in await store.list_all()] == ["fresh"]

    @pytest.mark.asyncio
    async def test_json_file_store(self, tmp_path):
        """Test save, load, list and delete with the file store."""
        store = JsonFileConversationStore(tmp_path / "conversations")
        conversation = Conversation(id="conv-1", messages=[Message.user("Hello")])

        await store.save(conversation)
        loaded = await store.get("conv-1")

        assert loaded.messages[0].content == "Hello"
        assert (tmp_path / "conversations" / "conv-1.json").exists()
        assert [c.id for c in await store.list_all()] == ["conv-1"]
        assert await store.delete("conv-1") is True
        assert await store.get("conv-1") is None
        assert await store.delete("conv-1") is False

    @pytest.mark.asyncio
    async def test_json_file_store_sanitizes_ids(self, tmp_path):
        """Test that ids with path characters cannot escape the directory."""
        store = JsonFileConversationStore(tmp_path)

        await store.save(Conversation(id="../escape"))

        files = list(tmp_path.glob("*.json"))
        assert len(files) == 1
        assert files[0].parent == tmp_path
        assert (await store.get("../escape")).id == "../escape"

    @pytest.mark.asyncio
    async def test_json_file_store_skips_corrupt_files(self, tmp_path):
        """Test that unreadable files are skipped when listing."""
        store = JsonFileConversationStore(tmp_path)
        await store.save(Conversation(id="good"))
        (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")

        assert [c.id for c in await store.list_all()] == ["good"]

    @pytest.mark.asyncio
    async def test_file_backed_memory_survives_restart(self, tmp_path):
        """Test that a new memory over the same directory sees earlier messages."""
        config = MemoryConfig(driver="file", storage_path=tmp_path)

        await create_memory(config).remember("conv", Message.user("Remember me"))
        recalled = await create_memory(config).recall("conv")

        assert [m.content for m in recalled] == ["Remember me"]

    @pytest.mark.asyncio
    async def test_null_memory(self):
        """Test that the null driver stores nothing."""
        memory = create_memory(MemoryConfig(driver="null"))

        await memory.remember("conv", Message.user("Hello"))

        assert isinstance(memory, NullMemory)
        assert await memory.recall("conv") == []
        assert await memory.list_conversations() == []
        assert await memory.get_conversation("conv") is None
        assert await memory.forget("conv") is False

    def test_create_memory_uses_ai_summarizer_when_enabled(self):
        """Test that the summarizer receives the backend when AI summarization is on."""
        backend = FakeBackend()

        memory = create_memory(MemoryConfig(ai_summarization=True), backend)

        assert memory.summarizer.use_ai is True
        assert memory.summarizer.backend is backend
