"""Conversation records and API request/response models."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentloop.models.messages import Message

MAX_SUMMARY_LENGTH = 2000


class ConversationMetadata(BaseModel):
    """Bookkeeping stored alongside a conversation's messages."""

    model_config = ConfigDict(validate_assignment=True)

    title: str = "New conversation"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Index of the last summarized message, -1 when nothing is summarized
    summary_pointer: int = -1
    summary_text: str | None = None

    @field_validator("summary_text")
    @classmethod
    def validate_summary_text(cls, v: str | None) -> str | None:
        """Cap summaries, keeping the most recent part."""
        if v is not None and len(v) > MAX_SUMMARY_LENGTH:
            return v[-MAX_SUMMARY_LENGTH:]
        return v


class Conversation(BaseModel):
    """An ordered message log identified by an opaque id."""

    id: str
    messages: list[Message] = Field(default_factory=list)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)

    def touch(self) -> None:
        self.metadata.updated_at = datetime.now(UTC)


class ConversationSummary(BaseModel):
    """Listing entry for a stored conversation."""

    id: str
    title: str
    updated_at: datetime


class ChatRequest(BaseModel):
    """Request model for the chat endpoints."""

    message: str
    conversation_id: str | None = None
    system_prompt: str | None = None
    agent: str | None = None

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("Message cannot be empty")
        return v


class ChatResponse(BaseModel):
    """Response model for the chat endpoint."""

    response: str
    conversation_id: str
    finish_reason: str | None = None
    iterations: int = 0
    usage: dict[str, int] = Field(default_factory=dict)


class ConversationListResponse(BaseModel):
    """Response model for the conversation listing."""

    conversations: list[ConversationSummary]


class HistoryResponse(BaseModel):
    """Displayable messages of one conversation."""

    conversation_id: str
    messages: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
