"""API endpoints for the agent service."""

import asyncio
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from agentloop import __version__
from agentloop.api.sse import SSE_HEADERS, error_message, format_event
from agentloop.exceptions import AgentError, DriverError
from agentloop.models.conversation import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    HealthResponse,
    HistoryResponse,
)
from agentloop.models.messages import Role
from agentloop.services.orchestrator import AgentOrchestrator
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> AgentOrchestrator:
    """Orchestrator installed on the application by ``create_app``."""
    return request.app.state.orchestrator


@router.post("/chat", response_model=ChatResponse, tags=["Chat"])
async def chat(request: ChatRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> ChatResponse:
    """Run the agent loop for one message and return the final answer."""
    logger.info(f"Chat request for conversation {request.conversation_id or '(new)'}: {request.message[:50]}...")

    try:
        result = await orchestrator.run(
            request.message,
            conversation_id=request.conversation_id,
            system_prompt=request.system_prompt,
            agent_name=request.agent,
        )
    except DriverError as e:
        logger.error(f"Backend error (status {e.status_code}): {e}")
        raise HTTPException(status_code=502, detail=error_message(e)) from e
    except ValueError as e:
        logger.warning(f"Chat request rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    except AgentError as e:
        logger.error(f"Agent run failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=error_message(e)) from e

    return ChatResponse(
        response=result.content,
        conversation_id=result.conversation_id,
        finish_reason=result.finish_reason,
        iterations=result.iterations,
        usage=result.usage.as_dict(),
    )


@router.post("/chat/stream", tags=["Chat"])
async def chat_stream(
    request: ChatRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """Run the agent loop, streaming progress as server-sent events.

    Emits ``thinking``, ``tool_start`` and ``tool_done`` while the loop runs and
    exactly one ``done`` or ``error`` at the end. Disconnecting stops the run.
    """
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    cancel = asyncio.Event()

    async def on_event(event: str, data: dict[str, Any]) -> None:
        await queue.put(format_event(event, data))

    async def produce() -> None:
        try:
            await orchestrator.run(
                request.message,
                conversation_id=request.conversation_id,
                system_prompt=request.system_prompt,
                agent_name=request.agent,
                on_event=on_event,
                cancel=cancel,
            )
        except DriverError as e:
            logger.error(f"Backend error during stream (status {e.status_code}): {e}")
            await queue.put(format_event("error", {"message": error_message(e)}))
        except Exception as e:
            logger.error(f"Stream run failed: {e}", exc_info=True)
            await queue.put(format_event("error", {"message": error_message(e)}))
        finally:
            await queue.put(None)

    async def event_stream():
        task = asyncio.create_task(produce())
        try:
            while (frame := await queue.get()) is not None:
                yield frame
        finally:
            # Client disconnects close the generator early
            cancel.set()
            await task

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/conversations", response_model=ConversationListResponse, tags=["Conversations"])
async def list_conversations(orchestrator: AgentOrchestrator = Depends(get_orchestrator)) -> ConversationListResponse:
    """List stored conversations, most recently updated first."""
    conversations = await orchestrator.memory.list_conversations()
    return ConversationListResponse(conversations=conversations)


@router.get("/conversations/{conversation_id}/messages", response_model=HistoryResponse, tags=["Conversations"])
async def get_messages(
    conversation_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> HistoryResponse:
    """User and assistant messages of one conversation, for display."""
    conversation = await orchestrator.memory.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")

    messages = [
        {"role": str(m.role), "content": m.content, "timestamp": m.timestamp.isoformat()}
        for m in conversation.messages
        if m.role in (Role.USER, Role.ASSISTANT) and m.content
    ]
    return HistoryResponse(conversation_id=conversation_id, messages=messages)


@router.delete("/conversations/{conversation_id}", tags=["Conversations"])
async def delete_conversation(
    conversation_id: str, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
) -> dict[str, str]:
    """Forget a conversation."""
    if not await orchestrator.memory.forget(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return {"status": "deleted", "conversation_id": conversation_id}


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
