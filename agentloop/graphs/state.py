"""State definitions for the agent loop graph."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from agentloop.clients.base import BackendAdapter, ChunkCallback
from agentloop.models.llm import PromptOptions
from agentloop.models.messages import Message, ToolCall, ToolResult
from agentloop.security.gate import SecurityGate
from agentloop.tools.base import ToolContext
from agentloop.tools.invoker import ToolInvoker
from agentloop.tools.registry import ToolCatalog

EventCallback = Callable[[str, dict[str, Any]], Any]
ConfirmCallback = Callable[[ToolCall, str], Any]


class LoopPhase(StrEnum):
    """Where the loop is; the last four values are terminal."""

    CALLING_MODEL = "calling_model"
    CHECKING_SECURITY = "checking_security"
    EXECUTING_TOOLS = "executing_tools"
    APPENDING_RESULTS = "appending_results"
    DONE = "done"
    BLOCKED = "blocked"
    ITERATION_LIMIT = "iteration_limit"
    STOPPED = "stopped"


class LoopState(BaseModel):
    """State passed between the loop graph's nodes.

    ``history`` holds the recalled conversation plus the turns produced during
    this run; ``message`` is the prompt sent alongside it on the next model call.
    """

    message: str
    history: list[Message] = Field(default_factory=list)

    phase: LoopPhase = LoopPhase.CALLING_MODEL
    iterations: int = 0

    # Current turn
    content: str = ""
    pending_tool_calls: list[ToolCall] = Field(default_factory=list)
    last_tool_results: list[ToolResult] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)

    finish_reason: str | None = None
    blocked_tool: str | None = None

    # Token usage tracking
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class LoopRuntime:
    """Per-run collaborators handed to the nodes through the graph config.

    Kept out of ``LoopState`` since none of it is plain data.
    """

    backend: BackendAdapter
    catalog: ToolCatalog
    invoker: ToolInvoker
    gate: SecurityGate
    context: ToolContext
    options: PromptOptions
    max_loop_iterations: int
    on_event: EventCallback | None = None
    on_chunk: ChunkCallback | None = None
    cancel: asyncio.Event | None = None
    confirm: ConfirmCallback | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()
