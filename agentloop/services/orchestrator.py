"""Agent orchestrator tying backend, tools, security and memory together."""

import asyncio

from agentloop.clients import create_backend
from agentloop.clients.base import BackendAdapter, ChunkCallback
from agentloop.config import AgentConfig
from agentloop.events import AgentCompleted, AgentStarted, CompositeEventSink, EventSink, NullEventSink
from agentloop.graphs.agent_loop import create_agent_graph, run_agent_loop
from agentloop.graphs.state import ConfirmCallback, EventCallback, LoopPhase, LoopRuntime, LoopState
from agentloop.models.agent import (
    AgentResult,
    Completed,
    InputRejected,
    IterationLimitReached,
    SecurityBlocked,
    Stopped,
)
from agentloop.models.llm import PromptOptions, Usage
from agentloop.models.messages import Message
from agentloop.security.audit import AuditLogger
from agentloop.security.gate import SecurityGate
from agentloop.services.authorization import Authorizer
from agentloop.services.conversation_store import generate_conversation_id
from agentloop.services.memory import MemoryBackend, create_memory
from agentloop.services.prompts import build_system_prompt
from agentloop.tools.base import ToolContext
from agentloop.tools.invoker import ToolInvoker
from agentloop.tools.registry import ToolCatalog
from agentloop.utils.callbacks import invoke_callback
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


class AgentOrchestrator:
    """Runs the bounded agent loop for one user message at a time.

    The orchestrator itself is safe to share between concurrent requests:
    every run gets its own security gate, tool context and loop state.
    """

    def __init__(
        self,
        config: AgentConfig,
        backend: BackendAdapter,
        catalog: ToolCatalog | None = None,
        memory: MemoryBackend | None = None,
        events: EventSink | None = None,
        authorizer: Authorizer | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Agent configuration
            backend: LLM backend adapter
            catalog: Tools the model may call
            memory: Conversation memory, defaults to the configured driver
            events: Sink for tool, security and lifecycle events
            authorizer: Permission check consulted by the tool invoker
        """
        self.config = config
        self.backend = backend
        self.catalog = catalog if catalog is not None else ToolCatalog()
        self.memory = memory or create_memory(config.memory, backend)
        self.events = events or NullEventSink()
        self.authorizer = authorizer
        self.graph = create_agent_graph()

    @classmethod
    def from_config(
        cls, config: AgentConfig, catalog: ToolCatalog | None = None, events: EventSink | None = None
    ) -> "AgentOrchestrator":
        """Build an orchestrator with the backend and memory the configuration selects."""
        backend = create_backend(config.backend)
        return cls(config, backend, catalog=catalog, events=events)

    async def run(
        self,
        message: str,
        conversation_id: str | None = None,
        system_prompt: str | None = None,
        agent_name: str | None = None,
        context: ToolContext | None = None,
        on_event: EventCallback | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: asyncio.Event | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> AgentResult:
        """Process one user message through the agent loop.

        Args:
            message: The user's message
            conversation_id: Existing conversation to continue, a new one is created if omitted
            system_prompt: Caller-supplied system prompt, overrides the configured one
            agent_name: Agent whose scoped tools should be visible
            context: Base tool context (user, permissions, extra data)
            on_event: Receives ``thinking``, ``tool_start``, ``tool_done`` and ``done`` progress events
            on_chunk: Receives streamed text; enables streaming requests when set
            cancel: Setting this event stops the run cooperatively
            confirm: Asked before running tools that require confirmation; a falsy answer cancels the turn

        Returns:
            Tagged result describing how the run ended

        Raises:
            DriverError: If the backend fails after retries
            LoopOverflowError: If the loop exceeds ``max_loop_iterations``
        """
        conversation_id = conversation_id or generate_conversation_id()
        gate = SecurityGate(self.config.security, events=self.events)

        validation = gate.validate_input(message)
        if not validation.allowed:
            logger.info(f"Input rejected for conversation {conversation_id}: {validation.reason}")
            result = InputRejected(content=f"⚠️ {validation.reason}", conversation_id=conversation_id)
            await self._notify_done(on_event, result)
            return result

        logger.info(f"Starting agent run for conversation {conversation_id}")
        self.events.emit(AgentStarted(conversation_id=conversation_id, message=validation.sanitized))

        catalog = self.catalog.filter_for_agent(agent_name)
        tool_context = _tool_context(context, conversation_id, agent_name)

        runtime = LoopRuntime(
            backend=self.backend,
            catalog=catalog,
            invoker=ToolInvoker(catalog, authorizer=self.authorizer, events=self.events),
            gate=gate,
            context=tool_context,
            options=self._prompt_options(system_prompt, gate),
            max_loop_iterations=self.config.max_loop_iterations,
            on_event=on_event,
            on_chunk=on_chunk,
            cancel=cancel,
            confirm=confirm,
        )

        history = await self.memory.recall(conversation_id, self.config.memory.recall_limit)
        state = LoopState(message=validation.sanitized, history=history)

        final = await run_agent_loop(self.graph, state, runtime)
        result = self._build_result(final, gate, conversation_id)

        if not isinstance(result, Stopped):
            await self.memory.remember(conversation_id, Message.user(validation.sanitized))
            await self.memory.remember(conversation_id, Message.assistant(result.content))

        self.events.emit(
            AgentCompleted(
                conversation_id=conversation_id,
                finish_reason=result.finish_reason,
                iterations=result.iterations,
            )
        )
        logger.info(
            f"Agent run finished for conversation {conversation_id}: "
            f"{result.finish_reason} after {result.iterations} model calls"
        )

        await self._notify_done(on_event, result)
        return result

    async def chat(self, message: str, conversation_id: str | None = None, **kwargs) -> str:
        """Convenience wrapper returning only the response text."""
        result = await self.run(message, conversation_id=conversation_id, **kwargs)
        return result.content

    def _prompt_options(self, system_prompt: str | None, gate: SecurityGate) -> PromptOptions:
        system = build_system_prompt(
            system_prompt or self.config.system_prompt,
            default_prompt=self.config.default_system_prompt,
            smart_resolution=self.config.smart_resolution,
            security_prompt=gate.security_prompt(),
        )
        return PromptOptions(system=system or None)

    def _build_result(self, state: LoopState, gate: SecurityGate, conversation_id: str) -> AgentResult:
        common = {
            "conversation_id": conversation_id,
            "usage": Usage(state.prompt_tokens, state.completion_tokens),
            "iterations": state.iterations,
            "tool_results": state.tool_results,
        }

        match state.phase:
            case LoopPhase.DONE:
                content = gate.sanitize_output(state.content)
                return Completed(content=content, finish_reason=state.finish_reason, **common)
            case LoopPhase.BLOCKED:
                return SecurityBlocked(
                    content=state.content,
                    finish_reason=state.finish_reason,
                    tool_name=state.blocked_tool,
                    **common,
                )
            case LoopPhase.ITERATION_LIMIT:
                return IterationLimitReached(content=state.content, **common)
            case LoopPhase.STOPPED:
                return Stopped(content=gate.sanitize_output(state.content), **common)
            case _:
                raise RuntimeError(f"Agent loop ended in non-terminal phase {state.phase}")

    async def _notify_done(self, on_event: EventCallback | None, result: AgentResult) -> None:
        await invoke_callback(
            on_event,
            "done",
            {
                "content": result.content,
                "conversation_id": result.conversation_id,
                "finish_reason": result.finish_reason,
            },
        )


def create_orchestrator(
    config: AgentConfig | None = None, catalog: ToolCatalog | None = None, events: EventSink | None = None
) -> AgentOrchestrator:
    """Build an orchestrator from explicit or environment configuration.

    Events always reach the audit log; a caller-supplied sink receives them too.
    """
    audit = AuditLogger()
    sink = CompositeEventSink(audit, events) if events is not None else audit
    return AgentOrchestrator.from_config(config or AgentConfig.from_env(), catalog=catalog, events=sink)


def _tool_context(base: ToolContext | None, conversation_id: str, agent_name: str | None) -> ToolContext:
    base = base or ToolContext()
    return ToolContext(
        conversation_id=conversation_id,
        agent_name=agent_name or base.agent_name,
        user=base.user,
        permissions=base.permissions,
        extra=base.extra,
    )
