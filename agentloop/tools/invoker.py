"""Tool invocation pipeline."""

import time
from collections.abc import Callable
from typing import Any

from agentloop.events import EventSink, NullEventSink, ToolCalled, ToolExecuted, ToolFailed
from agentloop.exceptions import ExecutionDenied, ToolError, ToolNotFound, ToolValidationError
from agentloop.models.messages import ToolCall, ToolResult
from agentloop.services.authorization import Authorizer, ContextAuthorizer
from agentloop.tools.arguments import bind_arguments, normalize_argument_keys, unwrap_single_item_arrays
from agentloop.tools.base import ToolContext, ToolDefinition
from agentloop.tools.registry import ToolCatalog
from agentloop.tools.transformer import ResultTransformer
from agentloop.utils.callbacks import invoke_callback
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

StartHook = Callable[[ToolCall], Any]
FinishHook = Callable[[ToolCall, ToolResult], Any]


class ToolInvoker:
    """Runs tool calls through lookup, validation, authorization, execution and transformation."""

    def __init__(
        self,
        catalog: ToolCatalog,
        authorizer: Authorizer | None = None,
        events: EventSink | None = None,
        transformer: ResultTransformer | None = None,
    ):
        """Initialize the invoker.

        Args:
            catalog: Tools that may be invoked
            authorizer: Permission check for tools that declare one
            events: Sink for ToolCalled / ToolExecuted / ToolFailed events
            transformer: Reduces handler results to plain data
        """
        self.catalog = catalog
        self.authorizer = authorizer or ContextAuthorizer()
        self.events = events or NullEventSink()
        self.transformer = transformer or ResultTransformer()

    async def execute(self, name: str, arguments: dict[str, Any] | None, context: ToolContext | None = None) -> Any:
        """Execute a single tool.

        Args:
            name: Tool name
            arguments: Raw arguments from the model
            context: Per-request tool context

        Returns:
            The handler result reduced to plain data

        Raises:
            ToolNotFound: If no tool with that name is registered
            ToolValidationError: If the arguments fail validation
            ExecutionDenied: If the authorizer refuses the tool's permission
            Exception: Whatever the handler raises
        """
        context = context or ToolContext()
        arguments = arguments or {}

        definition = self.catalog.find(name)
        if definition is None:
            logger.warning(f"Unknown tool requested: {name}")
            raise ToolNotFound(name)

        self.events.emit(ToolCalled(tool=name, arguments=arguments))
        started = time.perf_counter()

        try:
            validated = definition.parse_input(normalize_argument_keys(arguments))
            validated = unwrap_single_item_arrays(validated, definition.object_parameters)
            if still_listed := sorted(p for p in definition.object_parameters if isinstance(validated.get(p), list)):
                raise ToolValidationError(name, {p: ["Input should be an object, not a list"] for p in still_listed})

            if definition.permission and not self.authorizer.can_perform(definition.permission, context):
                raise ExecutionDenied(name, definition.permission)

            raw_result = await self._call_handler(definition, validated, context.entering(name))
            result = self.transformer.transform(raw_result)

        except ToolError as e:
            logger.warning(f"Tool {name} rejected: {e}")
            self.events.emit(ToolFailed(tool=name, arguments=arguments, error=str(e)))
            raise
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            self.events.emit(ToolFailed(tool=name, arguments=arguments, error=str(e)))
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(f"Tool {name} executed in {duration_ms:.1f}ms")
        self.events.emit(ToolExecuted(tool=name, arguments=arguments, result=result, duration_ms=duration_ms))
        return result

    async def execute_many(
        self,
        tool_calls: list[ToolCall],
        context: ToolContext | None = None,
        on_start: StartHook | None = None,
        on_finish: FinishHook | None = None,
    ) -> list[ToolResult]:
        """Execute tool calls strictly in order, one at a time.

        A failing call is reported as ``success=False`` and does not stop the
        calls after it.

        Args:
            tool_calls: Calls in the order the model issued them
            context: Per-request tool context
            on_start: Called before each call
            on_finish: Called with each call's result

        Returns:
            One result per call, in the same order
        """
        results: list[ToolResult] = []

        for call in tool_calls:
            await invoke_callback(on_start, call)
            try:
                value = await self.execute(call.name, call.arguments, context)
                result = ToolResult(tool_call_id=call.id, name=call.name, success=True, result=value)
            except Exception as e:
                result = ToolResult(tool_call_id=call.id, name=call.name, success=False, error=str(e))
            results.append(result)
            await invoke_callback(on_finish, call, result)

        return results

    async def _call_handler(self, definition: ToolDefinition, arguments: dict[str, Any], context: ToolContext) -> Any:
        kwargs = bind_arguments(definition.handler, arguments, context)
        logger.debug(f"Calling {definition.name} with {sorted(kwargs)}")
        return await invoke_callback(definition.handler, **kwargs)
