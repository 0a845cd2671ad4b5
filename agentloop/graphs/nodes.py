"""Node implementations for the agent loop graph."""

import asyncio
import json
from contextlib import suppress
from typing import Any

from langchain_core.runnables import RunnableConfig

from agentloop.exceptions import LoopOverflowError
from agentloop.graphs.state import LoopPhase, LoopRuntime, LoopState
from agentloop.models.llm import DriverResponse
from agentloop.models.messages import Message, ToolCall, ToolResult
from agentloop.services.prompts import CONTINUATION_MESSAGE, ITERATION_LIMIT_MESSAGE, TOOL_SUCCESS_FALLBACK
from agentloop.utils.callbacks import invoke_callback
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


def get_runtime(config: RunnableConfig) -> LoopRuntime:
    return config["configurable"]["run"]


async def call_model_node(state: LoopState, config: RunnableConfig) -> dict[str, Any]:
    """Call the backend with the current history and classify the response.

    Checks the iteration limit and the hard loop cap before every call. A
    response with tool calls moves the loop to the security check, anything
    else is the final answer.
    """
    run = get_runtime(config)

    if not run.gate.check_iteration_limit(state.iterations):
        logger.warning(f"Iteration limit reached after {state.iterations} model calls")
        return {
            "phase": LoopPhase.ITERATION_LIMIT,
            "content": ITERATION_LIMIT_MESSAGE,
            "finish_reason": "iteration_limit",
        }

    if state.iterations >= run.max_loop_iterations:
        raise LoopOverflowError(f"Agent loop exceeded {run.max_loop_iterations} iterations")

    if run.cancelled:
        return {"phase": LoopPhase.STOPPED, "finish_reason": "stopped"}

    iteration = state.iterations + 1
    logger.debug(f"Model call {iteration} with {len(state.history)} history messages")
    await _notify(run, "thinking", {"iteration": iteration})

    response = await _call_backend(run, state)
    if response is None:
        logger.info(f"Run cancelled during model call {iteration}")
        return {"phase": LoopPhase.STOPPED, "finish_reason": "stopped", "iterations": iteration}

    updates: dict[str, Any] = {
        "iterations": iteration,
        "content": response.content,
        "finish_reason": response.finish_reason,
        "prompt_tokens": state.prompt_tokens + response.usage.prompt_tokens,
        "completion_tokens": state.completion_tokens + response.usage.completion_tokens,
    }

    if response.has_tool_calls:
        logger.info(f"Model requested {len(response.tool_calls)} tool calls")
        return {**updates, "phase": LoopPhase.CHECKING_SECURITY, "pending_tool_calls": response.tool_calls}

    content = response.content
    if not content.strip() and state.last_tool_results:
        content = fallback_content(state.last_tool_results)
        logger.debug("Empty final answer, using tool results instead")

    return {
        **updates,
        "phase": LoopPhase.DONE,
        "content": content,
        "finish_reason": response.finish_reason or "stop",
    }


async def check_security_node(state: LoopState, config: RunnableConfig) -> dict[str, Any]:
    """Run every requested call through the security gate before any of them executes.

    The first denial ends the turn; calls after it are not checked.
    """
    run = get_runtime(config)

    for call in state.pending_tool_calls:
        decision = run.gate.check_tool_call(call.name, call.arguments, run.catalog.find(call.name))

        if not decision.allowed:
            logger.warning(f"Tool call {call.name} blocked: {decision.reason}")
            return {
                "phase": LoopPhase.BLOCKED,
                "content": f"⚠️ {decision.reason}",
                "finish_reason": "security_blocked",
                "blocked_tool": call.name,
            }

        if decision.requires_confirmation:
            if run.confirm is None:
                logger.warning(f"Tool {call.name} requires confirmation but no confirmation handler is set")
                continue

            confirmed = await invoke_callback(run.confirm, call, decision.confirmation_message)
            if not confirmed:
                logger.info(f"Tool call {call.name} declined by the user")
                return {
                    "phase": LoopPhase.BLOCKED,
                    "content": f"⚠️ The action '{call.name}' was cancelled.",
                    "finish_reason": "confirmation_declined",
                    "blocked_tool": call.name,
                }

    return {"phase": LoopPhase.EXECUTING_TOOLS}


async def execute_tools_node(state: LoopState, config: RunnableConfig) -> dict[str, Any]:
    """Execute the approved calls in order, reporting progress to the event callback."""
    run = get_runtime(config)

    if run.cancelled:
        return {"phase": LoopPhase.STOPPED, "finish_reason": "stopped"}

    async def on_start(call: ToolCall) -> None:
        await _notify(run, "tool_start", {"name": call.name, "arguments": call.arguments})

    async def on_finish(call: ToolCall, result: ToolResult) -> None:
        await _notify(run, "tool_done", {"name": call.name, "success": result.success})

    results = await run.invoker.execute_many(state.pending_tool_calls, run.context, on_start, on_finish)

    failed = sum(1 for r in results if not r.success)
    if failed:
        logger.warning(f"{failed} of {len(results)} tool calls failed")

    return {
        "phase": LoopPhase.APPENDING_RESULTS,
        "last_tool_results": results,
        "tool_results": [*state.tool_results, *results],
    }


def append_results_node(state: LoopState) -> dict[str, Any]:
    """Record the tool turn in history and point the model at the results."""
    turn: list[Message] = []
    if state.iterations == 1:
        turn.append(Message.user(state.message))

    turn.append(Message.assistant(state.content, state.pending_tool_calls))
    turn.extend(Message.tool(result) for result in state.last_tool_results)

    return {
        "phase": LoopPhase.CALLING_MODEL,
        "history": [*state.history, *turn],
        "message": CONTINUATION_MESSAGE,
        "pending_tool_calls": [],
        "content": "",
    }


def fallback_content(results: list[ToolResult]) -> str:
    """Answer built from successful tool results when the model returns no text."""
    parts = [
        r.result if isinstance(r.result, str) else json.dumps(r.result, ensure_ascii=False, default=str)
        for r in results
        if r.success and r.result is not None
    ]
    return "\n".join(parts) or TOOL_SUCCESS_FALLBACK


async def _call_backend(run: LoopRuntime, state: LoopState) -> DriverResponse | None:
    """Send one request, racing it against the cancel signal. Returns None if cancelled."""
    tools = run.catalog.definitions()

    if run.on_chunk is not None:
        request = run.backend.stream(state.message, tools, state.history, run.on_chunk, run.options)
    else:
        request = run.backend.prompt(state.message, tools, state.history, run.options)

    if run.cancel is None:
        return await request

    task = asyncio.ensure_future(request)
    waiter = asyncio.ensure_future(run.cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    return None


async def _notify(run: LoopRuntime, event: str, payload: dict[str, Any]) -> None:
    await invoke_callback(run.on_event, event, payload)
