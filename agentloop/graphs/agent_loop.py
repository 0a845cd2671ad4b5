"""Agent loop graph implementation."""

from typing import Any

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from agentloop.exceptions import LoopOverflowError
from agentloop.graphs.edges import route_model_output, route_security_output, route_tool_output
from agentloop.graphs.nodes import append_results_node, call_model_node, check_security_node, execute_tools_node
from agentloop.graphs.state import LoopRuntime, LoopState
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)

# Graph steps per loop iteration (model, security, tools, append)
STEPS_PER_ITERATION = 4


def create_agent_graph():
    """Create the agent loop graph.

    call_model -> check_security -> execute_tools -> append_results -> call_model,
    leaving the loop from any node whose phase is terminal.

    Returns:
        Compiled LangGraph workflow
    """
    logger.debug("Creating agent loop graph")

    workflow = StateGraph(LoopState)

    workflow.add_node("call_model", call_model_node)
    workflow.add_node("check_security", check_security_node)
    workflow.add_node("execute_tools", execute_tools_node)
    workflow.add_node("append_results", append_results_node)

    workflow.set_entry_point("call_model")

    workflow.add_conditional_edges(
        "call_model",
        route_model_output,
        {
            "check_security": "check_security",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "check_security",
        route_security_output,
        {
            "execute_tools": "execute_tools",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "execute_tools",
        route_tool_output,
        {
            "append_results": "append_results",
            "end": END,
        },
    )

    workflow.add_edge("append_results", "call_model")

    # Runs are stateless between requests; memory handles persistence
    return workflow.compile()


async def run_agent_loop(graph: Any, state: LoopState, runtime: LoopRuntime) -> LoopState:
    """Drive the compiled graph to a terminal phase.

    Raises:
        LoopOverflowError: If the graph exceeds the step budget for ``max_loop_iterations``
    """
    config = {
        "configurable": {"run": runtime},
        "recursion_limit": runtime.max_loop_iterations * STEPS_PER_ITERATION + STEPS_PER_ITERATION,
    }

    try:
        result = await graph.ainvoke(state, config)
    except GraphRecursionError as e:
        raise LoopOverflowError(f"Agent loop exceeded its step budget: {e}") from e

    return LoopState.model_validate(dict(result))
