"""Edge logic and routing for the agent loop graph."""

from typing import Literal

from agentloop.graphs.state import LoopPhase, LoopState
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


def route_model_output(state: LoopState) -> Literal["check_security", "end"]:
    """Tool calls go to the security check; any other phase is terminal."""
    logger.debug(f"Routing from call_model. Phase: {state.phase}")

    if state.phase == LoopPhase.CHECKING_SECURITY:
        return "check_security"
    return "end"


def route_security_output(state: LoopState) -> Literal["execute_tools", "end"]:
    """Approved batches are executed; a denial or declined confirmation ends the run."""
    if state.phase == LoopPhase.EXECUTING_TOOLS:
        return "execute_tools"
    return "end"


def route_tool_output(state: LoopState) -> Literal["append_results", "end"]:
    """Results are appended unless the run was cancelled before execution."""
    if state.phase == LoopPhase.APPENDING_RESULTS:
        return "append_results"
    return "end"
