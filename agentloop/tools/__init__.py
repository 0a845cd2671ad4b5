"""Tool definitions, catalog and invocation pipeline."""

from agentloop.tools.base import ToolContext, ToolDefinition, ToolParameter, Transformable
from agentloop.tools.builder import tool, tool_from_model
from agentloop.tools.invoker import ToolInvoker
from agentloop.tools.registry import ToolCatalog

__all__ = [
    "ToolCatalog",
    "ToolContext",
    "ToolDefinition",
    "ToolInvoker",
    "ToolParameter",
    "Transformable",
    "tool",
    "tool_from_model",
]
