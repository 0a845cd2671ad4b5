"""Catalog of tool definitions available to agents."""

from collections.abc import Iterable

from agentloop.tools.base import ToolDefinition
from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


class ToolCatalog:
    """Registry mapping tool names to their definitions.

    Several definitions may share a name when they are scoped to different
    agents. A name with at least one scoped variant is considered scoped, and
    its unscoped variant is never visible through ``filter_for_agent``.
    """

    def __init__(self, definitions: Iterable[ToolDefinition] | None = None):
        self._tools: dict[str, list[ToolDefinition]] = {}
        if definitions:
            self.register(definitions)

    def register(self, definitions: ToolDefinition | Iterable[ToolDefinition]) -> None:
        """Register one or more tool definitions."""
        if isinstance(definitions, ToolDefinition):
            definitions = [definitions]

        for definition in definitions:
            variants = self._tools.setdefault(definition.name, [])
            # Re-registering the same scope replaces the earlier definition
            variants[:] = [v for v in variants if v.allowed_agents != definition.allowed_agents]
            variants.append(definition)
            logger.debug(f"Registered tool {definition.name} (agents: {_scope_label(definition)})")

    def all(self) -> dict[str, ToolDefinition]:
        """One definition per name; a scoped variant takes precedence over an unscoped one."""
        return {name: _primary(variants) for name, variants in self._tools.items()}

    def find(self, name: str) -> ToolDefinition | None:
        variants = self._tools.get(name)
        return _primary(variants) if variants else None

    def filter_for_agent(self, agent_name: str | None) -> "ToolCatalog":
        """Catalog holding only the tools visible to ``agent_name``.

        Args:
            agent_name: Current agent, or None for the default agent

        Returns:
            A new catalog; this one is left untouched
        """
        visible: list[ToolDefinition] = []
        for name, variants in self._tools.items():
            scoped = [v for v in variants if v.scoped]
            if scoped:
                allowed = [v for v in scoped if agent_name is not None and agent_name in v.allowed_agents]
                if allowed:
                    visible.append(allowed[0])
                else:
                    logger.debug(f"Tool {name} hidden from agent {agent_name}")
            else:
                visible.append(variants[-1])
        return ToolCatalog(visible)

    def definitions(self) -> list[ToolDefinition]:
        return list(self.all().values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def has(self, name: str) -> bool:
        return name in self._tools

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def _primary(variants: list[ToolDefinition]) -> ToolDefinition:
    scoped = [v for v in variants if v.scoped]
    return scoped[0] if scoped else variants[-1]


def _scope_label(definition: ToolDefinition) -> str:
    return ", ".join(sorted(definition.allowed_agents)) if definition.allowed_agents is not None else "all"
