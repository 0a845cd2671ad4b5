"""Authorization collaborator consulted before running permissioned tools."""

from typing import Protocol

from agentloop.tools.base import ToolContext


class Authorizer(Protocol):
    """Decides whether a tool permission may be exercised."""

    def can_perform(self, permission: str, context: ToolContext) -> bool: ...


class ContextAuthorizer:
    """Checks the permission against ``context.permissions``.

    A context without a permission set is treated as unrestricted.
    """

    def can_perform(self, permission: str, context: ToolContext) -> bool:
        if context.permissions is None:
            return True
        return permission in context.permissions
