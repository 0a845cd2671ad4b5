"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, create_model

from agentloop.exceptions import ToolValidationError
from agentloop.tools.arguments import to_snake_case

ToolHandler = Callable[..., Any | Awaitable[Any]]

JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list[Any],
    "object": dict[str, Any],
}


@runtime_checkable
class Transformable(Protocol):
    """A handler result that knows how to reduce itself to plain data."""

    def to_plain_data(self) -> Any: ...


@dataclass(frozen=True)
class ToolParameter:
    """A single named tool argument."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    enum: tuple[Any, ...] | None = None
    default: Any = None
    pattern: str | None = None
    min_length: int | None = None
    max_length: int | None = None
    minimum: float | None = None
    maximum: float | None = None
    items: str | None = None  # Element type for arrays

    def __post_init__(self):
        if self.type not in JSON_TYPES:
            raise ValueError(f"Unsupported parameter type '{self.type}' for '{self.name}'")
        if self.enum is not None and not isinstance(self.enum, tuple):
            object.__setattr__(self, "enum", tuple(self.enum))

    def to_schema(self) -> dict[str, Any]:
        """JSON schema fragment for this parameter."""
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        if self.default is not None:
            schema["default"] = self.default
        if self.pattern:
            schema["pattern"] = self.pattern
        if self.min_length is not None:
            schema["minLength" if self.type == "string" else "minItems"] = self.min_length
        if self.max_length is not None:
            schema["maxLength" if self.type == "string" else "maxItems"] = self.max_length
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.type == "array":
            schema["items"] = {"type": self.items} if self.items else {}
        return schema

    def annotation(self) -> Any:
        """Python type used to validate this parameter."""
        if self.enum:
            return Literal[self.enum]
        if self.type == "array" and self.items in JSON_TYPES:
            return list[JSON_TYPES[self.items]]
        if self.type == "object":
            # Models sometimes wrap a single object in a list; unwrapped after validation
            return dict[str, Any] | list[dict[str, Any]]
        return JSON_TYPES[self.type]

    def field_info(self) -> Any:
        aliases = [self.name]
        if (snake := to_snake_case(self.name)) != self.name:
            aliases.append(snake)

        constraints: dict[str, Any] = {}
        if self.pattern and self.type == "string":
            constraints["pattern"] = self.pattern
        if self.min_length is not None:
            constraints["min_length"] = self.min_length
        if self.max_length is not None:
            constraints["max_length"] = self.max_length
        if self.minimum is not None:
            constraints["ge"] = self.minimum
        if self.maximum is not None:
            constraints["le"] = self.maximum

        return Field(
            ... if self.required else self.default,
            alias=self.name,
            validation_alias=AliasChoices(*aliases),
            description=self.description or None,
            **constraints,
        )


@dataclass(frozen=True)
class ToolContext:
    """Explicit per-call context handed down the tool pipeline."""

    conversation_id: str | None = None
    agent_name: str | None = None
    user: Any = None
    permissions: frozenset[str] | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)
    current_tool: str | None = None

    def __post_init__(self):
        if self.permissions is not None and not isinstance(self.permissions, frozenset):
            object.__setattr__(self, "permissions", frozenset(self.permissions))

    @property
    def in_tool_call(self) -> bool:
        return self.current_tool is not None

    def entering(self, tool_name: str) -> "ToolContext":
        """Copy of this context marked as inside ``tool_name``."""
        return replace(self, current_tool=tool_name)


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool available to the model. Immutable once created."""

    name: str
    description: str
    handler: ToolHandler
    parameters: tuple[ToolParameter, ...] = ()
    requires_confirmation: bool = False
    permission: str | None = None
    allowed_agents: frozenset[str] | None = None

    def __post_init__(self):
        object.__setattr__(self, "parameters", tuple(self.parameters))
        if self.allowed_agents is not None:
            object.__setattr__(self, "allowed_agents", frozenset(self.allowed_agents))

        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate parameter names in tool '{self.name}'")

    @property
    def scoped(self) -> bool:
        return self.allowed_agents is not None

    @property
    def object_parameters(self) -> set[str]:
        return {p.name for p in self.parameters if p.type == "object"}

    @cached_property
    def input_model(self) -> type[BaseModel]:
        """Pydantic model validating this tool's arguments."""
        fields: dict[str, Any] = {}
        for index, parameter in enumerate(self.parameters):
            annotation = parameter.annotation()
            if not parameter.required:
                annotation = annotation | None
            fields[f"arg_{index}"] = (annotation, parameter.field_info())

        model_name = "".join(part.capitalize() for part in to_snake_case(self.name).split("_")) + "Input"
        return create_model(
            model_name,
            __config__=ConfigDict(coerce_numbers_to_str=True, extra="ignore"),
            **fields,
        )

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def parse_input(self, raw_input: dict[str, Any]) -> dict[str, Any]:
        """Validate and coerce tool input.

        Args:
            raw_input: Arguments as produced by the model

        Returns:
            Validated arguments keyed by parameter name, including declared defaults

        Raises:
            ToolValidationError: With per-field messages when validation fails
        """
        try:
            validated = self.input_model.model_validate(raw_input)
        except ValidationError as e:
            errors: dict[str, list[str]] = {}
            for error in e.errors():
                field_name = ".".join(str(part) for part in error["loc"]) or self.name
                errors.setdefault(field_name, []).append(error["msg"])
            raise ToolValidationError(self.name, errors) from e

        arguments = validated.model_dump(by_alias=True, exclude_unset=True)
        for parameter in self.parameters:
            if parameter.default is not None:
                arguments.setdefault(parameter.name, parameter.default)
        return arguments
