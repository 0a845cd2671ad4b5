"""Explicit tool registration helpers.

Tools are declared with the ``@tool`` decorator, which derives the parameter
schema from the handler's signature and Google-style docstring, or with
``tool_from_model`` when the input is described by a pydantic model.
"""

import inspect
import re
import types
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any, Literal, Union, get_args, get_origin, get_type_hints

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticUndefined

from agentloop.exceptions import ToolValidationError
from agentloop.tools.base import ToolContext, ToolDefinition, ToolHandler, ToolParameter

_SKIPPED_PARAMETERS = {"self", "cls", "context"}
_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters):\s*$")
_ARG_LINE = re.compile(r"^\s+(\*{0,2}\w+)(?:\s*\([^)]*\))?:\s*(.*)$")
_SECTION_HEADER = re.compile(r"^\s*\w[\w ]*:\s*$")


def _json_type(annotation: Any) -> tuple[str, dict[str, Any]]:
    """Map a Python annotation to a JSON schema type and extra parameter fields."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return "string", {}

    origin = get_origin(annotation)

    if origin is Literal:
        values = get_args(annotation)
        json_type, _ = _json_type(type(values[0]))
        return json_type, {"enum": values}

    if inspect.isclass(annotation) and issubclass(annotation, Enum):
        values = tuple(member.value for member in annotation)
        json_type, _ = _json_type(type(values[0]))
        return json_type, {"enum": values}

    if annotation is bool:
        return "boolean", {}
    if annotation is int:
        return "integer", {}
    if annotation is float:
        return "number", {}
    if annotation is str:
        return "string", {}

    if annotation in (list, tuple, set) or origin in (list, tuple, set, Sequence):
        args = get_args(annotation)
        items = _json_type(args[0])[0] if args and args[0] is not Ellipsis else None
        return "array", {"items": items}

    if annotation is dict or origin in (dict, Mapping):
        return "object", {}
    if inspect.isclass(annotation) and issubclass(annotation, BaseModel):
        return "object", {}

    return "string", {}


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Strip ``None`` from a union, reporting whether it was present."""
    if get_origin(annotation) in (Union, types.UnionType):
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) < len(get_args(annotation)):
            return (args[0] if len(args) == 1 else Any), True
    return annotation, False


def parse_docstring(docstring: str | None) -> tuple[str, dict[str, str]]:
    """Split a Google-style docstring into summary text and per-argument descriptions."""
    if not docstring:
        return "", {}

    lines = inspect.cleandoc(docstring).splitlines()
    summary: list[str] = []
    descriptions: dict[str, str] = {}
    in_args = False
    in_sections = False
    current: str | None = None

    for line in lines:
        if _ARGS_HEADER.match(line):
            in_args = in_sections = True
            continue
        if in_args:
            if match := _ARG_LINE.match(line):
                current = match.group(1).lstrip("*")
                descriptions[current] = match.group(2).strip()
            elif line.strip() and line.startswith((" ", "\t")) and current:
                descriptions[current] = f"{descriptions[current]} {line.strip()}".strip()
            elif _SECTION_HEADER.match(line):
                in_args = False
                current = None
            continue
        if _SECTION_HEADER.match(line):
            in_sections = True
        elif not in_sections:
            summary.append(line)

    return "\n".join(summary).strip(), descriptions


def parameters_from_signature(
    handler: Callable[..., Any], descriptions: Mapping[str, str] | None = None
) -> list[ToolParameter]:
    """Derive tool parameters from a handler signature."""
    descriptions = descriptions or {}
    try:
        hints = get_type_hints(handler)
    except Exception:
        hints = {}

    parameters: list[ToolParameter] = []
    for name, parameter in inspect.signature(handler).parameters.items():
        if name in _SKIPPED_PARAMETERS or parameter.kind in (
            inspect.Parameter.VAR_POSITIONAL,
            inspect.Parameter.VAR_KEYWORD,
        ):
            continue

        annotation, optional = _unwrap_optional(hints.get(name, parameter.annotation))
        json_type, extra = _json_type(annotation)

        has_default = parameter.default is not inspect.Parameter.empty
        default = parameter.default if has_default else None
        if isinstance(default, Enum):
            default = default.value

        parameters.append(
            ToolParameter(
                name=name,
                type=json_type,
                description=descriptions.get(name, ""),
                required=not has_default and not optional,
                default=default,
                **extra,
            )
        )
    return parameters


def parameters_from_model(model: type[BaseModel]) -> list[ToolParameter]:
    """Derive tool parameters from a pydantic input model."""
    parameters: list[ToolParameter] = []
    for name, field_info in model.model_fields.items():
        annotation, _ = _unwrap_optional(field_info.annotation)
        json_type, extra = _json_type(annotation)

        constraints: dict[str, Any] = {}
        for metadata in field_info.metadata:
            for attribute, target in (
                ("min_length", "min_length"),
                ("max_length", "max_length"),
                ("ge", "minimum"),
                ("le", "maximum"),
                ("pattern", "pattern"),
            ):
                value = getattr(metadata, attribute, None)
                if value is not None:
                    constraints[target] = value

        default = None if field_info.default is PydanticUndefined else field_info.default
        parameters.append(
            ToolParameter(
                name=field_info.alias or name,
                type=json_type,
                description=field_info.description or "",
                required=field_info.is_required(),
                default=default.value if isinstance(default, Enum) else default,
                **extra,
                **constraints,
            )
        )
    return parameters


def tool(
    name: str | None = None,
    description: str | None = None,
    *,
    parameters: Mapping[str, Mapping[str, Any]] | None = None,
    requires_confirmation: bool = False,
    permission: str | None = None,
    allowed_agents: set[str] | frozenset[str] | None = None,
) -> Callable[[ToolHandler], ToolDefinition]:
    """Turn a function into a ``ToolDefinition``.

    Args:
        name: Tool name (defaults to the function name)
        description: Tool description (defaults to the docstring summary)
        parameters: Per-parameter overrides, e.g. ``{"status": {"enum": ("open", "closed")}}``
        requires_confirmation: Ask for confirmation before running
        permission: Permission checked with the authorizer before running
        allowed_agents: Agents allowed to see this tool (None means every agent)

    Returns:
        Decorator producing the tool definition
    """

    def decorator(handler: ToolHandler) -> ToolDefinition:
        summary, descriptions = parse_docstring(handler.__doc__)
        derived = parameters_from_signature(handler, descriptions)

        overrides = parameters or {}
        unknown = set(overrides) - {p.name for p in derived}
        if unknown:
            raise ValueError(f"Overrides for unknown parameters: {', '.join(sorted(unknown))}")

        final = [ToolParameter(**{**vars(p), **overrides.get(p.name, {})}) for p in derived]

        return ToolDefinition(
            name=name or handler.__name__,
            description=description or summary or handler.__name__,
            handler=handler,
            parameters=tuple(final),
            requires_confirmation=requires_confirmation,
            permission=permission,
            allowed_agents=frozenset(allowed_agents) if allowed_agents is not None else None,
        )

    return decorator


def tool_from_model(
    name: str,
    description: str,
    input_model: type[BaseModel],
    handler: Callable[..., Any],
    **options: Any,
) -> ToolDefinition:
    """Build a tool whose handler receives a parsed ``input_model`` instance.

    The handler is called as ``handler(params)`` or ``handler(params, context)``
    depending on how many positional parameters it declares. Model validators run
    before the handler is invoked.
    """
    takes_context = len(inspect.signature(handler).parameters) > 1

    async def invoke(context: ToolContext | None = None, **arguments: Any) -> Any:
        try:
            params = input_model.model_validate(arguments)
        except ValidationError as e:
            errors: dict[str, list[str]] = {}
            for error in e.errors():
                errors.setdefault(".".join(str(p) for p in error["loc"]) or name, []).append(error["msg"])
            raise ToolValidationError(name, errors) from e

        result = handler(params, context) if takes_context else handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    return ToolDefinition(
        name=name,
        description=description,
        handler=invoke,
        parameters=tuple(parameters_from_model(input_model)),
        **options,
    )
