"""Argument normalization and handler binding."""

import inspect
import re
from collections.abc import Callable, Mapping
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATORS = re.compile(r"[\s\-]+")


def to_snake_case(name: str) -> str:
    """Convert ``orderId`` / ``Order-ID`` style names to ``order_id``."""
    name = _SEPARATORS.sub("_", name.strip())
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def normalize_argument_keys(value: Any) -> Any:
    """Add a snake_case alias for every mapping key, recursively.

    Keys supplied by the caller always win: a derived variant never overwrites
    a key that was present in the original mapping.

    Args:
        value: Raw argument value (mapping, sequence or scalar)

    Returns:
        A normalized copy
    """
    if isinstance(value, Mapping):
        normalized = {key: normalize_argument_keys(item) for key, item in value.items()}
        for key, item in list(normalized.items()):
            if isinstance(key, str):
                normalized.setdefault(to_snake_case(key), item)
        return normalized
    if isinstance(value, list | tuple):
        return [normalize_argument_keys(item) for item in value]
    return value


def unwrap_single_item_arrays(arguments: dict[str, Any], object_fields: set[str]) -> dict[str, Any]:
    """Replace ``[{...}]`` with ``{...}`` for parameters that expect an object."""
    unwrapped = dict(arguments)
    for name in object_fields:
        value = unwrapped.get(name)
        if isinstance(value, list) and len(value) == 1 and isinstance(value[0], Mapping):
            unwrapped[name] = dict(value[0])
    return unwrapped


def bind_arguments(handler: Callable[..., Any], arguments: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Map validated arguments onto the handler's keyword parameters.

    A parameter is matched by exact name first, then by its snake_case form.
    Arguments with no matching parameter are passed through only when the
    handler accepts ``**kwargs``. A parameter named ``context`` receives the
    tool context.
    """
    signature = inspect.signature(handler)
    parameters = signature.parameters
    accepts_kwargs = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in parameters.values())

    bound: dict[str, Any] = {}
    for key, value in arguments.items():
        if key in parameters:
            bound[key] = value
        elif (snake := to_snake_case(key)) in parameters:
            bound.setdefault(snake, value)
        elif accepts_kwargs:
            bound[key] = value

    if "context" in parameters and "context" not in bound:
        bound["context"] = context

    return bound
