"""Helpers for user-supplied callbacks that may be sync or async."""

import inspect
from collections.abc import Callable
from typing import Any


async def invoke_callback(callback: Callable[..., Any] | None, *args: Any, **kwargs: Any) -> Any:
    """Call ``callback`` and await the result when it is awaitable."""
    if callback is None:
        return None
    result = callback(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
