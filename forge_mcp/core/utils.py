import inspect
from typing import Any, Callable


async def call_maybe_async(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
