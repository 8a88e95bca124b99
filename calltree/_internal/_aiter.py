"""Asyncio helpers."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import inspect
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


async def aio_to_thread(
    func: Callable[..., T],
    /,
    *args: Any,
    __ctx: Optional[contextvars.Context] = None,
    **kwargs: Any,
) -> T:
    """Asynchronously run function *func* in a separate thread.

    Any *args and **kwargs supplied for this function are directly passed
    to *func*. Also, the current :class:`contextvars.Context` is propagated,
    allowing context variables from the main thread to be accessed in the
    separate thread.

    Return a coroutine that can be awaited to get the eventual result of *func*.
    """
    loop = asyncio.get_running_loop()
    ctx = __ctx or contextvars.copy_context()
    func_call = functools.partial(ctx.run, func, *args, **kwargs)
    return await loop.run_in_executor(None, func_call)


def accepts_context(callable: Callable[..., Any]) -> bool:
    """Check if a callable accepts a context argument."""
    try:
        return inspect.signature(callable).parameters.get("context") is not None
    except ValueError:
        return False


@functools.lru_cache(maxsize=1)
def asyncio_accepts_context() -> bool:
    """Check if the current asyncio event loop accepts a context argument."""
    return accepts_context(asyncio.create_task)
