"""Invoke ``traceable`` functions as runnables."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Optional

from calltree import utils
from calltree._internal._aiter import aio_to_thread
from calltree.run_helpers import is_async, is_traceable_function
from calltree.runnables.base import Runnable
from calltree.runnables.config import (
    RunnableConfig,
    ensure_config,
    get_async_callback_manager_for_config,
)


class RunnableTraceable(Runnable):
    """Runnable that calls a ``traceable`` function with the active callbacks.

    The function is called with the input as its only positional argument and
    the invocation's config, with ``callbacks`` set to the configured callback
    manager, as the ``config`` keyword. The function records its own run, so
    this runnable does not open one.
    """

    def __init__(self, func: Callable[..., Any], name: Optional[str] = None) -> None:
        if not is_traceable_function(func):
            raise utils.CallTreeConfigurationError(
                "RunnableTraceable requires a function decorated with @traceable;"
                f" got {utils._get_function_name(func)!r}"
            )
        self.func = func
        self.name = name or utils._get_function_name(func)

    def __repr__(self) -> str:
        return f"RunnableTraceable({self.name})"

    async def ainvoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        config = ensure_config(config)
        callbacks = get_async_callback_manager_for_config(config)
        combined: RunnableConfig = {**config, "callbacks": callbacks}
        if is_async(self.func):
            result = await self.func(input, config=combined)
        else:
            result = await aio_to_thread(self.func, input, config=combined)
        if inspect.isawaitable(result):
            result = await result
        return result
