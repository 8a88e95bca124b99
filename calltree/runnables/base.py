"""Composable units of work that report their runs to callbacks."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from calltree import utils
from calltree._internal._aiter import aio_to_thread
from calltree.runnables.config import (
    RunnableConfig,
    ensure_config,
    get_async_callback_manager_for_config,
    patch_config,
    var_child_runnable_config,
)


def _as_inputs(input: Any) -> dict[str, Any]:
    return input if isinstance(input, dict) else {"input": input}


def _accepts_config(func: Callable[..., Any]) -> bool:
    try:
        return inspect.signature(func).parameters.get("config") is not None
    except ValueError:
        return False


class Runnable(ABC):
    """A unit of work that can be invoked and composed.

    Each invocation is recorded as one run through the callback manager
    derived from the invocation's config. Runnables invoked while another is
    running nest under it.
    """

    name: Optional[str] = None

    def get_name(self) -> str:
        """Get the name of the runnable."""
        return self.name or self.__class__.__name__

    @abstractmethod
    async def ainvoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        """Invoke the runnable on a single input."""

    def __or__(self, other: Union[Runnable, Callable[..., Any]]) -> RunnableSequence:
        return RunnableSequence(self, coerce_to_runnable(other))

    def __ror__(self, other: Union[Runnable, Callable[..., Any]]) -> RunnableSequence:
        return RunnableSequence(coerce_to_runnable(other), self)

    async def _acall_with_config(
        self,
        func: Callable[..., Awaitable[Any]],
        input: Any,
        config: Optional[RunnableConfig],
        run_type: str = "chain",
    ) -> Any:
        """Run ``func`` inside a new run for this runnable.

        ``func`` receives the input and, if it declares it, a ``config``
        keyword whose callbacks nest under the new run. The same config is
        the ambient config of nested invocations.
        """
        config = ensure_config(config)
        callback_manager = get_async_callback_manager_for_config(config)
        start = (
            callback_manager.on_tool_start
            if run_type == "tool"
            else callback_manager.on_chain_start
        )
        run_manager = await start(
            None,
            _as_inputs(input),
            run_id=config.pop("run_id", None),
            name=config.get("run_name") or self.get_name(),
        )
        child_config = patch_config(config, callbacks=run_manager.get_child())
        token = var_child_runnable_config.set(child_config)
        try:
            if _accepts_config(func):
                output = await func(input, config=child_config)
            else:
                output = await func(input)
        except BaseException as e:
            if run_type == "tool":
                await run_manager.on_tool_error(e)
            else:
                await run_manager.on_chain_error(e)
            raise
        finally:
            var_child_runnable_config.reset(token)
        if run_type == "tool":
            await run_manager.on_tool_end(output)
        else:
            await run_manager.on_chain_end(output)
        return output


class RunnableLambda(Runnable):
    """Runnable wrapping a plain function or coroutine function.

    The function may declare a ``config`` parameter to receive the config of
    the current run. Sync functions run in a worker thread.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        run_type: str = "chain",
        name: Optional[str] = None,
    ) -> None:
        if run_type not in ("chain", "tool"):
            raise utils.CallTreeConfigurationError(
                f"RunnableLambda run_type must be 'chain' or 'tool', got {run_type!r}"
            )
        self.func = func
        self.run_type = run_type
        self.name = name or utils._get_function_name(func)

    def __repr__(self) -> str:
        return f"RunnableLambda({self.name})"

    async def _ainvoke(self, input: Any, config: RunnableConfig) -> Any:
        kwargs = {"config": config} if _accepts_config(self.func) else {}
        if inspect.iscoroutinefunction(self.func):
            return await self.func(input, **kwargs)
        return await aio_to_thread(self.func, input, **kwargs)

    async def ainvoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        return await self._acall_with_config(
            self._ainvoke, input, config, run_type=self.run_type
        )


class RunnableSequence(Runnable):
    """Runs its steps in order, feeding each output to the next step."""

    def __init__(self, *steps: Runnable, name: Optional[str] = None) -> None:
        flat: list[Runnable] = []
        for step in steps:
            if isinstance(step, RunnableSequence):
                flat.extend(step.steps)
            else:
                flat.append(step)
        if len(flat) < 2:
            raise utils.CallTreeConfigurationError(
                f"RunnableSequence must have at least 2 steps, got {len(flat)}"
            )
        self.steps = flat
        self.name = name

    def __repr__(self) -> str:
        return " | ".join(repr(step) for step in self.steps)

    async def _ainvoke(self, input: Any, config: RunnableConfig) -> Any:
        for step in self.steps:
            input = await step.ainvoke(input, config)
        return input

    async def ainvoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        return await self._acall_with_config(self._ainvoke, input, config)


def coerce_to_runnable(thing: Union[Runnable, Callable[..., Any]]) -> Runnable:
    """Coerce a runnable-like object into a Runnable."""
    from calltree.run_helpers import is_traceable_function
    from calltree.runnables.traceable import RunnableTraceable

    if isinstance(thing, Runnable):
        return thing
    if is_traceable_function(thing):
        return RunnableTraceable(thing)
    if callable(thing):
        return RunnableLambda(thing)
    raise TypeError(
        f"Expected a Runnable or callable, got an unsupported type: {type(thing)}"
    )
