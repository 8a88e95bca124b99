"""Decorator for creating a run tree from functions."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import inspect
import logging
import warnings
from collections.abc import Generator, Mapping
from contextvars import copy_context
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    Literal,
    Optional,
    TypedDict,
    TypeVar,
    Union,
    cast,
)

from typing_extensions import ParamSpec, TypeGuard

from calltree import client as ct_client
from calltree import run_trees, utils
from calltree._internal import _aiter as aitertools
from calltree._internal import _context

if TYPE_CHECKING:
    from calltree.tracers.run_map import RunMap

LOGGER = logging.getLogger(__name__)

_CONTEXT_KEYS: dict[str, contextvars.ContextVar] = {
    "parent": _context._PARENT_RUN_TREE,
    "project_name": _context._PROJECT_NAME,
    "tags": _context._TAGS,
    "metadata": _context._METADATA,
    "enabled": _context._TRACING_ENABLED,
    "client": _context._CLIENT,
}

_EXCLUDED_FRAME_FNAME = "calltree/run_helpers.py"

_VALID_RUN_TYPES = {
    "tool",
    "chain",
    "llm",
    "retriever",
    "embedding",
    "prompt",
    "parser",
}


def get_current_run_tree() -> Optional[run_trees.RunTree]:
    """Get the current run tree."""
    return _context._PARENT_RUN_TREE.get()


def get_tracing_context(
    context: Optional[contextvars.Context] = None,
) -> dict[str, Any]:
    """Get the current tracing context."""
    if context is None:
        return {k: v.get() for k, v in _CONTEXT_KEYS.items()}
    return {k: context.get(v) for k, v in _CONTEXT_KEYS.items()}


@contextlib.contextmanager
def tracing_context(
    *,
    project_name: Optional[str] = None,
    tags: Optional[list[str]] = None,
    metadata: Optional[dict[str, Any]] = None,
    parent: Optional[Union[run_trees.RunTree, str, Literal[False]]] = None,
    enabled: Optional[bool] = None,
    client: Optional[ct_client.Client] = None,
    **kwargs: Any,
) -> Generator[None, None, None]:
    """Set the tracing context for a block of code.

    Args:
        project_name: The name of the project to log the run to. Defaults to None.
        tags: The tags to add to the run. Defaults to None.
        metadata: The metadata to add to the run. Defaults to None.
        parent: The parent run to use for the context. Can be a RunTree or a
            dotted order string. Pass False to start a fresh trace.
            Defaults to None.
        enabled: Whether tracing is enabled. Defaults to None, meaning it will use
            the current context value or environment variables.
        client: The client to use for logging runs. Defaults to None.
    """
    if kwargs:
        warnings.warn(
            f"Unrecognized keyword arguments: {kwargs}.",
            DeprecationWarning,
        )
    current_context = get_tracing_context()
    parent_run = (
        _get_parent_run({"parent": parent, "client": client})
        if parent is not False
        else None
    )
    if parent_run is not None:
        tags = sorted(set(tags or []) | set(parent_run.tags or []))
        metadata = {**parent_run.metadata, **(metadata or {})}
    enabled = enabled if enabled is not None else current_context.get("enabled")
    _set_tracing_context(
        {
            "parent": parent_run,
            "project_name": project_name,
            "tags": tags,
            "metadata": metadata,
            "enabled": enabled,
            "client": client,
        }
    )
    try:
        yield
    finally:
        _set_tracing_context(current_context)


class CallTreeExtra(TypedDict, total=False):
    """Any additional info to be injected into the run dynamically."""

    name: Optional[str]
    """Optional name for the run."""
    reference_example_id: Optional[ct_client.ID_TYPE]
    """Optional ID of a reference example."""
    run_extra: Optional[dict]
    """Optional additional run information."""
    parent: Optional[Union[run_trees.RunTree, str]]
    """Optional parent run, either a RunTree or a dotted order string."""
    run_tree: Optional[run_trees.RunTree]
    """Optional run tree to nest under."""
    project_name: Optional[str]
    """Optional name of the project."""
    metadata: Optional[dict[str, Any]]
    """Optional metadata for the run."""
    tags: Optional[list[str]]
    """Optional list of tags for the run."""
    run_id: Optional[ct_client.ID_TYPE]
    """Optional ID for the run."""
    client: Optional[ct_client.Client]
    """Optional runs API client."""


R = TypeVar("R", covariant=True)
P = ParamSpec("P")


class _TraceableContainer(TypedDict, total=False):
    """Typed response when initializing a run a traceable."""

    new_run: Optional[run_trees.RunTree]
    project_name: Optional[str]
    send: bool
    context: contextvars.Context
    run_maps: list[RunMap]


class _ContainerInput(TypedDict, total=False):
    """Options fixed when a function is decorated."""

    name: Optional[str]
    metadata: Optional[dict[str, Any]]
    tags: Optional[list[str]]
    client: Optional[ct_client.Client]
    project_name: Optional[str]
    run_type: ct_client.RUN_TYPE_T
    process_inputs: Optional[Callable[[dict], dict]]


class TraceableFunction(Generic[P, R]):
    """A function instrumented by :func:`traceable`.

    Calling it runs the wrapped function inside a new run nested under the
    current run tree. Accepts two extra keyword arguments on every call:
    ``calltree_extra`` (a :class:`CallTreeExtra`) and ``config`` (a runnable
    config, forwarded only when the wrapped function declares it).
    """

    def __init__(
        self,
        func: Callable[P, R],
        container_input: _ContainerInput,
        outputs_processor: Optional[Callable[..., dict]] = None,
    ) -> None:
        functools.update_wrapper(self, func)
        self.func = func
        self.container_input = container_input
        self.outputs_processor = outputs_processor
        self.is_async = inspect.iscoroutinefunction(func)
        func_sig = inspect.signature(func)
        self._signature = func_sig
        self._accepts_run_tree = func_sig.parameters.get("run_tree") is not None
        self._accepts_config = func_sig.parameters.get("config") is not None

    def __repr__(self) -> str:
        return f"TraceableFunction({utils._get_function_name(self.func)})"

    def __get__(self, instance: Any, owner: Optional[type] = None) -> Any:
        if instance is None:
            return self
        return functools.partial(self, instance)

    def __call__(
        self,
        *args: Any,
        calltree_extra: Optional[CallTreeExtra] = None,
        **kwargs: Any,
    ) -> Any:
        if self.is_async:
            return self._acall(*args, calltree_extra=calltree_extra, **kwargs)
        config = kwargs.get("config")
        if not self._accepts_config:
            kwargs.pop("config", None)
        run_container = _setup_run(
            self.func,
            container_input=self.container_input,
            calltree_extra=calltree_extra,
            config=config,
            args=args,
            kwargs=kwargs,
        )
        try:
            if self._accepts_run_tree:
                kwargs["run_tree"] = run_container["new_run"]
            function_result = run_container["context"].run(self.func, *args, **kwargs)
        except BaseException as e:
            _cleanup_traceback(e)
            self._on_run_end(run_container, error=e)
            raise
        self._on_run_end(run_container, outputs=function_result)
        return function_result

    async def _acall(
        self,
        *args: Any,
        calltree_extra: Optional[CallTreeExtra] = None,
        **kwargs: Any,
    ) -> Any:
        config = kwargs.get("config")
        if not self._accepts_config:
            kwargs.pop("config", None)
        run_container = await aitertools.aio_to_thread(
            _setup_run,
            self.func,
            container_input=self.container_input,
            calltree_extra=calltree_extra,
            config=config,
            args=args,
            kwargs=kwargs,
        )
        try:
            if self._accepts_run_tree:
                kwargs["run_tree"] = run_container["new_run"]
            fr_coro = self.func(*args, **kwargs)
            if aitertools.asyncio_accepts_context():
                function_result = await asyncio.create_task(  # type: ignore[call-arg]
                    fr_coro, context=run_container["context"]
                )
            else:
                # Python < 3.11
                with tracing_context(**get_tracing_context(run_container["context"])):
                    function_result = await fr_coro
        except BaseException as e:
            # shield from cancellation, given we're catching all exceptions
            _cleanup_traceback(e)
            await asyncio.shield(
                aitertools.aio_to_thread(self._on_run_end, run_container, error=e)
            )
            raise
        await aitertools.aio_to_thread(
            self._on_run_end, run_container, outputs=function_result
        )
        return function_result

    def _on_run_end(
        self,
        container: _TraceableContainer,
        outputs: Optional[Any] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        try:
            if self.outputs_processor is not None and error is None:
                outputs = self.outputs_processor(outputs)
            _container_end(container, outputs=outputs, error=error)
        except BaseException as e:
            LOGGER.warning(f"Unable to process trace outputs: {repr(e)}")


def is_traceable_function(func: Any) -> TypeGuard[TraceableFunction]:
    """Check if a function is @traceable decorated."""
    return isinstance(func, TraceableFunction) or (
        isinstance(func, functools.partial) and isinstance(func.func, TraceableFunction)
    )


def is_async(func: Callable) -> bool:
    """Inspect function or wrapped function to see if it is async."""
    if isinstance(func, functools.partial):
        func = func.func
    if isinstance(func, TraceableFunction):
        return func.is_async
    return inspect.iscoroutinefunction(func) or (
        hasattr(func, "__wrapped__") and inspect.iscoroutinefunction(func.__wrapped__)
    )


def traceable(
    *args: Any,
    **kwargs: Any,
) -> Union[TraceableFunction, Callable[[Callable], TraceableFunction]]:
    """Trace a function, recording each call as a run.

    Args:
        run_type: The type of run (span) to create. Examples: llm, chain, tool,
            prompt, retriever, etc. Defaults to "chain".
        name: The name of the run. Defaults to the function name.
        metadata: The metadata to add to the run. Defaults to None.
        tags: The tags to add to the run. Defaults to None.
        client: The client to use for sending the run. Defaults to
            None, which will use the default client.
        project_name: The name of the project to log the run to. Defaults to None,
            which will use the default project.
        process_inputs: Custom serialization / processing function for inputs.
            Defaults to None.
        process_outputs: Custom serialization / processing function for outputs.
            Defaults to None.

    Returns:
        A :class:`TraceableFunction` wrapping the decorated function.

    Examples:
        .. code-block:: python

            @traceable
            def my_function(x: float, y: float) -> float:
                return x + y


            @traceable(name="CustomName", run_type="tool")
            async def another_function(a: float, b: float) -> float:
                return a * b


            my_function(5, 6, calltree_extra={"metadata": {"version": "1.0"}})
    """
    run_type = cast(
        ct_client.RUN_TYPE_T,
        (
            args[0]
            if args and isinstance(args[0], str)
            else (kwargs.pop("run_type", None) or "chain")
        ),
    )
    if run_type not in _VALID_RUN_TYPES:
        warnings.warn(
            f"Unrecognized run_type: {run_type}. Must be one of: {_VALID_RUN_TYPES}."
            f" Did you mean @traceable(name='{run_type}')?"
        )
    if len(args) > 1:
        warnings.warn(
            "The `traceable()` decorator only accepts one positional argument, "
            "which should be the run_type. All other arguments should be passed "
            "as keyword arguments."
        )
    container_input = _ContainerInput(
        name=kwargs.pop("name", None),
        metadata=kwargs.pop("metadata", None),
        tags=kwargs.pop("tags", None),
        client=kwargs.pop("client", None),
        project_name=kwargs.pop("project_name", None),
        run_type=run_type,
        process_inputs=kwargs.pop("process_inputs", None),
    )
    outputs_processor = kwargs.pop("process_outputs", None)

    if kwargs:
        warnings.warn(
            f"The following keyword arguments are not recognized and will be ignored: "
            f"{sorted(kwargs.keys())}.",
            DeprecationWarning,
        )

    def decorator(func: Callable) -> TraceableFunction:
        return TraceableFunction(func, container_input, outputs_processor)

    # If the decorator is called with no arguments, then it's being used as a
    # decorator, so we return the decorator function
    if len(args) == 1 and callable(args[0]) and not kwargs:
        return decorator(args[0])
    # Else it's being used as a decorator factory, so we return the decorator
    return decorator


def _container_end(
    container: _TraceableContainer,
    outputs: Optional[Any] = None,
    error: Optional[BaseException] = None,
) -> None:
    """End the run."""
    run_tree = container.get("new_run")
    if run_tree is None:
        # Tracing not enabled
        return
    if isinstance(outputs, dict):
        dict_outputs = outputs
    else:
        dict_outputs = {"output": outputs}
    if error:
        stacktrace = utils._format_exc()
        error_repr = f"{repr(error)}\n\n{stacktrace}"
    else:
        error_repr = None
    run_tree.end(outputs=None if error else dict_outputs, error=error_repr)
    for run_map in container.get("run_maps") or []:
        run_map.raise_child_execution_order(
            run_tree.parent_run_id, run_tree.child_execution_order
        )
    if container.get("send"):
        try:
            run_tree.patch()
        except BaseException as e:
            LOGGER.error(f"Failed to patch run {run_tree.id}: {e}")


def _get_parent_run(
    calltree_extra: CallTreeExtra,
    config: Optional[dict] = None,
) -> Optional[run_trees.RunTree]:
    parent = calltree_extra.get("parent")
    if isinstance(parent, run_trees.RunTree):
        return parent
    if isinstance(parent, str):
        return run_trees.RunTree.from_dotted_order(
            parent,
            client=calltree_extra.get("client"),
            project_name=_get_project_name(calltree_extra.get("project_name")),
        )
    run_tree = calltree_extra.get("run_tree")
    if run_tree:
        return run_tree
    crt = get_current_run_tree()
    if rt := run_trees.RunTree.from_runnable_config(config):
        # Nesting: runnable -> traceable -> traceable should keep the inner
        # traceable under the outer one rather than making them siblings
        if (
            not crt
            or (config is not None and config.get("callbacks"))
            or rt.dotted_order > crt.dotted_order
        ):
            return rt
    return crt


def _register_with_tracers(
    config: Optional[dict], run_tree: run_trees.RunTree
) -> list[RunMap]:
    """Record ``run_tree`` in the tracers of ``config`` that hold its parent.

    The tracer's record of the parent then counts the new run, so runs the
    tracer starts next under the same parent are ordered after it.

    Returns:
        The run maps the run was recorded in.
    """
    from calltree.callbacks.manager import AsyncCallbackManager
    from calltree.runnables.config import RunnableConfig, ensure_config
    from calltree.tracers import _tree_merge
    from calltree.tracers.tracer import CallTreeTracer

    if run_tree.parent_run_id is None:
        return []
    callbacks = ensure_config(cast(Optional[RunnableConfig], config)).get(
        "callbacks"
    )
    if isinstance(callbacks, AsyncCallbackManager):
        handlers = callbacks.handlers
    else:
        handlers = list(callbacks or [])
    run_maps = []
    for handler in handlers:
        if (
            isinstance(handler, CallTreeTracer)
            and run_tree.parent_run_id in handler.run_map
        ):
            _tree_merge.hydrate(handler.run_map, run_tree)
            run_maps.append(handler.run_map)
    return run_maps


def _get_project_name(project_name: Optional[str]) -> Optional[str]:
    prt = _context._PARENT_RUN_TREE.get()
    return (
        # Maintain tree consistency first
        _context._PROJECT_NAME.get()
        or (prt.session_name if prt else None)
        # Then check the passed in value
        or project_name
        # fallback to the default for the environment
        or utils.get_tracer_project()
    )


def _setup_run(
    func: Callable,
    container_input: _ContainerInput,
    calltree_extra: Optional[CallTreeExtra] = None,
    config: Optional[dict] = None,
    args: Any = None,
    kwargs: Any = None,
) -> _TraceableContainer:
    """Create a new run, or a child of the resolved parent run."""
    metadata = container_input.get("metadata")
    tags = container_input.get("tags")
    client = container_input.get("client")
    run_type = container_input.get("run_type") or "chain"
    calltree_extra = calltree_extra or CallTreeExtra()
    name = calltree_extra.get("name") or container_input.get("name")
    client_ = calltree_extra.get("client", client) or _context._CLIENT.get()
    parent_run_ = _get_parent_run({**calltree_extra, "client": client_}, config)
    selected_project = (
        _context._PROJECT_NAME.get()  # From parent trace
        or (parent_run_.session_name if parent_run_ else None)
        or calltree_extra.get("project_name")  # at invocation time
        or container_input.get("project_name")  # at decorator time
        or utils.get_tracer_project()  # default
    )
    if not parent_run_ and not utils.tracing_is_enabled():
        utils.log_once(
            logging.DEBUG,
            "Tracing is not enabled, calling the original function.",
        )
        return _TraceableContainer(
            new_run=None,
            project_name=selected_project,
            send=False,
            context=copy_context(),
        )
    id_ = calltree_extra.get("run_id")
    name_ = name or utils._get_function_name(func)
    extra_inner = dict(calltree_extra.get("run_extra") or {})
    outer_metadata = _context._METADATA.get()
    outer_tags = _context._TAGS.get()
    context = copy_context()
    metadata_ = {
        **(calltree_extra.get("metadata") or {}),
        **(outer_metadata or {}),
    }
    context.run(_context._METADATA.set, metadata_)
    metadata_.update(metadata or {})
    metadata_["ct_method"] = "traceable"
    extra_inner["metadata"] = metadata_
    inputs = _get_inputs_safe(inspect.signature(func), *args, **kwargs)
    process_inputs = container_input.get("process_inputs")
    if process_inputs:
        try:
            inputs = process_inputs(inputs)
        except BaseException as e:
            LOGGER.error(f"Failed to filter inputs for {name_}: {e}")
    tags_ = (calltree_extra.get("tags") or []) + (outer_tags or [])
    context.run(_context._TAGS.set, tags_)
    tags_ += tags or []
    if parent_run_ is not None:
        new_run = parent_run_.create_child(
            name=name_,
            run_type=run_type,
            inputs=inputs,
            tags=tags_,
            extra=extra_inner,
            run_id=id_,
        )
        run_maps = _register_with_tracers(config, new_run)
    else:
        new_run = run_trees.RunTree(
            id=ct_client._ensure_uuid(id_),
            name=name_,
            inputs=inputs,
            run_type=run_type,
            reference_example_id=ct_client._ensure_uuid(
                calltree_extra.get("reference_example_id"), accept_null=True
            ),
            project_name=selected_project,
            extra=extra_inner,
            tags=tags_,
            client=client_,
        )
        run_maps = []
    # A parent run means some caller is tracing, unless tracing is switched
    # off for this context explicitly
    send = _context._TRACING_ENABLED.get() is not False
    if send:
        try:
            new_run.post()
        except BaseException as e:
            LOGGER.error(f"Failed to post run {new_run.id}: {e}")
    response_container = _TraceableContainer(
        new_run=new_run,
        project_name=selected_project,
        send=send,
        context=context,
        run_maps=run_maps,
    )
    context.run(_context._PROJECT_NAME.set, response_container["project_name"])
    context.run(_context._PARENT_RUN_TREE.set, response_container["new_run"])
    return response_container


def _get_inputs(
    signature: inspect.Signature, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    """Return a dictionary of inputs from the function signature."""
    bound = signature.bind_partial(*args, **kwargs)
    bound.apply_defaults()
    arguments = dict(bound.arguments)
    arguments.pop("self", None)
    arguments.pop("cls", None)
    arguments.pop("config", None)
    arguments.pop("run_tree", None)
    for param_name, param in signature.parameters.items():
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            # Update with the **kwargs, and remove the original entry
            # This is to help flatten out keyword arguments
            if param_name in arguments:
                arguments.update(arguments[param_name])
                arguments.pop(param_name)

    return arguments


def _get_inputs_safe(
    signature: inspect.Signature, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    try:
        return _get_inputs(signature, *args, **kwargs)
    except BaseException as e:
        LOGGER.debug(f"Failed to get inputs for {signature}: {e}")
        return {"args": args, "kwargs": kwargs}


def _set_tracing_context(context: Optional[Mapping[str, Any]] = None):
    """Set the tracing context."""
    if context is None:
        for v in _CONTEXT_KEYS.values():
            v.set(None)
        return
    for k, v in context.items():
        var = _CONTEXT_KEYS[k]
        var.set(v)


def _cleanup_traceback(e: BaseException):
    tb_ = e.__traceback__
    if tb_:
        while tb_.tb_next is not None and tb_.tb_frame.f_code.co_filename.endswith(
            _EXCLUDED_FRAME_FNAME
        ):
            tb_ = tb_.tb_next
        e.__traceback__ = tb_
