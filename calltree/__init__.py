"""Run tracking for instrumented call trees."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from calltree.async_client import AsyncClient
    from calltree.client import Client
    from calltree.run_helpers import get_current_run_tree, traceable, tracing_context
    from calltree.run_trees import RunTree
    from calltree.runnables.traceable import RunnableTraceable
    from calltree.tracers.tracer import CallTreeTracer


def __getattr__(name: str) -> Any:
    if name == "__version__":
        try:
            from importlib import metadata

            return metadata.version(__package__)
        except metadata.PackageNotFoundError:
            return ""
    elif name == "Client":
        from calltree.client import Client

        return Client
    elif name == "AsyncClient":
        from calltree.async_client import AsyncClient

        return AsyncClient
    elif name == "RunTree":
        from calltree.run_trees import RunTree

        return RunTree
    elif name == "traceable":
        from calltree.run_helpers import traceable

        return traceable
    elif name == "tracing_context":
        from calltree.run_helpers import tracing_context

        return tracing_context
    elif name == "get_current_run_tree":
        from calltree.run_helpers import get_current_run_tree

        return get_current_run_tree
    elif name == "CallTreeTracer":
        from calltree.tracers.tracer import CallTreeTracer

        return CallTreeTracer
    elif name == "RunnableTraceable":
        from calltree.runnables.traceable import RunnableTraceable

        return RunnableTraceable

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AsyncClient",
    "CallTreeTracer",
    "Client",
    "RunTree",
    "RunnableTraceable",
    "__version__",
    "get_current_run_tree",
    "traceable",
    "tracing_context",
]


def __dir__() -> list[str]:
    return __all__
