"""Runnables: composable, traced units of work."""

from calltree.runnables.base import (
    Runnable,
    RunnableLambda,
    RunnableSequence,
    coerce_to_runnable,
)
from calltree.runnables.config import (
    RunnableConfig,
    ensure_config,
    get_async_callback_manager_for_config,
    merge_configs,
    patch_config,
)
from calltree.runnables.traceable import RunnableTraceable

__all__ = [
    "Runnable",
    "RunnableConfig",
    "RunnableLambda",
    "RunnableSequence",
    "RunnableTraceable",
    "coerce_to_runnable",
    "ensure_config",
    "get_async_callback_manager_for_config",
    "merge_configs",
    "patch_config",
]
