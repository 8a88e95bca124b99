"""Shared context (ContextVars and global defaults) that configure tracing."""

import contextvars
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from calltree.client import Client
    from calltree.run_trees import RunTree

_PROJECT_NAME = contextvars.ContextVar[Optional[str]]("_PROJECT_NAME", default=None)
_TAGS = contextvars.ContextVar[Optional[list[str]]]("_TAGS", default=None)
_METADATA = contextvars.ContextVar[Optional[dict[str, Any]]]("_METADATA", default=None)

_TRACING_ENABLED = contextvars.ContextVar[Optional[bool]](
    "_TRACING_ENABLED", default=None
)
_CLIENT = contextvars.ContextVar[Optional["Client"]]("_CLIENT", default=None)
_PARENT_RUN_TREE = contextvars.ContextVar[Optional["RunTree"]](
    "_PARENT_RUN_TREE", default=None
)

# Process-wide default, set once at startup (before asyncio.run, etc.)
_GLOBAL_TRACING_ENABLED: Optional[bool] = None
