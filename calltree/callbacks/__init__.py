"""Callback handlers and managers."""

from calltree.callbacks.base import AsyncCallbackHandler
from calltree.callbacks.manager import (
    AsyncCallbackManager,
    AsyncCallbackManagerForChainRun,
    AsyncCallbackManagerForToolRun,
)

__all__ = [
    "AsyncCallbackHandler",
    "AsyncCallbackManager",
    "AsyncCallbackManagerForChainRun",
    "AsyncCallbackManagerForToolRun",
]
