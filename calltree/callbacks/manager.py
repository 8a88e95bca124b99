"""Async callback manager and run managers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional, Union
from uuid import UUID

from calltree import utils
from calltree._internal._uuid import uuid7
from calltree.callbacks.base import AsyncCallbackHandler

if TYPE_CHECKING:
    from calltree.run_trees import RunTree

logger = logging.getLogger(__name__)

Callbacks = Optional[Union[list[AsyncCallbackHandler], "AsyncCallbackManager"]]


async def _ahandle_event_for_handler(
    handler: AsyncCallbackHandler,
    event_name: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        event = getattr(handler, event_name, None)
        if event is None:
            return
        await event(*args, **kwargs)
    except Exception as e:
        logger.warning(
            f"Error in {handler.__class__.__name__}.{event_name} callback:"
            f" {repr(e)}"
        )
        if handler.raise_error:
            raise


async def _ahandle_event(
    handlers: list[AsyncCallbackHandler],
    event_name: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Dispatch an event to every handler concurrently."""
    await asyncio.gather(
        *(
            _ahandle_event_for_handler(handler, event_name, *args, **kwargs)
            for handler in handlers
        )
    )


class BaseRunManager:
    """Shared state of callback managers."""

    def __init__(
        self,
        *,
        handlers: Optional[list[AsyncCallbackHandler]] = None,
        inheritable_handlers: Optional[list[AsyncCallbackHandler]] = None,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        inheritable_tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        inheritable_metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.handlers = handlers or []
        self.inheritable_handlers = inheritable_handlers or []
        self.parent_run_id = parent_run_id
        self.tags = tags or []
        self.inheritable_tags = inheritable_tags or []
        self.metadata = metadata or {}
        self.inheritable_metadata = inheritable_metadata or {}


class AsyncCallbackManager(BaseRunManager):
    """Dispatches run start events and hands out run managers."""

    def add_handler(self, handler: AsyncCallbackHandler, inherit: bool = True) -> None:
        """Add a handler, optionally passing it on to child runs."""
        if handler not in self.handlers:
            self.handlers.append(handler)
        if inherit and handler not in self.inheritable_handlers:
            self.inheritable_handlers.append(handler)

    def add_tags(self, tags: list[str], inherit: bool = True) -> None:
        for tag in tags:
            if tag in self.tags:
                self.remove_tags([tag])
        self.tags.extend(tags)
        if inherit:
            self.inheritable_tags.extend(tags)

    def remove_tags(self, tags: list[str]) -> None:
        for tag in tags:
            if tag in self.tags:
                self.tags.remove(tag)
            if tag in self.inheritable_tags:
                self.inheritable_tags.remove(tag)

    def add_metadata(self, metadata: dict[str, Any], inherit: bool = True) -> None:
        self.metadata.update(metadata)
        if inherit:
            self.inheritable_metadata.update(metadata)

    def copy(self) -> AsyncCallbackManager:
        """Return a shallow copy with its own handler, tag and metadata lists."""
        return self.__class__(
            handlers=self.handlers.copy(),
            inheritable_handlers=self.inheritable_handlers.copy(),
            parent_run_id=self.parent_run_id,
            tags=self.tags.copy(),
            inheritable_tags=self.inheritable_tags.copy(),
            metadata=self.metadata.copy(),
            inheritable_metadata=self.inheritable_metadata.copy(),
        )

    async def on_chain_start(
        self,
        serialized: Optional[dict[str, Any]],
        inputs: dict[str, Any],
        run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> AsyncCallbackManagerForChainRun:
        """Run when a chain starts running.

        Returns:
            The run manager for the new chain run.
        """
        run_id = run_id or uuid7()
        await _ahandle_event(
            self.handlers,
            "on_chain_start",
            serialized,
            inputs,
            run_id=run_id,
            parent_run_id=self.parent_run_id,
            tags=self.tags,
            metadata=self.metadata,
            **kwargs,
        )
        return AsyncCallbackManagerForChainRun(
            run_id=run_id,
            handlers=self.handlers,
            inheritable_handlers=self.inheritable_handlers,
            parent_run_id=self.parent_run_id,
            tags=self.tags,
            inheritable_tags=self.inheritable_tags,
            metadata=self.metadata,
            inheritable_metadata=self.inheritable_metadata,
        )

    async def on_tool_start(
        self,
        serialized: Optional[dict[str, Any]],
        inputs: dict[str, Any],
        run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> AsyncCallbackManagerForToolRun:
        """Run when a tool starts running.

        Returns:
            The run manager for the new tool run.
        """
        run_id = run_id or uuid7()
        await _ahandle_event(
            self.handlers,
            "on_tool_start",
            serialized,
            inputs,
            run_id=run_id,
            parent_run_id=self.parent_run_id,
            tags=self.tags,
            metadata=self.metadata,
            **kwargs,
        )
        return AsyncCallbackManagerForToolRun(
            run_id=run_id,
            handlers=self.handlers,
            inheritable_handlers=self.inheritable_handlers,
            parent_run_id=self.parent_run_id,
            tags=self.tags,
            inheritable_tags=self.inheritable_tags,
            metadata=self.metadata,
            inheritable_metadata=self.inheritable_metadata,
        )

    @classmethod
    def configure(
        cls,
        inheritable_callbacks: Callbacks = None,
        local_callbacks: Callbacks = None,
        inheritable_tags: Optional[list[str]] = None,
        local_tags: Optional[list[str]] = None,
        inheritable_metadata: Optional[dict[str, Any]] = None,
        local_metadata: Optional[dict[str, Any]] = None,
    ) -> AsyncCallbackManager:
        """Configure the callback manager for a new run.

        When called inside a ``traceable`` function, the current run tree
        becomes the parent of new runs unless the inherited parent is already
        nested deeper. Tracers among the handlers import that run tree, and a
        ``CallTreeTracer`` is added when tracing is enabled and none is set.

        Args:
            inheritable_callbacks: Callbacks passed on to child runs.
            local_callbacks: Callbacks for this run only.
            inheritable_tags: Tags passed on to child runs.
            local_tags: Tags for this run only.
            inheritable_metadata: Metadata passed on to child runs.
            local_metadata: Metadata for this run only.

        Returns:
            The configured callback manager.
        """
        from calltree.run_helpers import get_current_run_tree
        from calltree.tracers.tracer import CallTreeTracer

        if isinstance(inheritable_callbacks, AsyncCallbackManager):
            manager = inheritable_callbacks.copy()
        else:
            handlers = list(inheritable_callbacks or [])
            manager = cls(handlers=handlers, inheritable_handlers=list(handlers))
        if isinstance(local_callbacks, AsyncCallbackManager):
            local_handlers = local_callbacks.handlers
        else:
            local_handlers = list(local_callbacks or [])
        for handler in local_handlers:
            manager.add_handler(handler, inherit=False)
        if inheritable_tags or local_tags:
            manager.add_tags(inheritable_tags or [])
            manager.add_tags(local_tags or [], inherit=False)
        if inheritable_metadata or local_metadata:
            manager.add_metadata(inheritable_metadata or {})
            manager.add_metadata(local_metadata or {}, inherit=False)

        run_tree = get_current_run_tree()
        tracers = [h for h in manager.handlers if isinstance(h, CallTreeTracer)]
        if run_tree is not None and (
            manager.parent_run_id is None
            or _is_nested_under(run_tree, manager.parent_run_id, tracers)
        ):
            manager.parent_run_id = run_tree.id
            for tracer in tracers:
                tracer.update_from_run_tree(run_tree)
        if not tracers and utils.tracing_is_enabled():
            manager.add_handler(CallTreeTracer(run_tree=run_tree), inherit=True)
        return manager


def _is_nested_under(
    run_tree: RunTree, parent_run_id: UUID, tracers: list[Any]
) -> bool:
    """Whether ``run_tree`` sits strictly below the run ``parent_run_id``."""
    for tracer in tracers:
        parent_run = tracer.run_map.get(parent_run_id)
        if parent_run is not None and parent_run.dotted_order:
            return run_tree.dotted_order.startswith(parent_run.dotted_order + ".")
    return False


class AsyncParentRunManager(BaseRunManager):
    """Run manager for a run that may have children."""

    def __init__(self, *, run_id: UUID, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.run_id = run_id

    def get_child(self, tag: Optional[str] = None) -> AsyncCallbackManager:
        """Get a child callback manager.

        Args:
            tag: A tag to add to the child runs.

        Returns:
            The child callback manager.
        """
        manager = AsyncCallbackManager(
            handlers=list(self.inheritable_handlers),
            inheritable_handlers=list(self.inheritable_handlers),
            parent_run_id=self.run_id,
            tags=list(self.inheritable_tags),
            inheritable_tags=list(self.inheritable_tags),
            metadata=dict(self.inheritable_metadata),
            inheritable_metadata=dict(self.inheritable_metadata),
        )
        if tag is not None:
            manager.add_tags([tag], inherit=False)
        return manager


class AsyncCallbackManagerForChainRun(AsyncParentRunManager):
    """Async callback manager for chain run."""

    async def on_chain_end(self, outputs: Any, **kwargs: Any) -> None:
        """Run when a chain ends running."""
        await _ahandle_event(
            self.handlers,
            "on_chain_end",
            outputs,
            run_id=self.run_id,
            parent_run_id=self.parent_run_id,
            **kwargs,
        )

    async def on_chain_error(self, error: BaseException, **kwargs: Any) -> None:
        """Run when a chain errors."""
        await _ahandle_event(
            self.handlers,
            "on_chain_error",
            error,
            run_id=self.run_id,
            parent_run_id=self.parent_run_id,
            **kwargs,
        )


class AsyncCallbackManagerForToolRun(AsyncParentRunManager):
    """Async callback manager for tool run."""

    async def on_tool_end(self, output: Any, **kwargs: Any) -> None:
        """Run when a tool ends running."""
        await _ahandle_event(
            self.handlers,
            "on_tool_end",
            output,
            run_id=self.run_id,
            parent_run_id=self.parent_run_id,
            **kwargs,
        )

    async def on_tool_error(self, error: BaseException, **kwargs: Any) -> None:
        """Run when a tool errors."""
        await _ahandle_event(
            self.handlers,
            "on_tool_error",
            error,
            run_id=self.run_id,
            parent_run_id=self.parent_run_id,
            **kwargs,
        )
