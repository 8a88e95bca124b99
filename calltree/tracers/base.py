"""Base tracer that turns callback events into run records."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID

from calltree import utils
from calltree.callbacks.base import AsyncCallbackHandler
from calltree.run_trees import _create_current_dotted_order
from calltree.tracers.run_map import RunMap
from calltree.tracers.schemas import Run

logger = logging.getLogger(__name__)


def _dotted_order_segment(run: Run) -> str:
    """Render the dotted order segment of ``run``, as run trees do."""
    return _create_current_dotted_order(run.start_time, run.id, run.execution_order)


def _outputs_dict(outputs: Any) -> dict[str, Any]:
    return outputs if isinstance(outputs, dict) else {"output": outputs}


class AsyncBaseTracer(AsyncCallbackHandler, ABC):
    """Base interface for async tracers."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.run_map = RunMap()

    @abstractmethod
    async def _persist_run(self, run: Run) -> None:
        """Persist a finished root run."""

    async def on_run_create(self, run: Run) -> None:
        """Process a run upon creation."""

    async def on_run_update(self, run: Run) -> None:
        """Process a run upon update."""

    def _start_trace(self, run: Run) -> None:
        parent_run = (
            self.run_map.get(run.parent_run_id)
            if run.parent_run_id is not None
            else None
        )
        if parent_run is not None:
            run.execution_order = parent_run.child_execution_order + 1
            run.child_execution_order = run.execution_order
            run.trace_id = parent_run.trace_id
            if parent_run.dotted_order:
                run.dotted_order = (
                    parent_run.dotted_order + "." + _dotted_order_segment(run)
                )
            else:
                run.dotted_order = _dotted_order_segment(run)
        else:
            if run.parent_run_id is not None:
                logger.debug(
                    f"Parent run {run.parent_run_id} not found for run {run.id};"
                    " treating it as the root of a new trace."
                )
            run.execution_order = 1
            run.child_execution_order = 1
            run.trace_id = run.id
            run.dotted_order = _dotted_order_segment(run)
        self.run_map.add_child(run)

    async def _end_trace(self, run: Run) -> None:
        parent_run = (
            self.run_map.get(run.parent_run_id)
            if run.parent_run_id is not None
            else None
        )
        if parent_run is None:
            await self._persist_run(run)
        else:
            parent_run.child_execution_order = max(
                parent_run.child_execution_order,
                run.child_execution_order,
            )

    def _get_run(self, run_id: UUID) -> Run:
        run = self.run_map.get(run_id)
        if run is None:
            raise utils.CallTreeTracerError(f"No indexed run ID {run_id}.")
        return run

    async def _on_start(
        self,
        run_type: str,
        serialized: Optional[dict[str, Any]],
        inputs: dict[str, Any],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Run:
        start_time = datetime.now(timezone.utc)
        run = Run(
            id=run_id,
            parent_run_id=parent_run_id,
            serialized=serialized,
            inputs=inputs,
            extra={"metadata": dict(metadata)} if metadata else {},
            events=[{"name": "start", "time": start_time}],
            start_time=start_time,
            run_type=run_type,
            tags=list(tags or []),
            name=name or (serialized or {}).get("name") or "Unnamed",
        )
        self._start_trace(run)
        await self.on_run_create(run)
        return run

    async def _on_end(
        self,
        run_id: UUID,
        outputs: Any,
        inputs: Optional[dict[str, Any]] = None,
    ) -> Run:
        run = self._get_run(run_id)
        run.outputs = _outputs_dict(outputs)
        run.end_time = datetime.now(timezone.utc)
        run.events = [*(run.events or []), {"name": "end", "time": run.end_time}]
        if inputs is not None:
            run.inputs = inputs
        await self._end_trace(run)
        await self.on_run_update(run)
        return run

    async def _on_error(
        self,
        run_id: UUID,
        error: BaseException,
        inputs: Optional[dict[str, Any]] = None,
    ) -> Run:
        run = self._get_run(run_id)
        run.error = repr(error)
        run.end_time = datetime.now(timezone.utc)
        run.events = [*(run.events or []), {"name": "error", "time": run.end_time}]
        if inputs is not None:
            run.inputs = inputs
        await self._end_trace(run)
        await self.on_run_update(run)
        return run

    async def on_chain_start(
        self,
        serialized: Optional[dict[str, Any]],
        inputs: dict[str, Any],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        name: Optional[str] = None,
        run_type: Optional[str] = None,
        **kwargs: Any,
    ) -> Run:
        """Start a trace for a chain run."""
        return await self._on_start(
            run_type or "chain",
            serialized,
            inputs,
            run_id=run_id,
            parent_run_id=parent_run_id,
            tags=tags,
            metadata=metadata,
            name=name,
        )

    async def on_chain_end(
        self,
        outputs: Any,
        *,
        run_id: UUID,
        inputs: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Run:
        """End a trace for a chain run."""
        return await self._on_end(run_id, outputs, inputs)

    async def on_chain_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        inputs: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Run:
        """Handle an error for a chain run."""
        return await self._on_error(run_id, error, inputs)

    async def on_tool_start(
        self,
        serialized: Optional[dict[str, Any]],
        inputs: dict[str, Any],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> Run:
        """Start a trace for a tool run."""
        return await self._on_start(
            "tool",
            serialized,
            inputs,
            run_id=run_id,
            parent_run_id=parent_run_id,
            tags=tags,
            metadata=metadata,
            name=name,
        )

    async def on_tool_end(
        self, output: Any, *, run_id: UUID, **kwargs: Any
    ) -> Run:
        """End a trace for a tool run."""
        return await self._on_end(run_id, output)

    async def on_tool_error(
        self,
        error: Union[BaseException, KeyboardInterrupt],
        *,
        run_id: UUID,
        **kwargs: Any,
    ) -> Run:
        """Handle an error for a tool run."""
        return await self._on_error(run_id, error)
