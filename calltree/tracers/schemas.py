"""Schemas for tracer runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional
from uuid import UUID

from pydantic import Field

from calltree.schemas import RunBase

if TYPE_CHECKING:
    from calltree.run_trees import RunTree


class Run(RunBase):
    """Run record held by a tracer."""

    child_runs: list[Run] = Field(default_factory=list, repr=False)
    child_execution_order: int = 1
    execution_order: int = 1
    trace_id: Optional[UUID] = None
    dotted_order: Optional[str] = None

    @classmethod
    def from_run_tree(cls, node: RunTree) -> Run:
        """Build a detached record from a run tree node.

        Children are not copied; callers wire ``child_runs`` themselves.
        """
        return cls(
            id=node.id,
            name=node.name,
            start_time=node.start_time,
            run_type=node.run_type,
            end_time=node.end_time,
            extra=dict(node.extra) if node.extra is not None else None,
            error=node.error,
            serialized=node.serialized,
            events=list(node.events) if node.events is not None else None,
            inputs=dict(node.inputs or {}),
            outputs=dict(node.outputs) if node.outputs is not None else None,
            reference_example_id=node.reference_example_id,
            parent_run_id=node.parent_run_id,
            tags=list(node.tags) if node.tags is not None else None,
            execution_order=node.execution_order,
            child_execution_order=node.child_execution_order,
            trace_id=node.trace_id,
            dotted_order=node.dotted_order,
        )


Run.model_rebuild()
