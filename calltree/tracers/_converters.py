"""Convert tracer runs into runs API payloads."""

from __future__ import annotations

from typing import Optional, cast
from uuid import UUID

from calltree.env import get_runtime_environment
from calltree.schemas import RunCreate, RunUpdate
from calltree.tracers.schemas import Run


def to_create_payload(
    run: Run,
    example_id: Optional[UUID] = None,
    project_name: Optional[str] = None,
) -> RunCreate:
    """Build the payload that creates ``run``.

    Only a root run (one without ``parent_run_id``) is linked to
    ``example_id``; nested runs always get ``reference_example_id=None``.
    """
    run_dict = run.model_dump(exclude={"child_runs"})
    extra = dict(run_dict.get("extra") or {})
    extra["runtime"] = get_runtime_environment()
    run_dict["extra"] = extra
    run_dict["session_name"] = project_name
    run_dict["reference_example_id"] = (
        example_id if run.parent_run_id is None else None
    )
    return cast(RunCreate, run_dict)


def to_update_payload(run: Run) -> RunUpdate:
    """Build the payload that updates ``run`` with its mutable fields."""
    return RunUpdate(
        end_time=run.end_time,
        error=run.error,
        outputs=run.outputs,
        events=run.events,
        inputs=run.inputs,
        trace_id=run.trace_id,
        dotted_order=run.dotted_order,
        parent_run_id=run.parent_run_id,
    )
