from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import pytest
from freezegun import freeze_time

from calltree import utils
from calltree.tracers.base import AsyncBaseTracer, _dotted_order_segment
from calltree.tracers.schemas import Run


class FakeTracer(AsyncBaseTracer):
    """Records every hook call instead of sending anything."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.created: list[Run] = []
        self.updated: list[Run] = []
        self.persisted: list[Run] = []

    async def on_run_create(self, run: Run) -> None:
        self.created.append(run)

    async def on_run_update(self, run: Run) -> None:
        self.updated.append(run)

    async def _persist_run(self, run: Run) -> None:
        self.persisted.append(run)


def _run(parent_run_id: Any = None) -> Run:
    return Run(
        id=uuid4(),
        name="run",
        start_time=datetime.now(timezone.utc),
        run_type="chain",
        parent_run_id=parent_run_id,
    )


def test_dotted_order_segment_format() -> None:
    run = Run(
        id=UUID("152ce25c-064e-4742-bf36-8bb0389f8805"),
        name="run",
        start_time=datetime(2024, 4, 12, 20, 29, 37, 370454, tzinfo=timezone.utc),
        run_type="chain",
        execution_order=7,
    )
    assert (
        _dotted_order_segment(run)
        == "20240412T202937370007Z152ce25c-064e-4742-bf36-8bb0389f8805"
    )


@pytest.mark.parametrize("execution_order, digits", [(999, "999"), (1500, "999")])
def test_dotted_order_segment_keeps_fixed_width(execution_order, digits) -> None:
    run = Run(
        id=UUID("152ce25c-064e-4742-bf36-8bb0389f8805"),
        name="run",
        start_time=datetime(2024, 4, 12, 20, 29, 37, 370454, tzinfo=timezone.utc),
        run_type="chain",
        execution_order=execution_order,
    )
    segment = _dotted_order_segment(run)
    assert segment == f"20240412T202937370{digits}Z152ce25c-064e-4742-bf36-8bb0389f8805"


@freeze_time("2024-04-12 20:29:37.370454")
def test_siblings_in_same_millisecond_sort_in_creation_order() -> None:
    tracer = FakeTracer()
    root = _run()
    tracer._start_trace(root)
    first = _run(root.id)
    tracer._start_trace(first)
    second = _run(root.id)
    tracer._start_trace(second)

    assert first.start_time == second.start_time
    assert root.dotted_order < first.dotted_order < second.dotted_order
    assert (root.execution_order, first.execution_order, second.execution_order) == (
        1,
        2,
        3,
    )
    assert first.trace_id == second.trace_id == root.id
    assert root.child_runs == [first, second]


def test_dotted_order_respects_grandchildren() -> None:
    tracer = FakeTracer()
    root = _run()
    tracer._start_trace(root)
    child = _run(root.id)
    tracer._start_trace(child)
    grandchild = _run(child.id)
    tracer._start_trace(grandchild)
    sibling = _run(root.id)
    tracer._start_trace(sibling)

    assert grandchild.dotted_order.startswith(child.dotted_order + ".")
    assert child.dotted_order < grandchild.dotted_order < sibling.dotted_order


def test_unknown_parent_starts_a_new_trace() -> None:
    tracer = FakeTracer()
    orphan = _run(uuid4())
    tracer._start_trace(orphan)
    assert orphan.trace_id == orphan.id
    assert orphan.execution_order == 1
    assert "." not in orphan.dotted_order
    assert tracer.run_map.get(orphan.id) is orphan


@pytest.mark.asyncio
async def test_chain_lifecycle_calls_hooks() -> None:
    tracer = FakeTracer()
    root_id, child_id = uuid4(), uuid4()
    await tracer.on_chain_start({"name": "root"}, {"x": 1}, run_id=root_id)
    await tracer.on_tool_start(
        {"name": "tool"}, {"input": "q"}, run_id=child_id, parent_run_id=root_id
    )
    await tracer.on_tool_end("result", run_id=child_id)
    await tracer.on_chain_end({"y": 2}, run_id=root_id)

    assert [r.id for r in tracer.created] == [root_id, child_id]
    assert [r.id for r in tracer.updated] == [child_id, root_id]
    assert [r.id for r in tracer.persisted] == [root_id]

    child = tracer.run_map.get(child_id)
    assert child is not None
    assert child.run_type == "tool"
    assert child.name == "tool"
    assert child.outputs == {"output": "result"}
    assert [e["name"] for e in child.events or []] == ["start", "end"]
    root = tracer.run_map.get(root_id)
    assert root is not None
    assert root.outputs == {"y": 2}
    assert root.end_time is not None


@pytest.mark.asyncio
async def test_chain_error_records_repr() -> None:
    tracer = FakeTracer()
    run_id = uuid4()
    await tracer.on_chain_start(None, {}, run_id=run_id, name="failing")
    await tracer.on_chain_error(ValueError("bad"), run_id=run_id)
    run = tracer.run_map.get(run_id)
    assert run is not None
    assert run.name == "failing"
    assert run.error == "ValueError('bad')"
    assert run.events is not None and run.events[-1]["name"] == "error"


@pytest.mark.asyncio
async def test_end_for_unknown_run_raises() -> None:
    tracer = FakeTracer()
    with pytest.raises(utils.CallTreeTracerError):
        await tracer.on_chain_end({}, run_id=uuid4())


@pytest.mark.asyncio
async def test_metadata_and_tags_are_recorded() -> None:
    tracer = FakeTracer()
    run_id = uuid4()
    await tracer.on_chain_start(
        {"name": "root"},
        {},
        run_id=run_id,
        tags=["a"],
        metadata={"k": "v"},
        run_type="llm",
    )
    run = tracer.run_map.get(run_id)
    assert run is not None
    assert run.tags == ["a"]
    assert run.metadata == {"k": "v"}
    assert run.run_type == "llm"
