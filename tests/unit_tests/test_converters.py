from datetime import datetime, timezone
from uuid import uuid4

import pytest

from calltree.env import get_runtime_environment
from calltree.tracers import _converters
from calltree.tracers.schemas import Run


@pytest.fixture
def root() -> Run:
    run_id = uuid4()
    return Run(
        id=run_id,
        name="root",
        start_time=datetime(2024, 4, 12, 20, 29, 37, 370454, tzinfo=timezone.utc),
        run_type="chain",
        inputs={"question": "hi"},
        extra={"metadata": {"user": "u1"}},
        trace_id=run_id,
        dotted_order=f"20240412T202937370001Z{run_id}",
    )


@pytest.fixture
def child(root: Run) -> Run:
    run_id = uuid4()
    run = Run(
        id=run_id,
        name="child",
        start_time=root.start_time,
        run_type="tool",
        parent_run_id=root.id,
        trace_id=root.trace_id,
        dotted_order=f"{root.dotted_order}.20240412T202937370002Z{run_id}",
        execution_order=2,
    )
    root.child_runs.append(run)
    return run


def test_create_payload_links_example_only_for_root(root: Run, child: Run) -> None:
    example_id = uuid4()
    root_payload = _converters.to_create_payload(root, example_id, "my-project")
    child_payload = _converters.to_create_payload(child, example_id, "my-project")

    assert root_payload["reference_example_id"] == example_id
    assert child_payload["reference_example_id"] is None
    for payload in (root_payload, child_payload):
        assert "child_runs" not in payload
        assert payload["session_name"] == "my-project"


def test_create_payload_keeps_extra(root: Run) -> None:
    payload = _converters.to_create_payload(root)
    assert payload["extra"]["metadata"] == {"user": "u1"}
    assert payload["extra"]["runtime"] == get_runtime_environment()
    assert payload["reference_example_id"] is None
    # The record itself is left alone
    assert "runtime" not in (root.extra or {})


def test_create_payload_without_extra(child: Run) -> None:
    payload = _converters.to_create_payload(child)
    assert payload["extra"] == {"runtime": get_runtime_environment()}
    assert payload["dotted_order"] == child.dotted_order
    assert payload["execution_order"] == 2


def test_update_payload_fields(root: Run, child: Run) -> None:
    child.end_time = datetime.now(timezone.utc)
    child.outputs = {"answer": 42}
    payload = _converters.to_update_payload(child)

    assert set(payload) == {
        "end_time",
        "error",
        "outputs",
        "events",
        "inputs",
        "trace_id",
        "dotted_order",
        "parent_run_id",
    }
    assert payload["trace_id"] == child.trace_id
    assert payload["dotted_order"] == child.dotted_order
    assert payload["parent_run_id"] == root.id
    assert payload["outputs"] == {"answer": 42}
    for key in ("session_name", "child_runs", "reference_example_id"):
        assert key not in payload
