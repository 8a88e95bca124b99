from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from calltree.tracers.run_map import RunMap
from calltree.tracers.schemas import Run


def _run(**kwargs: Any) -> Run:
    return Run(
        id=kwargs.pop("id", uuid4()),
        name=kwargs.pop("name", "run"),
        start_time=datetime.now(timezone.utc),
        run_type=kwargs.pop("run_type", "chain"),
        **kwargs,
    )


def test_get_missing_returns_none() -> None:
    run_map = RunMap()
    assert run_map.get(uuid4()) is None
    assert len(run_map) == 0


def test_keys_accept_uuid_or_str() -> None:
    run = _run()
    run_map = RunMap()
    run_map.set(run.id, run)
    assert run_map.get(str(run.id)) is run
    assert run_map.get(run.id) is run
    assert run.id in run_map
    assert str(run.id) in run_map
    assert run_map.keys() == [str(run.id)]


def test_set_overwrites() -> None:
    first = _run()
    second = _run(id=first.id, name="second")
    run_map = RunMap({first.id: first})
    run_map.set(first.id, second)
    assert run_map.get(first.id) is second
    assert len(run_map) == 1


def test_concurrent_set_loses_nothing() -> None:
    runs = [_run() for _ in range(500)]
    run_map = RunMap()
    with ThreadPoolExecutor(max_workers=16) as executor:
        list(executor.map(lambda r: run_map.set(r.id, r), runs))
    assert len(run_map) == len(runs)
    assert set(run_map.keys()) == {str(r.id) for r in runs}


def test_update_bulk_inserts() -> None:
    runs = [_run() for _ in range(3)]
    run_map = RunMap()
    run_map.update(runs)
    assert sorted(run_map.keys()) == sorted(str(r.id) for r in runs)


def test_add_child_attaches_to_parent() -> None:
    parent = _run(name="parent")
    child = _run(
        name="child",
        parent_run_id=parent.id,
        execution_order=2,
        child_execution_order=4,
    )
    run_map = RunMap()
    assert run_map.add_child(parent) is None
    assert run_map.add_child(child) is parent
    assert parent.child_runs == [child]
    assert parent.child_execution_order == 4


def test_add_child_unknown_parent() -> None:
    orphan = _run(parent_run_id=uuid4())
    run_map = RunMap()
    assert run_map.add_child(orphan) is None
    assert run_map.get(orphan.id) is orphan


def test_merge_keeps_existing_records() -> None:
    parent = _run(name="parent")
    run_map = RunMap({parent.id: parent})
    duplicate = _run(id=parent.id, name="copy")
    child = _run(name="child", parent_run_id=parent.id, child_execution_order=3)
    inserted = run_map.merge([duplicate, child])
    assert inserted == [child]
    assert run_map.get(parent.id) is parent
    assert parent.child_runs == [child]
    assert parent.child_execution_order == 3


def test_raise_child_execution_order_never_lowers() -> None:
    run = _run(child_execution_order=5)
    run_map = RunMap({run.id: run})
    run_map.raise_child_execution_order(str(run.id), 7)
    assert run.child_execution_order == 7
    run_map.raise_child_execution_order(run.id, 3)
    assert run.child_execution_order == 7
    run_map.raise_child_execution_order(uuid4(), 9)


def test_values_is_a_snapshot() -> None:
    run = _run()
    run_map = RunMap({run.id: run})
    values = run_map.values()
    run_map.set(uuid4(), _run())
    assert values == [run]
