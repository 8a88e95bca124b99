import logging
from unittest.mock import MagicMock

import pytest

from calltree.client import Client
from calltree.run_helpers import tracing_context
from calltree.run_trees import RunTree
from calltree.tracers import _tree_merge
from calltree.tracers.run_map import RunMap
from calltree.tracers.tracer import CallTreeTracer


@pytest.fixture
def chain(mock_client: MagicMock) -> tuple[RunTree, RunTree, RunTree]:
    a = RunTree(name="A", inputs={"x": 1}, client=mock_client)
    b = a.create_child("B")
    c = b.create_child("C")
    return a, b, c


def test_find_root_walks_to_the_top(chain) -> None:
    a, b, c = chain
    assert _tree_merge.find_root(c) is a
    assert _tree_merge.find_root(a) is a


def test_flatten_is_breadth_first(mock_client: MagicMock) -> None:
    root = RunTree(name="root", client=mock_client)
    left = root.create_child("left")
    right = root.create_child("right")
    leaf = left.create_child("leaf")
    assert _tree_merge.flatten(root) == [root, left, right, leaf]


def test_hydrate_three_node_chain(chain, mock_client: MagicMock) -> None:
    a, b, c = chain
    tracer = CallTreeTracer(run_tree=c, client=mock_client)

    assert set(tracer.run_map.keys()) == {str(a.id), str(b.id), str(c.id)}
    b_record = tracer.get_run(b.id)
    assert b_record is not None
    assert b_record.parent_run_id == a.id
    assert b_record.trace_id == a.id
    assert b_record.dotted_order == b.dotted_order
    a_record = tracer.get_run(a.id)
    assert a_record is not None
    assert a_record.child_runs == [b_record]
    assert [r.id for r in b_record.child_runs] == [c.id]


def test_hydrate_does_not_mutate_source(chain) -> None:
    a, b, c = chain
    run_map = RunMap()
    records = _tree_merge.hydrate(run_map, b)
    assert [r.id for r in records] == [a.id, b.id, c.id]
    assert a.child_runs == [b]
    assert b.child_runs == [c]
    assert all(r is not node for r, node in zip(records, (a, b, c)))
    records[0].inputs["x"] = 2
    assert a.inputs == {"x": 1}


def test_hydrate_keeps_existing_records(chain) -> None:
    a, b, c = chain
    run_map = RunMap()
    _tree_merge.hydrate(run_map, c)
    existing_b = run_map.get(b.id)
    d = c.create_child("D")
    inserted = _tree_merge.hydrate(run_map, d)
    assert [r.id for r in inserted] == [d.id]
    assert run_map.get(b.id) is existing_b
    c_record = run_map.get(c.id)
    assert c_record is not None
    assert [r.id for r in c_record.child_runs] == [d.id]


def test_cycle_terminates(
    chain, mock_client: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    a, b, c = chain
    # B's parent points back at C, and C lists B as a child
    b.parent_run = c
    c.child_runs.append(b)

    with caplog.at_level(logging.WARNING, logger="calltree.tracers._tree_merge"):
        root = _tree_merge.find_root(b)
    assert root is c
    assert "Cycle in run tree parent links" in caplog.text

    nodes = _tree_merge.flatten(root)
    ids = [str(n.id) for n in nodes]
    assert len(ids) == len(set(ids))
    assert set(ids) == {str(b.id), str(c.id)}

    tracer = CallTreeTracer(run_tree=b, client=mock_client)
    assert set(tracer.run_map.keys()) == {str(b.id), str(c.id)}


def test_tracer_hydrates_ambient_tree(chain, mock_client: MagicMock) -> None:
    a, b, c = chain
    with tracing_context(parent=c):
        tracer = CallTreeTracer(client=MagicMock(spec=Client))
    assert set(tracer.run_map.keys()) == {str(a.id), str(b.id), str(c.id)}
    # The ambient tree's client replaces the tracer's own
    assert tracer.client is mock_client


def test_tracer_without_ambient_tree(mock_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_client)
    assert len(tracer.run_map) == 0
    assert tracer.client is mock_client


def test_ambient_lookup_failure_is_swallowed(
    monkeypatch, mock_client: MagicMock
) -> None:
    def _boom():
        raise RuntimeError("no context")

    monkeypatch.setattr("calltree.run_helpers.get_current_run_tree", _boom)
    assert CallTreeTracer.get_traceable_run_tree() is None
    tracer = CallTreeTracer(client=mock_client)
    assert len(tracer.run_map) == 0
