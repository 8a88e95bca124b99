from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from calltree import utils
from calltree.tracers.tracer import CallTreeTracer


@pytest.mark.asyncio
async def test_create_then_update_end_to_end(mock_client: MagicMock) -> None:
    example_id = uuid4()
    tracer = CallTreeTracer(
        example_id=example_id, project_name="my-project", client=mock_client
    )
    r1, r2 = uuid4(), uuid4()

    await tracer.on_chain_start({"name": "root"}, {"q": "hi"}, run_id=r1)
    await tracer.on_chain_start(
        {"name": "child"}, {"q": "hi"}, run_id=r2, parent_run_id=r1
    )
    await tracer.on_chain_end({"answer": "hello"}, run_id=r2)

    assert mock_client.create_run.call_count == 2
    assert mock_client.update_run.call_count == 1

    root_kwargs = mock_client.create_run.call_args_list[0].kwargs
    child_kwargs = mock_client.create_run.call_args_list[1].kwargs
    assert root_kwargs["id"] == r1
    assert root_kwargs["reference_example_id"] == example_id
    assert child_kwargs["id"] == r2
    assert child_kwargs["reference_example_id"] is None
    assert child_kwargs["parent_run_id"] == r1
    assert child_kwargs["trace_id"] == r1
    assert child_kwargs["dotted_order"].startswith(root_kwargs["dotted_order"] + ".")
    for kwargs in (root_kwargs, child_kwargs):
        assert "child_runs" not in kwargs
        assert kwargs["session_name"] == "my-project"
        assert "runtime" in kwargs["extra"]

    update_call = mock_client.update_run.call_args
    assert update_call.args == (r2,)
    assert update_call.kwargs["outputs"] == {"answer": "hello"}
    assert update_call.kwargs["end_time"] is not None
    assert "session_name" not in update_call.kwargs
    assert "reference_example_id" not in update_call.kwargs


@pytest.mark.asyncio
async def test_async_client_is_awaited(mock_async_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_async_client)
    run_id = uuid4()
    await tracer.on_chain_start({"name": "root"}, {}, run_id=run_id)
    await tracer.on_chain_end({}, run_id=run_id)
    mock_async_client.create_run.assert_awaited_once()
    mock_async_client.update_run.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_failure_propagates(mock_client: MagicMock) -> None:
    mock_client.create_run.side_effect = utils.CallTreeAPIError("boom")
    tracer = CallTreeTracer(client=mock_client)
    with pytest.raises(utils.CallTreeAPIError, match="boom"):
        await tracer.on_chain_start({"name": "root"}, {}, run_id=uuid4())


@pytest.mark.asyncio
async def test_update_failure_propagates(mock_client: MagicMock) -> None:
    mock_client.update_run.side_effect = utils.CallTreeConnectionError("down")
    tracer = CallTreeTracer(client=mock_client)
    run_id = uuid4()
    await tracer.on_chain_start({"name": "root"}, {}, run_id=run_id)
    with pytest.raises(utils.CallTreeConnectionError):
        await tracer.on_chain_end({}, run_id=run_id)


@pytest.mark.asyncio
async def test_repeated_updates_are_each_sent(mock_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_client)
    run_id = uuid4()
    await tracer.on_chain_start({"name": "root"}, {}, run_id=run_id)
    run = tracer.get_run(run_id)
    assert run is not None
    await tracer.on_run_update(run)
    await tracer.on_run_update(run)
    assert mock_client.update_run.call_count == 2


@pytest.mark.asyncio
async def test_update_for_unknown_run_is_forwarded(mock_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_client)
    other = CallTreeTracer(client=mock_client)
    run_id = uuid4()
    await other.on_chain_start({"name": "elsewhere"}, {}, run_id=run_id)
    run = other.get_run(run_id)
    assert run is not None
    await tracer.on_run_update(run)
    assert tracer.get_run(run_id) is None
    assert mock_client.update_run.call_args.args == (run_id,)


def test_get_run_never_raises(mock_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_client)
    assert tracer.get_run(uuid4()) is None
    assert tracer.get_run("not-a-uuid") is None


def test_project_name_from_env(monkeypatch, mock_client: MagicMock) -> None:
    monkeypatch.setenv("CALLTREE_SESSION", "from-session")
    utils.get_env_var.cache_clear()
    assert CallTreeTracer(client=mock_client).project_name == "from-session"

    monkeypatch.setenv("CALLTREE_PROJECT", "from-project")
    utils.get_env_var.cache_clear()
    assert CallTreeTracer(client=mock_client).project_name == "from-project"
    assert (
        CallTreeTracer(client=mock_client, project_name="explicit").project_name
        == "explicit"
    )


def test_project_name_unset(mock_client: MagicMock) -> None:
    assert CallTreeTracer(client=mock_client).project_name is None


def test_example_id_accepts_str(mock_client: MagicMock) -> None:
    example_id = uuid4()
    tracer = CallTreeTracer(example_id=str(example_id), client=mock_client)
    assert tracer.example_id == example_id


@pytest.mark.asyncio
async def test_tracer_tags_are_added(mock_client: MagicMock) -> None:
    tracer = CallTreeTracer(client=mock_client, tags=["env:test", "a"])
    await tracer.on_chain_start({"name": "root"}, {}, run_id=uuid4(), tags=["a"])
    assert mock_client.create_run.call_args.kwargs["tags"] == ["a", "env:test"]
