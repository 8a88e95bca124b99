"""Test the runs API Client."""

import uuid
from datetime import datetime, timezone
from unittest import mock

import pytest
import requests

from calltree import utils as ct_utils
from calltree.client import Client, _as_uuid, _ensure_uuid
from calltree.env import get_runtime_environment
from tests.unit_tests.conftest import get_session_calls, parse_request_data


def _client(**kwargs) -> Client:
    session = mock.MagicMock(spec=requests.Session)
    return Client(api_url="http://localhost:1984", session=session, **kwargs)


def _error_response(status_code: int) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.reason = "error"
    response.encoding = "utf-8"
    response._content = b'{"detail": "something went wrong"}'
    response.url = "http://localhost:1984/runs"
    return response


def test_create_run_posts_payload() -> None:
    client = _client(api_key="secret")
    run_id = uuid.uuid4()
    client.create_run(
        "my_chain",
        {"question": "hi"},
        "chain",
        id=run_id,
        session_name="my-project",
        child_runs=[{"ignored": True}],
        extra={"metadata": {"a": 1}},
        start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    (call,) = get_session_calls(client.session, "POST")
    assert call.args[1] == "http://localhost:1984/runs"
    assert call.kwargs["headers"]["x-api-key"] == "secret"
    assert call.kwargs["timeout"] == 10.0
    payload = parse_request_data(call.kwargs["data"])
    assert payload["id"] == str(run_id)
    assert payload["name"] == "my_chain"
    assert payload["session_name"] == "my-project"
    assert payload["inputs"] == {"question": "hi"}
    assert payload["start_time"] == "2024-01-01T00:00:00+00:00"
    assert "child_runs" not in payload
    assert payload["extra"]["metadata"] == {"a": 1}
    assert payload["extra"]["runtime"]["library"] == "calltree"
    assert set(payload["extra"]["runtime"]) == set(get_runtime_environment())


def test_create_run_defaults_project_and_id() -> None:
    client = _client()
    client.create_run("run", {}, "tool")
    (call,) = get_session_calls(client.session, "POST")
    payload = parse_request_data(call.kwargs["data"])
    assert payload["session_name"] == "default"
    assert uuid.UUID(payload["id"])
    assert "x-api-key" not in call.kwargs["headers"]


def test_update_run_sends_only_set_fields() -> None:
    client = _client()
    run_id = uuid.uuid4()
    client.update_run(
        str(run_id),
        end_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        outputs={"answer": 42},
        dotted_order="20240101T000000000001Z" + str(run_id),
        trace_id=run_id,
    )
    (call,) = get_session_calls(client.session, "PATCH")
    assert call.args[1] == f"http://localhost:1984/runs/{run_id}"
    payload = parse_request_data(call.kwargs["data"])
    assert payload == {
        "id": str(run_id),
        "end_time": "2024-01-01T00:00:00+00:00",
        "outputs": {"answer": 42},
        "trace_id": str(run_id),
        "dotted_order": "20240101T000000000001Z" + str(run_id),
    }


def test_hide_inputs_and_outputs_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CALLTREE_HIDE_INPUTS", "true")
    monkeypatch.setenv("CALLTREE_HIDE_OUTPUTS", "1")
    ct_utils.get_env_var.cache_clear()
    client = _client()
    assert client.hide_inputs and client.hide_outputs

    client.create_run("run", {"secret": 1}, "chain", outputs={"secret": 2})
    client.update_run(uuid.uuid4(), inputs={"secret": 1}, outputs={"secret": 2})
    post, patch = get_session_calls(client.session)
    post_payload = parse_request_data(post.kwargs["data"])
    patch_payload = parse_request_data(patch.kwargs["data"])
    assert post_payload["inputs"] == {} and post_payload["outputs"] == {}
    assert patch_payload["inputs"] == {} and patch_payload["outputs"] == {}


@pytest.mark.parametrize(
    "status_code, expected",
    [
        (500, ct_utils.CallTreeAPIError),
        (404, ct_utils.CallTreeNotFoundError),
        (422, ct_utils.CallTreeUserError),
    ],
)
def test_http_errors_map_to_exceptions(status_code, expected) -> None:
    client = _client()
    client.session.request.return_value = _error_response(status_code)
    with pytest.raises(expected):
        client.create_run("run", {}, "chain")


def test_connection_error() -> None:
    client = _client()
    client.session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(ct_utils.CallTreeConnectionError, match="CALLTREE_ENDPOINT"):
        client.update_run(uuid.uuid4(), error="x")


def test_invalid_run_id() -> None:
    client = _client()
    with pytest.raises(ct_utils.CallTreeUserError, match="run_id"):
        client.update_run("not-a-uuid")
    client.session.request.assert_not_called()


def test_empty_endpoint_raises(monkeypatch) -> None:
    monkeypatch.setenv("CALLTREE_ENDPOINT", "  ")
    ct_utils.get_env_var.cache_clear()
    with pytest.raises(ct_utils.CallTreeUserError):
        Client()


def test_endpoint_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CALLTREE_ENDPOINT", "https://runs.example.com/")
    ct_utils.get_env_var.cache_clear()
    client = Client(session=mock.MagicMock(spec=requests.Session))
    assert client.api_url == "https://runs.example.com"
    assert repr(client) == "Client (API URL: https://runs.example.com)"


def test_ensure_uuid() -> None:
    assert _ensure_uuid(None, accept_null=True) is None
    assert _ensure_uuid(None).version == 7
    value = uuid.uuid4()
    assert _ensure_uuid(str(value)) == value
    assert _as_uuid(value) is value
