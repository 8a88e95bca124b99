"""Common test utilities for unit tests."""

from __future__ import annotations

from typing import Any, Optional
from unittest.mock import MagicMock

import orjson
import pytest

from calltree import run_trees, utils
from calltree._internal import _context
from calltree.async_client import AsyncClient
from calltree.client import Client


def parse_request_data(data: Any) -> dict:
    """Decode the JSON body a mocked session was called with."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return orjson.loads(data)


def get_session_calls(mock_session: Any, verb: Optional[str] = None) -> list:
    """Return the ``session.request`` calls, optionally filtered by HTTP verb."""
    return [
        c
        for c in mock_session.request.mock_calls
        if c.args and (verb is None or c.args[0] == verb)
    ]


@pytest.fixture(autouse=True)
def _reset_env_cache(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "CALLTREE_TRACING",
        "CALLTREE_PROJECT",
        "CALLTREE_SESSION",
        "CALLTREE_ENDPOINT",
        "CALLTREE_API_KEY",
        "CALLTREE_HIDE_INPUTS",
        "CALLTREE_HIDE_OUTPUTS",
    ):
        monkeypatch.delenv(name, raising=False)
    utils.get_env_var.cache_clear()
    yield
    utils.get_env_var.cache_clear()


@pytest.fixture(autouse=True)
def _reset_cached_client(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(run_trees, "_CLIENT", None)
    monkeypatch.setattr(_context, "_GLOBAL_TRACING_ENABLED", None)


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock(spec=Client)


@pytest.fixture
def mock_async_client() -> MagicMock:
    return MagicMock(spec=AsyncClient)
