"""Generic utility functions."""

from __future__ import annotations

import functools
import logging
import os
import sys
import traceback
from collections.abc import Sequence
from typing import Any, Callable, Optional, Union

import httpx
import requests

from calltree._internal import _context

_LOGGER = logging.getLogger(__name__)


class CallTreeError(Exception):
    """An error occurred while communicating with the runs API."""


class CallTreeAPIError(CallTreeError):
    """Internal server error while communicating with the runs API."""


class CallTreeUserError(CallTreeError):
    """User error caused an exception when communicating with the runs API."""


class CallTreeNotFoundError(CallTreeError):
    """Couldn't find the requested resource."""


class CallTreeConnectionError(CallTreeError):
    """Couldn't connect to the runs API."""


class CallTreeConfigurationError(CallTreeUserError, ValueError):
    """A component was constructed with an invalid configuration."""


class CallTreeTracerError(CallTreeError):
    """The tracer received an event it cannot place in the run tree."""


def raise_for_status_with_text(
    response: Union[requests.Response, httpx.Response],
) -> None:
    """Raise an error with the response text."""
    try:
        response.raise_for_status()
    except requests.HTTPError as e:
        raise requests.HTTPError(str(e), response.text) from e  # type: ignore[call-arg]
    except httpx.HTTPStatusError as e:
        raise httpx.HTTPStatusError(
            f"{e}: {response.text}", request=e.request, response=e.response
        ) from e


@functools.lru_cache(maxsize=100)
def get_env_var(
    name: str,
    default: Optional[str] = None,
    *,
    namespaces: Sequence[str] = ("CALLTREE",),
) -> Optional[str]:
    """Retrieve an environment variable from a list of namespaces.

    Args:
        name: The name of the environment variable, without its prefix.
        default: The value returned when no namespace defines the variable.
        namespaces: Prefixes to try, in order. The first match wins.

    Returns:
        The value of the environment variable, or the default.
    """
    for namespace in namespaces:
        value = os.environ.get(f"{namespace}_{name}")
        if value is not None:
            return value
    return default


def get_tracer_project(return_default_value: bool = True) -> Optional[str]:
    """Get the project name for a tracer.

    ``CALLTREE_PROJECT`` takes precedence over the legacy ``CALLTREE_SESSION``.
    """
    return get_env_var(
        "PROJECT",
        default=get_env_var(
            "SESSION", default="default" if return_default_value else None
        ),
    )


def tracing_is_enabled(ctx: Optional[dict] = None) -> bool:
    """Return True if tracing is enabled for the current context."""
    if ctx is not None and ctx.get("enabled") is not None:
        return bool(ctx["enabled"])
    enabled = _context._TRACING_ENABLED.get()
    if enabled is not None:
        return bool(enabled)
    if _context._GLOBAL_TRACING_ENABLED is not None:
        return bool(_context._GLOBAL_TRACING_ENABLED)
    return (get_env_var("TRACING", default="") or "").lower() == "true"


def get_api_key(api_key: Optional[str]) -> Optional[str]:
    """Get the API key from the argument or the environment."""
    api_key_ = api_key if api_key is not None else get_env_var("API_KEY")
    if api_key_ is None or not api_key_.strip():
        return None
    return api_key_.strip().strip('"').strip("'")


def get_api_url(api_url: Optional[str]) -> str:
    """Get the API URL from the argument or the environment."""
    _api_url = api_url or get_env_var("ENDPOINT", default="http://localhost:1984")
    if not _api_url or not _api_url.strip():
        raise CallTreeUserError("Runs API URL cannot be empty")
    return _api_url.strip().strip('"').strip("'").rstrip("/")


def is_truish(val: Any) -> bool:
    """Check if the value is truish."""
    if isinstance(val, str):
        return val.lower() == "true" or val == "1"
    return bool(val)


@functools.lru_cache(maxsize=None)
def log_once(level: int, message: str) -> None:
    """Log a message once per process."""
    _LOGGER.log(level, message)


def _format_exc() -> str:
    # Used internally to format exceptions without cluttering the traceback
    tb_lines = traceback.format_exception(*sys.exc_info())
    filtered_lines = [line for line in tb_lines if "calltree/" not in line]
    return "".join(filtered_lines)


def _get_function_name(fn: Callable, depth: int = 0) -> str:
    if depth > 2 or not callable(fn):
        return str(fn)

    if hasattr(fn, "__name__"):
        return fn.__name__

    if isinstance(fn, functools.partial):
        return _get_function_name(fn.func, depth + 1)

    if hasattr(fn, "__call__"):
        if hasattr(fn, "__class__") and hasattr(fn.__class__, "__name__"):
            return fn.__class__.__name__
        return _get_function_name(fn.__call__, depth + 1)

    return str(fn)
