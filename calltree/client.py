"""The runs API Client."""

from __future__ import annotations

import datetime
import logging
import uuid
import weakref
from collections.abc import Mapping, Sequence
from typing import Any, Optional, Union, cast

import requests
from requests import adapters as requests_adapters
from typing_extensions import Literal
from urllib3.util import Retry

from calltree import env as ct_env
from calltree import utils as ct_utils
from calltree._internal import _serde
from calltree._internal._uuid import uuid7

logger = logging.getLogger(__name__)

ID_TYPE = Union[uuid.UUID, str]
RUN_TYPE_T = Literal[
    "tool", "chain", "llm", "retriever", "embedding", "prompt", "parser"
]
X_API_KEY = "x-api-key"


def _default_retry_config() -> Retry:
    """Get the default retry configuration.

    Returns
    -------
    Retry
        The default retry configuration.
    """
    return Retry(
        total=3,
        allowed_methods=None,  # Retry on all methods
        status_forcelist=[502, 503, 504, 408, 425, 429],
        backoff_factor=0.5,
        raise_on_redirect=False,
        raise_on_status=False,
    )


def _dumps_json(obj: Any) -> bytes:
    """Serialize an object to JSON bytes with orjson.

    Parameters
    ----------
    obj : Any
        The object to serialize.

    Returns
    -------
    bytes
        The JSON encoded payload.
    """
    return _serde.dumps_json(obj)


def _as_uuid(value: ID_TYPE, var: Optional[str] = None) -> uuid.UUID:
    try:
        return uuid.UUID(value) if not isinstance(value, uuid.UUID) else value
    except ValueError as e:
        var = var or "value"
        raise ct_utils.CallTreeUserError(
            f"{var} must be a valid UUID or UUID string. Got {value}"
        ) from e


def _ensure_uuid(value: Optional[ID_TYPE], *, accept_null: bool = False) -> uuid.UUID:
    if value is None:
        if accept_null:
            return None  # type: ignore[return-value]
        return uuid7()
    return _as_uuid(value)


def close_session(session: requests.Session) -> None:
    """Close the session.

    Parameters
    ----------
    session : Session
        The session to close.
    """
    logger.debug("Closing Client.session")
    session.close()


class Client:
    """Client for sending runs to the runs API."""

    __slots__ = [
        "__weakref__",
        "api_url",
        "api_key",
        "retry_config",
        "timeout_ms",
        "session",
        "hide_inputs",
        "hide_outputs",
    ]

    def __init__(
        self,
        api_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        retry_config: Optional[Retry] = None,
        timeout_ms: Optional[int] = None,
        session: Optional[requests.Session] = None,
        hide_inputs: Optional[bool] = None,
        hide_outputs: Optional[bool] = None,
    ) -> None:
        """Initialize a Client instance.

        Parameters
        ----------
        api_url : str or None, default=None
            URL for the runs API. Defaults to the CALLTREE_ENDPOINT
            environment variable or http://localhost:1984 if not set.
        api_key : str or None, default=None
            API key sent as the ``x-api-key`` header. Defaults to the
            CALLTREE_API_KEY environment variable.
        retry_config : Retry or None, default=None
            Retry configuration for the HTTPAdapter.
        timeout_ms : int or None, default=None
            Timeout in milliseconds for each request.
        session : requests.Session or None, default=None
            The session to use for requests. A new one is created if omitted.
        hide_inputs : bool or None, default=None
            Whether to blank run inputs before sending. Defaults to the
            CALLTREE_HIDE_INPUTS environment variable.
        hide_outputs : bool or None, default=None
            Whether to blank run outputs before sending. Defaults to the
            CALLTREE_HIDE_OUTPUTS environment variable.

        Raises
        ------
        CallTreeUserError
            If the API URL is empty.
        """
        self.api_key = ct_utils.get_api_key(api_key)
        self.api_url = ct_utils.get_api_url(api_url)
        self.retry_config = retry_config or _default_retry_config()
        self.timeout_ms = timeout_ms or 10_000
        self.hide_inputs = (
            hide_inputs
            if hide_inputs is not None
            else ct_utils.is_truish(ct_utils.get_env_var("HIDE_INPUTS"))
        )
        self.hide_outputs = (
            hide_outputs
            if hide_outputs is not None
            else ct_utils.is_truish(ct_utils.get_env_var("HIDE_OUTPUTS"))
        )
        # Create a session and register a finalizer to close it
        self.session = session if session else requests.Session()
        weakref.finalize(self, close_session, self.session)

        # Mount the HTTPAdapter with the retry configuration
        adapter = requests_adapters.HTTPAdapter(max_retries=self.retry_config)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def __repr__(self) -> str:
        """Return a string representation of the instance.

        Returns
        -------
        str
            The string representation of the instance.
        """
        return f"Client (API URL: {self.api_url})"

    @property
    def _headers(self) -> dict[str, str]:
        """Get the headers for the API request.

        Returns
        -------
        Dict[str, str]
            The headers for the API request.
        """
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers[X_API_KEY] = self.api_key
        return headers

    def _hide_run_inputs(self, inputs: dict) -> dict:
        return {} if self.hide_inputs else inputs

    def _hide_run_outputs(self, outputs: dict) -> dict:
        return {} if self.hide_outputs else outputs

    def request_with_retries(
        self,
        request_method: str,
        url: str,
        request_kwargs: Mapping,
    ) -> requests.Response:
        """Send a request with retries.

        Parameters
        ----------
        request_method : str
            The HTTP request method.
        url : str
            The URL to send the request to.
        request_kwargs : Mapping
            Additional request parameters.

        Returns
        -------
        Response
            The response object.

        Raises
        ------
        CallTreeAPIError
            If a server error occurs.
        CallTreeNotFoundError
            If the resource does not exist.
        CallTreeUserError
            If the request is rejected.
        CallTreeConnectionError
            If a connection error occurs.
        """
        try:
            response = self.session.request(
                request_method, url, stream=False, **request_kwargs
            )
            ct_utils.raise_for_status_with_text(response)
            return response
        except requests.HTTPError as e:
            status_code = response.status_code
            if status_code >= 500:
                raise ct_utils.CallTreeAPIError(
                    f"Server error caused failure to {request_method} {url} in"
                    f" runs API. {e}"
                ) from e
            elif status_code == 404:
                raise ct_utils.CallTreeNotFoundError(
                    f"Resource not found for {request_method} {url}. {e}"
                ) from e
            else:
                raise ct_utils.CallTreeUserError(
                    f"Failed to {request_method} {url} in runs API. {e}"
                ) from e
        except requests.ConnectionError as e:
            raise ct_utils.CallTreeConnectionError(
                f"Connection error caused failure to {request_method} {url}"
                " in runs API. Please confirm your CALLTREE_ENDPOINT."
                f" {e}"
            ) from e

    def create_run(
        self,
        name: str,
        inputs: dict[str, Any],
        run_type: str,
        *,
        project_name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Persist a run to the runs API.

        Parameters
        ----------
        name : str
            The name of the run.
        inputs : Dict[str, Any]
            The input values for the run.
        run_type : str
            The type of the run, such as tool, chain, llm, retriever,
            embedding, prompt, or parser.
        project_name : str or None, default=None
            The project to file the run under. Falls back to the
            ``session_name`` keyword, then the environment.
        **kwargs : Any
            Additional run fields (id, parent_run_id, dotted_order, ...).

        Raises
        ------
        CallTreeError
            If the request fails.
        """
        session_name = kwargs.pop("session_name", None)
        project_name = project_name or session_name or ct_utils.get_tracer_project()
        kwargs.pop("child_runs", None)
        run_create = {
            **kwargs,
            "id": _ensure_uuid(kwargs.get("id")),
            "session_name": project_name,
            "name": name,
            "inputs": self._hide_run_inputs(inputs),
            "run_type": run_type,
        }
        if run_create.get("outputs") is not None:
            run_create["outputs"] = self._hide_run_outputs(run_create["outputs"])
        run_extra = cast(dict, run_create.get("extra") or {})
        run_create["extra"] = run_extra
        runtime = run_extra.get("runtime") or {}
        run_extra["runtime"] = {**ct_env.get_runtime_environment(), **runtime}
        self.request_with_retries(
            "POST",
            f"{self.api_url}/runs",
            request_kwargs={
                "data": _dumps_json(run_create),
                "headers": self._headers,
                "timeout": self.timeout_ms / 1000,
            },
        )

    def update_run(
        self,
        run_id: ID_TYPE,
        *,
        end_time: Optional[datetime.datetime] = None,
        error: Optional[str] = None,
        inputs: Optional[dict] = None,
        outputs: Optional[dict] = None,
        events: Optional[Sequence[dict]] = None,
        trace_id: Optional[ID_TYPE] = None,
        dotted_order: Optional[str] = None,
        parent_run_id: Optional[ID_TYPE] = None,
        tags: Optional[list[str]] = None,
        extra: Optional[dict] = None,
        **kwargs: Any,
    ) -> None:
        """Update a run in the runs API.

        Parameters
        ----------
        run_id : str or UUID
            The ID of the run to update.
        end_time : datetime or None
            The end time of the run.
        error : str or None, default=None
            The error message of the run.
        inputs : Dict or None, default=None
            The input values for the run.
        outputs : Dict or None, default=None
            The output values for the run.
        events : Sequence[dict] or None, default=None
            The events for the run.
        trace_id : str or UUID or None, default=None
            The id of the trace's root run.
        dotted_order : str or None, default=None
            The sortable ancestry path of the run.
        parent_run_id : str or UUID or None, default=None
            The id of the parent run.
        tags : list of str or None, default=None
            Tags for the run.
        extra : Dict or None, default=None
            Extra information for the run.
        **kwargs : Any
            Kwargs are ignored.
        """
        data: dict[str, Any] = {"id": _as_uuid(run_id, "run_id")}
        if end_time is not None:
            data["end_time"] = end_time.isoformat()
        if error is not None:
            data["error"] = error
        if inputs is not None:
            data["inputs"] = self._hide_run_inputs(inputs)
        if outputs is not None:
            data["outputs"] = self._hide_run_outputs(outputs)
        if events is not None:
            data["events"] = events
        if trace_id is not None:
            data["trace_id"] = trace_id
        if dotted_order is not None:
            data["dotted_order"] = dotted_order
        if parent_run_id is not None:
            data["parent_run_id"] = parent_run_id
        if tags is not None:
            data["tags"] = tags
        if extra is not None:
            data["extra"] = extra
        self.request_with_retries(
            "PATCH",
            f"{self.api_url}/runs/{data['id']}",
            request_kwargs={
                "data": _dumps_json(data),
                "headers": self._headers,
                "timeout": self.timeout_ms / 1000,
            },
        )

    def close(self) -> None:
        """Close the underlying session."""
        close_session(self.session)
