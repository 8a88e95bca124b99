"""The async runs API client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Optional, Union, cast

import httpx

from calltree import client as ct_client
from calltree import utils as ct_utils

logger = logging.getLogger(__name__)


class AsyncClient:
    """Async Client for sending runs to the runs API."""

    __slots__ = ("_retry_config", "_client")

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_ms: Optional[
            Union[
                int, tuple[Optional[int], Optional[int], Optional[int], Optional[int]]
            ]
        ] = None,
        retry_config: Optional[Mapping[str, Any]] = None,
    ):
        """Initialize the async client."""
        self._retry_config = retry_config or {"max_retries": 3}
        _headers = {
            "Content-Type": "application/json",
        }
        api_key = ct_utils.get_api_key(api_key)
        api_url = ct_utils.get_api_url(api_url)
        if api_key:
            _headers[ct_client.X_API_KEY] = api_key

        if isinstance(timeout_ms, int):
            timeout_: Union[tuple, float] = (timeout_ms / 1000, None, None, None)
        elif isinstance(timeout_ms, tuple):
            timeout_ = tuple([t / 1000 if t is not None else None for t in timeout_ms])
        else:
            timeout_ = 10
        self._client = httpx.AsyncClient(
            base_url=api_url, headers=_headers, timeout=timeout_
        )

    async def __aenter__(self) -> AsyncClient:
        """Enter the async client."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit the async client."""
        await self.aclose()

    async def aclose(self):
        """Close the async client."""
        await self._client.aclose()

    @property
    def _api_url(self):
        return str(self._client.base_url)

    async def _arequest_with_retries(
        self,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an async HTTP request, retrying transport errors."""
        max_retries = cast(int, self._retry_config.get("max_retries", 3))

        for attempt in range(max_retries):
            try:
                response = await self._client.request(method, endpoint, **kwargs)
                ct_utils.raise_for_status_with_text(response)
                return response
            except httpx.HTTPStatusError as e:
                if response.status_code >= 500:
                    raise ct_utils.CallTreeAPIError(
                        f"Server error caused failure to {method}"
                        f" {endpoint} in"
                        f" runs API. {repr(e)}"
                    ) from e
                elif response.status_code == 404:
                    raise ct_utils.CallTreeNotFoundError(
                        f"Resource not found for {endpoint}. {repr(e)}"
                    ) from e
                else:
                    raise ct_utils.CallTreeUserError(
                        f"Failed to {method} {endpoint} in runs API. {repr(e)}"
                    ) from e
            except httpx.RequestError as e:
                if attempt == max_retries - 1:
                    raise ct_utils.CallTreeConnectionError(
                        f"Request error: {repr(e)}"
                    ) from e
                logger.debug(
                    f"Retrying {method} {endpoint} after request error: {repr(e)}"
                )
                await asyncio.sleep(2**attempt)
        raise ct_utils.CallTreeAPIError("Unexpected error connecting to the runs API")

    async def create_run(
        self,
        name: str,
        inputs: dict[str, Any],
        run_type: str,
        *,
        project_name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Create a run."""
        session_name = kwargs.pop("session_name", None)
        kwargs.pop("child_runs", None)
        run_create = {
            **kwargs,
            "name": name,
            "id": ct_client._ensure_uuid(kwargs.get("id")),
            "inputs": inputs,
            "run_type": run_type,
            "session_name": project_name
            or session_name
            or ct_utils.get_tracer_project(),
        }
        await self._arequest_with_retries(
            "POST", "/runs", content=ct_client._dumps_json(run_create)
        )

    async def update_run(
        self,
        run_id: ct_client.ID_TYPE,
        **kwargs: Any,
    ) -> None:
        """Update a run."""
        data = {**kwargs, "id": ct_client._as_uuid(run_id, "run_id")}
        await self._arequest_with_retries(
            "PATCH",
            f"/runs/{ct_client._as_uuid(run_id, 'run_id')}",
            content=ct_client._dumps_json(data),
        )
