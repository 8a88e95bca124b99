"""A tracer that sends runs to the runs API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional, Union
from uuid import UUID

from calltree import utils as ct_utils
from calltree._internal._aiter import aio_to_thread
from calltree.async_client import AsyncClient
from calltree.client import Client
from calltree.run_trees import get_cached_client
from calltree.tracers import _converters, _tree_merge
from calltree.tracers.base import AsyncBaseTracer
from calltree.tracers.schemas import Run

if TYPE_CHECKING:
    from calltree.run_trees import RunTree

logger = logging.getLogger(__name__)


class CallTreeTracer(AsyncBaseTracer):
    """Tracer that sends run creates and updates to the runs API.

    When constructed inside a ``traceable`` function, the tracer imports the
    ambient run tree so runs it records nest under the decorated call, and
    adopts that tree's client.
    """

    name = "calltree_tracer"

    def __init__(
        self,
        example_id: Optional[Union[UUID, str]] = None,
        project_name: Optional[str] = None,
        client: Optional[Union[Client, AsyncClient]] = None,
        run_tree: Optional[RunTree] = None,
        tags: Optional[list[str]] = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the tracer.

        Args:
            example_id: Reference example linked to the root run of each trace.
            project_name: Project the runs are filed under. Defaults to the
                ``CALLTREE_PROJECT`` or ``CALLTREE_SESSION`` environment variable.
            client: Client used to send runs. Defaults to the shared ``Client``.
            run_tree: Ambient run tree to import. When omitted, the run tree of
                the enclosing ``traceable`` call (if any) is used.
            tags: Tags added to every run this tracer records.
        """
        super().__init__(**kwargs)
        self.example_id = (
            UUID(example_id) if isinstance(example_id, str) else example_id
        )
        self.project_name = project_name or ct_utils.get_tracer_project(
            return_default_value=False
        )
        self.client: Union[Client, AsyncClient] = client or get_cached_client()
        self.tags = tags or []
        if run_tree is None:
            run_tree = self.get_traceable_run_tree()
        if run_tree is not None:
            self.update_from_run_tree(run_tree)

    @staticmethod
    def get_traceable_run_tree() -> Optional[RunTree]:
        """Return the run tree of the enclosing ``traceable`` call, if any."""
        try:
            from calltree.run_helpers import get_current_run_tree

            return get_current_run_tree()
        except Exception as e:
            logger.debug(f"Could not look up the current run tree: {repr(e)}")
            return None

    def update_from_run_tree(self, run_tree: RunTree) -> None:
        """Import ``run_tree`` into the run map and adopt its client."""
        _tree_merge.hydrate(self.run_map, run_tree)
        if run_tree.ct_client is not None:
            self.client = run_tree.ct_client

    async def _send(self, method: str, *args: Any, **kwargs: Any) -> None:
        fn = getattr(self.client, method)
        if isinstance(self.client, AsyncClient):
            await fn(*args, **kwargs)
        else:
            await aio_to_thread(fn, *args, **kwargs)

    async def on_run_create(self, run: Run) -> None:
        """Send the creation of ``run``."""
        if self.tags:
            run_tags = run.tags or []
            run.tags = run_tags + [t for t in self.tags if t not in run_tags]
        payload = _converters.to_create_payload(
            run, self.example_id, self.project_name
        )
        await self._send("create_run", **payload)

    async def on_run_update(self, run: Run) -> None:
        """Send the current state of ``run``."""
        payload = _converters.to_update_payload(run)
        await self._send("update_run", run.id, **payload)

    def get_run(self, run_id: Union[UUID, str]) -> Optional[Run]:
        """Return the run recorded under ``run_id``, or None."""
        return self.run_map.get(run_id)

    async def _persist_run(self, run: Run) -> None:
        """Runs are sent as they change; nothing else to persist."""
