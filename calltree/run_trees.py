"""Run trees built by decorator-style instrumentation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Optional, Union, cast
from uuid import UUID

from calltree import utils
from calltree._internal._uuid import uuid7_from_datetime
from calltree.client import ID_TYPE, RUN_TYPE_T, Client, _ensure_uuid

logger = logging.getLogger(__name__)

_LOCK = threading.Lock()

# Length of the run id suffix of each dotted order segment
ID_LENGTH = 36
# Length of "%Y%m%dT%H%M%S%f"
_TIMESTAMP_LENGTH = 21
# Segments keep three digits after the milliseconds for the execution order
_MAX_SEGMENT_EXECUTION_ORDER = 999


def get_cached_client(**init_kwargs: Any) -> Client:
    """Return a process-wide Client, creating it on first use."""
    global _CLIENT
    if _CLIENT is None:
        with _LOCK:
            if _CLIENT is None:
                _CLIENT = Client(**init_kwargs)
    return _CLIENT


class RunTree:
    """Run schema with back-references for posting runs."""

    __slots__ = (
        "id",
        "name",
        "start_time",
        "run_type",
        "end_time",
        "extra",
        "error",
        "serialized",
        "events",
        "inputs",
        "outputs",
        "reference_example_id",
        "parent_run_id",
        "tags",
        "parent_run",
        "child_runs",
        "session_name",
        "execution_order",
        "child_execution_order",
        "ct_client",
        "dotted_order",
        "trace_id",
    )

    id: UUID
    name: str
    start_time: datetime
    run_type: str
    end_time: Optional[datetime]
    extra: dict[str, Any]
    error: Optional[str]
    serialized: Optional[dict[str, Any]]
    events: list[dict[str, Any]]
    inputs: dict[str, Any]
    outputs: Optional[dict[str, Any]]
    reference_example_id: Optional[UUID]
    parent_run_id: Optional[UUID]
    tags: Optional[list[str]]
    parent_run: Optional[RunTree]
    child_runs: list[RunTree]
    session_name: str
    execution_order: int
    child_execution_order: int
    ct_client: Optional[Any]
    dotted_order: str
    trace_id: UUID

    def __init__(
        self,
        name: str = "Unnamed",
        run_type: str = "chain",
        *,
        id: Optional[UUID] = None,
        start_time: Optional[datetime] = None,
        parent_run: Optional[RunTree] = None,
        parent_dotted_order: Optional[str] = None,
        child_runs: Optional[list[RunTree]] = None,
        session_name: Optional[str] = None,
        execution_order: int = 1,
        child_execution_order: Optional[int] = None,
        extra: Optional[dict] = None,
        tags: Optional[list[str]] = None,
        events: Optional[list[dict]] = None,
        ct_client: Optional[Any] = None,
        dotted_order: str = "",
        trace_id: Optional[UUID] = None,
        # Support aliases
        client: Optional[Any] = None,
        project_name: Optional[str] = None,
        # Other RunBase fields
        end_time: Optional[datetime] = None,
        error: Optional[str] = None,
        serialized: Optional[dict] = None,
        inputs: Optional[dict] = None,
        outputs: Optional[dict] = None,
        reference_example_id: Optional[UUID] = None,
        parent_run_id: Optional[UUID] = None,
    ):
        """Initialize the RunTree."""
        ct_client = ct_client or client
        session_name = (
            session_name or project_name or utils.get_tracer_project() or "default"
        )

        # Infer name from serialized if needed
        if not name or name == "Unnamed":
            if serialized is not None:
                if "name" in serialized:
                    name = serialized["name"]
                elif "id" in serialized:
                    name = serialized["id"][-1]
            if not name:
                name = "Unnamed"

        if parent_run is not None:
            parent_run_id = parent_run.id
            parent_dotted_order = parent_run.dotted_order

        if id is None:
            if start_time is None:
                start_time = datetime.now(timezone.utc)
            id = uuid7_from_datetime(start_time)
        elif start_time is None:
            start_time = datetime.now(timezone.utc)

        if trace_id is None:
            if parent_run is not None:
                trace_id = parent_run.trace_id
            else:
                trace_id = id

        if not dotted_order or not dotted_order.strip():
            current_dotted_order = _create_current_dotted_order(
                start_time, id, execution_order
            )
            if parent_dotted_order is not None:
                dotted_order = parent_dotted_order + "." + current_dotted_order
            else:
                dotted_order = current_dotted_order

        self.id = id
        self.name = name
        self.run_type = run_type
        self.start_time = start_time
        self.end_time = end_time
        self.extra = extra if extra is not None else {}
        self.error = error
        self.serialized = serialized
        self.events = events if events is not None else []
        self.inputs = inputs if inputs is not None else {}
        self.outputs = outputs if outputs is not None else {}
        self.reference_example_id = reference_example_id
        self.parent_run_id = parent_run_id
        self.tags = tags if tags is not None else []
        self.parent_run = parent_run
        self.child_runs = child_runs if child_runs is not None else []
        self.session_name = session_name
        self.execution_order = execution_order
        self.child_execution_order = (
            child_execution_order
            if child_execution_order is not None
            else execution_order
        )
        self.ct_client = ct_client
        self.dotted_order = dotted_order
        self.trace_id = trace_id

    def model_dump(
        self,
        *,
        exclude_none: bool = False,
        exclude: Optional[set] = None,
    ) -> dict[str, Any]:
        """Convert to a dict without back-references or the client."""
        exclude = exclude or set()
        always_exclude = {"parent_run", "ct_client"}
        result = {}
        for slot in self.__slots__:
            if slot in exclude or slot in always_exclude:
                continue
            value = getattr(self, slot, None)
            if exclude_none and value is None:
                continue
            result[slot] = value
        return result

    @property
    def metadata(self) -> dict[str, Any]:
        """Retrieve the metadata (if any)."""
        return self.extra.setdefault("metadata", {})

    def __repr__(self):
        """Return a string representation of the RunTree object."""
        return (
            f"RunTree(id={self.id}, name='{self.name}', "
            f"run_type='{self.run_type}', dotted_order='{self.dotted_order}')"
        )

    @property
    def client(self) -> Client:
        """Return the client."""
        # Lazily load the client
        # If you never use this for API calls, it will never be loaded
        if self.ct_client is None:
            self.ct_client = get_cached_client()
        return self.ct_client

    def add_tags(self, tags: Union[Sequence[str], str]) -> None:
        """Add tags to the run."""
        if isinstance(tags, str):
            tags = [tags]
        if self.tags is None:
            self.tags = []
        self.tags.extend(tags)

    def add_metadata(self, metadata: dict[str, Any]) -> None:
        """Add metadata to the run."""
        self.metadata.update(metadata)

    def add_event(self, events: Union[Sequence[dict], dict, str]) -> None:
        """Add an event to the list of events.

        Args:
            events: The event(s) to be added. It can be a single event, a sequence
                of events, or a message string.
        """
        if isinstance(events, dict):
            self.events.append(events)
        elif isinstance(events, str):
            self.events.append(
                {
                    "name": "event",
                    "time": datetime.now(timezone.utc).isoformat(),
                    "message": events,
                }
            )
        else:
            self.events.extend(events)

    def end(
        self,
        *,
        outputs: Optional[dict] = None,
        error: Optional[str] = None,
        end_time: Optional[datetime] = None,
    ) -> None:
        """Set the end time of the run and report its execution order upward."""
        self.end_time = end_time or datetime.now(timezone.utc)
        if outputs is not None:
            if not self.outputs:
                self.outputs = outputs
            else:
                self.outputs.update(outputs)
        if error is not None:
            self.error = error
        if self.parent_run is not None:
            self.parent_run.child_execution_order = max(
                self.parent_run.child_execution_order,
                self.child_execution_order,
            )

    def create_child(
        self,
        name: str,
        run_type: RUN_TYPE_T = "chain",
        *,
        run_id: Optional[ID_TYPE] = None,
        serialized: Optional[dict] = None,
        inputs: Optional[dict] = None,
        outputs: Optional[dict] = None,
        error: Optional[str] = None,
        reference_example_id: Optional[UUID] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        tags: Optional[list[str]] = None,
        extra: Optional[dict] = None,
    ) -> RunTree:
        """Add a child run to the run tree."""
        # A child never starts before its parent, or dotted orders would not sort
        if start_time is not None and start_time < self.start_time:
            logger.debug(
                f"Adjusting child run '{name}' start_time from {start_time} "
                f"to {self.start_time} to maintain timestamp ordering with "
                f"parent '{self.name}'"
            )
            start_time = self.start_time

        execution_order = self.child_execution_order + 1
        run = RunTree(
            name=name,
            id=_ensure_uuid(run_id),
            serialized=serialized or {"name": name},
            inputs=inputs or {},
            outputs=outputs or {},
            error=error,
            run_type=run_type,
            reference_example_id=reference_example_id,
            start_time=start_time or datetime.now(timezone.utc),
            end_time=end_time,
            execution_order=execution_order,
            child_execution_order=execution_order,
            extra=extra or {},
            parent_run=self,
            project_name=self.session_name,
            ct_client=self.ct_client,
            tags=tags,
        )
        self.child_execution_order = execution_order
        self.child_runs.append(run)
        return run

    def _get_dicts_safe(self) -> dict[str, Any]:
        # Things like generators cannot be copied
        self_dict = self.model_dump(
            exclude={"child_runs", "inputs", "outputs"}, exclude_none=True
        )
        if self.inputs is not None:
            # shallow copy. deep copying will occur in the client
            self_dict["inputs"] = self.inputs.copy()
        if self.outputs is not None:
            self_dict["outputs"] = self.outputs.copy()
        return self_dict

    def post(self, exclude_child_runs: bool = True) -> None:
        """Send the creation of this run to the runs API."""
        kwargs = self._get_dicts_safe()
        self.client.create_run(**kwargs)
        if not exclude_child_runs:
            for child_run in self.child_runs:
                child_run.post(exclude_child_runs=False)

    def patch(self) -> None:
        """Send the final state of this run to the runs API."""
        if not self.end_time:
            self.end()
        self.client.update_run(
            run_id=self.id,
            end_time=self.end_time,
            error=self.error,
            inputs=self.inputs.copy() if self.inputs else None,
            outputs=self.outputs.copy() if self.outputs else None,
            events=self.events,
            trace_id=self.trace_id,
            dotted_order=self.dotted_order,
            parent_run_id=self.parent_run_id,
            tags=self.tags,
            extra=self.extra,
        )

    @classmethod
    def from_dotted_order(
        cls,
        dotted_order: str,
        **kwargs: Any,
    ) -> RunTree:
        """Create a span standing for the run at the end of a dotted order.

        The id, trace id and parent run id are recovered from the segments.
        The lifecycle of the run itself is owned by whoever produced the
        dotted order.

        Returns:
            RunTree: The new span.
        """
        init_args = kwargs.copy()
        dotted_order = dotted_order.strip()
        parsed_dotted_order = _parse_dotted_order(dotted_order)
        init_args["trace_id"] = parsed_dotted_order[0][1]
        init_args["id"] = parsed_dotted_order[-1][1]
        init_args["dotted_order"] = dotted_order
        if len(parsed_dotted_order) >= 2:
            # Has a parent
            init_args["parent_run_id"] = parsed_dotted_order[-2][1]
        init_args["start_time"] = init_args.get("start_time") or datetime.now(
            timezone.utc
        )
        init_args["run_type"] = init_args.get("run_type") or "chain"
        init_args["name"] = init_args.get("name") or "parent"
        return cls(**init_args)

    @classmethod
    def from_runnable_config(
        cls,
        config: Optional[dict],
        **kwargs: Any,
    ) -> Optional[RunTree]:
        """Create a span for the run currently open in a runnable config.

        The config must carry an async callback manager whose parent run is
        known to one of its ``CallTreeTracer`` handlers.

        Returns:
            The new span or `None` if no parent span information is found.
        """
        from calltree.callbacks.manager import AsyncCallbackManager
        from calltree.runnables.config import RunnableConfig, ensure_config
        from calltree.tracers.tracer import CallTreeTracer

        config_ = ensure_config(cast(Optional[RunnableConfig], config))
        cb = config_.get("callbacks")
        if not isinstance(cb, AsyncCallbackManager) or not cb.parent_run_id:
            return None
        tracer = next(
            (t for t in cb.handlers if isinstance(t, CallTreeTracer)),
            None,
        )
        if tracer is None:
            return None
        run = tracer.run_map.get(cb.parent_run_id)
        if run is None or not run.dotted_order:
            return None
        kwargs["run_type"] = run.run_type
        kwargs["inputs"] = run.inputs
        kwargs["outputs"] = run.outputs
        kwargs["start_time"] = run.start_time
        kwargs["end_time"] = run.end_time
        kwargs["tags"] = sorted(set((run.tags or []) + kwargs.get("tags", [])))
        kwargs["name"] = run.name
        kwargs["execution_order"] = run.execution_order
        kwargs["child_execution_order"] = run.child_execution_order
        extra_ = kwargs.setdefault("extra", {})
        metadata_ = extra_.setdefault("metadata", {})
        metadata_.update(run.metadata)
        if isinstance(tracer.client, Client):
            kwargs["client"] = tracer.client
        else:
            logger.debug(
                "Tracer client is not a synchronous Client; traceable runs"
                " nested under it fall back to the default client."
            )
        kwargs["project_name"] = tracer.project_name
        return cls.from_dotted_order(run.dotted_order, **kwargs)


def _parse_dotted_order(dotted_order: str) -> list[tuple[datetime, UUID]]:
    """Parse the dotted order string."""
    parts = dotted_order.split(".")
    # Tracer segments append the execution order to the milliseconds; only
    # six fraction digits are kept so deep traces still parse
    return [
        (
            datetime.strptime(
                part[: -ID_LENGTH - 1][:_TIMESTAMP_LENGTH] + "Z", "%Y%m%dT%H%M%S%fZ"
            ),
            UUID(part[-ID_LENGTH:]),
        )
        for part in parts
    ]


_CLIENT: Optional[Client] = None
__all__ = ["RunTree", "get_cached_client"]


def _create_current_dotted_order(
    start_time: Optional[datetime],
    run_id: Optional[UUID],
    execution_order: int = 1,
) -> str:
    """Create the current dotted order segment.

    Milliseconds are followed by the execution order padded to three digits,
    so siblings started within the same millisecond sort in creation order.
    Orders above 999 are held at 999; such ties fall back to the run id.
    """
    st = start_time or datetime.now(timezone.utc)
    id_ = run_id or uuid7_from_datetime(st)
    order = min(max(execution_order, 0), _MAX_SEGMENT_EXECUTION_ORDER)
    return (
        st.strftime("%Y%m%dT%H%M%S")
        + f"{st.microsecond // 1000:03d}"
        + f"{order:03d}"
        + "Z"
        + str(id_)
    )
