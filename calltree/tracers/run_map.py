"""Thread-safe index of tracer runs by id."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Optional, Union
from uuid import UUID

from calltree.tracers.schemas import Run

RunKey = Union[UUID, str]


def _raise_child_execution_order(run: Run, order: int) -> None:
    run.child_execution_order = max(run.child_execution_order, order)


class RunMap:
    """Mapping from run id to :class:`Run`, guarded by a lock.

    Keys may be given as ``UUID`` or ``str``; they are stored as strings.
    Entries are never evicted.
    """

    def __init__(self, runs: Optional[Mapping[RunKey, Run]] = None) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = (
            {str(k): v for k, v in runs.items()} if runs else {}
        )

    def set(self, run_id: RunKey, run: Run) -> None:
        """Insert or overwrite the run stored under ``run_id``."""
        with self._lock:
            self._runs[str(run_id)] = run

    def get(self, run_id: RunKey) -> Optional[Run]:
        """Return the run stored under ``run_id``, or None."""
        with self._lock:
            return self._runs.get(str(run_id))

    def update(self, runs: Iterable[Run]) -> None:
        """Insert many runs at once, keyed by their ids."""
        with self._lock:
            for run in runs:
                self._runs[str(run.id)] = run

    def add_child(self, run: Run) -> Optional[Run]:
        """Insert ``run`` and append it to its parent's children.

        Returns:
            The parent run, or None if the run has no parent in the map.
        """
        with self._lock:
            self._runs[str(run.id)] = run
            if run.parent_run_id is None:
                return None
            parent = self._runs.get(str(run.parent_run_id))
            if parent is not None:
                parent.child_runs.append(run)
                _raise_child_execution_order(parent, run.child_execution_order)
            return parent

    def merge(self, runs: Iterable[Run]) -> list[Run]:
        """Insert the runs not already present, attaching each to its parent.

        Runs already in the map are kept as they are. A newly inserted run is
        appended to the children of its parent when that parent is present.

        Returns:
            The runs that were inserted.
        """
        inserted = []
        with self._lock:
            for run in runs:
                key = str(run.id)
                if key in self._runs:
                    continue
                self._runs[key] = run
                inserted.append(run)
                if run.parent_run_id is not None:
                    parent = self._runs.get(str(run.parent_run_id))
                    if parent is not None:
                        parent.child_runs.append(run)
                        _raise_child_execution_order(
                            parent, run.child_execution_order
                        )
        return inserted

    def raise_child_execution_order(self, run_id: RunKey, order: int) -> None:
        """Make sure the next child of ``run_id`` is ordered after ``order``.

        Unknown ids are ignored.
        """
        with self._lock:
            run = self._runs.get(str(run_id))
            if run is not None:
                _raise_child_execution_order(run, order)

    def values(self) -> list[Run]:
        """Return a snapshot of the stored runs."""
        with self._lock:
            return list(self._runs.values())

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return str(run_id) in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def keys(self) -> list[str]:
        """Return a snapshot of the stored run ids."""
        with self._lock:
            return list(self._runs)
