"""Import a decorator-built run tree into a tracer's run map."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from calltree.tracers.run_map import RunMap
from calltree.tracers.schemas import Run

if TYPE_CHECKING:
    from calltree.run_trees import RunTree

logger = logging.getLogger(__name__)


def find_root(node: RunTree) -> RunTree:
    """Follow parent links up to the root of ``node``'s tree.

    The walk stops at a node without a parent, or at the last new node
    before a parent link revisits an id (a malformed, cyclic chain).
    """
    visited = {str(node.id)}
    current = node
    while current.parent_run is not None:
        parent = current.parent_run
        if str(parent.id) in visited:
            logger.warning(
                f"Cycle in run tree parent links; stopping at run {current.id}"
                f" (parent {parent.id} already visited)"
            )
            break
        visited.add(str(parent.id))
        current = parent
    return current


def flatten(root: RunTree) -> list[RunTree]:
    """Return the nodes under ``root`` in breadth-first order, each once."""
    visited = {str(root.id)}
    queue = deque([root])
    nodes = []
    while queue:
        node = queue.popleft()
        nodes.append(node)
        for child in node.child_runs:
            if str(child.id) in visited:
                continue
            visited.add(str(child.id))
            queue.append(child)
    return nodes


def hydrate(run_map: RunMap, node: RunTree) -> list[Run]:
    """Seed ``run_map`` with detached copies of the tree containing ``node``.

    The source tree is left untouched. Runs the map already holds are kept,
    and each new copy is attached to the record of its ``parent_run_id``.

    Returns:
        The inserted records, in breadth-first order from the root.
    """
    records = [Run.from_run_tree(tree_node) for tree_node in flatten(find_root(node))]
    inserted = run_map.merge(records)
    logger.debug(f"Hydrated {len(inserted)} runs from ambient run tree")
    return inserted
