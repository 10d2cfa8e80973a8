"""Read-only structural queries over the branch graph.

Traversal walks from parent to child; cycle detection follows cross
references. Nothing here mutates the store.
"""

from __future__ import annotations

import re
from collections import deque
from typing import TYPE_CHECKING

from loguru import logger

from branch_graph.models.graph_types import Branch, BranchState, Thought
from branch_graph.utils.errors import CircularReferenceError, ValidationError

if TYPE_CHECKING:
    from branch_graph.models.store import GraphStore


class GraphSearch:
    """BFS, content search, attribute filters and cycle detection."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def breadth_first_search(self, start_branch_id: str, max_depth: int) -> set[str]:
        """Descendants within ``max_depth`` parent-to-child hops of the start.

        Args:
            start_branch_id: Branch to start from; always in the result.
            max_depth: Maximum hop count (0 returns only the start).

        Returns:
            Set of reachable branch ids.

        Raises:
            ValidationError: If the id is blank, the depth is negative or
                the start branch does not exist.

        """
        if not start_branch_id or not start_branch_id.strip():
            raise ValidationError("start branch id must not be blank", field="start_branch_id")
        if max_depth < 0:
            raise ValidationError("max_depth must be non-negative", field="max_depth", value=max_depth)
        if not self.store.has_branch(start_branch_id):
            raise ValidationError(
                f"Start branch does not exist: {start_branch_id}",
                field="start_branch_id",
                value=start_branch_id,
            )

        visited = {start_branch_id}
        queue: deque[tuple[str, int]] = deque([(start_branch_id, 0)])
        while queue:
            branch_id, depth = queue.popleft()
            if depth >= max_depth:
                continue
            branch = self.store.get_branch(branch_id)
            if branch is None:
                continue
            for child_id in sorted(branch.child_ids):
                if child_id not in visited and self.store.has_branch(child_id):
                    visited.add(child_id)
                    queue.append((child_id, depth + 1))
        return visited

    def neighborhood(self, branch_id: str, max_depth: int) -> list[Branch]:
        """``branch_id`` and its descendants within ``max_depth``, in store order."""
        ids = self.breadth_first_search(branch_id, max_depth)
        return [b for b in self.store.get_all_branches() if b.id in ids]

    def search_thoughts(self, pattern: str | re.Pattern[str]) -> list[Thought]:
        """Thoughts whose content matches ``pattern``.

        String patterns are compiled case-insensitively. A thought that fails
        to match for any reason is logged and skipped.

        Raises:
            ValidationError: If a string pattern does not compile.

        """
        if isinstance(pattern, str):
            try:
                compiled = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise ValidationError(f"Invalid search pattern: {e}", field="query", value=pattern) from e
        else:
            compiled = pattern

        matches: list[Thought] = []
        for thought in self.store.all_thoughts():
            try:
                if compiled.search(thought.content):
                    matches.append(thought)
            except (TypeError, re.error) as e:
                logger.warning(f"Skipping thought {thought.id} during search: {e}")
        return matches

    def find_thoughts_by_type(self, thought_type: str) -> list[Thought]:
        return [t for t in self.store.all_thoughts() if t.metadata.type == thought_type]

    def find_thoughts_by_confidence(self, min_confidence: float = 0.0, max_confidence: float = 1.0) -> list[Thought]:
        if min_confidence > max_confidence:
            raise ValidationError(
                "min_confidence must not exceed max_confidence",
                field="min_confidence",
                value=min_confidence,
            )
        return [
            t for t in self.store.all_thoughts() if min_confidence <= t.metadata.confidence <= max_confidence
        ]

    def find_branches_by_state(self, state: BranchState) -> list[Branch]:
        return [b for b in self.store.get_all_branches() if b.state == state]

    def find_orphaned_branches(self) -> list[Branch]:
        """Branches with neither a live parent nor children."""
        return [
            b
            for b in self.store.get_all_branches()
            if not b.child_ids and (b.parent_id is None or not self.store.has_branch(b.parent_id))
        ]

    def detect_circular_references(self) -> list[CircularReferenceError]:
        """Cycles in the branch-to-branch cross-reference graph.

        Each cycle is reported once, as an error object (not raised), with the
        path closing back on its first branch.
        """
        edges: dict[str, list[str]] = {}
        for branch in self.store.get_all_branches():
            edges[branch.id] = [ref.to_branch for ref in branch.cross_refs if self.store.has_branch(ref.to_branch)]

        cycles: list[CircularReferenceError] = []
        seen_cycles: set[frozenset[str]] = set()
        visited: set[str] = set()

        def dfs(node: str, path: list[str], on_path: set[str]) -> None:
            visited.add(node)
            path.append(node)
            on_path.add(node)
            for target in edges.get(node, []):
                if target in on_path:
                    cycle = path[path.index(target) :] + [target]
                    key = frozenset(cycle)
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(CircularReferenceError(cycle))
                elif target not in visited:
                    dfs(target, path, on_path)
            path.pop()
            on_path.discard(node)

        for branch_id in edges:
            if branch_id not in visited:
                dfs(branch_id, [], set())

        if cycles:
            logger.debug(f"Detected {len(cycles)} circular cross-reference chains")
        return cycles
