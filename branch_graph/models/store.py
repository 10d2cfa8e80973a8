"""In-process thought/branch store with an append-only event log.

The store holds data only: no search, scoring or implicit events. Callers pair
each mutation with ``record_event`` so the log stays authoritative.

Design Principles:
    - Thoughts are content-addressed and inserted at most once
    - Branches live in an arena keyed by id; parent/child edges change only
      through ``link``/``unlink`` so both sides stay consistent
    - Event indexes are dense and strictly increasing from 0
    - Export batches are finite, restartable sequences (fresh pass per iter)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from loguru import logger

from branch_graph.models.graph_types import (
    Branch,
    Event,
    EventType,
    Thought,
    ThoughtMetadata,
    ThoughtSpec,
)
from branch_graph.utils.errors import BranchNotFoundError, ThoughtNotFoundError, ValidationError

T = TypeVar("T")


class BatchSequence(Generic[T]):
    """Finite, restartable sequence of fixed-size batches.

    Each ``iter()`` snapshots the source and starts a fresh pass, so an export
    can be consumed more than once.
    """

    def __init__(self, source: Callable[[], Sequence[T]], batch_size: int) -> None:
        if batch_size <= 0:
            raise ValidationError("batch_size must be positive", field="batch_size", value=batch_size)
        self._source = source
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[list[T]]:
        items = list(self._source())
        for start in range(0, len(items), self.batch_size):
            yield items[start : start + self.batch_size]

    def __len__(self) -> int:
        total = len(self._source())
        return (total + self.batch_size - 1) // self.batch_size


class GraphStore:
    """Thought pool, branch arena and event log.

    Example:
        >>> store = GraphStore()
        >>> store.create_branch("b1")
        >>> store.create_thought_if_new(ThoughtSpec("t1", "hello", "b1"))
        True
        >>> store.add_thought_to_branch("t1", "b1")

    """

    def __init__(self, thought_pool_size: int | None = None) -> None:
        """Initialize an empty store.

        Args:
            thought_pool_size: Optional cap on distinct thoughts.

        """
        self.thought_pool_size = thought_pool_size
        self._thoughts: dict[str, Thought] = {}
        self._branches: dict[str, Branch] = {}
        self._events: list[Event] = []

    # ------------------------------------------------------------------
    # Thoughts
    # ------------------------------------------------------------------

    def has_thought(self, thought_id: str) -> bool:
        return thought_id in self._thoughts

    def get_thought(self, thought_id: str) -> Thought | None:
        return self._thoughts.get(thought_id)

    def require_thought(self, thought_id: str) -> Thought:
        thought = self._thoughts.get(thought_id)
        if thought is None:
            raise ThoughtNotFoundError(thought_id)
        return thought

    def create_thought_if_new(self, spec: ThoughtSpec) -> bool:
        """Insert a thought unless its id already exists.

        Args:
            spec: Thought fields, including the precomputed id.

        Returns:
            True if a new thought was inserted.

        Raises:
            ValidationError: If the pool is full.

        """
        if spec.thought_id in self._thoughts:
            return False
        if self.thought_pool_size is not None and len(self._thoughts) >= self.thought_pool_size:
            raise ValidationError(
                f"Thought pool is full ({self.thought_pool_size} thoughts)",
                field="thought_pool_size",
                value=self.thought_pool_size,
            )

        self._thoughts[spec.thought_id] = Thought(
            id=spec.thought_id,
            content=spec.content,
            branch_id=spec.branch_id,
            timestamp=spec.timestamp or datetime.now(UTC),
            metadata=ThoughtMetadata(
                type=spec.type,
                confidence=spec.confidence,
                key_points=tuple(spec.key_points),
            ),
        )
        return True

    def put_thought(self, thought: Thought) -> None:
        """Insert a fully-formed thought verbatim (import path)."""
        self._thoughts[thought.id] = thought

    def thought_count(self) -> int:
        return len(self._thoughts)

    def pool_thoughts(self) -> list[Thought]:
        """Every thought in the pool, in insertion order."""
        return list(self._thoughts.values())

    def all_thoughts(self) -> list[Thought]:
        """Thoughts reachable through live branches, deduplicated, in branch order."""
        seen: set[str] = set()
        result: list[Thought] = []
        for branch in self._branches.values():
            for thought in branch.thoughts:
                if thought.id not in seen:
                    seen.add(thought.id)
                    result.append(thought)
        return result

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def has_branch(self, branch_id: str) -> bool:
        return branch_id in self._branches

    def get_branch(self, branch_id: str) -> Branch | None:
        return self._branches.get(branch_id)

    def require_branch(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        return branch

    def create_branch(self, branch_id: str, parent_id: str | None = None) -> Branch:
        """Create a branch with default state, priority and confidence.

        Args:
            branch_id: New branch id.
            parent_id: Optional parent. A parent that does not exist yet is
                kept as a weak reference and linked once it appears.

        Returns:
            The new branch.

        Raises:
            ValidationError: If the id is blank or already taken, or the
                parent link would form a cycle. Nothing is inserted then.

        """
        if not branch_id or not branch_id.strip():
            raise ValidationError("branch id must not be blank", field="branch_id")
        if branch_id in self._branches:
            raise ValidationError(f"Branch already exists: {branch_id}", field="branch_id", value=branch_id)
        # ancestors() follows weak parent ids, so waiting children count
        if parent_id and (parent_id == branch_id or branch_id in self.ancestors(parent_id)):
            raise ValidationError(
                f"Linking {parent_id} -> {branch_id} would create a cycle",
                field="parent_id",
                value=parent_id,
            )

        branch = Branch(id=branch_id)
        self._branches[branch_id] = branch

        # Adopt children that named this id as parent before it existed
        for other in self._branches.values():
            if other.parent_id == branch_id:
                branch.child_ids.add(other.id)

        if parent_id:
            self.link(parent_id, branch_id)
        return branch

    def put_branch(self, branch: Branch) -> None:
        """Insert a fully-formed branch verbatim (import path)."""
        self._branches[branch.id] = branch

    def link(self, parent_id: str, child_id: str) -> None:
        """Set ``child.parent_id`` and the parent's ``child_ids`` together.

        Re-parenting first detaches the child from its old parent. Cycles are
        rejected.

        Raises:
            BranchNotFoundError: If the child does not exist.
            ValidationError: If the link would create a cycle.

        """
        child = self.require_branch(child_id)
        if parent_id == child_id or child_id in self.ancestors(parent_id):
            raise ValidationError(
                f"Linking {parent_id} -> {child_id} would create a cycle",
                field="parent_id",
                value=parent_id,
            )
        if child.parent_id is not None:
            self.unlink(child_id)

        child.parent_id = parent_id
        parent = self._branches.get(parent_id)
        if parent is not None:
            parent.child_ids.add(child_id)

    def unlink(self, child_id: str) -> None:
        """Detach a branch from its parent (no-op for roots)."""
        child = self.require_branch(child_id)
        if child.parent_id is None:
            return
        parent = self._branches.get(child.parent_id)
        if parent is not None:
            parent.child_ids.discard(child_id)
        child.parent_id = None

    def ancestors(self, branch_id: str) -> list[str]:
        """Parent chain of ``branch_id``, nearest first."""
        chain: list[str] = []
        seen = {branch_id}
        current = self._branches.get(branch_id)
        while current is not None and current.parent_id is not None:
            if current.parent_id in seen:
                break
            chain.append(current.parent_id)
            seen.add(current.parent_id)
            current = self._branches.get(current.parent_id)
        return chain

    def add_thought_to_branch(self, thought_id: str, branch_id: str, *, strict: bool = False) -> None:
        """Append a thought to a branch.

        Lenient by default: missing ids make this a silent no-op. With
        ``strict=True`` a missing id raises instead.

        Args:
            thought_id: Existing thought id.
            branch_id: Existing branch id.
            strict: Raise on missing ids.

        Raises:
            ValidationError: In strict mode, when either id is missing.

        """
        branch = self._branches.get(branch_id)
        thought = self._thoughts.get(thought_id)
        if branch is None or thought is None:
            if strict:
                missing = "branch_id" if branch is None else "thought_id"
                raise ValidationError(
                    f"Cannot add thought {thought_id} to branch {branch_id}: {missing} does not exist",
                    field=missing,
                    value=branch_id if branch is None else thought_id,
                )
            logger.debug(f"add_thought_to_branch ignored: {thought_id} -> {branch_id}")
            return

        branch.thought_ids.append(thought_id)
        branch.thoughts.append(thought)

    def remove_branch(self, branch_id: str) -> Branch:
        """Remove a branch from the arena.

        Its children become roots and its thoughts stay in the pool.

        Returns:
            The removed branch.

        Raises:
            BranchNotFoundError: If the branch does not exist.

        """
        branch = self.require_branch(branch_id)
        for child_id in list(branch.child_ids):
            self.unlink(child_id)
        self.unlink(branch_id)
        del self._branches[branch_id]
        return branch

    def get_all_branches(self) -> list[Branch]:
        return list(self._branches.values())

    def branch_count(self) -> int:
        return len(self._branches)

    def get_recent_thoughts(self, branch_id: str, count: int) -> list[Thought]:
        """Last ``count`` thoughts of a branch in append order."""
        branch = self._branches.get(branch_id)
        if branch is None or count <= 0:
            return []
        return branch.thoughts[-count:]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @property
    def next_event_index(self) -> int:
        return len(self._events)

    def record_event(
        self,
        event_type: EventType,
        *,
        thought_id: str | None = None,
        branch_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Event:
        """Append an event with the next dense index.

        Returns:
            The recorded event.

        """
        event = Event(
            type=event_type,
            index=len(self._events),
            timestamp=int(time.time() * 1000),
            thought_id=thought_id,
            branch_id=branch_id,
            data=data,
        )
        self._events.append(event)
        return event

    def restore_events(self, events: Iterable[Event]) -> None:
        """Replace the log with ``events`` (import path).

        Raises:
            ValidationError: If the indexes are not 0..n-1 in order.

        """
        restored = sorted(events, key=lambda e: e.index)
        for expected, event in enumerate(restored):
            if event.index != expected:
                raise ValidationError(
                    f"Event log has a gap at index {expected}", field="events", value=event.index
                )
        self._events = restored

    def get_events_since(self, index: int) -> list[Event]:
        return self._events[max(index, 0) :]

    def event_count(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Batched iteration
    # ------------------------------------------------------------------

    def iter_thought_batches(self, batch_size: int = 100) -> BatchSequence[Thought]:
        return BatchSequence(self.pool_thoughts, batch_size)

    def iter_branch_batches(self, batch_size: int = 100) -> BatchSequence[Branch]:
        return BatchSequence(self.get_all_branches, batch_size)

    def iter_event_batches(self, batch_size: int = 100) -> BatchSequence[Event]:
        return BatchSequence(lambda: list(self._events), batch_size)

    def clear(self) -> None:
        self._thoughts.clear()
        self._branches.clear()
        self._events.clear()
