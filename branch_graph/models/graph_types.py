"""Domain types for the branch graph.

Thoughts are immutable and content-addressed; branches are mutable records in
the store's arena and refer to each other by id only.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import numpy as np


class BranchState(str, Enum):
    """Lifecycle states of a branch."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    DEAD_END = "dead_end"

    @property
    def is_terminal(self) -> bool:
        return self in (BranchState.COMPLETED, BranchState.DEAD_END)

    def can_transition_to(self, target: BranchState) -> bool:
        """Whether ``self -> target`` is allowed.

        Transitions only move toward a terminal state; ``suspended`` is the
        one state that can return to ``active``.
        """
        if self == target:
            return True
        if self.is_terminal:
            return False
        if target == BranchState.ACTIVE:
            return self == BranchState.SUSPENDED
        return True


class EventType(str, Enum):
    """Kinds of event-log entries."""

    THOUGHT_ADDED = "thought_added"
    BRANCH_CREATED = "branch_created"
    CROSS_REF_ADDED = "cross_ref_added"
    BRANCH_STATE_CHANGED = "branch_state_changed"
    EVALUATION_COMPLETED = "evaluation_completed"


class CrossRefType(str, Enum):
    """Relationship kinds between branches."""

    COMPLEMENTARY = "complementary"
    CONTRADICTORY = "contradictory"
    BUILDS_UPON = "builds_upon"
    ALTERNATIVE = "alternative"
    SUPPORTS = "supports"


def content_hash(content: str) -> str:
    """Deterministic 16-hex-char thought id for ``content``."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class ThoughtMetadata:
    """Caller-supplied thought attributes."""

    type: str = "analysis"
    confidence: float = 1.0
    key_points: tuple[str, ...] = ()


@dataclass(frozen=True)
class Thought:
    """An immutable unit of reasoning text."""

    id: str
    content: str
    branch_id: str
    timestamp: datetime
    metadata: ThoughtMetadata = field(default_factory=ThoughtMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "branchId": self.branch_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": {
                "type": self.metadata.type,
                "confidence": self.metadata.confidence,
                "keyPoints": list(self.metadata.key_points),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Thought:
        meta = data.get("metadata") or {}
        return cls(
            id=data["id"],
            content=data["content"],
            branch_id=data["branchId"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=ThoughtMetadata(
                type=meta.get("type", "analysis"),
                confidence=float(meta.get("confidence", 1.0)),
                key_points=tuple(meta.get("keyPoints", ())),
            ),
        )


@dataclass(frozen=True)
class ThoughtSpec:
    """Input for ``GraphStore.create_thought_if_new``."""

    thought_id: str
    content: str
    branch_id: str
    type: str = "analysis"
    confidence: float = 1.0
    key_points: tuple[str, ...] = ()
    timestamp: datetime | None = None


@dataclass
class SemanticProfile:
    """Running centroid of a branch's thought embeddings plus top keywords."""

    center_embedding: np.ndarray
    keywords: list[str] = field(default_factory=list)
    thought_count: int = 0
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "keywords": list(self.keywords),
            "thoughtCount": self.thought_count,
            "lastUpdated": self.last_updated.isoformat(),
            "dimensions": int(self.center_embedding.shape[0]),
        }


@dataclass
class CrossReference:
    """A typed link from one branch to another."""

    id: str
    from_branch: str
    to_branch: str
    type: CrossRefType
    strength: float
    reason: str = ""
    thought_pairs: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fromBranch": self.from_branch,
            "toBranch": self.to_branch,
            "type": self.type.value,
            "strength": self.strength,
            "reason": self.reason,
            "thoughtPairs": [list(p) for p in self.thought_pairs],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CrossReference:
        return cls(
            id=data["id"],
            from_branch=data["fromBranch"],
            to_branch=data["toBranch"],
            type=CrossRefType(data["type"]),
            strength=float(data["strength"]),
            reason=data.get("reason", ""),
            thought_pairs=[(a, b) for a, b in data.get("thoughtPairs", [])],
        )


@dataclass
class Branch:
    """A mutable, ordered sequence of thoughts with lifecycle state.

    ``parent_id`` and ``child_ids`` are only changed through
    ``GraphStore.link``/``GraphStore.unlink``.
    """

    id: str
    parent_id: str | None = None
    child_ids: set[str] = field(default_factory=set)
    state: BranchState = BranchState.ACTIVE
    priority: float = 0.5
    confidence: float = 0.5
    thought_ids: list[str] = field(default_factory=list)
    thoughts: list[Thought] = field(default_factory=list)
    last_evaluation_index: int = 0
    semantic_profile: SemanticProfile | None = None
    cross_refs: list[CrossReference] = field(default_factory=list)
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "state": self.state.value,
            "priority": self.priority,
            "confidence": self.confidence,
            "thoughtIds": list(self.thought_ids),
            "lastEvaluationIndex": self.last_evaluation_index,
            "description": self.description,
        }


@dataclass(frozen=True)
class Event:
    """An append-only event-log record."""

    type: EventType
    index: int
    timestamp: int  # epoch milliseconds
    thought_id: str | None = None
    branch_id: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "index": self.index,
            "timestamp": self.timestamp,
            "thoughtId": self.thought_id,
            "branchId": self.branch_id,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        return cls(
            type=EventType(data["type"]),
            index=int(data["index"]),
            timestamp=int(data["timestamp"]),
            thought_id=data.get("thoughtId"),
            branch_id=data.get("branchId"),
            data=data.get("data"),
        )
