"""Graph data model, store and embedding capability."""

from .graph_types import (
    Branch,
    BranchState,
    CrossReference,
    CrossRefType,
    Event,
    EventType,
    SemanticProfile,
    Thought,
    ThoughtMetadata,
    ThoughtSpec,
    content_hash,
)
from .store import BatchSequence, GraphStore

__all__ = [
    "BatchSequence",
    "Branch",
    "BranchState",
    "CrossRefType",
    "CrossReference",
    "Event",
    "EventType",
    "GraphStore",
    "SemanticProfile",
    "Thought",
    "ThoughtMetadata",
    "ThoughtSpec",
    "content_hash",
]
