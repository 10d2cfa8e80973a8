"""Chunked export and import of the whole graph.

Chunk order: header, thoughts, branches, relationships, events. Import
rebuilds the store id-for-id, so ``export -> import -> export`` yields the
same chunks apart from ``exportDate``. Semantic profiles are not exported;
they are rebuilt from thought embeddings on first use.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from branch_graph.models.graph_types import Branch, BranchState, CrossReference, Event, Thought
from branch_graph.models.store import GraphStore
from branch_graph.utils.errors import BranchGraphError, ValidationError

EXPORT_VERSION = "1.0.0"
CHUNK_TYPES = ("header", "thoughts", "branches", "relationships", "events")


def export_chunks(store: GraphStore, batch_size: int = 100) -> Iterator[dict[str, Any]]:
    """Yield ``{type, data}`` chunks describing the full graph.

    Raises:
        ValidationError: If ``batch_size`` is not positive.

    """
    thought_batches = store.iter_thought_batches(batch_size)
    branch_batches = store.iter_branch_batches(batch_size)
    event_batches = store.iter_event_batches(batch_size)

    yield {
        "type": "header",
        "data": {
            "version": EXPORT_VERSION,
            "thoughtCount": store.thought_count(),
            "branchCount": store.branch_count(),
            "exportDate": datetime.now(UTC).isoformat(),
            "lastEventIndex": store.event_count() - 1,
        },
    }
    for thoughts in thought_batches:
        yield {"type": "thoughts", "data": [t.to_dict() for t in thoughts]}
    for branches in branch_batches:
        yield {"type": "branches", "data": [b.to_dict() for b in branches]}

    branches = store.get_all_branches()
    yield {
        "type": "relationships",
        "data": {
            "parentChild": [[b.parent_id, b.id] for b in branches if b.parent_id is not None],
            "crossRefs": [ref.to_dict() for b in branches for ref in b.cross_refs],
        },
    }
    for events in event_batches:
        yield {"type": "events", "data": [e.to_dict() for e in events]}


def _branch_from_dict(data: dict[str, Any], staging: GraphStore) -> Branch:
    thought_ids = list(data.get("thoughtIds", []))
    thoughts: list[Thought] = []
    for thought_id in thought_ids:
        thought = staging.get_thought(thought_id)
        if thought is None:
            raise ValidationError(
                f"Branch {data['id']} references unknown thought {thought_id}",
                field="thoughtIds",
                value=thought_id,
            )
        thoughts.append(thought)
    return Branch(
        id=data["id"],
        state=BranchState(data.get("state", "active")),
        priority=float(data.get("priority", 0.5)),
        confidence=float(data.get("confidence", 0.5)),
        thought_ids=thought_ids,
        thoughts=thoughts,
        last_evaluation_index=int(data.get("lastEvaluationIndex", 0)),
        description=data.get("description"),
    )


def _apply_chunk(staging: GraphStore, chunk_type: str, data: Any, events: list[Event]) -> None:
    if chunk_type == "thoughts":
        for item in data:
            staging.put_thought(Thought.from_dict(item))
    elif chunk_type == "branches":
        for item in data:
            if staging.has_branch(item["id"]):
                raise ValidationError(f"Duplicate branch in import: {item['id']}", field="branches", value=item["id"])
            staging.put_branch(_branch_from_dict(item, staging))
    elif chunk_type == "relationships":
        for parent_id, child_id in data.get("parentChild", []):
            staging.link(parent_id, child_id)
        for item in data.get("crossRefs", []):
            ref = CrossReference.from_dict(item)
            staging.require_branch(ref.from_branch).cross_refs.append(ref)
    elif chunk_type == "events":
        events.extend(Event.from_dict(item) for item in data)
    else:
        raise ValidationError(f"Unknown chunk type: {chunk_type}", field="type", value=chunk_type)


def import_chunks(store: GraphStore, chunks: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Replace the contents of ``store`` with an exported graph.

    The chunks are applied to a staging store first, so a malformed payload
    leaves ``store`` untouched.

    Args:
        store: Store to overwrite.
        chunks: Chunks as produced by ``export_chunks``.

    Returns:
        Counts of imported thoughts, branches, cross references and events.

    Raises:
        ValidationError: On a missing header, an unknown chunk type or
            inconsistent contents.

    """
    staging = GraphStore(thought_pool_size=store.thought_pool_size)
    events: list[Event] = []
    header: dict[str, Any] | None = None

    for position, chunk in enumerate(chunks):
        if not isinstance(chunk, dict) or "type" not in chunk:
            raise ValidationError(f"Chunk {position} is not a {{type, data}} object", field="chunks")
        chunk_type = chunk["type"]
        data = chunk.get("data")
        if position == 0:
            if chunk_type != "header":
                raise ValidationError("Import must start with a header chunk", field="chunks", value=chunk_type)
            header = data or {}
            continue
        if chunk_type == "header":
            raise ValidationError("Import contains more than one header", field="chunks")
        try:
            _apply_chunk(staging, chunk_type, data, events)
        except BranchGraphError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed {chunk_type} chunk: {e}", field=chunk_type) from e

    if header is None:
        raise ValidationError("Import payload is empty", field="chunks")

    staging.restore_events(events)
    expected_last = header.get("lastEventIndex", len(events) - 1)
    if expected_last != len(events) - 1:
        raise ValidationError(
            f"Header lastEventIndex {expected_last} does not match {len(events)} imported events",
            field="lastEventIndex",
            value=expected_last,
        )

    store.clear()
    for thought in staging.pool_thoughts():
        store.put_thought(thought)
    for branch in staging.get_all_branches():
        store.put_branch(branch)
    store.restore_events(events)

    summary = {
        "thoughtsImported": store.thought_count(),
        "branchesImported": store.branch_count(),
        "crossRefsImported": sum(len(b.cross_refs) for b in store.get_all_branches()),
        "eventsImported": store.event_count(),
    }
    logger.info(f"Imported graph: {summary}")
    return summary
