"""Tests for chunked export and import."""

from __future__ import annotations

import copy
from typing import Any

import orjson
import pytest
import pytest_asyncio

from branch_graph.models.graph_types import EventType
from branch_graph.models.store import GraphStore
from branch_graph.tools.lifecycle import BranchLifecycle
from branch_graph.tools.serialization import CHUNK_TYPES, EXPORT_VERSION, export_chunks, import_chunks
from branch_graph.utils.errors import ValidationError


def _without_date(chunks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    stripped = copy.deepcopy(chunks)
    stripped[0]["data"].pop("exportDate")
    return stripped


@pytest_asyncio.fixture
async def populated(engine: BranchLifecycle) -> BranchLifecycle:
    await engine.add_thought("Root cause is lock contention", branch_id="root", key_points=["locks"])
    await engine.add_thought("Try sharding the counter", branch_id="shard", parent_branch_id="root")
    await engine.add_thought(
        "Or batch the increments",
        branch_id="batch",
        parent_branch_id="root",
        confidence=0.6,
        cross_refs=[{"toBranch": "shard", "type": "alternative", "strength": 0.7}],
    )
    await engine.set_branch_state("shard", "suspended")
    return engine


class TestExport:
    """Tests for export chunk layout."""

    @pytest.mark.asyncio
    async def test_chunk_order_and_header(self, populated: BranchLifecycle) -> None:
        """Chunks come header first, then thoughts, branches, relationships, events."""
        chunks = await populated.export_graph()
        types = [c["type"] for c in chunks]
        assert types[0] == "header"
        assert [CHUNK_TYPES.index(t) for t in types] == sorted(CHUNK_TYPES.index(t) for t in types)

        header = chunks[0]["data"]
        assert header["version"] == EXPORT_VERSION
        assert header["thoughtCount"] == 3
        assert header["branchCount"] == 3
        assert header["lastEventIndex"] == populated.store.event_count() - 1

    @pytest.mark.asyncio
    async def test_batches(self, populated: BranchLifecycle) -> None:
        """A batch size of 1 yields one chunk per record."""
        chunks = await populated.export_graph(batch_size=1)
        assert sum(1 for c in chunks if c["type"] == "thoughts") == 3
        assert sum(1 for c in chunks if c["type"] == "branches") == 3

    @pytest.mark.asyncio
    async def test_json_serializable(self, populated: BranchLifecycle) -> None:
        """Every chunk survives a JSON round trip unchanged."""
        chunks = await populated.export_graph()
        assert orjson.loads(orjson.dumps(chunks)) == chunks

    def test_bad_batch_size(self, store: GraphStore) -> None:
        """Non-positive batch sizes raise ValidationError."""
        with pytest.raises(ValidationError):
            list(export_chunks(store, batch_size=0))


class TestRoundTrip:
    """Tests for export -> import -> export."""

    @pytest.mark.asyncio
    async def test_round_trip_is_stable(self, populated: BranchLifecycle, provider: Any) -> None:
        """Re-exporting an import gives the same chunks apart from exportDate."""
        first = await populated.export_graph()
        fresh = BranchLifecycle(provider, config=populated.config)
        await fresh.import_graph(orjson.loads(orjson.dumps(first)))
        second = await fresh.export_graph()
        assert _without_date(second) == _without_date(first)

    @pytest.mark.asyncio
    async def test_structure_restored(self, populated: BranchLifecycle, provider: Any) -> None:
        """Links, states and cross references come back."""
        fresh = BranchLifecycle(provider, config=populated.config)
        summary = await fresh.import_graph(await populated.export_graph())

        assert summary == {
            "thoughtsImported": 3,
            "branchesImported": 3,
            "crossRefsImported": 1,
            "eventsImported": populated.store.event_count(),
        }
        store = fresh.store
        assert store.require_branch("root").child_ids == {"shard", "batch"}
        assert store.require_branch("shard").state.value == "suspended"
        assert store.require_branch("batch").cross_refs[0].to_branch == "shard"
        assert store.require_branch("root").thoughts[0].metadata.key_points == ("locks",)
        assert store.get_events_since(0)[0].type == EventType.BRANCH_CREATED

    @pytest.mark.asyncio
    async def test_imported_branch_accepts_new_thoughts(self, populated: BranchLifecycle, provider: Any) -> None:
        """Profiles are rebuilt lazily when an imported branch grows."""
        fresh = BranchLifecycle(provider, config=populated.config)
        await fresh.import_graph(await populated.export_graph())
        await fresh.add_thought("Sharding needs a merge step", branch_id="shard")
        profile = fresh.store.require_branch("shard").semantic_profile
        assert profile is not None
        assert profile.thought_count == 2


class TestImportErrors:
    """Tests for rejected import payloads."""

    @pytest.mark.asyncio
    async def test_missing_header(self, populated: BranchLifecycle) -> None:
        """Payloads must start with a header."""
        chunks = await populated.export_graph()
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), chunks[1:])

    def test_empty_payload(self) -> None:
        """An empty payload is rejected."""
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), [])

    @pytest.mark.asyncio
    async def test_unknown_chunk_type(self, populated: BranchLifecycle) -> None:
        """Unknown chunk types are rejected."""
        chunks = await populated.export_graph()
        chunks.append({"type": "widgets", "data": []})
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), chunks)

    @pytest.mark.asyncio
    async def test_event_count_mismatch(self, populated: BranchLifecycle) -> None:
        """A header whose lastEventIndex disagrees with the events is rejected."""
        chunks = await populated.export_graph()
        chunks[0]["data"]["lastEventIndex"] += 5
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), chunks)

    @pytest.mark.asyncio
    async def test_dangling_thought_reference(self, populated: BranchLifecycle) -> None:
        """Branches naming unknown thoughts are rejected."""
        chunks = [c for c in await populated.export_graph() if c["type"] != "thoughts"]
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), chunks)

    @pytest.mark.asyncio
    async def test_failed_import_leaves_store_untouched(self, populated: BranchLifecycle) -> None:
        """Validation happens on a staging store."""
        chunks = await populated.export_graph()
        chunks[0]["data"]["lastEventIndex"] = -10
        before = populated.store.branch_count()
        with pytest.raises(ValidationError):
            await populated.import_graph(chunks)
        assert populated.store.branch_count() == before

    @pytest.mark.asyncio
    async def test_malformed_thought(self, populated: BranchLifecycle) -> None:
        """Records missing required fields are reported as ValidationError."""
        chunks = await populated.export_graph()
        thoughts = next(c for c in chunks if c["type"] == "thoughts")
        del thoughts["data"][0]["content"]
        with pytest.raises(ValidationError):
            import_chunks(GraphStore(), chunks)
