"""Tests for branch semantic profiles."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from branch_graph.models.embeddings import ThoughtEmbeddingCache
from branch_graph.models.store import GraphStore
from branch_graph.tools.semantic_profile import SemanticProfileManager, extract_keywords


class TestExtractKeywords:
    """Tests for TF-IDF keyword extraction."""

    def test_rare_terms_rank_first(self) -> None:
        """Terms concentrated in few documents outrank ubiquitous ones."""
        docs = [
            "database replication lag",
            "database sharding strategy",
            "database connection pooling",
            "unrelated weather report",
        ]
        keywords = extract_keywords(docs, top_n=3)
        assert "database" not in keywords
        assert len(keywords) == 3

    def test_stopwords_and_short_tokens_dropped(self) -> None:
        """Stopwords, short words and numbers never become keywords."""
        keywords = extract_keywords(["the cat is on a mat 2024", "dog"], top_n=10)
        for word in ("the", "is", "on", "a", "2024"):
            assert word not in keywords

    def test_empty_input(self) -> None:
        """No documents yields no keywords."""
        assert extract_keywords([]) == []


class TestProfiles:
    """Tests for running-centroid profiles."""

    @pytest.mark.asyncio
    async def test_update_profile_running_mean(
        self,
        store: GraphStore,
        vector_provider_factory: Callable[..., Any],
        put_thought: Callable[..., str],
    ) -> None:
        """The centroid is the mean of all appended thought embeddings."""
        provider = vector_provider_factory({"alpha": [1.0, 0.0], "beta": [0.0, 1.0]})
        manager = SemanticProfileManager(store, ThoughtEmbeddingCache(provider))
        branch = store.create_branch("b1")
        for content in ("alpha", "beta"):
            put_thought("b1", content)
            await manager.update_profile(branch, branch.thoughts[-1])

        assert branch.semantic_profile is not None
        assert branch.semantic_profile.thought_count == 2
        np.testing.assert_allclose(branch.semantic_profile.center_embedding, [0.5, 0.5])

    @pytest.mark.asyncio
    async def test_ensure_profile_rebuilds(
        self, store: GraphStore, embeddings: ThoughtEmbeddingCache, put_thought: Callable[..., str]
    ) -> None:
        """A branch without a profile gets one built from its thoughts."""
        put_thought("b1", "replication lag in the primary database")
        put_thought("b1", "replica reads can be stale")
        manager = SemanticProfileManager(store, embeddings)
        profile = await manager.ensure_profile(store.require_branch("b1"))
        assert profile is not None
        assert profile.thought_count == 2
        assert profile.keywords

    @pytest.mark.asyncio
    async def test_ensure_profile_empty_branch(self, store: GraphStore, embeddings: ThoughtEmbeddingCache) -> None:
        """Empty branches have no profile."""
        manager = SemanticProfileManager(store, embeddings)
        assert await manager.ensure_profile(store.create_branch("b1")) is None

    @pytest.mark.asyncio
    async def test_overlap_warning_suggests_better_branch(
        self,
        store: GraphStore,
        vector_provider_factory: Callable[..., Any],
        put_thought: Callable[..., str],
    ) -> None:
        """A thought far closer to another branch's centroid triggers a warning."""
        provider = vector_provider_factory(
            {"north": [1.0, 0.0], "east": [0.0, 1.0], "more north": [1.0, 0.05]}
        )
        manager = SemanticProfileManager(store, ThoughtEmbeddingCache(provider))
        put_thought("a", "north")
        put_thought("b", "east")
        for branch in store.get_all_branches():
            await manager.ensure_profile(branch)

        embedding = await manager.embeddings.get("probe", "more north")
        warning = await manager.overlap_warning(store.require_branch("b"), embedding)
        assert warning is not None
        assert warning["suggestedBranch"] == "a"
        assert warning["suggestedSimilarity"] > warning["currentSimilarity"]

    @pytest.mark.asyncio
    async def test_no_warning_when_current_branch_fits(
        self,
        store: GraphStore,
        vector_provider_factory: Callable[..., Any],
        put_thought: Callable[..., str],
    ) -> None:
        """No warning when the thought already sits in the closest branch."""
        provider = vector_provider_factory({"north": [1.0, 0.0], "east": [0.0, 1.0]})
        manager = SemanticProfileManager(store, ThoughtEmbeddingCache(provider))
        put_thought("a", "north")
        put_thought("b", "east")
        for branch in store.get_all_branches():
            await manager.ensure_profile(branch)
        embedding = await manager.embeddings.get("probe", "north")
        assert await manager.overlap_warning(store.require_branch("a"), embedding) is None

    @pytest.mark.asyncio
    async def test_semantic_drift_needs_three_thoughts(
        self, store: GraphStore, embeddings: ThoughtEmbeddingCache, put_thought: Callable[..., str]
    ) -> None:
        """Short branches report zero drift."""
        put_thought("b1", "one idea")
        put_thought("b1", "two ideas")
        manager = SemanticProfileManager(store, embeddings)
        assert await manager.semantic_drift(store.require_branch("b1")) == 0.0

    @pytest.mark.asyncio
    async def test_semantic_drift_in_range(
        self, store: GraphStore, embeddings: ThoughtEmbeddingCache, put_thought: Callable[..., str]
    ) -> None:
        """Drift is a mean cosine distance."""
        for content in ("cache keys", "cache eviction", "tax law", "tax audit"):
            put_thought("b1", content)
        manager = SemanticProfileManager(store, embeddings)
        drift = await manager.semantic_drift(store.require_branch("b1"))
        assert 0.0 < drift <= 2.0

    @pytest.mark.asyncio
    async def test_shared_keywords(
        self, store: GraphStore, embeddings: ThoughtEmbeddingCache, put_thought: Callable[..., str]
    ) -> None:
        """Shared keywords are the intersection of both profiles' keywords."""
        put_thought("a", "latency budget for checkout")
        put_thought("a", "payment provider outage")
        put_thought("b", "latency budget for search")
        put_thought("b", "index rebuild schedule")
        manager = SemanticProfileManager(store, embeddings)
        a, b = store.require_branch("a"), store.require_branch("b")
        await manager.ensure_profile(a)
        await manager.ensure_profile(b)
        shared = manager.shared_keywords(a, b)
        assert set(shared) <= set(a.semantic_profile.keywords) & set(b.semantic_profile.keywords)
