"""Per-branch semantic profiles.

A profile is the running centroid of a branch's thought embeddings plus its
top TF-IDF keywords. Profiles are derived data: after an import they are
rebuilt from the thought embeddings the first time they are needed.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np

from branch_graph.models.embeddings import ThoughtEmbeddingCache, cosine_similarity, mean_embedding
from branch_graph.models.graph_types import Branch, SemanticProfile, Thought
from branch_graph.utils.text import tokenize

if TYPE_CHECKING:
    from branch_graph.models.store import GraphStore

OVERLAP_MARGIN = 0.15
DRIFT_WINDOW = 5
MIN_THOUGHTS_FOR_DRIFT = 3


def extract_keywords(documents: list[str], top_n: int = 10) -> list[str]:
    """Top ``top_n`` tokens by TF-IDF summed over ``documents``.

    Uses ``idf = log(N / (1 + df))``; ties keep first-seen order.
    """
    tokenized = [tokenize(doc) for doc in documents]
    doc_freq: Counter[str] = Counter()
    for tokens in tokenized:
        doc_freq.update(set(tokens))

    total_docs = len(tokenized)
    scores: dict[str, float] = {}
    for tokens in tokenized:
        if not tokens:
            continue
        for token, count in Counter(tokens).items():
            idf = math.log(total_docs / (1 + doc_freq[token]))
            scores[token] = scores.get(token, 0.0) + (count / len(tokens)) * idf

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:top_n]]


class SemanticProfileManager:
    """Maintains branch profiles over the shared thought-embedding cache."""

    def __init__(self, store: GraphStore, embeddings: ThoughtEmbeddingCache) -> None:
        self.store = store
        self.embeddings = embeddings

    async def thought_embedding(self, thought: Thought) -> np.ndarray:
        return await self.embeddings.get(thought.id, thought.content)

    async def update_profile(self, branch: Branch, thought: Thought) -> SemanticProfile:
        """Fold one appended thought into the branch profile.

        Raises:
            SemanticAnalysisError: If the thought cannot be embedded.

        """
        embedding = await self.thought_embedding(thought)
        profile = branch.semantic_profile
        if profile is None:
            profile = SemanticProfile(center_embedding=embedding.copy(), thought_count=1)
            branch.semantic_profile = profile
        else:
            n = profile.thought_count
            profile.center_embedding = ((profile.center_embedding * n + embedding) / (n + 1)).astype(np.float32)
            profile.thought_count = n + 1
            profile.last_updated = datetime.now(UTC)

        profile.keywords = extract_keywords([t.content for t in branch.thoughts])
        return profile

    async def ensure_profile(self, branch: Branch) -> SemanticProfile | None:
        """Profile of ``branch``, rebuilding it from its thoughts when absent."""
        if branch.semantic_profile is not None:
            return branch.semantic_profile
        if not branch.thoughts:
            return None

        vectors = [await self.thought_embedding(t) for t in branch.thoughts]
        branch.semantic_profile = SemanticProfile(
            center_embedding=mean_embedding(vectors),
            keywords=extract_keywords([t.content for t in branch.thoughts]),
            thought_count=len(vectors),
        )
        return branch.semantic_profile

    async def find_most_similar_branch(
        self,
        embedding: np.ndarray,
        exclude: str | None = None,
    ) -> tuple[Branch, float] | None:
        """Branch whose centroid is closest to ``embedding`` (ties keep the first)."""
        best: tuple[Branch, float] | None = None
        for branch in self.store.get_all_branches():
            if branch.id == exclude:
                continue
            profile = await self.ensure_profile(branch)
            if profile is None:
                continue
            similarity = cosine_similarity(embedding, profile.center_embedding)
            if best is None or similarity > best[1]:
                best = (branch, similarity)
        return best

    async def overlap_warning(self, branch: Branch, embedding: np.ndarray) -> dict[str, Any] | None:
        """Warn when another branch fits ``embedding`` clearly better.

        Returns:
            ``{suggestedBranch, currentSimilarity, suggestedSimilarity}`` if
            another centroid beats the current one by more than the margin,
            else None.

        """
        profile = branch.semantic_profile
        if profile is None:
            return None
        best = await self.find_most_similar_branch(embedding, exclude=branch.id)
        if best is None:
            return None

        other, suggested = best
        current = cosine_similarity(embedding, profile.center_embedding)
        if suggested <= current + OVERLAP_MARGIN:
            return None
        return {
            "suggestedBranch": other.id,
            "currentSimilarity": round(current, 4),
            "suggestedSimilarity": round(suggested, 4),
        }

    async def semantic_drift(self, branch: Branch) -> float:
        """Mean distance of the last few thoughts from the branch centroid."""
        if len(branch.thoughts) < MIN_THOUGHTS_FOR_DRIFT:
            return 0.0
        profile = await self.ensure_profile(branch)
        if profile is None:
            return 0.0
        recent = branch.thoughts[-DRIFT_WINDOW:]
        drifts = [
            1.0 - cosine_similarity(await self.thought_embedding(t), profile.center_embedding) for t in recent
        ]
        return float(sum(drifts) / len(drifts))

    def shared_keywords(self, a: Branch, b: Branch) -> list[str]:
        if a.semantic_profile is None or b.semantic_profile is None:
            return []
        other = set(b.semantic_profile.keywords)
        return [k for k in a.semantic_profile.keywords if k in other]
