"""Semantic navigation over cached thought embeddings.

Thought-level queries (similar thoughts, related jumps, greedy paths, flow
analysis) read per-thought embeddings; branch-level analytics (profile
comparison, merge suggestions, drift) read the branch centroids.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Container, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from branch_graph.models.embeddings import ThoughtEmbeddingCache, cosine_similarity, mean_embedding
from branch_graph.models.graph_types import Branch, Thought
from branch_graph.utils.errors import ValidationError
from branch_graph.utils.text import tokenize, truncate

if TYPE_CHECKING:
    from branch_graph.models.store import GraphStore
    from branch_graph.tools.graph_search import GraphSearch
    from branch_graph.tools.semantic_profile import SemanticProfileManager

SAME_BRANCH_BOOST = 0.05
FLOW_DRIFT_THRESHOLD = 0.5
CLUSTER_SPLIT_SIMILARITY = 0.6
DRIFT_WINDOW = 5
MIN_THOUGHTS_FOR_DRIFT = 10
DRIFT_THRESHOLD = 0.5
STRONG_DRIFT_THRESHOLD = 0.7


@dataclass(frozen=True)
class PathStep:
    """One node of a semantic path."""

    thought_id: str
    branch_id: str
    content: str
    similarity: float
    cumulative_distance: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "thoughtId": self.thought_id,
            "branchId": self.branch_id,
            "content": self.content,
            "similarity": round(self.similarity, 4),
            "cumulativeDistance": round(self.cumulative_distance, 4),
        }


@dataclass
class SemanticPath:
    """Result of a greedy walk; ``reached`` is False for partial exploration."""

    start: PathStep
    steps: list[PathStep] = field(default_factory=list)
    reached: bool = False
    timed_out: bool = False

    @property
    def total_distance(self) -> float:
        return self.steps[-1].cumulative_distance if self.steps else 0.0

    @property
    def partial(self) -> bool:
        return not self.reached

    @property
    def thought_ids(self) -> list[str]:
        return [self.start.thought_id] + [s.thought_id for s in self.steps]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "path": self.thought_ids,
            "totalDistance": round(self.total_distance, 4),
            "reached": self.reached,
            "partial": self.partial,
            "timedOut": self.timed_out,
        }


class SemanticNavigator:
    """Similarity queries over thoughts and branch profiles.

    Example:
        >>> navigator = SemanticNavigator(store, embeddings, profiles, search)
        >>> await navigator.find_similar("cache invalidation", limit=3)

    """

    def __init__(
        self,
        store: GraphStore,
        embeddings: ThoughtEmbeddingCache,
        profiles: SemanticProfileManager,
        search: GraphSearch,
        default_depth: int = 10,
        snippet_length: int = 100,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.profiles = profiles
        self.search = search
        self.default_depth = default_depth
        self.snippet_length = snippet_length

    async def embedding_of(self, thought: Thought) -> np.ndarray:
        return await self.embeddings.get(thought.id, thought.content)

    async def find_most_similar(
        self,
        target: np.ndarray,
        candidates: Iterable[Thought],
        exclude: Container[str] | None = None,
    ) -> tuple[Thought, float] | None:
        """Single pass keeping a strict running maximum (ties keep the first seen).

        Returns:
            ``(thought, similarity)`` or None when nothing is eligible.

        """
        best: tuple[Thought, float] | None = None
        for candidate in candidates:
            if exclude is not None and candidate.id in exclude:
                continue
            similarity = cosine_similarity(target, await self.embedding_of(candidate))
            if best is None or similarity > best[1]:
                best = (candidate, similarity)
        return best

    async def find_similar(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Thoughts ranked by similarity to ``query``, best first."""
        if not query or not query.strip():
            raise ValidationError("query must not be blank", field="query")
        if limit <= 0:
            raise ValidationError("limit must be positive", field="limit", value=limit)

        query_embedding = await self.embeddings.embed_text(query)
        scored: list[tuple[float, Thought]] = []
        for thought in self.store.all_thoughts():
            scored.append((cosine_similarity(query_embedding, await self.embedding_of(thought)), thought))
        scored.sort(key=lambda item: item[0], reverse=True)

        return [
            {
                "thoughtId": thought.id,
                "content": thought.content,
                "branchId": thought.branch_id,
                "similarity": round(similarity, 4),
                "type": thought.metadata.type,
                "timestamp": thought.timestamp.isoformat(),
            }
            for similarity, thought in scored[:limit]
        ]

    def _relationship(self, source_branch: Branch | None, other_branch: Branch) -> str:
        if source_branch is None:
            return "cross-branch"
        if other_branch.id == source_branch.id:
            return "same-branch"
        if other_branch.parent_id == source_branch.id:
            return "child-branch"
        if source_branch.parent_id == other_branch.id:
            return "parent-branch"
        return "cross-branch"

    async def jump_to_related(self, thought_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Thoughts related to ``thought_id`` with their branch relationship.

        Same-branch results get a small ranking boost.

        Raises:
            ThoughtNotFoundError: If the thought does not exist.

        """
        if limit <= 0:
            raise ValidationError("limit must be positive", field="limit", value=limit)
        source = self.store.require_thought(thought_id)
        source_embedding = await self.embedding_of(source)
        source_branch = self.store.get_branch(source.branch_id)

        results: list[dict[str, Any]] = []
        seen = {source.id}
        for branch in self.store.get_all_branches():
            relationship = self._relationship(source_branch, branch)
            for thought in branch.thoughts:
                if thought.id in seen:
                    continue
                seen.add(thought.id)
                similarity = cosine_similarity(source_embedding, await self.embedding_of(thought))
                results.append(
                    {
                        "thoughtId": thought.id,
                        "content": thought.content,
                        "branchId": branch.id,
                        "similarity": round(similarity, 4),
                        "relationship": relationship,
                    }
                )

        results.sort(
            key=lambda r: r["similarity"] + (SAME_BRANCH_BOOST if r["relationship"] == "same-branch" else 0.0),
            reverse=True,
        )
        return results[:limit]

    async def find_semantic_path(
        self,
        from_id: str,
        to_id: str,
        max_steps: int = 5,
        deadline: float | None = None,
    ) -> SemanticPath:
        """Greedy walk from one thought toward another.

        At each step the walk moves to the unvisited thought most similar to
        the current one, scanning all thoughts in ascending id order. It is
        an approximation: there is no backtracking and no optimality
        guarantee, so callers must check ``reached``.

        Args:
            from_id: Starting thought id.
            to_id: Target thought id.
            max_steps: Maximum number of moves.
            deadline: Optional time budget in seconds; on expiry the walk stops
                before the next step and is flagged ``timed_out``.

        Returns:
            The (possibly partial) path.

        Raises:
            ThoughtNotFoundError: If either endpoint does not exist.
            ValidationError: If ``max_steps`` is negative.

        """
        if max_steps < 0:
            raise ValidationError("max_steps must be non-negative", field="max_steps", value=max_steps)
        source = self.store.require_thought(from_id)
        self.store.require_thought(to_id)

        path = SemanticPath(
            start=PathStep(source.id, source.branch_id, source.content, 1.0, 0.0),
            reached=from_id == to_id,
        )
        if path.reached:
            return path

        expires_at = time.monotonic() + deadline if deadline is not None else None
        candidates = sorted(self.store.all_thoughts(), key=lambda t: t.id)
        visited = {source.id}
        current = source
        distance = 0.0

        for _ in range(max_steps):
            if expires_at is not None and time.monotonic() >= expires_at:
                path.timed_out = True
                break
            best = await self.find_most_similar(await self.embedding_of(current), candidates, exclude=visited)
            if best is None:
                break

            current, similarity = best
            visited.add(current.id)
            distance += 1.0 - similarity
            path.steps.append(PathStep(current.id, current.branch_id, current.content, similarity, distance))
            if current.id == to_id:
                path.reached = True
                break

        return path

    async def analyze_semantic_flow(self, branch_id: str) -> dict[str, Any]:
        """Continuity, drift points and topic clusters along a branch."""
        branch = self.store.require_branch(branch_id)
        thoughts = branch.thoughts
        if len(thoughts) < 2:
            return {"branchId": branch_id, "continuityScore": 1.0, "driftPoints": [], "semanticClusters": []}

        embeddings = [await self.embedding_of(t) for t in thoughts]

        total = 0.0
        drift_points: list[dict[str, Any]] = []
        for i in range(1, len(embeddings)):
            similarity = cosine_similarity(embeddings[i - 1], embeddings[i])
            total += similarity
            drift = 1.0 - similarity
            if drift > FLOW_DRIFT_THRESHOLD:
                drift_points.append(
                    {
                        "index": i,
                        "drift": round(drift, 4),
                        "thought": truncate(thoughts[i].content, self.snippet_length),
                    }
                )

        clusters: list[dict[str, Any]] = []
        start = 0
        for i in range(1, len(embeddings)):
            split = cosine_similarity(embeddings[start], embeddings[i]) < CLUSTER_SPLIT_SIMILARITY
            last = i == len(embeddings) - 1
            if not split and not last:
                continue
            end = i - 1 if split else i
            if end > start:
                clusters.append({"start": start, "end": end, "theme": self._theme(thoughts[start : end + 1])})
            if split:
                start = i

        return {
            "branchId": branch_id,
            "continuityScore": round(total / (len(embeddings) - 1), 4),
            "driftPoints": drift_points,
            "semanticClusters": clusters,
        }

    @staticmethod
    def _theme(thoughts: list[Thought]) -> str:
        counts: Counter[str] = Counter()
        for thought in thoughts:
            counts.update(tokenize(thought.content, min_length=4))
        return ", ".join(word for word, _ in counts.most_common(3))

    async def _profiled(self, branches: Iterable[Branch]) -> list[Branch]:
        profiled = []
        for branch in branches:
            if await self.profiles.ensure_profile(branch) is not None:
                profiled.append(branch)
        return profiled

    @staticmethod
    def _centroid_similarity(a: Branch, b: Branch) -> float:
        for branch in (a, b):
            if branch.semantic_profile is None:
                raise ValidationError(
                    f"Branch {branch.id} has no semantic profile", field="branch_id", value=branch.id
                )
        return cosine_similarity(a.semantic_profile.center_embedding, b.semantic_profile.center_embedding)

    async def compare_profiles(self, branch_ids: list[str] | None = None) -> dict[str, Any]:
        """Pairwise centroid comparison of profiled branches.

        Args:
            branch_ids: Restrict to these branches (all when None).

        Returns:
            ``branchComparisons``, the top five ``mostSimilarPairs`` and the
            three ``mostDistinctBranches`` by average similarity.

        """
        if branch_ids is None:
            scope = self.store.get_all_branches()
        else:
            scope = [self.store.require_branch(bid) for bid in branch_ids]
        branches = await self._profiled(scope)

        comparisons: list[dict[str, Any]] = []
        for i, first in enumerate(branches):
            for second in branches[i + 1 :]:
                comparisons.append(
                    {
                        "branch1": first.id,
                        "branch2": second.id,
                        "similarity": round(self._centroid_similarity(first, second), 4),
                        "sharedConcepts": self.profiles.shared_keywords(first, second),
                    }
                )

        ranked = sorted(comparisons, key=lambda c: c["similarity"], reverse=True)
        averages: dict[str, float] = {}
        for branch in branches:
            sims = [c["similarity"] for c in comparisons if branch.id in (c["branch1"], c["branch2"])]
            if sims:
                averages[branch.id] = sum(sims) / len(sims)

        return {
            "branchComparisons": comparisons,
            "mostSimilarPairs": [
                {"branches": [c["branch1"], c["branch2"]], "similarity": c["similarity"]} for c in ranked[:5]
            ],
            "mostDistinctBranches": [bid for bid, _ in sorted(averages.items(), key=lambda item: item[1])[:3]],
        }

    async def suggest_merges(
        self,
        threshold: float = 0.7,
        branch_id: str | None = None,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        """Branch pairs whose centroids are similar enough to merge.

        Args:
            threshold: Minimum (exclusive) centroid similarity.
            branch_id: Limit candidates to this branch's BFS neighborhood.
            max_depth: Neighborhood depth (defaults to the configured depth).

        """
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [0, 1]", field="threshold", value=threshold)
        if branch_id is not None:
            depth = self.default_depth if max_depth is None else max_depth
            scope = self.search.neighborhood(branch_id, depth)
        else:
            scope = self.store.get_all_branches()
        branches = await self._profiled(scope)

        suggestions: list[dict[str, Any]] = []
        for i, first in enumerate(branches):
            for second in branches[i + 1 :]:
                similarity = self._centroid_similarity(first, second)
                if similarity <= threshold:
                    continue
                shared = self.profiles.shared_keywords(first, second)
                suggestions.append(
                    {
                        "branches": [first.id, second.id],
                        "reason": f"High semantic similarity ({similarity * 100:.1f}%)",
                        "similarity": round(similarity, 4),
                        "potentialBenefit": (
                            f"Combine {len(first.thoughts) + len(second.thoughts)} thoughts "
                            f"with {len(shared)} shared concepts"
                        ),
                    }
                )

        suggestions.sort(key=lambda s: s["similarity"], reverse=True)
        return {"suggestions": suggestions}

    async def detect_drift(self, branch_id: str) -> dict[str, Any]:
        """Compare the opening and closing thoughts of a branch.

        Branches shorter than two full windows are reported without drift.
        """
        branch = self.store.require_branch(branch_id)
        count = len(branch.thoughts)
        if count < MIN_THOUGHTS_FOR_DRIFT:
            return {
                "branchId": branch_id,
                "hasDrift": False,
                "driftScore": 0.0,
                "thoughtCount": count,
                "reason": f"Not enough thoughts to measure drift (need {MIN_THOUGHTS_FOR_DRIFT})",
                "recommendation": "Continue with current direction",
            }

        early = mean_embedding([await self.embedding_of(t) for t in branch.thoughts[:DRIFT_WINDOW]])
        recent = mean_embedding([await self.embedding_of(t) for t in branch.thoughts[-DRIFT_WINDOW:]])
        drift = 1.0 - cosine_similarity(early, recent)

        if drift > STRONG_DRIFT_THRESHOLD:
            reason = "Recent thoughts significantly diverge from initial direction"
            recommendation = "Consider splitting into separate branches"
        elif drift > DRIFT_THRESHOLD:
            reason = "Moderate drift from original focus"
            recommendation = "Review branch focus and realign if needed"
        else:
            reason = "Minor drift detected"
            recommendation = "Continue with current direction"

        return {
            "branchId": branch_id,
            "hasDrift": drift > DRIFT_THRESHOLD,
            "driftScore": round(drift, 4),
            "thoughtCount": count,
            "reason": reason,
            "recommendation": recommendation,
        }
