"""The six branch scoring dimensions.

Each evaluator reads a shared, read-only ``EvaluationContext`` and returns a
one-key partial result. Evaluators never see each other's output; the
pipeline runs them concurrently and merges the partials.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import combinations

import numpy as np
from loguru import logger

from branch_graph.models.embeddings import ThoughtEmbeddingCache, cosine_similarity
from branch_graph.models.graph_types import Branch, Thought
from branch_graph.utils.errors import SemanticAnalysisError
from branch_graph.utils.text import negations_in, strip_negations

NEGATION_SIMILARITY_THRESHOLD = 0.7
NEUTRAL_SCORE = 0.5


def similarity_matrix(vectors: list[np.ndarray], sparse_threshold: float = 0.0) -> np.ndarray:
    """Pairwise cosine similarities with near-zero entries dropped to 0.

    Args:
        vectors: Thought embeddings, all the same dimension.
        sparse_threshold: Entries with ``abs(value) < sparse_threshold`` become 0.

    Returns:
        Symmetric (n, n) float array.

    """
    if not vectors:
        return np.zeros((0, 0), dtype=np.float32)
    stacked = np.stack(vectors).astype(np.float32)
    norms = np.linalg.norm(stacked, axis=1, keepdims=True)
    normalized = np.divide(stacked, norms, out=np.zeros_like(stacked), where=norms > 0)
    matrix = np.clip(normalized @ normalized.T, -1.0, 1.0)
    matrix[np.abs(matrix) < sparse_threshold] = 0.0
    return matrix


@dataclass(frozen=True)
class EvaluationContext:
    """Everything an evaluator may read; built once per evaluation run."""

    branch: Branch
    thoughts: list[Thought]
    embeddings: list[np.ndarray]
    matrix: np.ndarray
    parent: Branch | None = None
    goal: str | None = None
    goal_embedding: np.ndarray | None = None
    window_size: int = 5
    similarity_threshold: float = 0.85
    embedder: ThoughtEmbeddingCache | None = None

    @classmethod
    async def build(
        cls,
        branch: Branch,
        embeddings: ThoughtEmbeddingCache,
        *,
        parent: Branch | None = None,
        goal: str | None = None,
        sparse_threshold: float = 0.1,
        window_size: int = 5,
        similarity_threshold: float = 0.85,
    ) -> EvaluationContext:
        """Fetch embeddings and compute the shared similarity matrix.

        Raises:
            SemanticAnalysisError: If any embedding cannot be computed.

        """
        thoughts = list(branch.thoughts)
        vectors = [await embeddings.get(t.id, t.content) for t in thoughts]
        goal_embedding = await embeddings.embed_text(goal) if goal else None
        return cls(
            branch=branch,
            thoughts=thoughts,
            embeddings=vectors,
            matrix=similarity_matrix(vectors, sparse_threshold),
            parent=parent,
            goal=goal,
            goal_embedding=goal_embedding,
            window_size=window_size,
            similarity_threshold=similarity_threshold,
            embedder=embeddings,
        )


class BaseEvaluator(ABC):
    """Uniform evaluator contract with a neutral fallback on failure."""

    metric: str = ""

    @abstractmethod
    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        """Score one dimension of ``context.branch``."""

    async def safe_evaluate(self, context: EvaluationContext) -> dict[str, float]:
        try:
            return await self.evaluate(context)
        except Exception as e:
            logger.warning(f"{type(self).__name__} failed on branch {context.branch.id}: {e}")
            return {self.metric: NEUTRAL_SCORE}


class CoherenceEvaluator(BaseEvaluator):
    """Mean similarity of consecutive thoughts."""

    metric = "coherenceScore"

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        n = len(context.thoughts)
        if n < 2:
            return {self.metric: 1.0}
        consecutive = [float(context.matrix[i - 1, i]) for i in range(1, n)]
        score = sum(consecutive) / len(consecutive)
        return {self.metric: min(1.0, max(0.0, score))}


class ContradictionEvaluator(BaseEvaluator):
    """Pairs that say the same thing except for a negation in one of them."""

    metric = "contradictionScore"

    @staticmethod
    async def is_contradiction(first: str, second: str, embeddings: ThoughtEmbeddingCache) -> bool:
        """True when a negation appears in only one text and the rest means the same.

        Both texts are embedded with every negation word removed; the pair
        contradicts when those embeddings are closer than
        ``NEGATION_SIMILARITY_THRESHOLD``.

        Raises:
            SemanticAnalysisError: If either stripped text cannot be embedded.

        """
        if not negations_in(first) ^ negations_in(second):
            return False
        stripped_first = await embeddings.embed_text(strip_negations(first))
        stripped_second = await embeddings.embed_text(strip_negations(second))
        return cosine_similarity(stripped_first, stripped_second) > NEGATION_SIMILARITY_THRESHOLD

    async def conflicting_pairs(
        self, thoughts: list[Thought], embeddings: ThoughtEmbeddingCache
    ) -> list[tuple[Thought, Thought]]:
        """All ``(earlier, later)`` pairs that contradict each other."""
        return [
            (a, b)
            for a, b in combinations(thoughts, 2)
            if await self.is_contradiction(a.content, b.content, embeddings)
        ]

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        n = len(context.thoughts)
        if n < 2:
            return {self.metric: 0.0}
        if context.embedder is None:
            raise SemanticAnalysisError("Contradiction check needs an embedding cache", "contradiction")
        count = len(await self.conflicting_pairs(context.thoughts, context.embedder))
        return {self.metric: min(1.0, count / (n / 2))}


class InformationGainEvaluator(BaseEvaluator):
    """How much each thought adds beyond the ones before it."""

    metric = "informationGain"

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        n = len(context.thoughts)
        if n == 0:
            return {self.metric: 0.0}
        gains = [1.0]
        for i in range(1, n):
            novelty = 1.0 - float(np.max(context.matrix[i, :i]))
            gains.append(min(1.0, max(0.0, novelty)))
        return {self.metric: math.tanh(2.0 * sum(gains) / n)}


class GoalAlignmentEvaluator(BaseEvaluator):
    """Mean similarity of the thoughts to the current goal."""

    metric = "goalAlignment"

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        if context.goal_embedding is None or not context.embeddings:
            return {self.metric: NEUTRAL_SCORE}
        sims = [cosine_similarity(e, context.goal_embedding) for e in context.embeddings]
        return {self.metric: min(1.0, max(0.0, sum(sims) / len(sims)))}


class ConfidenceGradientEvaluator(BaseEvaluator):
    """Trend of stated confidence over the recent window, in [-1, 1]."""

    metric = "confidenceGradient"

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        window = context.thoughts[-context.window_size :] if context.window_size > 0 else []
        if len(window) < 2:
            return {self.metric: 0.0}
        confidences = [t.metadata.confidence for t in window]
        deltas = [b - a for a, b in zip(confidences, confidences[1:], strict=False)]
        return {self.metric: min(1.0, max(-1.0, sum(deltas) / len(deltas)))}


class RedundancyEvaluator(BaseEvaluator):
    """Share of thought pairs that are near-duplicates."""

    metric = "redundancyScore"

    async def evaluate(self, context: EvaluationContext) -> dict[str, float]:
        n = len(context.thoughts)
        if n < 2:
            return {self.metric: 0.0}
        pairs = list(combinations(range(n), 2))
        redundant = sum(1 for i, j in pairs if context.matrix[i, j] >= context.similarity_threshold)
        return {self.metric: redundant / len(pairs)}


@dataclass
class EvaluatorSet:
    """The fixed six-dimension evaluator suite."""

    coherence: CoherenceEvaluator = field(default_factory=CoherenceEvaluator)
    contradiction: ContradictionEvaluator = field(default_factory=ContradictionEvaluator)
    information_gain: InformationGainEvaluator = field(default_factory=InformationGainEvaluator)
    goal_alignment: GoalAlignmentEvaluator = field(default_factory=GoalAlignmentEvaluator)
    confidence_gradient: ConfidenceGradientEvaluator = field(default_factory=ConfidenceGradientEvaluator)
    redundancy: RedundancyEvaluator = field(default_factory=RedundancyEvaluator)

    def all(self) -> list[BaseEvaluator]:
        return [
            self.coherence,
            self.contradiction,
            self.information_gain,
            self.goal_alignment,
            self.confidence_gradient,
            self.redundancy,
        ]
