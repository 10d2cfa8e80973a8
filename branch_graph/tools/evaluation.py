"""Evaluation pipeline: composite scoring, feedback and lifecycle decisions.

Flow for one branch:
    EvaluationContext.build -> six evaluators (concurrently) -> compose
    -> feedback / decide_transition

Fresh results are cached per (branch, thought count, goal) and logged as
``evaluation_completed`` events.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from branch_graph.models.embeddings import LRUCache, ThoughtEmbeddingCache
from branch_graph.models.graph_types import Branch, BranchState, EventType
from branch_graph.tools.evaluators import EvaluationContext, EvaluatorSet
from branch_graph.utils.errors import BranchGraphError, EvaluationError, ValidationError

if TYPE_CHECKING:
    from branch_graph.config import Config, EvaluationWeights
    from branch_graph.models.store import GraphStore


ISSUE_SUGGESTIONS: dict[str, str] = {
    "Low coherence - thoughts not well connected": "Try to build more directly on previous thoughts",
    "High contradiction detected": "Review and resolve conflicting statements",
    "Direct repetition detected - saying the same thing multiple times": (
        "Avoid repeating the same point; move the argument forward"
    ),
    "Circular reasoning - returning to previous points without progress": (
        "Break the loop by introducing new evidence or a different angle"
    ),
    "Excessive elaboration - adding detail without new concepts": (
        "Summarize the current point and introduce a new concept"
    ),
    "Low information gain": "Introduce new concepts or perspectives",
    "Poor alignment with stated goal": "Refocus on the stated goal",
}

PIVOT_SUGGESTION = "Consider pivoting to a different approach or creating a new branch"
ENCOURAGEMENT = {
    "excellent": "Excellent progress - continue developing this line of reasoning",
    "good": "Good progress - keep building on the strongest points",
}


@dataclass(frozen=True)
class EvaluationResult:
    """Merged six-dimension scores plus the weighted overall score."""

    branch_id: str
    coherence_score: float
    contradiction_score: float
    information_gain: float
    goal_alignment: float
    confidence_gradient: float
    redundancy_score: float
    overall_score: float
    thought_count: int = 0
    has_goal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "coherenceScore": round(self.coherence_score, 4),
            "contradictionScore": round(self.contradiction_score, 4),
            "informationGain": round(self.information_gain, 4),
            "goalAlignment": round(self.goal_alignment, 4),
            "confidenceGradient": round(self.confidence_gradient, 4),
            "redundancyScore": round(self.redundancy_score, 4),
            "overallScore": round(self.overall_score, 4),
        }


@dataclass(frozen=True)
class Feedback:
    """Human-readable judgement of an evaluation."""

    quality: str
    score: float
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    should_pivot: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "quality": self.quality,
            "score": round(self.score, 4),
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "shouldPivot": self.should_pivot,
        }


def compose(
    branch_id: str, partials: list[dict[str, float]], weights: EvaluationWeights, **extra: Any
) -> EvaluationResult:
    """Merge evaluator partials into a weighted result.

    Contradiction and redundancy are inverted and the confidence gradient is
    rescaled from [-1, 1] to [0, 1] before weighting. The weighted sum is
    clamped to [0, 1].
    """
    merged: dict[str, float] = {}
    for partial in partials:
        merged.update(partial)

    coherence = merged.get("coherenceScore", 0.5)
    contradiction = merged.get("contradictionScore", 0.5)
    information_gain = merged.get("informationGain", 0.5)
    goal_alignment = merged.get("goalAlignment", 0.5)
    gradient = merged.get("confidenceGradient", 0.0)
    redundancy = merged.get("redundancyScore", 0.5)

    overall = (
        coherence * weights.coherence
        + (1.0 - contradiction) * weights.contradiction
        + information_gain * weights.information_gain
        + goal_alignment * weights.goal_alignment
        + ((gradient + 1.0) / 2.0) * weights.confidence_gradient
        + (1.0 - redundancy) * weights.redundancy
    )
    # Float rounding can overshoot a convex combination by an ulp
    overall = min(1.0, max(0.0, overall))
    return EvaluationResult(
        branch_id=branch_id,
        coherence_score=coherence,
        contradiction_score=contradiction,
        information_gain=information_gain,
        goal_alignment=goal_alignment,
        confidence_gradient=gradient,
        redundancy_score=redundancy,
        overall_score=overall,
        **extra,
    )


class EvaluationPipeline:
    """Scores branches and turns scores into feedback and state decisions.

    Example:
        >>> pipeline = EvaluationPipeline(store, embeddings, config)
        >>> result = await pipeline.evaluate_branch("b1", goal="ship v2")
        >>> pipeline.feedback(result, auto_eval_threshold=0.25).quality
        'good'

    """

    def __init__(
        self,
        store: GraphStore,
        embeddings: ThoughtEmbeddingCache,
        config: Config,
        evaluators: EvaluatorSet | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.config = config
        self.evaluators = evaluators or EvaluatorSet()
        self._cache = LRUCache[EvaluationResult](max_size=config.evaluation.cache_size)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def score(self, branch: Branch, goal: str | None = None) -> EvaluationResult:
        """Run all six evaluators on ``branch`` without caching or events.

        Raises:
            EvaluationError: If the shared context cannot be built.

        """
        settings = self.config.evaluation
        parent = self.store.get_branch(branch.parent_id) if branch.parent_id else None
        try:
            context = await EvaluationContext.build(
                branch,
                self.embeddings,
                parent=parent,
                goal=goal,
                sparse_threshold=settings.sparse_threshold,
                window_size=settings.window_size,
                similarity_threshold=settings.similarity_threshold,
            )
        except BranchGraphError as e:
            raise EvaluationError(f"Could not evaluate branch {branch.id}: {e.message}", branch_id=branch.id) from e

        partials = await asyncio.gather(*(e.safe_evaluate(context) for e in self.evaluators.all()))
        return compose(
            branch.id,
            list(partials),
            settings.weights,
            thought_count=len(context.thoughts),
            has_goal=bool(goal),
        )

    async def evaluate_branch(self, branch_id: str, goal: str | None = None) -> EvaluationResult:
        """Evaluate a branch, reusing a cached result when nothing changed.

        A fresh evaluation is logged as an ``evaluation_completed`` event and
        stamped onto ``branch.last_evaluation_index``.

        Raises:
            BranchNotFoundError: If the branch does not exist.
            EvaluationError: If scoring fails.

        """
        branch = self.store.require_branch(branch_id)
        key = (branch_id, len(branch.thoughts), goal)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        result = await self.score(branch, goal)
        event = self.store.record_event(
            EventType.EVALUATION_COMPLETED,
            branch_id=branch_id,
            data={"overallScore": round(result.overall_score, 4)},
        )
        branch.last_evaluation_index = event.index
        self._cache.put(key, result)
        logger.debug(f"Evaluated {branch_id}: overall={result.overall_score:.3f}")
        return result

    def invalidate(self, branch_id: str | None = None) -> None:
        """Drop cached results for one branch, or all of them."""
        if branch_id is None:
            self._cache.clear()
        else:
            self._cache.discard_where(lambda key: key[0] == branch_id)

    @property
    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    def quality(self, score: float) -> str:
        buckets = self.config.evaluation.quality
        if score > buckets.excellent:
            return "excellent"
        if score > buckets.good:
            return "good"
        if score > buckets.moderate:
            return "moderate"
        return "poor"

    def issues(self, result: EvaluationResult) -> list[str]:
        limits = self.config.evaluation.issues
        found: list[str] = []
        if result.coherence_score < limits.low_coherence:
            found.append("Low coherence - thoughts not well connected")
        if result.contradiction_score > limits.high_contradiction:
            found.append("High contradiction detected")
        if result.redundancy_score > 0.3:
            if result.redundancy_score > 0.7:
                found.append("Direct repetition detected - saying the same thing multiple times")
            elif result.redundancy_score > 0.5:
                found.append("Circular reasoning - returning to previous points without progress")
            else:
                found.append("Excessive elaboration - adding detail without new concepts")
        if result.information_gain < limits.low_information_gain:
            found.append("Low information gain")
        if result.has_goal and result.goal_alignment < limits.low_goal_alignment:
            found.append("Poor alignment with stated goal")
        return found

    def feedback(self, result: EvaluationResult, auto_eval_threshold: float | None = None) -> Feedback:
        """Quality bucket, issues and remediation suggestions for a result.

        Args:
            result: Evaluation to describe.
            auto_eval_threshold: Pivot threshold; defaults to the configured one.

        Returns:
            Feedback with ``should_pivot`` set when the score is below threshold.

        """
        threshold = self.config.auto_eval.threshold if auto_eval_threshold is None else auto_eval_threshold
        score = result.overall_score
        quality = self.quality(score)
        issues = self.issues(result)

        suggestions = [ISSUE_SUGGESTIONS[issue] for issue in issues]
        if score < threshold:
            suggestions.append(PIVOT_SUGGESTION)
        if quality in ENCOURAGEMENT:
            suggestions.append(ENCOURAGEMENT[quality])

        return Feedback(
            quality=quality,
            score=score,
            issues=issues,
            suggestions=suggestions,
            should_pivot=score < threshold,
        )

    def interpret(self, result: EvaluationResult) -> str:
        """One-line summary of the strongest and weakest dimensions."""
        dims = {
            "coherence": result.coherence_score,
            "consistency": 1.0 - result.contradiction_score,
            "information gain": result.information_gain,
            "goal alignment": result.goal_alignment,
            "confidence trend": (result.confidence_gradient + 1.0) / 2.0,
            "novelty": 1.0 - result.redundancy_score,
        }
        strongest = max(dims, key=lambda k: dims[k])
        weakest = min(dims, key=lambda k: dims[k])
        return (
            f"{self.quality(result.overall_score).capitalize()} branch "
            f"(score {result.overall_score:.2f}); strongest: {strongest}, weakest: {weakest}"
        )

    def decide_transition(self, result: EvaluationResult) -> BranchState | None:
        """State the branch should move to, or None for no transition."""
        limits = self.config.branch
        if result.overall_score < limits.dead_end_threshold:
            return BranchState.DEAD_END
        if (
            result.overall_score > limits.completion_threshold
            and result.goal_alignment > limits.completion_goal_alignment
        ):
            return BranchState.COMPLETED
        return None

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def change_state(self, branch: Branch, target: BranchState, reason: str) -> bool:
        """Move ``branch`` to ``target`` and log it.

        Returns:
            False if the branch was already in ``target``.

        Raises:
            ValidationError: If the state machine forbids the move.

        """
        if branch.state == target:
            return False
        if not branch.state.can_transition_to(target):
            raise ValidationError(
                f"Cannot move branch {branch.id} from {branch.state.value} to {target.value}",
                field="state",
                value=target.value,
            )
        previous = branch.state
        branch.state = target
        self.store.record_event(
            EventType.BRANCH_STATE_CHANGED,
            branch_id=branch.id,
            data={"from": previous.value, "to": target.value, "reason": reason},
        )
        logger.info(f"Branch {branch.id}: {previous.value} -> {target.value} ({reason})")
        return True

    def apply_transition(self, branch: Branch, result: EvaluationResult) -> BranchState | None:
        """Apply ``decide_transition`` when the state machine allows it."""
        target = self.decide_transition(result)
        if target is None or target == branch.state or not branch.state.can_transition_to(target):
            return None
        self.change_state(branch, target, f"auto-evaluation score {result.overall_score:.2f}")
        return target

    async def prune(
        self,
        threshold: float | None = None,
        goal: str | None = None,
        deadline: float | None = None,
    ) -> dict[str, Any]:
        """Remove every branch scoring below ``threshold``.

        Args:
            threshold: Minimum overall score to survive (default from config).
            goal: Goal used for scoring.
            deadline: Optional time budget in seconds; on expiry pruning stops
                and the result is flagged ``partial``.

        Returns:
            ``{prunedCount, prunedBranches, remaining, threshold, partial}``.

        Raises:
            ValidationError: If the threshold is outside [0, 1].
            EvaluationError: On the first branch that cannot be scored.

        """
        limit = self.config.branch.prune_threshold if threshold is None else threshold
        if not 0.0 <= limit <= 1.0:
            raise ValidationError("threshold must be within [0, 1]", field="threshold", value=limit)

        expires_at = time.monotonic() + deadline if deadline is not None else None
        pruned: list[str] = []
        partial = False
        for branch in self.store.get_all_branches():
            if expires_at is not None and time.monotonic() >= expires_at:
                partial = True
                break
            result = await self.evaluate_branch(branch.id, goal)
            if result.overall_score >= limit:
                continue
            if branch.state != BranchState.DEAD_END and branch.state.can_transition_to(BranchState.DEAD_END):
                self.change_state(branch, BranchState.DEAD_END, f"pruned (score {result.overall_score:.2f})")
            self.store.remove_branch(branch.id)
            self.invalidate(branch.id)
            pruned.append(branch.id)

        if pruned:
            logger.info(f"Pruned {len(pruned)} branches below {limit}")
        return {
            "prunedCount": len(pruned),
            "prunedBranches": pruned,
            "remaining": self.store.branch_count(),
            "threshold": limit,
            "partial": partial,
        }
