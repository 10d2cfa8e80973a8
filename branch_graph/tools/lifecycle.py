"""Branch lifecycle controller.

The single entry point for mutating the graph. It pairs every store mutation
with its event, keeps profiles current, runs auto-evaluation and exposes the
read-only search and navigation queries under the same lock.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

from loguru import logger

from branch_graph.config import Config, get_config
from branch_graph.models.embeddings import EmbeddingProvider, ThoughtEmbeddingCache
from branch_graph.models.graph_types import (
    Branch,
    BranchState,
    CrossReference,
    CrossRefType,
    EventType,
    ThoughtSpec,
    content_hash,
)
from branch_graph.models.store import GraphStore
from branch_graph.tools.evaluation import EvaluationPipeline
from branch_graph.tools.graph_search import GraphSearch
from branch_graph.tools.navigator import SemanticNavigator
from branch_graph.tools.semantic_profile import SemanticProfileManager
from branch_graph.tools.serialization import export_chunks, import_chunks
from branch_graph.utils.errors import (
    ConfigurationError,
    ContradictionError,
    EvaluationError,
    SemanticAnalysisError,
    ValidationError,
)
from branch_graph.utils.text import truncate

_AUTO_ID = re.compile(r"^branch-(\d+)$")


class BranchLifecycle:
    """Owns the store and every component that reads or writes it.

    Example:
        >>> engine = BranchLifecycle(provider)
        >>> result = await engine.add_thought("Cache keys must include the tenant")
        >>> result["branchId"]
        'branch-1'

    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Config | None = None,
        store: GraphStore | None = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store or GraphStore(thought_pool_size=self.config.graph.thought_pool_size)
        self.embeddings = ThoughtEmbeddingCache(provider, max_size=self.config.model.cache_size)
        self.search = GraphSearch(self.store)
        self.profiles = SemanticProfileManager(self.store, self.embeddings)
        self.navigator = SemanticNavigator(
            self.store,
            self.embeddings,
            self.profiles,
            self.search,
            default_depth=self.config.graph.max_branch_depth,
            snippet_length=self.config.display.thought_char_limit,
        )
        self.pipeline = EvaluationPipeline(self.store, self.embeddings, self.config)

        self.active_branch_id: str | None = None
        self.goal: str | None = None
        self.auto_eval_enabled = self.config.auto_eval.enabled
        self.auto_eval_threshold = self.config.auto_eval.threshold
        self._branch_counter = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _next_branch_id(self) -> str:
        while True:
            self._branch_counter += 1
            candidate = f"branch-{self._branch_counter}"
            if not self.store.has_branch(candidate):
                return candidate

    def _create_branch(
        self, branch_id: str | None, parent_branch_id: str | None, description: str | None = None
    ) -> Branch:
        branch = self.store.create_branch(branch_id or self._next_branch_id(), parent_branch_id)
        branch.description = description
        self.store.record_event(
            EventType.BRANCH_CREATED,
            branch_id=branch.id,
            data={"parentBranchId": parent_branch_id},
        )
        logger.debug(f"Created branch {branch.id} (parent={parent_branch_id})")
        return branch

    def _resolve_branch(self, branch_id: str | None, parent_branch_id: str | None) -> Branch:
        if branch_id:
            existing = self.store.get_branch(branch_id)
            return existing if existing is not None else self._create_branch(branch_id, parent_branch_id)
        if self.active_branch_id and self.store.has_branch(self.active_branch_id):
            return self.store.require_branch(self.active_branch_id)
        return self._create_branch(None, parent_branch_id)

    def _target_branch(self, branch_id: str | None) -> Branch:
        resolved = branch_id or self.active_branch_id
        if not resolved:
            raise ValidationError("No branch specified and no active branch", field="branchId")
        return self.store.require_branch(resolved)

    async def create_branch(
        self,
        branch_id: str | None = None,
        parent_branch_id: str | None = None,
        description: str | None = None,
    ) -> Branch:
        async with self._lock:
            return self._create_branch(branch_id, parent_branch_id, description)

    async def focus(self, branch_id: str) -> dict[str, Any]:
        async with self._lock:
            branch = self.store.require_branch(branch_id)
            self.active_branch_id = branch.id
            return {"activeBranch": branch.id, "state": branch.state.value, "thoughtCount": len(branch.thoughts)}

    async def set_goal(self, goal: str) -> dict[str, Any]:
        if not goal or not goal.strip():
            raise ValidationError("goal must not be blank", field="goal")
        async with self._lock:
            self.goal = goal.strip()
            return {"goal": self.goal}

    async def set_branch_state(
        self,
        branch_id: str | None,
        state: BranchState | str,
        reason: str = "manual",
    ) -> dict[str, Any]:
        """Move a branch through the state machine.

        Raises:
            ValidationError: For an unknown state or a forbidden transition.

        """
        try:
            target = BranchState(state)
        except ValueError as e:
            raise ValidationError(f"Unknown branch state: {state}", field="state", value=state) from e
        async with self._lock:
            branch = self._target_branch(branch_id)
            previous = branch.state
            changed = self.pipeline.change_state(branch, target, reason)
            return {"branchId": branch.id, "from": previous.value, "to": target.value, "changed": changed}

    # ------------------------------------------------------------------
    # Thoughts
    # ------------------------------------------------------------------

    def _validate_thought(self, content: str, thought_type: str, confidence: float) -> None:
        if not content or not content.strip():
            raise ValidationError("content must not be blank", field="content")
        limit = self.config.evaluation.max_content_length
        if len(content) > limit:
            raise ValidationError(
                f"content exceeds {limit} characters", field="content", value=len(content)
            )
        if not thought_type or not thought_type.strip():
            raise ValidationError("type must not be blank", field="type")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be within [0, 1]", field="confidence", value=confidence)

    def _add_cross_ref(self, branch: Branch, thought_id: str, spec: dict[str, Any]) -> CrossReference:
        to_branch = spec.get("toBranch")
        if not to_branch:
            raise ValidationError("cross reference needs toBranch", field="crossRefs.toBranch")
        try:
            ref_type = CrossRefType(spec.get("type", CrossRefType.SUPPORTS.value))
        except ValueError as e:
            raise ValidationError(
                f"Unknown cross reference type: {spec.get('type')}", field="crossRefs.type", value=spec.get("type")
            ) from e
        strength = float(spec.get("strength", 0.5))
        if not 0.0 <= strength <= 1.0:
            raise ValidationError("strength must be within [0, 1]", field="crossRefs.strength", value=strength)

        target = self.store.get_branch(to_branch)
        pairs = [(thought_id, target.thought_ids[-1])] if target is not None and target.thought_ids else []
        ref = CrossReference(
            id=f"xref-{self.store.next_event_index}",
            from_branch=branch.id,
            to_branch=to_branch,
            type=ref_type,
            strength=strength,
            reason=spec.get("reason", ""),
            thought_pairs=pairs,
        )
        branch.cross_refs.append(ref)
        self.store.record_event(
            EventType.CROSS_REF_ADDED,
            thought_id=thought_id,
            branch_id=branch.id,
            data={
                "fromBranch": branch.id,
                "toBranch": to_branch,
                "type": ref_type.value,
                "strength": strength,
                "thoughtId": thought_id,
            },
        )
        return ref

    async def add_thought(
        self,
        content: str,
        type: str = "analysis",
        branch_id: str | None = None,
        parent_branch_id: str | None = None,
        confidence: float | None = None,
        key_points: list[str] | None = None,
        cross_refs: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Add a thought and run the follow-up pipeline.

        Args:
            content: Thought text; identical text maps to the same thought id.
            type: Free-form thought type.
            branch_id: Target branch, created if unknown. Defaults to the
                active branch, then to a new auto-named branch.
            parent_branch_id: Parent for a newly created branch.
            confidence: Stated confidence in [0, 1] (default 1.0).
            key_points: Optional key points.
            cross_refs: ``{toBranch, type, strength?, reason?}`` links to add.

        Returns:
            ``{thoughtId, branchId, thought}`` plus ``overlapWarning``,
            ``evaluation``/``feedback`` and ``stateChange`` when they apply.

        Raises:
            ValidationError: On invalid input.

        """
        stated_confidence = 1.0 if confidence is None else confidence
        self._validate_thought(content, type, stated_confidence)
        for spec in cross_refs or []:
            if not isinstance(spec, dict):
                raise ValidationError("crossRefs entries must be objects", field="crossRefs")

        async with self._lock:
            branch = self._resolve_branch(branch_id, parent_branch_id)
            thought_id = content_hash(content)
            self.store.create_thought_if_new(
                ThoughtSpec(
                    thought_id=thought_id,
                    content=content,
                    branch_id=branch.id,
                    type=type,
                    confidence=stated_confidence,
                    key_points=tuple(key_points or ()),
                )
            )
            self.store.add_thought_to_branch(thought_id, branch.id, strict=True)
            self.store.record_event(EventType.THOUGHT_ADDED, thought_id=thought_id, branch_id=branch.id)
            thought = self.store.require_thought(thought_id)

            result: dict[str, Any] = {"thoughtId": thought_id, "branchId": branch.id, "thought": thought.to_dict()}

            try:
                if branch.semantic_profile is None and len(branch.thoughts) > 1:
                    # Imported branches carry no profile; rebuild over every thought
                    await self.profiles.ensure_profile(branch)
                else:
                    await self.profiles.update_profile(branch, thought)
                warning = await self.profiles.overlap_warning(branch, await self.profiles.thought_embedding(thought))
                if warning:
                    result["overlapWarning"] = warning
            except SemanticAnalysisError as e:
                logger.warning(f"Skipping profile update for {branch.id}: {e.message}")

            for spec in cross_refs or []:
                self._add_cross_ref(branch, thought_id, spec)

            self.active_branch_id = branch.id
            if branch.state == BranchState.SUSPENDED:
                self.pipeline.change_state(branch, BranchState.ACTIVE, "thought added")

            if self.auto_eval_enabled:
                try:
                    evaluation = await self.pipeline.evaluate_branch(branch.id, self.goal)
                except EvaluationError as e:
                    logger.warning(f"Auto-evaluation skipped for {branch.id}: {e.message}")
                else:
                    result["evaluation"] = evaluation.to_dict()
                    result["feedback"] = self.pipeline.feedback(evaluation, self.auto_eval_threshold).to_dict()
                    new_state = self.pipeline.apply_transition(branch, evaluation)
                    if new_state is not None:
                        result["stateChange"] = new_state.value

            return result

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, branch_id: str | None = None) -> dict[str, Any]:
        async with self._lock:
            branch = self._target_branch(branch_id)
            result = await self.pipeline.evaluate_branch(branch.id, self.goal)
            return {
                "branchId": branch.id,
                "evaluation": result.to_dict(),
                "feedback": self.pipeline.feedback(result, self.auto_eval_threshold).to_dict(),
                "interpretation": self.pipeline.interpret(result),
            }

    async def prune(self, threshold: float | None = None, deadline: float | None = None) -> dict[str, Any]:
        async with self._lock:
            result = await self.pipeline.prune(threshold, goal=self.goal, deadline=deadline)
            if self.active_branch_id and not self.store.has_branch(self.active_branch_id):
                self.active_branch_id = None
            return result

    async def find_contradictions(self, branch_id: str | None = None, max_depth: int | None = None) -> dict[str, Any]:
        """Branches whose contradiction score exceeds the configured threshold.

        Args:
            branch_id: Limit the scan to this branch's neighborhood.
            max_depth: Neighborhood depth (defaults to the configured depth).

        Returns:
            ``{contradictions: [ContradictionError payload...], checkedBranches}``.

        """
        async with self._lock:
            if branch_id:
                depth = self.config.graph.max_branch_depth if max_depth is None else max_depth
                scope = self.search.neighborhood(branch_id, depth)
            else:
                scope = self.store.get_all_branches()

            reports: list[dict[str, Any]] = []
            for branch in scope:
                result = await self.pipeline.evaluate_branch(branch.id, self.goal)
                if result.contradiction_score <= self.config.evaluation.contradiction_threshold:
                    continue
                ids: list[str] = []
                pairs = await self.pipeline.evaluators.contradiction.conflicting_pairs(branch.thoughts, self.embeddings)
                for first, second in pairs:
                    ids.extend(t.id for t in (first, second) if t.id not in ids)
                report = ContradictionError(ids, branch_id=branch.id).to_dict()
                report["contradictionScore"] = round(result.contradiction_score, 4)
                reports.append(report)
            return {"contradictions": reports, "checkedBranches": len(scope)}

    async def find_strongest_paths(self, target: str) -> list[dict[str, Any]]:
        """Active and completed branches ranked by alignment with ``target``."""
        if not target or not target.strip():
            raise ValidationError("target must not be blank", field="query")
        async with self._lock:
            ranked: list[tuple[float, dict[str, Any]]] = []
            for branch in self.store.get_all_branches():
                if branch.state not in (BranchState.ACTIVE, BranchState.COMPLETED):
                    continue
                result = await self.pipeline.score(branch, goal=target)
                ranked.append(
                    (
                        result.goal_alignment,
                        {
                            "branchId": branch.id,
                            "state": branch.state.value,
                            "goalAlignment": round(result.goal_alignment, 4),
                            "overallScore": round(result.overall_score, 4),
                            "thoughtCount": len(branch.thoughts),
                        },
                    )
                )
            ranked.sort(key=lambda item: item[0], reverse=True)
            return [entry for _, entry in ranked[: self.config.display.top_results]]

    def detect_circular(self) -> dict[str, Any]:
        cycles = self.search.detect_circular_references()
        return {"circularReferences": [c.to_dict() for c in cycles], "count": len(cycles)}

    # ------------------------------------------------------------------
    # Auto-evaluation settings
    # ------------------------------------------------------------------

    def toggle_auto_eval(self) -> dict[str, Any]:
        self.auto_eval_enabled = not self.auto_eval_enabled
        return self.auto_eval_settings()

    def configure_auto_eval(self, enabled: bool | None = None, threshold: float | None = None) -> dict[str, Any]:
        """Update auto-evaluation settings; omitted values are left unchanged.

        Raises:
            ConfigurationError: If the threshold is outside [0, 1].

        """
        if threshold is not None:
            if not 0.0 <= threshold <= 1.0:
                raise ConfigurationError(
                    f"Auto-eval threshold must be within [0, 1], got {threshold}", "auto_eval.threshold"
                )
            self.auto_eval_threshold = threshold
        if enabled is not None:
            self.auto_eval_enabled = enabled
        return self.auto_eval_settings()

    def auto_eval_settings(self) -> dict[str, Any]:
        return {"enabled": self.auto_eval_enabled, "threshold": self.auto_eval_threshold}

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def _summary(self, branch: Branch) -> dict[str, Any]:
        last = branch.thoughts[-1].content if branch.thoughts else ""
        return {
            "id": branch.id,
            "state": branch.state.value,
            "parentId": branch.parent_id,
            "childIds": sorted(branch.child_ids),
            "priority": branch.priority,
            "confidence": branch.confidence,
            "thoughtCount": len(branch.thoughts),
            "isActive": branch.id == self.active_branch_id,
            "description": branch.description,
            "lastThought": truncate(last, self.config.display.branch_summary_char_limit),
        }

    def list_branches(self) -> dict[str, Any]:
        return {
            "activeBranch": self.active_branch_id,
            "branches": [self._summary(b) for b in self.store.get_all_branches()],
        }

    def history(self, branch_id: str | None = None) -> dict[str, Any]:
        branch = self._target_branch(branch_id)
        limit = self.config.display.history_thoughts
        return {
            **self._summary(branch),
            "recentThoughts": [
                truncate(t.content, self.config.display.thought_char_limit)
                for t in self.store.get_recent_thoughts(branch.id, self.config.display.recent_thoughts)
            ],
            "thoughts": [t.to_dict() for t in branch.thoughts[-limit:]],
            "crossRefs": [ref.to_dict() for ref in branch.cross_refs],
            "events": [e.to_dict() for e in self.store.get_events_since(0) if e.branch_id == branch.id],
        }

    def statistics(self) -> dict[str, Any]:
        branches = self.store.get_all_branches()
        distribution: dict[str, int] = {}
        for branch in branches:
            distribution[branch.state.value] = distribution.get(branch.state.value, 0) + 1
        in_branches = sum(len(b.thoughts) for b in branches)
        return {
            "totalBranches": len(branches),
            "totalThoughts": self.store.thought_count(),
            "activeBranches": distribution.get(BranchState.ACTIVE.value, 0),
            "averageThoughtsPerBranch": round(in_branches / len(branches), 2) if branches else 0.0,
            "branchStateDistribution": distribution,
            "eventCount": self.store.event_count(),
            "activeBranch": self.active_branch_id,
            "goal": self.goal,
            "autoEval": self.auto_eval_settings(),
            "embeddingCache": self.embeddings.stats,
            "evaluationCache": self.pipeline.cache_stats,
        }

    # ------------------------------------------------------------------
    # Search and navigation
    # ------------------------------------------------------------------

    def search_thoughts(self, pattern: str) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self.search.search_thoughts(pattern)]

    def filter(
        self,
        thought_type: str | None = None,
        min_confidence: float | None = None,
        max_confidence: float | None = None,
        state: str | None = None,
        orphaned: bool = False,
    ) -> dict[str, Any]:
        """Attribute filters over thoughts and branches; unset filters are skipped."""
        result: dict[str, Any] = {}
        if thought_type is not None or min_confidence is not None or max_confidence is not None:
            thoughts = self.search.find_thoughts_by_confidence(
                0.0 if min_confidence is None else min_confidence,
                1.0 if max_confidence is None else max_confidence,
            )
            if thought_type is not None:
                thoughts = [t for t in thoughts if t.metadata.type == thought_type]
            result["thoughts"] = [t.to_dict() for t in thoughts]

        if state is not None or orphaned:
            if state is not None:
                try:
                    branches = self.search.find_branches_by_state(BranchState(state))
                except ValueError as e:
                    raise ValidationError(f"Unknown branch state: {state}", field="state", value=state) from e
            else:
                branches = self.store.get_all_branches()
            if orphaned:
                orphan_ids = {b.id for b in self.search.find_orphaned_branches()}
                branches = [b for b in branches if b.id in orphan_ids]
            result["branches"] = [self._summary(b) for b in branches]

        if not result:
            raise ValidationError("filter needs at least one of type, minConfidence, maxConfidence, state, orphaned")
        return result

    def neighborhood(self, branch_id: str | None, max_depth: int | None = None) -> dict[str, Any]:
        branch = self._target_branch(branch_id)
        depth = self.config.graph.max_branch_depth if max_depth is None else max_depth
        ids = self.search.breadth_first_search(branch.id, depth)
        return {"branchId": branch.id, "maxDepth": depth, "branches": sorted(ids)}

    async def find_similar(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        async with self._lock:
            return await self.navigator.find_similar(query, limit)

    async def jump_to_related(self, thought_id: str, limit: int = 5) -> list[dict[str, Any]]:
        async with self._lock:
            return await self.navigator.jump_to_related(thought_id, limit)

    async def semantic_path(
        self,
        from_id: str,
        to_id: str,
        max_steps: int = 5,
        deadline: float | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            path = await self.navigator.find_semantic_path(from_id, to_id, max_steps, deadline)
            return path.to_dict()

    async def semantic_flow(self, branch_id: str | None = None) -> dict[str, Any]:
        async with self._lock:
            return await self.navigator.analyze_semantic_flow(self._target_branch(branch_id).id)

    async def compare_profiles(self, branch_ids: list[str] | None = None) -> dict[str, Any]:
        async with self._lock:
            return await self.navigator.compare_profiles(branch_ids)

    async def suggest_merges(
        self,
        threshold: float = 0.7,
        branch_id: str | None = None,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            return await self.navigator.suggest_merges(threshold, branch_id, max_depth)

    async def detect_drift(self, branch_id: str | None = None) -> dict[str, Any]:
        async with self._lock:
            return await self.navigator.detect_drift(self._target_branch(branch_id).id)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_graph(self, batch_size: int = 100) -> list[dict[str, Any]]:
        async with self._lock:
            return list(export_chunks(self.store, batch_size))

    async def import_graph(self, chunks: list[dict[str, Any]]) -> dict[str, Any]:
        """Replace the graph with an export; session state is reset."""
        async with self._lock:
            summary = import_chunks(self.store, chunks)
            self.pipeline.invalidate()
            self.active_branch_id = None
            self._branch_counter = max(
                (int(m.group(1)) for b in self.store.get_all_branches() if (m := _AUTO_ID.match(b.id))),
                default=0,
            )
            return summary
