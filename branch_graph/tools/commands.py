"""Command surface of the engine.

A wire payload ``{type, branchId?, query?, data?}`` is flattened into one
pydantic request model per command (a discriminated union on ``command``),
then dispatched to the lifecycle controller. ``CommandHandler.execute`` is
total: it always returns either a success payload or the error payload.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal, get_args

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from branch_graph.utils.errors import ValidationError, normalize_error
from branch_graph.utils.logging import log_context

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from branch_graph.tools.lifecycle import BranchLifecycle


class _Command(BaseModel):
    """Shared request settings: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


class _BranchScoped(_Command):
    branch_id: str | None = None


class ListCommand(_Command):
    command: Literal["list"]


class FocusCommand(_Command):
    command: Literal["focus"]
    branch_id: str = Field(min_length=1)


class HistoryCommand(_BranchScoped):
    command: Literal["history"]


class EvaluateCommand(_BranchScoped):
    command: Literal["evaluate"]


class SetGoalCommand(_Command):
    command: Literal["setGoal"]
    query: str | None = None
    goal: str | None = None

    @model_validator(mode="after")
    def _needs_goal(self) -> SetGoalCommand:
        if not (self.query or self.goal):
            raise ValueError("setGoal needs query or data.goal")
        return self

    @property
    def resolved_goal(self) -> str:
        return self.query or self.goal or ""


class StatisticsCommand(_Command):
    command: Literal["statistics"]


class SearchCommand(_Command):
    command: Literal["search"]
    query: str = Field(min_length=1)


class FilterCommand(_Command):
    command: Literal["filter"]
    thought_type: str | None = Field(default=None, alias="type")
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    max_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    state: str | None = None
    orphaned: bool = False


class NeighborhoodCommand(_BranchScoped):
    command: Literal["neighborhood"]
    max_depth: int | None = Field(default=None, ge=0)


class FindContradictionsCommand(_BranchScoped):
    command: Literal["findContradictions"]
    max_depth: int | None = Field(default=None, ge=0)


class FindStrongestPathsCommand(_Command):
    command: Literal["findStrongestPaths"]
    query: str = Field(min_length=1)


class DetectCircularCommand(_Command):
    command: Literal["detectCircular"]


class PruneCommand(_Command):
    command: Literal["prune"]
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    deadline_seconds: float | None = Field(default=None, gt=0.0)


class ToggleAutoEvalCommand(_Command):
    command: Literal["toggleAutoEval"]


class ConfigAutoEvalCommand(_Command):
    command: Literal["configAutoEval"]
    enabled: bool | None = None
    threshold: float | None = None


class SetStateCommand(_BranchScoped):
    command: Literal["setState"]
    state: str = Field(min_length=1)
    reason: str = "manual"


class FindSimilarCommand(_Command):
    command: Literal["findSimilar"]
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1)


class JumpToRelatedCommand(_Command):
    command: Literal["jumpToRelated"]
    thought_id: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1)


class SemanticPathCommand(_Command):
    command: Literal["semanticPath"]
    from_thought_id: str = Field(min_length=1)
    to_thought_id: str = Field(min_length=1)
    max_steps: int = Field(default=5, ge=0)
    deadline_seconds: float | None = Field(default=None, gt=0.0)


class SemanticFlowCommand(_BranchScoped):
    command: Literal["semanticFlow"]


class CompareProfilesCommand(_Command):
    command: Literal["compareProfiles"]
    branch_ids: list[str] | None = None


class SuggestMergesCommand(_BranchScoped):
    command: Literal["suggestMerges"]
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_depth: int | None = Field(default=None, ge=0)


class DetectDriftCommand(_BranchScoped):
    command: Literal["detectDrift"]


class ExportCommand(_Command):
    command: Literal["export"]
    batch_size: int = Field(default=100, ge=1)


class ImportCommand(_Command):
    command: Literal["import"]
    chunks: list[dict[str, Any]] = Field(min_length=1)


CommandRequest = Annotated[
    ListCommand
    | FocusCommand
    | HistoryCommand
    | EvaluateCommand
    | SetGoalCommand
    | StatisticsCommand
    | SearchCommand
    | FilterCommand
    | NeighborhoodCommand
    | FindContradictionsCommand
    | FindStrongestPathsCommand
    | DetectCircularCommand
    | PruneCommand
    | ToggleAutoEvalCommand
    | ConfigAutoEvalCommand
    | SetStateCommand
    | FindSimilarCommand
    | JumpToRelatedCommand
    | SemanticPathCommand
    | SemanticFlowCommand
    | CompareProfilesCommand
    | SuggestMergesCommand
    | DetectDriftCommand
    | ExportCommand
    | ImportCommand,
    Field(discriminator="command"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(CommandRequest)

CommandType = Literal[
    "list",
    "focus",
    "history",
    "evaluate",
    "setGoal",
    "statistics",
    "search",
    "filter",
    "neighborhood",
    "findContradictions",
    "findStrongestPaths",
    "detectCircular",
    "prune",
    "toggleAutoEval",
    "configAutoEval",
    "setState",
    "findSimilar",
    "jumpToRelated",
    "semanticPath",
    "semanticFlow",
    "compareProfiles",
    "suggestMerges",
    "detectDrift",
    "export",
    "import",
]
COMMAND_NAMES: tuple[str, ...] = get_args(CommandType)


def parse_command(payload: Any) -> Any:
    """Validate a wire payload into its request model.

    ``data`` fields are lifted to the top level; ``branchId`` and ``query``
    given at the top level win over the same keys inside ``data``.

    Raises:
        ValidationError: For a malformed payload or an unknown command.
        pydantic.ValidationError: For invalid command fields.

    """
    if not isinstance(payload, dict):
        raise ValidationError("Command payload must be an object", field="payload")
    command = payload.get("type")
    if command not in COMMAND_NAMES:
        raise ValidationError(f"Unknown command: {command}", field="type", value=command)
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object", field="data")

    flat: dict[str, Any] = dict(data)
    for key in ("branchId", "query"):
        if payload.get(key) is not None:
            flat[key] = payload[key]
    flat["command"] = command
    return _ADAPTER.validate_python(flat)


class CommandHandler:
    """Dispatches validated commands to a ``BranchLifecycle``."""

    def __init__(self, lifecycle: BranchLifecycle) -> None:
        self.lifecycle = lifecycle
        self._handlers: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "list": self._list,
            "focus": self._focus,
            "history": self._history,
            "evaluate": self._evaluate,
            "setGoal": self._set_goal,
            "statistics": self._statistics,
            "search": self._search,
            "filter": self._filter,
            "neighborhood": self._neighborhood,
            "findContradictions": self._find_contradictions,
            "findStrongestPaths": self._find_strongest_paths,
            "detectCircular": self._detect_circular,
            "prune": self._prune,
            "toggleAutoEval": self._toggle_auto_eval,
            "configAutoEval": self._config_auto_eval,
            "setState": self._set_state,
            "findSimilar": self._find_similar,
            "jumpToRelated": self._jump_to_related,
            "semanticPath": self._semantic_path,
            "semanticFlow": self._semantic_flow,
            "compareProfiles": self._compare_profiles,
            "suggestMerges": self._suggest_merges,
            "detectDrift": self._detect_drift,
            "export": self._export,
            "import": self._import,
        }

    async def execute(self, payload: Any) -> dict[str, Any]:
        """Run one command.

        Args:
            payload: ``{type, branchId?, query?, data?}``.

        Returns:
            ``{status: "success", command, result}`` or the error payload
            ``{error, status: "failed", code, retryable, details, timestamp}``.

        """
        command = payload.get("type") if isinstance(payload, dict) else None
        branch_id = payload.get("branchId") if isinstance(payload, dict) else None
        with log_context(command=command, branch_id=branch_id):
            try:
                request = parse_command(payload)
                result = await self._handlers[request.command](request)
            except Exception as e:
                error = normalize_error(e)
                if error.recoverable:
                    logger.warning(f"Command {command} failed: [{error.kind.value}] {error.message}")
                else:
                    logger.exception(f"Command {command} failed unexpectedly")
                return error.to_dict()
            return {"status": "success", "command": request.command, "result": result}

    async def _list(self, request: ListCommand) -> Any:
        return self.lifecycle.list_branches()

    async def _focus(self, request: FocusCommand) -> Any:
        return await self.lifecycle.focus(request.branch_id)

    async def _history(self, request: HistoryCommand) -> Any:
        return self.lifecycle.history(request.branch_id)

    async def _evaluate(self, request: EvaluateCommand) -> Any:
        return await self.lifecycle.evaluate(request.branch_id)

    async def _set_goal(self, request: SetGoalCommand) -> Any:
        return await self.lifecycle.set_goal(request.resolved_goal)

    async def _statistics(self, request: StatisticsCommand) -> Any:
        return self.lifecycle.statistics()

    async def _search(self, request: SearchCommand) -> Any:
        matches = self.lifecycle.search_thoughts(request.query)
        return {"pattern": request.query, "count": len(matches), "thoughts": matches}

    async def _filter(self, request: FilterCommand) -> Any:
        return self.lifecycle.filter(
            thought_type=request.thought_type,
            min_confidence=request.min_confidence,
            max_confidence=request.max_confidence,
            state=request.state,
            orphaned=request.orphaned,
        )

    async def _neighborhood(self, request: NeighborhoodCommand) -> Any:
        return self.lifecycle.neighborhood(request.branch_id, request.max_depth)

    async def _find_contradictions(self, request: FindContradictionsCommand) -> Any:
        return await self.lifecycle.find_contradictions(request.branch_id, request.max_depth)

    async def _find_strongest_paths(self, request: FindStrongestPathsCommand) -> Any:
        return {"target": request.query, "paths": await self.lifecycle.find_strongest_paths(request.query)}

    async def _detect_circular(self, request: DetectCircularCommand) -> Any:
        return self.lifecycle.detect_circular()

    async def _prune(self, request: PruneCommand) -> Any:
        return await self.lifecycle.prune(request.threshold, request.deadline_seconds)

    async def _toggle_auto_eval(self, request: ToggleAutoEvalCommand) -> Any:
        return self.lifecycle.toggle_auto_eval()

    async def _config_auto_eval(self, request: ConfigAutoEvalCommand) -> Any:
        return self.lifecycle.configure_auto_eval(request.enabled, request.threshold)

    async def _set_state(self, request: SetStateCommand) -> Any:
        return await self.lifecycle.set_branch_state(request.branch_id, request.state, request.reason)

    async def _find_similar(self, request: FindSimilarCommand) -> Any:
        return {"query": request.query, "results": await self.lifecycle.find_similar(request.query, request.limit)}

    async def _jump_to_related(self, request: JumpToRelatedCommand) -> Any:
        related = await self.lifecycle.jump_to_related(request.thought_id, request.limit)
        return {"thoughtId": request.thought_id, "related": related}

    async def _semantic_path(self, request: SemanticPathCommand) -> Any:
        return await self.lifecycle.semantic_path(
            request.from_thought_id,
            request.to_thought_id,
            request.max_steps,
            request.deadline_seconds,
        )

    async def _semantic_flow(self, request: SemanticFlowCommand) -> Any:
        return await self.lifecycle.semantic_flow(request.branch_id)

    async def _compare_profiles(self, request: CompareProfilesCommand) -> Any:
        return await self.lifecycle.compare_profiles(request.branch_ids)

    async def _suggest_merges(self, request: SuggestMergesCommand) -> Any:
        return await self.lifecycle.suggest_merges(request.threshold, request.branch_id, request.max_depth)

    async def _detect_drift(self, request: DetectDriftCommand) -> Any:
        return await self.lifecycle.detect_drift(request.branch_id)

    async def _export(self, request: ExportCommand) -> Any:
        chunks = await self.lifecycle.export_graph(request.batch_size)
        return {"chunkCount": len(chunks), "chunks": chunks}

    async def _import(self, request: ImportCommand) -> Any:
        return await self.lifecycle.import_graph(request.chunks)
