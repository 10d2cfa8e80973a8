"""Error taxonomy for the branch graph engine.

Every failure that leaves the engine is a ``BranchGraphError`` tagged with one
``ErrorKind``. Callers branch on ``err.kind`` (the set is closed), and the
command layer turns any error into the same machine-parseable payload via
``to_dict()``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import pydantic


class ErrorKind(str, Enum):
    """Closed set of engine error kinds."""

    VALIDATION = "VALIDATION_ERROR"
    BRANCH_NOT_FOUND = "BRANCH_NOT_FOUND"
    THOUGHT_NOT_FOUND = "THOUGHT_NOT_FOUND"
    SEMANTIC_ANALYSIS = "SEMANTIC_ANALYSIS_ERROR"
    CONFIGURATION = "CONFIGURATION_ERROR"
    CIRCULAR_REFERENCE = "CIRCULAR_REFERENCE"
    CONTRADICTION = "CONTRADICTION_DETECTED"
    EVALUATION = "EVALUATION_FAILED"
    UNKNOWN = "UNKNOWN_ERROR"


# Transient kinds a caller may reasonably retry
RETRYABLE_KINDS = frozenset({ErrorKind.SEMANTIC_ANALYSIS, ErrorKind.EVALUATION, ErrorKind.UNKNOWN})


class BranchGraphError(Exception):
    """Base exception for the branch graph engine.

    Attributes:
        kind: Error kind tag.
        message: Human-readable message.
        details: Kind-specific payload fields.
        timestamp: When the error was created (UTC).

    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(UTC)
        super().__init__(message)

    @property
    def recoverable(self) -> bool:
        """Whether the caller can continue using the engine after this error."""
        return self.kind != ErrorKind.UNKNOWN

    @property
    def retryable(self) -> bool:
        """Whether retrying the same call may succeed."""
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        """Convert to the failed-command payload.

        Returns:
            Dictionary with ``error``/``status`` plus the structured kind fields.

        """
        return {
            "error": self.message,
            "status": "failed",
            "code": self.kind.value,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(BranchGraphError):
    """Bad or missing argument."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        self.field = field
        self.value = value
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if value is not None:
            details["value"] = value
        super().__init__(message, details)


class BranchNotFoundError(BranchGraphError):
    """Referenced branch does not exist."""

    kind = ErrorKind.BRANCH_NOT_FOUND

    def __init__(self, branch_id: str) -> None:
        self.branch_id = branch_id
        super().__init__(f"Branch not found: {branch_id}", {"branchId": branch_id})


class ThoughtNotFoundError(BranchGraphError):
    """Referenced thought does not exist."""

    kind = ErrorKind.THOUGHT_NOT_FOUND

    def __init__(self, thought_id: str) -> None:
        self.thought_id = thought_id
        super().__init__(f"Thought not found: {thought_id}", {"thoughtId": thought_id})


class SemanticAnalysisError(BranchGraphError):
    """Embedding or similarity computation failed."""

    kind = ErrorKind.SEMANTIC_ANALYSIS

    def __init__(self, message: str, operation: str) -> None:
        self.operation = operation
        super().__init__(message, {"operation": operation})


class ModelNotReadyError(SemanticAnalysisError):
    """Embedding model is downloading, loading or failed to load."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "load_model")


class ConfigurationError(BranchGraphError):
    """A recognized option has an invalid value."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, setting: str) -> None:
        self.setting = setting
        super().__init__(message, {"setting": setting})


class CircularReferenceError(BranchGraphError):
    """A cycle in the cross-reference graph.

    Usually reported as data (``to_dict()``) rather than raised.
    """

    kind = ErrorKind.CIRCULAR_REFERENCE

    def __init__(self, circular_path: list[str]) -> None:
        self.circular_path = list(circular_path)
        super().__init__(
            f"Circular reference detected: {' -> '.join(circular_path)}",
            {"circularPath": self.circular_path},
        )


class ContradictionError(BranchGraphError):
    """Conflicting thoughts inside a branch."""

    kind = ErrorKind.CONTRADICTION

    def __init__(self, conflicting_thoughts: list[str], branch_id: str | None = None) -> None:
        self.conflicting_thoughts = list(conflicting_thoughts)
        self.branch_id = branch_id
        details: dict[str, Any] = {"conflictingThoughts": self.conflicting_thoughts}
        if branch_id is not None:
            details["branchId"] = branch_id
        super().__init__(
            f"Contradiction detected between {len(self.conflicting_thoughts)} thoughts",
            details,
        )


class EvaluationError(BranchGraphError):
    """Scoring pipeline failed for a branch or thought."""

    kind = ErrorKind.EVALUATION

    def __init__(
        self,
        message: str,
        branch_id: str | None = None,
        thought_id: str | None = None,
    ) -> None:
        self.branch_id = branch_id
        self.thought_id = thought_id
        details: dict[str, Any] = {}
        if branch_id is not None:
            details["branchId"] = branch_id
        if thought_id is not None:
            details["thoughtId"] = thought_id
        super().__init__(message, details)


class UnknownError(BranchGraphError):
    """Wrapper for an unrecognized exception."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, original: BaseException) -> None:
        self.original = original
        super().__init__(str(original) or type(original).__name__, {"type": type(original).__name__})


def normalize_error(exc: BaseException) -> BranchGraphError:
    """Map any exception onto the engine taxonomy.

    Args:
        exc: Exception raised somewhere below the engine boundary.

    Returns:
        The same error if already tagged, otherwise a tagged wrapper.

    """
    if isinstance(exc, BranchGraphError):
        return exc
    if isinstance(exc, pydantic.ValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(part) for part in first.get("loc", ()))
        msg = first.get("msg", str(exc))
        return ValidationError(f"{loc}: {msg}" if loc else msg, field=loc or None)
    if isinstance(exc, ValueError):
        return ValidationError(str(exc))
    return UnknownError(exc)
