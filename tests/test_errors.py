"""Tests for the error taxonomy."""

from __future__ import annotations

from datetime import datetime

import pydantic
import pytest

from branch_graph.utils.errors import (
    BranchGraphError,
    BranchNotFoundError,
    CircularReferenceError,
    ConfigurationError,
    ContradictionError,
    ErrorKind,
    EvaluationError,
    ModelNotReadyError,
    SemanticAnalysisError,
    ThoughtNotFoundError,
    UnknownError,
    ValidationError,
    normalize_error,
)


class _Model(pydantic.BaseModel):
    limit: int = pydantic.Field(ge=1)


class TestPayload:
    """Tests for the failed-command payload."""

    def test_shape(self) -> None:
        """Every error serializes to the same keys."""
        payload = BranchNotFoundError("b9").to_dict()
        assert set(payload) == {"error", "status", "code", "retryable", "details", "timestamp"}
        assert payload["status"] == "failed"
        assert payload["code"] == "BRANCH_NOT_FOUND"
        assert payload["details"] == {"branchId": "b9"}
        datetime.fromisoformat(payload["timestamp"])

    @pytest.mark.parametrize(
        ("error", "kind", "retryable"),
        [
            (ValidationError("bad"), ErrorKind.VALIDATION, False),
            (BranchNotFoundError("b"), ErrorKind.BRANCH_NOT_FOUND, False),
            (ThoughtNotFoundError("t"), ErrorKind.THOUGHT_NOT_FOUND, False),
            (SemanticAnalysisError("x", "embed"), ErrorKind.SEMANTIC_ANALYSIS, True),
            (ConfigurationError("x", "a.b"), ErrorKind.CONFIGURATION, False),
            (CircularReferenceError(["a", "b", "a"]), ErrorKind.CIRCULAR_REFERENCE, False),
            (ContradictionError(["t1", "t2"]), ErrorKind.CONTRADICTION, False),
            (EvaluationError("x"), ErrorKind.EVALUATION, True),
            (UnknownError(RuntimeError("x")), ErrorKind.UNKNOWN, True),
        ],
    )
    def test_kinds(self, error: BranchGraphError, kind: ErrorKind, retryable: bool) -> None:
        """Each class carries its kind and retry hint."""
        assert error.kind == kind
        assert error.retryable is retryable
        assert error.recoverable is (kind != ErrorKind.UNKNOWN)

    def test_details(self) -> None:
        """Kind-specific fields land in details."""
        assert ValidationError("bad", field="limit", value=0).details == {"field": "limit", "value": 0}
        assert CircularReferenceError(["a", "b", "a"]).message == "Circular reference detected: a -> b -> a"
        assert ContradictionError(["t1"], branch_id="b1").details == {"conflictingThoughts": ["t1"], "branchId": "b1"}
        assert ModelNotReadyError("loading").details == {"operation": "load_model"}


class TestNormalizeError:
    """Tests for mapping foreign exceptions."""

    def test_passthrough(self) -> None:
        """Engine errors are returned unchanged."""
        error = ThoughtNotFoundError("t")
        assert normalize_error(error) is error

    def test_pydantic(self) -> None:
        """Pydantic errors become ValidationError with the field location."""
        with pytest.raises(pydantic.ValidationError) as exc_info:
            _Model(limit=0)
        error = normalize_error(exc_info.value)
        assert isinstance(error, ValidationError)
        assert error.field == "limit"
        assert error.message.startswith("limit: ")

    def test_value_error(self) -> None:
        """ValueError becomes ValidationError."""
        error = normalize_error(ValueError("setGoal needs query"))
        assert isinstance(error, ValidationError)
        assert error.message == "setGoal needs query"

    def test_other(self) -> None:
        """Anything else is wrapped as UnknownError."""
        original = KeyError("k")
        error = normalize_error(original)
        assert isinstance(error, UnknownError)
        assert error.original is original
        assert error.details == {"type": "KeyError"}
