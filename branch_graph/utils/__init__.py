"""Utility modules for the branch graph engine."""

from .errors import (
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
from .logging import LogFormat, LogLevel, StructuredLogger, get_logger, log_context

__all__ = [
    "BranchGraphError",
    "BranchNotFoundError",
    "CircularReferenceError",
    "ConfigurationError",
    "ContradictionError",
    "ErrorKind",
    "EvaluationError",
    "ModelNotReadyError",
    "LogFormat",
    "LogLevel",
    "SemanticAnalysisError",
    "StructuredLogger",
    "ThoughtNotFoundError",
    "UnknownError",
    "ValidationError",
    "get_logger",
    "log_context",
    "normalize_error",
]
