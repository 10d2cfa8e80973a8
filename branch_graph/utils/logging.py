"""Structured logging for the branch graph server.

Wraps loguru with:
- JSON output (one object per line) or colorized text
- ContextVar-scoped trace, command and branch identifiers
- Redaction of sensitive keys in bound extras
- LOG_LEVEL / LOG_FORMAT / LOG_FILE environment configuration
"""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_command: ContextVar[str | None] = ContextVar("command", default=None)
_branch_id: ContextVar[str | None] = ContextVar("branch_id", default=None)


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "password",
        "secret",
        "token",
        "authorization",
        "credential",
        "privatekey",
        "hftoken",
    }
)


def redact_sensitive(data: dict[str, Any], depth: int = 0) -> dict[str, Any]:
    """Recursively replace sensitive values with ``[REDACTED]``.

    Args:
        data: Dictionary to redact.
        depth: Current recursion depth.

    Returns:
        A redacted copy of ``data``.

    """
    if depth > 10:
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        normalized = key.lower().replace("_", "").replace("-", "")
        if any(sensitive in normalized for sensitive in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = redact_sensitive(value, depth + 1)
        elif isinstance(value, list):
            result[key] = [
                redact_sensitive(item, depth + 1) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def current_context() -> dict[str, str]:
    """Return the logging context set for the running task."""
    context: dict[str, str] = {}
    if trace_id := _trace_id.get():
        context["trace_id"] = trace_id
    if command := _command.get():
        context["command"] = command
    if branch_id := _branch_id.get():
        context["branch_id"] = branch_id
    return context


def json_serializer(record: Record) -> str:
    """Serialize a loguru record to a single JSON line.

    Args:
        record: Loguru record dictionary.

    Returns:
        JSON string for the log entry.

    """
    entry: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
        **current_context(),
    }
    if record.get("extra"):
        entry["extra"] = redact_sensitive(dict(record["extra"]))
    if record["exception"]:
        exc = record["exception"]
        entry["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value) if exc.value else None,
        }
    return orjson.dumps(entry, default=str).decode("utf-8")


def _text_context(record: Record) -> str:
    parts = [f"{k}={v[:12]}" for k, v in current_context().items()]
    record["extra"]["ctx"] = f"[{' '.join(parts)}] " if parts else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "{extra[ctx]}<level>{message}</level>\n{exception}"
    )


def _json_sink(message: Any) -> None:
    sys.stderr.write(json_serializer(message.record) + "\n")


class StructuredLogger:
    """loguru configuration plus scoped context helpers.

    Example:
        log = get_logger(__name__)
        with log.context(command="prune"):
            log.info("Pruning", threshold=0.2)

    """

    def __init__(
        self,
        name: str,
        level: LogLevel | str = LogLevel.INFO,
        log_format: LogFormat | str = LogFormat.TEXT,
        log_file: str | Path | None = None,
    ) -> None:
        """Configure loguru sinks.

        Args:
            name: Logger name (usually module name).
            level: Minimum log level.
            log_format: Output format (json or text).
            log_file: Optional file path for a rotating JSON sink.

        """
        self.name = name
        self.level = LogLevel(level) if isinstance(level, str) else level
        self.log_format = LogFormat(log_format) if isinstance(log_format, str) else log_format
        self._configure(log_file)

    def _configure(self, log_file: str | Path | None) -> None:
        logger.remove()

        if self.log_format == LogFormat.JSON:
            logger.add(_json_sink, level=self.level.value, format="{message}")
        else:
            logger.add(sys.stderr, level=self.level.value, format=_text_context, colorize=True)

        if log_file:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                path,
                format="{message}",
                level=self.level.value,
                serialize=True,
                rotation="50 MB",
                retention="7 days",
                compression="gz",
            )

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        getattr(logger.bind(**kwargs).opt(depth=2), level)(message)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("error", message, **kwargs)

    class _Scope:
        """Sets context variables for the duration of a ``with`` block."""

        def __init__(self, values: dict[ContextVar[str | None], str | None]) -> None:
            self._values = values
            self._tokens: list[Token[str | None]] = []

        def __enter__(self) -> StructuredLogger._Scope:
            for var, value in self._values.items():
                if value:
                    self._tokens.append(var.set(value))
            return self

        def __exit__(self, *args: Any) -> None:
            for token in reversed(self._tokens):
                token.var.reset(token)
            self._tokens.clear()

    def context(
        self,
        trace_id: str | None = None,
        command: str | None = None,
        branch_id: str | None = None,
    ) -> _Scope:
        """Scope logging context to a block.

        Args:
            trace_id: Correlation id for one tool call.
            command: Command or tool being executed.
            branch_id: Branch the call operates on.

        Returns:
            Context manager that sets and then restores the context.

        """
        return self._Scope({_trace_id: trace_id, _command: command, _branch_id: branch_id})


def log_context(
    trace_id: str | None = None,
    command: str | None = None,
    branch_id: str | None = None,
) -> StructuredLogger._Scope:
    """Module-level shortcut for ``StructuredLogger.context`` without reconfiguring sinks."""
    return StructuredLogger._Scope({_trace_id: trace_id, _command: command, _branch_id: branch_id})


def get_logger(
    name: str,
    level: LogLevel | str | None = None,
    log_format: LogFormat | str | None = None,
) -> StructuredLogger:
    """Build a structured logger from arguments or the environment.

    Reads LOG_LEVEL (default INFO), LOG_FORMAT (text or json, default text)
    and LOG_FILE when arguments are omitted.

    Args:
        name: Logger name (usually __name__).
        level: Minimum log level.
        log_format: Output format.

    Returns:
        Configured StructuredLogger.

    """
    env_level = os.getenv("LOG_LEVEL", "INFO").upper()
    env_format = os.getenv("LOG_FORMAT", "text").lower()
    try:
        resolved_level = LogLevel(level or env_level)
    except ValueError:
        resolved_level = LogLevel.INFO
    try:
        resolved_format = LogFormat(log_format or env_format)
    except ValueError:
        resolved_format = LogFormat.TEXT

    return StructuredLogger(
        name=name,
        level=resolved_level,
        log_format=resolved_format,
        log_file=os.getenv("LOG_FILE") or None,
    )
