"""Branch Graph MCP configuration.

Frozen dataclasses populated from environment variables, with a lazily
created module-level instance.

Usage:
    from branch_graph.config import get_config
    print(get_config().evaluation.weights)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from branch_graph.utils.errors import ConfigurationError


def _get_env(key: str, default: str = "") -> str:
    """Get environment variable, treating empty string as unset."""
    value = os.getenv(key, default)
    return value if value else default


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {value}, using default {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value:
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid float for {key}: {value}, using default {default}")
    return default


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean."""
    value = _get_env(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class ServerConfig:
    """Server runtime configuration."""

    name: str = field(default_factory=lambda: _get_env("SERVER_NAME", "Branch-Graph-MCP"))
    transport: str = field(default_factory=lambda: _get_env("SERVER_TRANSPORT", "stdio"))
    host: str = field(default_factory=lambda: _get_env("SERVER_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _get_env_int("SERVER_PORT", 8000))


@dataclass(frozen=True)
class ModelConfig:
    """Embedding model configuration."""

    embedding_model: str = field(
        default_factory=lambda: _get_env(
            "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
        )
    )
    cache_size: int = field(default_factory=lambda: _get_env_int("EMBEDDING_CACHE_SIZE", 1000))
    max_length: int = field(default_factory=lambda: _get_env_int("EMBEDDING_MAX_LENGTH", 256))

    @property
    def full_model_name(self) -> str:
        """Model name with the sentence-transformers prefix filled in."""
        name = self.embedding_model
        if "/" not in name:
            name = f"sentence-transformers/{name}"
        return name


@dataclass(frozen=True)
class EvaluationWeights:
    """Weights of the six scoring dimensions."""

    coherence: float = field(default_factory=lambda: _get_env_float("BG_WEIGHT_COHERENCE", 0.15))
    contradiction: float = field(
        default_factory=lambda: _get_env_float("BG_WEIGHT_CONTRADICTION", 0.15)
    )
    information_gain: float = field(
        default_factory=lambda: _get_env_float("BG_WEIGHT_INFORMATION_GAIN", 0.25)
    )
    goal_alignment: float = field(
        default_factory=lambda: _get_env_float("BG_WEIGHT_GOAL_ALIGNMENT", 0.2)
    )
    confidence_gradient: float = field(
        default_factory=lambda: _get_env_float("BG_WEIGHT_CONFIDENCE_GRADIENT", 0.15)
    )
    redundancy: float = field(default_factory=lambda: _get_env_float("BG_WEIGHT_REDUNDANCY", 0.1))

    def as_dict(self) -> dict[str, float]:
        return {
            "coherence": self.coherence,
            "contradiction": self.contradiction,
            "informationGain": self.information_gain,
            "goalAlignment": self.goal_alignment,
            "confidenceGradient": self.confidence_gradient,
            "redundancy": self.redundancy,
        }

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())


@dataclass(frozen=True)
class QualityThresholds:
    """Score lower bounds for the feedback quality buckets."""

    excellent: float = field(default_factory=lambda: _get_env_float("BG_QUALITY_EXCELLENT", 0.75))
    good: float = field(default_factory=lambda: _get_env_float("BG_QUALITY_GOOD", 0.55))
    moderate: float = field(default_factory=lambda: _get_env_float("BG_QUALITY_MODERATE", 0.35))

    def __post_init__(self) -> None:
        for name, value in (("excellent", self.excellent), ("good", self.good), ("moderate", self.moderate)):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"quality.{name} must be within [0, 1], got {value}", f"quality.{name}")
        if not self.moderate < self.good < self.excellent:
            raise ConfigurationError(
                f"Quality buckets must satisfy moderate < good < excellent, got "
                f"{self.moderate} / {self.good} / {self.excellent}",
                "quality",
            )


@dataclass(frozen=True)
class IssueThresholds:
    """Per-dimension limits that raise feedback issues."""

    low_coherence: float = field(default_factory=lambda: _get_env_float("BG_ISSUE_LOW_COHERENCE", 0.4))
    high_contradiction: float = field(
        default_factory=lambda: _get_env_float("BG_ISSUE_HIGH_CONTRADICTION", 0.6)
    )
    low_information_gain: float = field(
        default_factory=lambda: _get_env_float("BG_ISSUE_LOW_INFORMATION_GAIN", 0.2)
    )
    low_goal_alignment: float = field(
        default_factory=lambda: _get_env_float("BG_ISSUE_LOW_GOAL_ALIGNMENT", 0.2)
    )

    def __post_init__(self) -> None:
        for name in ("low_coherence", "high_contradiction", "low_information_gain", "low_goal_alignment"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"issues.{name} must be within [0, 1], got {value}", f"issues.{name}")


@dataclass(frozen=True)
class EvaluationConfig:
    """Evaluation pipeline configuration."""

    window_size: int = field(default_factory=lambda: _get_env_int("BG_EVAL_WINDOW_SIZE", 5))
    cache_size: int = field(default_factory=lambda: _get_env_int("BG_EVAL_CACHE_SIZE", 1000))
    sparse_threshold: float = field(
        default_factory=lambda: _get_env_float("BG_SPARSE_THRESHOLD", 0.1)
    )
    similarity_threshold: float = field(
        default_factory=lambda: _get_env_float("BG_SIMILARITY_THRESHOLD", 0.85)
    )
    contradiction_threshold: float = field(
        default_factory=lambda: _get_env_float("BG_CONTRADICTION_THRESHOLD", 0.4)
    )
    max_content_length: int = field(
        default_factory=lambda: _get_env_int("BG_MAX_CONTENT_LENGTH", 10000)
    )
    weights: EvaluationWeights = field(default_factory=EvaluationWeights)
    quality: QualityThresholds = field(default_factory=QualityThresholds)
    issues: IssueThresholds = field(default_factory=IssueThresholds)


@dataclass(frozen=True)
class GraphConfig:
    """Graph size limits."""

    max_branch_depth: int = field(default_factory=lambda: _get_env_int("BG_MAX_BRANCH_DEPTH", 10))
    thought_pool_size: int = field(
        default_factory=lambda: _get_env_int("BG_THOUGHT_POOL_SIZE", 10000)
    )


@dataclass(frozen=True)
class BranchConfig:
    """Lifecycle transition thresholds."""

    prune_threshold: float = field(default_factory=lambda: _get_env_float("BT_PRUNE_THRESHOLD", 0.2))
    dead_end_threshold: float = field(
        default_factory=lambda: _get_env_float("BT_DEAD_END_THRESHOLD", 0.2)
    )
    completion_threshold: float = field(
        default_factory=lambda: _get_env_float("BT_COMPLETION_THRESHOLD", 0.8)
    )
    completion_goal_alignment: float = field(
        default_factory=lambda: _get_env_float("BT_COMPLETION_GOAL_ALIGNMENT", 0.8)
    )

    def __post_init__(self) -> None:
        # A branch must be able to score between dead_end/prune and completed
        for name in ("prune_threshold", "dead_end_threshold"):
            value = getattr(self, name)
            if value >= self.completion_threshold:
                raise ConfigurationError(
                    f"branch.{name} ({value}) must be below branch.completion_threshold "
                    f"({self.completion_threshold})",
                    f"branch.{name}",
                )


@dataclass(frozen=True)
class AutoEvalConfig:
    """Auto-evaluation defaults (mutable copies live on the lifecycle controller)."""

    enabled: bool = field(default_factory=lambda: _get_env_bool("BT_AUTO_EVAL_ENABLED", True))
    threshold: float = field(
        default_factory=lambda: _get_env_float("BT_AUTO_EVAL_THRESHOLD", 0.25)
    )


@dataclass(frozen=True)
class DisplayConfig:
    """Truncation and result-count limits for formatted output."""

    thought_char_limit: int = field(
        default_factory=lambda: _get_env_int("BG_DISPLAY_THOUGHT_CHARS", 80)
    )
    branch_summary_char_limit: int = field(
        default_factory=lambda: _get_env_int("BG_DISPLAY_SUMMARY_CHARS", 50)
    )
    recent_thoughts: int = field(default_factory=lambda: _get_env_int("BG_DISPLAY_RECENT_THOUGHTS", 3))
    top_results: int = field(default_factory=lambda: _get_env_int("BG_DISPLAY_TOP_RESULTS", 5))
    history_thoughts: int = field(
        default_factory=lambda: _get_env_int("BG_DISPLAY_HISTORY_THOUGHTS", 10)
    )

    def __post_init__(self) -> None:
        # Truncation appends "...", so a limit must leave room for it
        for name in ("thought_char_limit", "branch_summary_char_limit"):
            if getattr(self, name) <= 3:
                raise ConfigurationError(f"display.{name} must be greater than 3", f"display.{name}")
        for name in ("recent_thoughts", "top_results", "history_thoughts"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"display.{name} must be positive", f"display.{name}")


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    server: ServerConfig = field(default_factory=ServerConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    branch: BranchConfig = field(default_factory=BranchConfig)
    auto_eval: AutoEvalConfig = field(default_factory=AutoEvalConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)

    def validate(self) -> Config:
        """Check option ranges.

        Returns:
            self, to allow chaining.

        Raises:
            ConfigurationError: On the first invalid option.

        """
        for name, weight in self.evaluation.weights.as_dict().items():
            if weight < 0:
                raise ConfigurationError(f"Weight must be non-negative: {weight}", f"weights.{name}")

        unit_interval = {
            "evaluation.sparse_threshold": self.evaluation.sparse_threshold,
            "evaluation.similarity_threshold": self.evaluation.similarity_threshold,
            "evaluation.contradiction_threshold": self.evaluation.contradiction_threshold,
            "branch.prune_threshold": self.branch.prune_threshold,
            "branch.dead_end_threshold": self.branch.dead_end_threshold,
            "branch.completion_threshold": self.branch.completion_threshold,
            "branch.completion_goal_alignment": self.branch.completion_goal_alignment,
            "auto_eval.threshold": self.auto_eval.threshold,
        }
        for setting, value in unit_interval.items():
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{setting} must be within [0, 1], got {value}", setting)

        positive = {
            "evaluation.window_size": self.evaluation.window_size,
            "evaluation.cache_size": self.evaluation.cache_size,
            "evaluation.max_content_length": self.evaluation.max_content_length,
            "graph.thought_pool_size": self.graph.thought_pool_size,
            "model.cache_size": self.model.cache_size,
        }
        for setting, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{setting} must be positive, got {value}", setting)

        if self.graph.max_branch_depth < 0:
            raise ConfigurationError(
                "graph.max_branch_depth must be non-negative", "graph.max_branch_depth"
            )

        if abs(self.evaluation.weights.total - 1.0) > 1e-6:
            logger.warning(
                f"Evaluation weights sum to {self.evaluation.weights.total:.3f}; "
                "overall scores may fall outside [0, 1]"
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (for logging/status)."""
        return {
            "server": {
                "name": self.server.name,
                "transport": self.server.transport,
                "host": self.server.host,
                "port": self.server.port,
            },
            "model": {
                "embedding_model": self.model.full_model_name,
                "cache_size": self.model.cache_size,
            },
            "evaluation": {
                "window_size": self.evaluation.window_size,
                "cache_size": self.evaluation.cache_size,
                "sparse_threshold": self.evaluation.sparse_threshold,
                "weights": self.evaluation.weights.as_dict(),
            },
            "graph": {
                "max_branch_depth": self.graph.max_branch_depth,
                "thought_pool_size": self.graph.thought_pool_size,
            },
            "branch": {
                "prune_threshold": self.branch.prune_threshold,
                "dead_end_threshold": self.branch.dead_end_threshold,
                "completion_threshold": self.branch.completion_threshold,
            },
            "auto_eval": {
                "enabled": self.auto_eval.enabled,
                "threshold": self.auto_eval.threshold,
            },
        }


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config().validate()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (for testing)."""
    global _config
    _config = Config().validate()
    return _config
