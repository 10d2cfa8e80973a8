"""Branch graph engine components: search, navigation, evaluation and lifecycle."""

from .commands import CommandHandler, parse_command
from .evaluation import EvaluationPipeline, EvaluationResult, Feedback
from .graph_search import GraphSearch
from .lifecycle import BranchLifecycle
from .navigator import PathStep, SemanticNavigator, SemanticPath
from .semantic_profile import SemanticProfileManager, extract_keywords
from .serialization import export_chunks, import_chunks

__all__ = [
    "BranchLifecycle",
    "CommandHandler",
    "EvaluationPipeline",
    "EvaluationResult",
    "Feedback",
    "GraphSearch",
    "PathStep",
    "SemanticNavigator",
    "SemanticPath",
    "SemanticProfileManager",
    "export_chunks",
    "extract_keywords",
    "import_chunks",
    "parse_command",
]
