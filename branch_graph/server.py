"""Branch Graph MCP Server.

FastMCP implementation exposing a branching reasoning graph. The calling LLM
does the reasoning; these tools record thoughts into branches, score the
branches and navigate the graph by meaning.

Tools:
1. branch_thought - Add a thought to a branch (auto-evaluated)
2. branch_command - Query, evaluate, prune, navigate, export/import
3. status - Server, model and graph status

Run with: branch-graph
Or: python -m branch_graph.server
"""

# Note: We intentionally do NOT use `from __future__ import annotations` here
# because it causes issues with Pydantic/FastMCP type resolution at decorator time.
# Python 3.11+ supports PEP 604 union syntax (X | Y) natively.

import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import orjson
from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from loguru import logger

from branch_graph import __version__
from branch_graph.config import get_config
from branch_graph.models.embeddings import EmbeddingProvider, TransformerEmbeddingProvider
from branch_graph.models.model_manager import ModelManager
from branch_graph.tools.commands import COMMAND_NAMES, CommandHandler, CommandType
from branch_graph.tools.lifecycle import BranchLifecycle
from branch_graph.utils.errors import BranchGraphError, normalize_error
from branch_graph.utils.logging import get_logger, log_context

# Load environment variables from .env file (for local development)
load_dotenv()


def _json(data: dict[str, Any] | None, *, indent: bool = True) -> str:
    """Serialize data to JSON string with proper typing.

    Type-safe wrapper around orjson.dumps that returns str.
    """
    if data is None:
        data = {}
    opts = orjson.OPT_INDENT_2 if indent else 0
    result: bytes = orjson.dumps(data, option=opts, default=str)
    return result.decode("utf-8")


def _error_json(exc: BaseException, tool: str) -> str:
    error = normalize_error(exc)
    if error.recoverable:
        logger.warning(f"{tool} failed: [{error.kind.value}] {error.message}")
    else:
        logger.opt(exception=exc).error(f"{tool} failed unexpectedly: {exc}")
    return _json(error.to_dict(), indent=False)


def _trace_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Model Preloading
# =============================================================================


def _init_model_manager() -> None:
    """Initialize the model manager with the configured embedding model."""
    model_manager = ModelManager.get_instance()
    model_name = get_config().model.full_model_name
    logger.info(f"Preloading embedding model: {model_name}")
    try:
        model_manager.initialize(model_name, blocking=True)
    except BranchGraphError as e:
        # Tools keep answering; embedding calls report the model error
        logger.error(f"Embedding model unavailable: {e.message}")
        return
    logger.info("Embedding model ready")


# =============================================================================
# Thread Pool for CPU-bound Operations
# =============================================================================
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="branchgraph-worker")


# =============================================================================
# Engine Instances
# =============================================================================

_engine: BranchLifecycle | None = None
_handler: CommandHandler | None = None


def init_engine(provider: EmbeddingProvider | None = None) -> BranchLifecycle:
    """Create (or replace) the process-wide engine.

    Args:
        provider: Embedding provider; defaults to the transformer provider
            backed by the shared ModelManager.

    Returns:
        The new engine.

    """
    global _engine, _handler
    config = get_config()
    if provider is None:
        provider = TransformerEmbeddingProvider(
            max_length=config.model.max_length,
            executor=_executor,
        )
    _engine = BranchLifecycle(provider, config=config)
    _handler = CommandHandler(_engine)
    return _engine


def get_engine() -> BranchLifecycle:
    """Get or create the engine instance."""
    if _engine is None:
        return init_engine()
    return _engine


def get_command_handler() -> CommandHandler:
    """Get the command handler bound to the current engine."""
    get_engine()
    assert _handler is not None
    return _handler


mcp = FastMCP(
    name=get_config().server.name,
    instructions="""Branch Graph MCP Server - Branching reasoning state manager.

ARCHITECTURE: You (the LLM) do ALL reasoning. These tools RECORD thoughts into
branches, SCORE each branch and NAVIGATE the graph by meaning.

=== TOOLS ===

1. branch_thought(content, type?, branch_id?, parent_branch_id?, confidence?, key_points?, cross_refs?)
   Adds a thought to a branch (the active one by default). A new branch_id
   creates the branch, optionally under parent_branch_id. Identical content
   maps to the same thought id. With auto-eval on, the response carries the
   branch evaluation, feedback and any state change (dead_end/completed).

2. branch_command(type, branch_id?, query?, data?)
   Branches: list, focus, history, setState, statistics
   Evaluation: evaluate, setGoal, prune, findContradictions, findStrongestPaths,
               toggleAutoEval, configAutoEval
   Graph: search, filter, neighborhood, detectCircular
   Semantic: findSimilar, jumpToRelated, semanticPath, semanticFlow,
             compareProfiles, suggestMerges, detectDrift
   Persistence: export, import
   Extra arguments go in data, e.g. {"threshold": 0.3} for prune.

3. status() - Server, embedding model and graph statistics

WORKFLOW:
1. branch_command(type="setGoal", query="Choose a cache invalidation strategy")
2. branch_thought(content="TTL-based expiry is simplest...", branch_id="ttl")
3. branch_thought(content="Write-through keeps caches exact...", branch_id="write-through")
4. branch_command(type="compareProfiles") / branch_command(type="prune")
5. branch_command(type="findStrongestPaths", query="low staleness")
""",
)


# =============================================================================
# TOOL 1: BRANCH_THOUGHT
# =============================================================================


@mcp.tool
async def branch_thought(
    content: str,
    type: str = "analysis",
    branch_id: str | None = None,
    parent_branch_id: str | None = None,
    confidence: float | None = None,
    key_points: list[str] | None = None,
    cross_refs: list[dict[str, Any]] | None = None,
    ctx: Context | None = None,
) -> str:
    """Add a thought to a reasoning branch.

    Args:
        content: Thought text (required)
        type: Free-form thought type, e.g. analysis, hypothesis, observation
        branch_id: Target branch; created when unknown (default: active branch)
        parent_branch_id: Parent of a newly created branch
        confidence: Stated confidence 0-1 (default 1.0)
        key_points: Optional key points
        cross_refs: Links to other branches: [{toBranch, type, strength?, reason?}]
            with type one of complementary, contradictory, builds_upon, alternative, supports

    Returns:
        JSON with thoughtId, branchId, thought and, when they apply,
        overlapWarning, evaluation, feedback and stateChange

    """
    with log_context(trace_id=_trace_id(), command="branch_thought", branch_id=branch_id):
        try:
            engine = get_engine()
            result = await engine.add_thought(
                content,
                type=type,
                branch_id=branch_id,
                parent_branch_id=parent_branch_id,
                confidence=confidence,
                key_points=key_points,
                cross_refs=cross_refs,
            )
            if ctx:
                await ctx.info(f"Thought {result['thoughtId'][:8]} added to {result['branchId']}")
                if "stateChange" in result:
                    await ctx.info(f"Branch {result['branchId']} is now {result['stateChange']}")
            return _json(result)
        except Exception as e:
            return _error_json(e, "branch_thought")


# =============================================================================
# TOOL 2: BRANCH_COMMAND
# =============================================================================


@mcp.tool
async def branch_command(
    type: CommandType,
    branch_id: str | None = None,
    query: str | None = None,
    data: dict[str, Any] | None = None,
    ctx: Context | None = None,
) -> str:
    """Run a graph command.

    Args:
        type: Command name (see server instructions)
        branch_id: Branch the command targets (default: active branch)
        query: Goal, search pattern or target text, depending on the command
        data: Command-specific arguments, e.g. {"threshold": 0.3},
            {"fromThoughtId": "...", "toThoughtId": "..."}, {"chunks": [...]}

    Returns:
        JSON with status "success", command and result, or an error payload
        with status "failed" and an error code

    """
    payload: dict[str, Any] = {"type": type}
    if branch_id is not None:
        payload["branchId"] = branch_id
    if query is not None:
        payload["query"] = query
    if data is not None:
        payload["data"] = data

    with log_context(trace_id=_trace_id()):
        try:
            response = await get_command_handler().execute(payload)
        except Exception as e:
            return _error_json(e, "branch_command")

    if ctx:
        await ctx.info(f"{type}: {response.get('status', 'unknown')}")
    return _json(response)


# =============================================================================
# TOOL 3: STATUS
# =============================================================================


@mcp.tool
async def status(ctx: Context | None = None) -> str:
    """Get server, embedding model and graph status.

    Returns:
        JSON with server info, model state and graph statistics

    """
    try:
        config = get_config()
        model_status = ModelManager.get_instance().get_status()
        engine = get_engine()

        status_result: dict[str, Any] = {
            "server": {
                "name": config.server.name,
                "transport": config.server.transport,
                "tools": ["branch_thought", "branch_command", "status"],
                "commands": list(COMMAND_NAMES),
                "version": __version__,
            },
            "model": model_status,
            "embedding_model": config.model.full_model_name,
            "graph": engine.statistics(),
            "config": config.to_dict(),
        }

        if ctx:
            state = model_status.get("state", "unknown")
            await ctx.info(f"Server ready, model state: {state}")

        return _json(status_result)

    except Exception as e:
        return _error_json(e, "status")


def main() -> None:
    """Run the Branch Graph MCP server."""
    get_logger(__name__)
    config = get_config()
    logger.info(f"Starting {config.server.name} (transport: {config.server.transport})")

    # Initialize embedding model
    _init_model_manager()
    init_engine()

    transport = config.server.transport
    if transport == "stdio":
        mcp.run(transport="stdio")
    elif transport == "http":
        mcp.run(transport="streamable-http", host=config.server.host, port=config.server.port)
    elif transport == "sse":
        mcp.run(transport="sse", host=config.server.host, port=config.server.port)
    else:
        logger.warning(f"Unknown transport '{transport}', falling back to stdio")
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
