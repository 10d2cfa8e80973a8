"""Tests for MCP server tool implementations.

These tests verify the FastMCP tool endpoints work correctly.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import orjson
import pytest

from branch_graph import server
from branch_graph.models.model_manager import ModelManager
from branch_graph.server import (
    _error_json,
    _init_model_manager,
    _json,
    branch_command,
    branch_thought,
    init_engine,
    status,
)
from branch_graph.tools.commands import COMMAND_NAMES
from branch_graph.utils.errors import ModelNotReadyError, ValidationError


@pytest.fixture(autouse=True)
def hashed_engine(provider: Any) -> Iterator[None]:
    """Run every tool against an engine with a deterministic provider."""
    init_engine(provider)
    yield
    server._engine = None
    server._handler = None


# =============================================================================
# Helper Tests
# =============================================================================


class TestHelpers:
    """Tests for serialization helpers."""

    def test_json_indented(self) -> None:
        """_json pretty-prints by default."""
        assert _json({"a": 1}) == '{\n  "a": 1\n}'

    def test_json_none(self) -> None:
        """None serializes as an empty object."""
        assert _json(None) == "{}"

    def test_error_json_compact(self) -> None:
        """Error payloads are compact and carry the code."""
        text = _error_json(ValidationError("bad", field="x"), "tool")
        assert "\n" not in text
        assert orjson.loads(text)["code"] == "VALIDATION_ERROR"

    def test_error_json_unknown(self) -> None:
        """Foreign exceptions become UNKNOWN_ERROR."""
        assert orjson.loads(_error_json(RuntimeError("x"), "tool"))["code"] == "UNKNOWN_ERROR"


# =============================================================================
# Server Initialization Tests
# =============================================================================


class TestServerInitialization:
    """Tests for server initialization functions."""

    def test_init_model_manager_tolerates_failure(self) -> None:
        """A model that cannot load is logged, not raised."""
        with patch.object(ModelManager, "initialize", side_effect=ModelNotReadyError("Insufficient disk space")):
            _init_model_manager()

    def test_init_model_manager_uses_configured_model(self) -> None:
        """The configured full model name is preloaded."""
        with patch.object(ModelManager, "initialize") as initialize:
            _init_model_manager()
        assert initialize.call_args.args[0] == server.get_config().model.full_model_name

    def test_init_engine_replaces_engine(self, provider: Any) -> None:
        """init_engine swaps both the engine and its command handler."""
        before = server.get_engine()
        after = init_engine(provider)
        assert after is not before
        assert server.get_command_handler().lifecycle is after


# =============================================================================
# Tool Tests
# =============================================================================


class TestBranchThoughtTool:
    """Tests for the branch_thought tool."""

    @pytest.mark.asyncio
    async def test_adds_thought(self) -> None:
        """A thought lands in a new auto-named branch."""
        result = orjson.loads(await branch_thought.fn(content="Start from the slow endpoint"))
        assert result["branchId"] == "branch-1"
        assert result["thought"]["content"] == "Start from the slow endpoint"
        assert "evaluation" in result

    @pytest.mark.asyncio
    async def test_explicit_branch_and_parent(self) -> None:
        """branch_id and parent_branch_id create a linked branch."""
        await branch_thought.fn(content="root", branch_id="root")
        result = orjson.loads(
            await branch_thought.fn(
                content="child",
                branch_id="child",
                parent_branch_id="root",
                type="hypothesis",
                confidence=0.4,
                key_points=["k"],
            )
        )
        assert result["thought"]["metadata"] == {"type": "hypothesis", "confidence": 0.4, "keyPoints": ["k"]}
        assert server.get_engine().store.require_branch("child").parent_id == "root"

    @pytest.mark.asyncio
    async def test_validation_error_payload(self) -> None:
        """Invalid input returns an error payload instead of raising."""
        result = orjson.loads(await branch_thought.fn(content="x", confidence=2.0))
        assert result["status"] == "failed"
        assert result["code"] == "VALIDATION_ERROR"
        assert result["details"]["field"] == "confidence"

    @pytest.mark.asyncio
    async def test_context_notified(self) -> None:
        """The MCP context receives a progress message."""
        ctx = MagicMock()
        ctx.info = AsyncMock()
        await branch_thought.fn(content="with context", ctx=ctx)
        ctx.info.assert_awaited()


class TestBranchCommandTool:
    """Tests for the branch_command tool."""

    @pytest.mark.asyncio
    async def test_statistics(self) -> None:
        """Commands return the success envelope."""
        await branch_thought.fn(content="one", branch_id="a")
        result = orjson.loads(await branch_command.fn(type="statistics"))
        assert result["status"] == "success"
        assert result["result"]["totalBranches"] == 1

    @pytest.mark.asyncio
    async def test_query_and_data_forwarded(self) -> None:
        """query and data reach the command."""
        await branch_thought.fn(content="latency budget", branch_id="a", type="observation")
        search = orjson.loads(await branch_command.fn(type="search", query="latency"))
        assert search["result"]["count"] == 1
        filtered = orjson.loads(await branch_command.fn(type="filter", data={"type": "observation"}))
        assert len(filtered["result"]["thoughts"]) == 1

    @pytest.mark.asyncio
    async def test_branch_id_forwarded(self) -> None:
        """branch_id selects the target branch."""
        await branch_thought.fn(content="one", branch_id="a")
        await branch_thought.fn(content="two", branch_id="b")
        result = orjson.loads(await branch_command.fn(type="focus", branch_id="a"))
        assert result["result"]["activeBranch"] == "a"

    @pytest.mark.asyncio
    async def test_failure_payload(self) -> None:
        """Engine errors come back as failed payloads."""
        result = orjson.loads(await branch_command.fn(type="history", branch_id="ghost"))
        assert result["status"] == "failed"
        assert result["code"] == "BRANCH_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_export_import_round_trip(self) -> None:
        """An export can be imported through the tool."""
        await branch_thought.fn(content="keep me", branch_id="a")
        exported = orjson.loads(await branch_command.fn(type="export"))
        init_engine(server.get_engine().embeddings.provider)
        imported = orjson.loads(
            await branch_command.fn(type="import", data={"chunks": exported["result"]["chunks"]})
        )
        assert imported["result"]["branchesImported"] == 1
        assert server.get_engine().store.has_branch("a")


class TestStatusTool:
    """Tests for the status tool."""

    @pytest.mark.asyncio
    async def test_status_shape(self) -> None:
        """status reports server, model, graph and config sections."""
        result = orjson.loads(await status.fn())
        assert result["server"]["tools"] == ["branch_thought", "branch_command", "status"]
        assert result["server"]["commands"] == list(COMMAND_NAMES)
        assert result["model"]["state"] == "not_started"
        assert result["graph"]["totalBranches"] == 0
        assert "evaluation" in result["config"]
