"""pytest configuration and fixtures."""

from __future__ import annotations

import hashlib
import os
import re
from collections.abc import Callable, Iterator

import numpy as np
import pytest

from branch_graph.config import Config, reload_config
from branch_graph.models.embeddings import ThoughtEmbeddingCache
from branch_graph.models.graph_types import ThoughtSpec, content_hash
from branch_graph.models.model_manager import ModelManager
from branch_graph.models.store import GraphStore
from branch_graph.tools.lifecycle import BranchLifecycle

EMBEDDING_DIM = 64

_ENV_PREFIXES = ("BG_", "BT_", "EMBEDDING_", "SERVER_", "LOG_")


class HashingEmbeddingProvider:
    """Deterministic bag-of-words embedding: each word hashes into one of 64 slots."""

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self.dim = dim
        self.calls = 0

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        vector = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"[a-z0-9']+", text.lower()):
            slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dim
            vector[slot] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


class VectorEmbeddingProvider:
    """Maps known texts to fixed vectors; anything else is an error."""

    def __init__(self, vectors: dict[str, list[float]]) -> None:
        self.vectors = {text: np.asarray(v, dtype=np.float32) for text, v in vectors.items()}
        self.calls = 0

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        if text not in self.vectors:
            raise KeyError(f"no vector for {text!r}")
        return self.vectors[text]


class FailingEmbeddingProvider:
    """Provider whose every call fails."""

    async def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("embedding backend offline")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Strip engine settings from the environment and reload the config."""
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    reload_config()
    yield
    ModelManager.reset_instance()
    monkeypatch.undo()
    reload_config()


@pytest.fixture
def config() -> Config:
    return reload_config()


@pytest.fixture
def store() -> GraphStore:
    return GraphStore()


@pytest.fixture
def provider() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider()


@pytest.fixture
def embeddings(provider: HashingEmbeddingProvider) -> ThoughtEmbeddingCache:
    return ThoughtEmbeddingCache(provider)


@pytest.fixture
def engine(provider: HashingEmbeddingProvider, config: Config) -> BranchLifecycle:
    return BranchLifecycle(provider, config=config)


@pytest.fixture
def vector_provider_factory() -> Callable[[dict[str, list[float]]], VectorEmbeddingProvider]:
    return VectorEmbeddingProvider


@pytest.fixture
def failing_provider() -> FailingEmbeddingProvider:
    return FailingEmbeddingProvider()


@pytest.fixture
def put_thought(store: GraphStore) -> Callable[..., str]:
    """Insert a thought into ``store`` and append it to a branch (created on demand)."""

    def _put(
        branch_id: str,
        content: str,
        confidence: float = 1.0,
        thought_type: str = "analysis",
        thought_id: str | None = None,
    ) -> str:
        if not store.has_branch(branch_id):
            store.create_branch(branch_id)
        tid = thought_id or content_hash(content)
        store.create_thought_if_new(
            ThoughtSpec(tid, content, branch_id, type=thought_type, confidence=confidence)
        )
        store.add_thought_to_branch(tid, branch_id, strict=True)
        return tid

    return _put
