"""Embedding capability used by the navigator, profiles and evaluators.

The engine depends only on the ``EmbeddingProvider`` protocol, which is
injected at construction time so tests can pass a deterministic fake. The
default ``TransformerEmbeddingProvider`` mean-pools a HuggingFace encoder
loaded through ``ModelManager``.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import OrderedDict
from collections.abc import Callable, Hashable
from concurrent.futures import Executor
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import numpy as np
import torch
import torch.nn.functional as F
from loguru import logger

from branch_graph.models.model_manager import ModelManager
from branch_graph.utils.errors import SemanticAnalysisError

V = TypeVar("V")


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to vector capability."""

    async def embed(self, text: str) -> np.ndarray:
        """Return a 1-D float32 embedding for ``text``."""
        ...


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def mean_embedding(vectors: list[np.ndarray]) -> np.ndarray:
    if not vectors:
        raise SemanticAnalysisError("Cannot average an empty embedding list", "mean_embedding")
    return np.mean(np.stack(vectors), axis=0).astype(np.float32)


class LRUCache(Generic[V]):
    """Size-bounded LRU cache with hit/miss stats.

    Holds embeddings here and evaluation results in the pipeline.
    """

    def __init__(self, max_size: int = 1000) -> None:
        self.cache: OrderedDict[Hashable, V] = OrderedDict()
        self.max_size = max_size
        self.hits = 0
        self.misses = 0

    def __contains__(self, key: Hashable) -> bool:
        return key in self.cache

    def __len__(self) -> int:
        return len(self.cache)

    def get(self, key: Hashable) -> V | None:
        """Get item from cache, updating LRU order.

        Args:
            key: Cache key.

        Returns:
            Cached value or None if not found.

        """
        if key in self.cache:
            self.cache.move_to_end(key)
            self.hits += 1
            return self.cache[key]
        self.misses += 1
        return None

    def put(self, key: Hashable, value: V) -> None:
        if key in self.cache:
            self.cache.pop(key)
        while len(self.cache) >= self.max_size and self.cache:
            self.cache.popitem(last=False)
        self.cache[key] = value

    def discard(self, key: Hashable) -> None:
        self.cache.pop(key, None)

    def discard_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching ``predicate``; returns the number dropped."""
        stale = [key for key in self.cache if predicate(key)]
        for key in stale:
            del self.cache[key]
        return len(stale)

    def clear(self) -> None:
        self.cache.clear()
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self.cache),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }


class ThoughtEmbeddingCache:
    """Per-thought embedding cache with compute-once semantics.

    Concurrent awaiters of the same key share one in-flight computation, so
    reentrant evaluator calls never embed the same thought twice.
    """

    def __init__(self, provider: EmbeddingProvider, max_size: int = 1000) -> None:
        self.provider = provider
        self._cache = LRUCache[np.ndarray](max_size=max_size)
        self._pending: dict[str, asyncio.Future[np.ndarray]] = {}

    async def get(self, key: str, text: str) -> np.ndarray:
        """Embedding for ``key``, computing it from ``text`` on a miss.

        Raises:
            SemanticAnalysisError: If the provider fails.

        """
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[np.ndarray] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            vector = await self._compute(text)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure is not reported at GC time
            future.exception()
            raise
        finally:
            self._pending.pop(key, None)

        self._cache.put(key, vector)
        future.set_result(vector)
        return vector

    async def embed_text(self, text: str) -> np.ndarray:
        """Embed free text (queries, goals) through the text-hash keyspace."""
        key = "text:" + hashlib.md5(text.encode(), usedforsecurity=False).hexdigest()
        return await self.get(key, text)

    async def _compute(self, text: str) -> np.ndarray:
        try:
            vector = await self.provider.embed(text)
        except SemanticAnalysisError:
            raise
        except Exception as e:
            logger.error(f"Embedding failed: {e}")
            raise SemanticAnalysisError(f"Embedding failed: {e}", "embed") from e
        return np.asarray(vector, dtype=np.float32).reshape(-1)

    def peek(self, key: str) -> np.ndarray | None:
        """Cached value without touching stats or computing."""
        return self._cache.cache.get(key)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def stats(self) -> dict[str, Any]:
        return {**self._cache.stats(), "pending": len(self._pending)}


class TransformerEmbeddingProvider:
    """Mean-pooled, L2-normalized sentence embeddings from a HF encoder.

    Uses the shared ``ModelManager`` instance; inference runs in an executor
    under the manager's inference lock.

    Example:
        >>> provider = TransformerEmbeddingProvider(max_length=256)
        >>> vector = await provider.embed("Branches split on hypotheses")

    """

    def __init__(
        self,
        max_length: int = 256,
        executor: Executor | None = None,
        manager_factory: Callable[[], ModelManager] = ModelManager.get_instance,
    ) -> None:
        self.max_length = max_length
        self._executor = executor
        self._manager_factory = manager_factory

    async def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise SemanticAnalysisError("Cannot embed empty text", "embed")
        loop = asyncio.get_running_loop()
        batch = await loop.run_in_executor(self._executor, self.embed_batch, [text])
        return batch[0]

    def embed_batch(self, texts: list[str]) -> np.ndarray:
        """Encode texts synchronously.

        Args:
            texts: Non-empty texts.

        Returns:
            Array of shape (len(texts), hidden_size).

        Raises:
            ModelNotReadyError: If the model is still loading.
            SemanticAnalysisError: If inference fails.

        """
        manager = self._manager_factory()
        model, tokenizer = manager.get_model()
        try:
            with manager.inference_lock():
                inputs = tokenizer(
                    texts,
                    return_tensors="pt",
                    padding=True,
                    truncation=True,
                    max_length=self.max_length,
                ).to(manager.device)
                with torch.no_grad():
                    outputs = model(**inputs)
                mask = inputs["attention_mask"].unsqueeze(-1).float()
                summed = torch.sum(outputs.last_hidden_state * mask, dim=1)
                pooled = summed / torch.clamp(mask.sum(dim=1), min=1e-9)
            pooled = F.normalize(pooled, p=2, dim=1)
        except Exception as e:
            logger.error(f"Batch encoding failed: {e}")
            raise SemanticAnalysisError(f"Encoding failed: {e}", "embed_batch") from e
        return pooled.cpu().numpy().astype(np.float32)
