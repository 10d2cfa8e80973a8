"""Lifecycle of the HuggingFace embedding model.

Downloads (with retry), loads and exposes the shared encoder used by
``TransformerEmbeddingProvider``. Calls made before the model is ready fail
with ``ModelNotReadyError`` instead of blocking.

Cache location: ~/.cache/branch-graph-mcp/models/ (override with EMBEDDING_CACHE_DIR)
"""

from __future__ import annotations

import os
import shutil
import threading
import warnings
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import torch
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from transformers import AutoModel, AutoTokenizer

from branch_graph.utils.errors import ModelNotReadyError

if TYPE_CHECKING:
    from transformers import PreTrainedModel, PreTrainedTokenizer


class ModelState(str, Enum):
    """State of model loading."""

    NOT_STARTED = "not_started"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


# Approximate download sizes (MB) for the encoders this server is usually run with
MODEL_SIZES_MB: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 80,
    "sentence-transformers/all-MiniLM-L12-v2": 120,
    "sentence-transformers/all-mpnet-base-v2": 420,
    "BAAI/bge-small-en-v1.5": 130,
    "BAAI/bge-base-en-v1.5": 420,
    "Snowflake/snowflake-arctic-embed-xs": 90,
}

DEFAULT_MODEL_SIZE_MB = 500


def _get_default_cache_dir() -> Path:
    env_cache_dir = os.getenv("EMBEDDING_CACHE_DIR")
    if env_cache_dir:
        return Path(env_cache_dir)
    return Path.home() / ".cache" / "branch-graph-mcp" / "models"


def _get_model_size_mb(model_name: str) -> int:
    """Estimated download size, matching on the short model name when needed."""
    if model_name in MODEL_SIZES_MB:
        return MODEL_SIZES_MB[model_name]
    short = model_name.split("/")[-1].lower()
    for known, size_mb in MODEL_SIZES_MB.items():
        if known.split("/")[-1].lower() == short:
            return size_mb
    return DEFAULT_MODEL_SIZE_MB


class ModelManager:
    """Thread-safe singleton owning the embedding model and tokenizer.

    Example:
        >>> manager = ModelManager.get_instance()
        >>> manager.initialize("sentence-transformers/all-MiniLM-L6-v2")
        >>> model, tokenizer = manager.get_model()  # raises if not ready

    """

    _instance: ModelManager | None = None
    _lock = threading.Lock()

    def __init__(self) -> None:
        self.model_name: str | None = None
        self.cache_dir: Path = _get_default_cache_dir()
        self.state: ModelState = ModelState.NOT_STARTED
        self.model: PreTrainedModel | None = None
        self.tokenizer: PreTrainedTokenizer | None = None
        self.device: str = "cuda" if torch.cuda.is_available() else "cpu"
        self._error_message: str | None = None
        self._init_lock = threading.Lock()
        # HF fast tokenizers are not safe for concurrent use
        self._inference_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> ModelManager:
        """Get singleton instance of ModelManager."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (for testing)."""
        with cls._lock:
            cls._instance = None

    def initialize(
        self,
        model_name: str,
        cache_dir: Path | str | None = None,
        blocking: bool = True,
    ) -> None:
        """Download (if needed) and load the model.

        Args:
            model_name: HuggingFace model name.
            cache_dir: Override for the download cache directory.
            blocking: Load in the calling thread; otherwise in a daemon thread.

        Raises:
            ModelNotReadyError: If there is not enough disk space.

        """
        with self._init_lock:
            if self.model_name == model_name and self.state == ModelState.READY:
                logger.debug(f"Model {model_name} already loaded")
                return

            self.model_name = model_name
            if cache_dir:
                self.cache_dir = Path(cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)

            required_mb = _get_model_size_mb(model_name) + 100
            free_mb = shutil.disk_usage(self.cache_dir).free // (1024 * 1024)
            if free_mb < required_mb:
                self.state = ModelState.FAILED
                self._error_message = (
                    f"Insufficient disk space. Need ~{required_mb}MB, "
                    f"but only {free_mb}MB available in {self.cache_dir}"
                )
                logger.error(self._error_message)
                raise ModelNotReadyError(self._error_message)

            if blocking:
                self._load_model()
            else:
                threading.Thread(target=self._load_model, daemon=True).start()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.0, min=1.0, max=20.0),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    def _download(self, model_name: str) -> tuple[Any, Any]:
        """Fetch tokenizer and weights; network errors surface as OSError."""
        tokenizer = AutoTokenizer.from_pretrained(model_name, cache_dir=self.cache_dir)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", message="Some weights of.*were not initialized")
            model = AutoModel.from_pretrained(model_name, cache_dir=self.cache_dir)
        return model, tokenizer

    def _load_model(self) -> None:
        if self.model_name is None:
            self.state = ModelState.FAILED
            self._error_message = "Model name not set"
            return

        try:
            self.state = ModelState.DOWNLOADING
            logger.info(
                f"Fetching embedding model {self.model_name} "
                f"(~{_get_model_size_mb(self.model_name)}MB) into {self.cache_dir}"
            )
            model, tokenizer = self._download(self.model_name)

            self.state = ModelState.LOADING
            model.to(self.device)
            model.eval()
            self.model, self.tokenizer = model, tokenizer
            self.state = ModelState.READY
            logger.info(f"Embedding model ready on {self.device}")
        except Exception as e:
            self.state = ModelState.FAILED
            self._error_message = str(e)
            logger.error(f"Failed to load embedding model: {e}")

    def get_model(self) -> tuple[PreTrainedModel, PreTrainedTokenizer]:
        """Get the loaded model and tokenizer.

        Raises:
            ModelNotReadyError: While downloading/loading, or after a failure.

        """
        if self.state == ModelState.NOT_STARTED:
            raise ModelNotReadyError("Embedding model not initialized")
        if self.state in (ModelState.DOWNLOADING, ModelState.LOADING):
            raise ModelNotReadyError(
                f"Embedding model '{self.model_name}' is {self.state.value}; try again shortly"
            )
        if self.state == ModelState.FAILED:
            raise ModelNotReadyError(f"Embedding model failed to load: {self._error_message}")
        if self.model is None or self.tokenizer is None:
            raise ModelNotReadyError("Embedding model not available")
        return self.model, self.tokenizer

    def is_ready(self) -> bool:
        return self.state == ModelState.READY

    def inference_lock(self) -> threading.Lock:
        return self._inference_lock

    def get_status(self) -> dict[str, Any]:
        """Model state, device and cache information for the status tool."""
        status: dict[str, Any] = {
            "state": self.state.value,
            "model_name": self.model_name or "not set",
            "device": self.device,
            "cache_dir": str(self.cache_dir),
            "ready": self.is_ready(),
            "error": self._error_message,
        }
        if self.model_name:
            status["model_size_mb"] = _get_model_size_mb(self.model_name)
        return status
