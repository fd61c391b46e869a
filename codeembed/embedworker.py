"""Worker-process side of the embedding pool.

Each worker process owns one :class:`WorkerContext`, created by the pool's
initializer. The context caches at most one loaded model, keyed by model
name; asking for a different model releases the cached one first. Loading
and use of the model happen under the context's lock, so two tasks never
build two models for one worker or use a half-loaded one.
"""

from __future__ import annotations

import gc
import logging
import threading
from typing import Any

import numpy as np

from codeembed.models import EmbeddingOptions, EmbeddingTask, EmbeddingTaskResult

logger = logging.getLogger(__name__)


def _load_pipeline(model_name: str, model_path: str = "") -> Any:
    """Load a sentence-transformers model (downloads on first use).

    Returns a sentence_transformers.SentenceTransformer instance.
    """
    import warnings

    from sentence_transformers import SentenceTransformer

    # Suppress harmless transformer library warnings
    warnings.filterwarnings("ignore", message=".*position_ids.*")

    # Suppress BertModel LOAD REPORT printed by transformers (not a warning)
    logging.getLogger("transformers.modeling_utils").setLevel(logging.ERROR)

    try:
        return SentenceTransformer(model_name, cache_folder=model_path or None)
    except Exception as e:
        raise RuntimeError(
            f"Failed to load embedding model '{model_name}'. "
            f"Check the model location and availability. Error: {e}"
        ) from e


def _to_numpy(output: Any) -> np.ndarray:
    """Convert a tensor (or array-like) to a float32 numpy array."""
    if hasattr(output, "detach"):
        output = output.detach().cpu().float().numpy()
    return np.asarray(output, dtype=np.float32)


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def pool_token_embeddings(token_embeddings: np.ndarray, options: EmbeddingOptions) -> np.ndarray:
    """Reduce a ``(tokens, dim)`` matrix to one vector.

    ``mean`` averages the tokens, ``cls`` takes the first token and ``none``
    returns every token vector flattened in order.
    """
    if token_embeddings.ndim != 2 or token_embeddings.shape[0] == 0:
        raise ValueError(
            f"Malformed model output: expected (tokens, dim), got shape {token_embeddings.shape}"
        )

    if options.pooling == "mean":
        pooled = token_embeddings.mean(axis=0)
    elif options.pooling == "cls":
        pooled = token_embeddings[0]
    elif options.pooling == "none":
        pooled = token_embeddings
    else:
        raise ValueError(f"Unknown pooling strategy: {options.pooling!r}")

    if options.normalize:
        pooled = _l2_normalize(pooled)
    return np.ascontiguousarray(pooled, dtype=np.float32).reshape(-1)


class WorkerContext:
    """Per-worker state: one cached model and the lock guarding it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pipeline: Any = None
        self._model_name: str | None = None

    @property
    def model_name(self) -> str | None:
        return self._model_name

    def _get_pipeline(self, model_name: str, model_path: str) -> Any:
        # Caller holds self._lock
        if self._pipeline is not None and self._model_name == model_name:
            return self._pipeline

        if self._pipeline is not None:
            logger.info("Releasing model %s for %s", self._model_name, model_name)
            self._release()

        logger.info("Initializing pipeline for %s", model_name)
        try:
            self._pipeline = _load_pipeline(model_name, model_path)
        except Exception:
            self._pipeline = None
            self._model_name = None
            raise
        self._model_name = model_name
        return self._pipeline

    def _release(self) -> None:
        self._pipeline = None
        self._model_name = None
        gc.collect()

    def embed(self, task: EmbeddingTask) -> np.ndarray:
        """Embed one chunk; raises on model or output errors."""
        with self._lock:
            model = self._get_pipeline(task.model_name, task.model_path)
            output = model.encode(
                task.chunk_text,
                output_value="token_embeddings",
                convert_to_numpy=False,
                show_progress_bar=False,
            )
            return pool_token_embeddings(_to_numpy(output), task.options)

    def dispose(self) -> None:
        with self._lock:
            if self._pipeline is not None:
                self._release()


# The context owned by this worker process
_context: WorkerContext | None = None


def init_worker() -> None:
    """Pool initializer: give this worker process its own context."""
    global _context
    _context = WorkerContext()


def current_context() -> WorkerContext:
    global _context
    if _context is None:
        _context = WorkerContext()
    return _context


def process_embedding_task(task: EmbeddingTask) -> EmbeddingTaskResult:
    """Embed a single chunk; failures are returned, never raised."""
    if not task.chunk_text or not task.chunk_text.strip():
        return EmbeddingTaskResult(vector=np.zeros(0, dtype=np.float32))

    try:
        vector = current_context().embed(task)
        return EmbeddingTaskResult(vector=vector)
    except Exception as e:
        logger.error("Error generating embedding for chunk %r: %s", task.chunk_text[:100], e)
        return EmbeddingTaskResult(vector=None, error=str(e))
