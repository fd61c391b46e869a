"""Token counting against an embedding model's tokenizer."""

from __future__ import annotations

import logging
import math
import threading
from typing import Any

logger = logging.getLogger(__name__)

# Characters per token used when the tokenizer cannot be consulted
CHARS_PER_TOKEN_ESTIMATE = 4.0

SAFE_CHUNK_FACTOR = 0.85
FIT_FACTOR = 0.95


class TokenizationError(RuntimeError):
    """The tokenizer failed to load or to encode a text."""


def estimate_tokens(text: str) -> int:
    """Character-count heuristic used in place of a failed tokenizer call."""
    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


class TokenEstimator:
    """Counts tokens for a model and derives a per-chunk token budget.

    The tokenizer is loaded lazily on first use; loading is guarded by a lock
    so concurrent callers never build two tokenizers.
    """

    def __init__(
        self, model_name: str, context_length: int, tokenizer: Any = None, model_path: str = ""
    ) -> None:
        if context_length <= 0:
            raise ValueError(f"context_length must be positive, got {context_length}")
        self.model_name = model_name
        self.model_path = model_path
        self._context_length = context_length
        self._tokenizer = tokenizer
        self._lock = threading.Lock()

    @property
    def context_length(self) -> int:
        return self._context_length

    def initialize(self) -> Any:
        """Load the tokenizer if needed and return it.

        Raises:
            TokenizationError: if the tokenizer cannot be loaded.
        """
        if self._tokenizer is not None:
            return self._tokenizer
        with self._lock:
            if self._tokenizer is None:
                logger.info("Initializing tokenizer for %s", self.model_name)
                try:
                    from transformers import AutoTokenizer

                    self._tokenizer = AutoTokenizer.from_pretrained(
                        self.model_name, cache_dir=self.model_path or None
                    )
                except Exception as e:
                    logger.error("Failed to initialize tokenizer for %s: %s", self.model_name, e)
                    raise TokenizationError(f"Failed to initialize tokenizer: {e}") from e
        return self._tokenizer

    def tokenize(self, text: str) -> list[int]:
        """Return the token ids for *text*."""
        tokenizer = self.initialize()
        try:
            return list(tokenizer.encode(text))
        except Exception as e:
            logger.debug("Error tokenizing text: %s", e)
            raise TokenizationError(f"Tokenization failed: {e}") from e

    def count_tokens(self, text: str) -> int:
        return len(self.tokenize(text))

    def will_fit(self, text: str, safety_factor: float = FIT_FACTOR) -> bool:
        """Check whether *text* fits the context window with a safety margin."""
        return self.count_tokens(text) <= math.floor(self._context_length * safety_factor)

    def safe_chunk_budget(self, safety_factor: float = SAFE_CHUNK_FACTOR) -> int:
        """Token ceiling for one chunk, leaving room for special tokens."""
        return math.floor(self._context_length * safety_factor)
