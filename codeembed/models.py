"""Data types shared by the chunking and embedding stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

import numpy as np

Pooling = Literal["mean", "cls", "none"]

CANCELLED_MESSAGE = "Operation cancelled"
NOT_INITIALIZED_MESSAGE = "Service not initialized"


class CancellationSignal(Protocol):
    """Anything with ``is_set()``: asyncio.Event, threading.Event, ..."""

    def is_set(self) -> bool: ...


class OperationCancelledError(Exception):
    """Raised when a cancellation signal is observed mid-operation."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


# ── Chunking ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Breakpoint:
    """A 0-based line where a construct (or its leading comments) starts."""

    line: int
    node_type: str | None = None


@dataclass
class ChunkMetadata:
    """Structural metadata attached to one chunk."""

    parent_id: str | None = None  # Shared by fragments of one split segment
    order: int | None = None  # Position within that split
    oversized: bool | None = False
    structure_type: str | None = None


@dataclass
class ChunkingResult:
    """Ordered chunks with their offsets and metadata.

    The three lists always have the same length.
    """

    chunks: list[str] = field(default_factory=list)
    offsets: list[int] = field(default_factory=list)
    metadata: list[ChunkMetadata] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def parent_ids(self) -> list[str | None]:
        return [m.parent_id for m in self.metadata]

    @property
    def orders(self) -> list[int | None]:
        return [m.order for m in self.metadata]

    @property
    def oversized_flags(self) -> list[bool | None]:
        return [m.oversized for m in self.metadata]

    @property
    def structure_types(self) -> list[str | None]:
        return [m.structure_type for m in self.metadata]


# ── Embedding ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EmbeddingOptions:
    pooling: Pooling = "mean"
    normalize: bool = True


@dataclass
class EmbeddingTask:
    """Everything a worker needs to embed one chunk."""

    chunk_text: str
    model_name: str
    model_path: str = ""
    options: EmbeddingOptions = field(default_factory=EmbeddingOptions)


@dataclass
class EmbeddingTaskResult:
    vector: np.ndarray | None
    error: str | None = None
    cancelled: bool = False


@dataclass
class ChunkForEmbedding:
    """A chunk handed to the worker pool, with its identity in the index."""

    file_id: str
    file_path: str
    chunk_index: int
    text: str
    offset: int = 0


@dataclass
class EmbeddingResult:
    """Outcome for one input chunk; always paired 1:1 with the input."""

    chunk_info: ChunkForEmbedding
    vector: np.ndarray | None
    error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.vector is not None
