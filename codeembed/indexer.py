"""File-level processing: detect language, chunk, embed.

The output is a :class:`ProcessingResult` ready to hand to a storage sink;
storage itself lives outside this package.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from codeembed.chunker import CodeChunker
from codeembed.languages import detect_language
from codeembed.models import (
    CANCELLED_MESSAGE,
    CancellationSignal,
    ChunkForEmbedding,
    ChunkMetadata,
    OperationCancelledError,
)
from codeembed.pool import EmbeddingWorkerPool

logger = logging.getLogger(__name__)


@dataclass
class FileToProcess:
    """A file queued for indexing.

    When *content* is None the file is read from *file_path*. An explicit
    *language* skips extension-based detection.
    """

    file_id: str
    file_path: str
    content: str | None = None
    language: str | None = None
    variant: str | None = None


@dataclass
class ProcessingResult:
    """Chunks and vectors for one file.

    ``chunks``, ``offsets``, ``metadata``, ``vectors`` and ``errors`` share
    one index. A chunk whose embedding failed has ``vectors[i] is None`` and
    its message in ``errors[i]``.
    """

    file_id: str
    chunks: list[str] = field(default_factory=list)
    offsets: list[int] = field(default_factory=list)
    metadata: list[ChunkMetadata] = field(default_factory=list)
    vectors: list[np.ndarray | None] = field(default_factory=list)
    errors: list[str | None] = field(default_factory=list)
    success: bool = True
    error: str | None = None
    cancelled: bool = False

    @property
    def failed_chunks(self) -> int:
        return sum(1 for e in self.errors if e is not None)


def _read_text(path: str) -> str:
    return Path(path).read_text(encoding="utf-8", errors="replace")


class FileIndexer:
    """Runs one file through the chunker and the embedding pool."""

    def __init__(self, chunker: CodeChunker, pool: EmbeddingWorkerPool) -> None:
        self.chunker = chunker
        self.pool = pool

    async def process_file(
        self, file: FileToProcess, signal: CancellationSignal | None = None
    ) -> ProcessingResult:
        """Chunk and embed *file*. Never raises; failures land in the result."""
        result = ProcessingResult(file_id=file.file_id)
        try:
            text = file.content
            if text is None:
                text = await asyncio.to_thread(_read_text, file.file_path)

            language, variant = file.language, file.variant
            if language is None:
                detected = detect_language(file.file_path)
                if detected is not None:
                    language, detected_variant = detected
                    variant = variant or detected_variant

            chunking = await self.chunker.chunk(text, language, variant, signal)
            logger.debug(
                "Chunked %s (%s) into %d chunks", file.file_path, language or "unknown", len(chunking)
            )
            result.chunks = chunking.chunks
            result.offsets = chunking.offsets
            result.metadata = chunking.metadata
            if not chunking.chunks:
                return result

            embeddings = await self.pool.generate(
                [
                    ChunkForEmbedding(
                        file_id=file.file_id,
                        file_path=file.file_path,
                        chunk_index=i,
                        text=chunk,
                        offset=offset,
                    )
                    for i, (chunk, offset) in enumerate(zip(chunking.chunks, chunking.offsets))
                ],
                signal,
            )
        except OperationCancelledError:
            logger.info("Processing cancelled for %s", file.file_path)
            result.success = False
            result.error = CANCELLED_MESSAGE
            result.cancelled = True
            return result
        except Exception as e:
            logger.error("Failed to process %s: %s", file.file_path, e)
            result.success = False
            result.error = str(e)
            return result

        result.vectors = [r.vector for r in embeddings]
        result.errors = [r.error for r in embeddings]
        if any(r.cancelled for r in embeddings):
            result.success = False
            result.error = CANCELLED_MESSAGE
            result.cancelled = True
        elif result.failed_chunks:
            logger.warning(
                "%d of %d chunks failed to embed for %s",
                result.failed_chunks,
                len(embeddings),
                file.file_path,
            )
        return result
