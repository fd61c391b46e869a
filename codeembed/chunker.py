"""Structure-aware chunking of source text under a token budget.

Per document:
    1. Blank text yields an empty result.
    2. Text that already fits the model's context window is a single chunk.
    3. Otherwise the text is cut at structural breakpoints (code) or at
       blank-line paragraph breaks (prose). Text before the first structural
       breakpoint is not emitted.
    4. Segments over the token budget are split on whole lines with a running
       token counter. A single line over budget is kept verbatim and flagged.
    5. Every candidate is trimmed of blank edge lines, dedented by its common
       leading whitespace, and optionally dropped when it holds nothing but
       comments or closing delimiters.

Boundaries are only ever placed at line starts, so tokens and multi-character
operators are never split across chunks.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
from dataclasses import dataclass

from codeembed.languages import PROSE_LANGUAGES, closing_tokens, comment_markers
from codeembed.models import (
    Breakpoint,
    CancellationSignal,
    ChunkingResult,
    ChunkMetadata,
    OperationCancelledError,
)
from codeembed.structure import StructureExtractor
from codeembed.tokens import FIT_FACTOR, TokenEstimator, TokenizationError, estimate_tokens

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)*")
_LEADING_WS = re.compile(r"^[ \t]*")


@dataclass
class _Candidate:
    text: str
    offset: int
    metadata: ChunkMetadata


def _check_cancelled(signal: CancellationSignal | None) -> None:
    if signal is not None and signal.is_set():
        raise OperationCancelledError()


def _split_lines_keepends(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping the newline on every line but the last."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _line_offsets(text: str) -> list[int]:
    """Character offset of the start of every line."""
    offsets = [0]
    for line in text.split("\n")[:-1]:
        offsets.append(offsets[-1] + len(line) + 1)
    return offsets


# ── Finalization ─────────────────────────────────────────────────────────


def trim_and_dedent(text: str, offset: int) -> tuple[str, int] | None:
    """Strip blank edge lines and common indentation.

    Returns ``(content, offset)`` where *offset* is the position of
    *content*'s first character in the original text, or None if nothing
    remains.
    """
    lines = text.split("\n")
    while lines and lines[0].strip() == "":
        offset += len(lines[0]) + 1
        lines.pop(0)
    while lines and lines[-1].strip() == "":
        lines.pop()
    if not lines:
        return None

    prefixes = [_LEADING_WS.match(line).group(0) for line in lines if line.strip()]
    common = os.path.commonprefix(prefixes)
    if common:
        dedented = []
        for line in lines:
            if line.startswith(common):
                dedented.append(line[len(common) :])
            else:
                # Only blank lines can miss the common prefix
                dedented.append(line.lstrip(" \t"))
        lines = dedented
        offset += len(common)
    return "\n".join(lines), offset


def _closer_pattern(language: str | None) -> re.Pattern[str] | None:
    tokens = closing_tokens(language)
    if not tokens:
        return None
    line_markers, block_markers = comment_markers(language)
    alternatives = "|".join(re.escape(t) for t in sorted(tokens, key=len, reverse=True))
    markers = [re.escape(m) for m in line_markers] + [re.escape(s) for s, _ in block_markers]
    trailing = rf"(?:\s*(?:{'|'.join(markers)}).*)?" if markers else ""
    return re.compile(rf"^(?:(?:{alternatives})\s*)+{trailing}$")


def is_insignificant(content: str, language: str | None) -> bool:
    """True when every non-blank line is a comment or a closing delimiter."""
    line_markers, block_markers = comment_markers(language)
    closer = _closer_pattern(language)
    c_style = any(start == "/*" for start, _ in block_markers)
    block_end: str | None = None

    for raw in content.split("\n"):
        line = raw.strip()
        while line:
            if block_end is not None:
                idx = line.find(block_end)
                if idx < 0:
                    line = ""
                    break
                line = line[idx + len(block_end) :].strip()
                block_end = None
                continue
            if any(line.startswith(m) for m in line_markers):
                line = ""
                break
            opened = next(((s, e) for s, e in block_markers if line.startswith(s)), None)
            if opened is not None:
                start, end = opened
                idx = line.find(end, len(start))
                if idx < 0:
                    block_end = end
                    line = ""
                    break
                line = line[idx + len(end) :].strip()
                continue
            # Fragments of a block comment cut by an earlier split
            if c_style and (line == "*" or line.startswith(("* ", "*/"))):
                line = ""
                break
            if closer is not None and closer.match(line):
                line = ""
                break
            return False
    return True


def _renumber_orders(metadata: list[ChunkMetadata]) -> None:
    """Make orders contiguous within each split after filtering."""
    counters: dict[str, int] = {}
    for meta in metadata:
        if meta.parent_id is None:
            continue
        meta.order = counters.get(meta.parent_id, 0)
        counters[meta.parent_id] = meta.order + 1


def empty_result() -> ChunkingResult:
    return ChunkingResult(chunks=[], offsets=[], metadata=[])


# ── Chunker ──────────────────────────────────────────────────────────────


class CodeChunker:
    """Splits documents into token-bounded chunks aligned to code structure.

    Args:
        estimator: token counter for the embedding model.
        extractor: structural breakpoint finder; one is created if omitted.
        filter_insignificant: drop chunks holding only comments or closers.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        extractor: StructureExtractor | None = None,
        *,
        filter_insignificant: bool = True,
    ) -> None:
        self._estimator = estimator
        self._extractor = extractor or StructureExtractor()
        self.filter_insignificant = filter_insignificant

    async def _count(self, text: str) -> int:
        try:
            return await asyncio.to_thread(self._estimator.count_tokens, text)
        except TokenizationError as e:
            logger.debug("Token counting failed, using heuristic: %s", e)
            return estimate_tokens(text)

    async def _fits_whole(self, text: str) -> bool:
        try:
            return await asyncio.to_thread(self._estimator.will_fit, text)
        except TokenizationError as e:
            logger.debug("Token counting failed, using heuristic: %s", e)
            limit = math.floor(self._estimator.context_length * FIT_FACTOR)
            return estimate_tokens(text) <= limit

    async def chunk(
        self,
        text: str,
        language: str | None,
        variant: str | None = None,
        signal: CancellationSignal | None = None,
    ) -> ChunkingResult:
        """Chunk *text* written in *language*.

        Raises:
            OperationCancelledError: *signal* was set while chunking.
        """
        if not text or not text.strip():
            return empty_result()

        _check_cancelled(signal)
        budget = self._estimator.safe_chunk_budget()

        if await self._fits_whole(text):
            return self._finalize([_Candidate(text, 0, ChunkMetadata())], language)

        if language in PROSE_LANGUAGES:
            candidates = await self._paragraph_chunks(text, budget, signal)
            return self._finalize(candidates, language)

        breakpoints: list[Breakpoint] = []
        if language:
            try:
                breakpoints = await asyncio.to_thread(
                    self._extractor.extract_breakpoints, text, language, variant
                )
            except Exception as e:
                logger.warning("Structure extraction failed for %s, using line split: %s", language, e)
                breakpoints = []

        _check_cancelled(signal)
        if not breakpoints:
            candidates = await self._split_by_lines(text, 0, budget, signal)
        else:
            candidates = await self._structural_chunks(text, breakpoints, budget, signal)
        return self._finalize(candidates, language)

    async def _structural_chunks(
        self,
        text: str,
        breakpoints: list[Breakpoint],
        budget: int,
        signal: CancellationSignal | None,
    ) -> list[_Candidate]:
        line_starts = _line_offsets(text)

        def to_offset(line: int) -> int:
            return line_starts[line] if line < len(line_starts) else len(text)

        # Header text before the first breakpoint is intentionally skipped
        bounds = [(to_offset(bp.line), bp.node_type) for bp in breakpoints]
        candidates: list[_Candidate] = []
        for i, (start, node_type) in enumerate(bounds):
            _check_cancelled(signal)
            end = bounds[i + 1][0] if i + 1 < len(bounds) else len(text)
            if end <= start:
                continue
            segment = text[start:end]
            if await self._count(segment) <= budget:
                candidates.append(_Candidate(segment, start, ChunkMetadata(structure_type=node_type)))
            else:
                parent_id = f"{node_type or 'text'}@{start}"
                candidates.extend(
                    await self._split_by_lines(
                        segment, start, budget, signal, parent_id=parent_id, structure_type=node_type
                    )
                )
        return candidates

    async def _paragraph_chunks(
        self, text: str, budget: int, signal: CancellationSignal | None
    ) -> list[_Candidate]:
        spans: list[tuple[int, int]] = []
        pos = 0
        for match in _PARAGRAPH_BREAK.finditer(text):
            spans.append((pos, match.start() + 1))
            pos = match.end()
        spans.append((pos, len(text)))

        candidates: list[_Candidate] = []
        for start, end in spans:
            _check_cancelled(signal)
            paragraph = text[start:end]
            if not paragraph.strip():
                continue
            if await self._count(paragraph) <= budget:
                candidates.append(_Candidate(paragraph, start, ChunkMetadata()))
            else:
                candidates.extend(
                    await self._split_by_lines(
                        paragraph, start, budget, signal, parent_id=f"paragraph@{start}"
                    )
                )
        return candidates

    async def _split_by_lines(
        self,
        text: str,
        base_offset: int,
        budget: int,
        signal: CancellationSignal | None,
        *,
        parent_id: str | None = None,
        structure_type: str | None = None,
    ) -> list[_Candidate]:
        """Group whole lines while the running token count stays in budget."""
        pieces: list[tuple[str, int, bool]] = []
        current: list[str] = []
        current_tokens = 0
        chunk_start = 0
        position = 0

        for line in _split_lines_keepends(text):
            _check_cancelled(signal)
            line_tokens = await self._count(line)
            if line_tokens > budget:
                if current:
                    pieces.append(("".join(current), chunk_start, False))
                pieces.append((line, position, True))
                current = []
                current_tokens = 0
            elif current_tokens + line_tokens > budget:
                if current:
                    pieces.append(("".join(current), chunk_start, False))
                current = [line]
                current_tokens = line_tokens
                chunk_start = position
            else:
                if not current:
                    chunk_start = position
                current.append(line)
                current_tokens += line_tokens
            position += len(line)

        if current:
            pieces.append(("".join(current), chunk_start, False))

        return [
            _Candidate(
                piece,
                base_offset + start,
                ChunkMetadata(
                    parent_id=parent_id,
                    order=index if parent_id is not None else None,
                    oversized=oversized,
                    structure_type=structure_type,
                ),
            )
            for index, (piece, start, oversized) in enumerate(pieces)
        ]

    def _finalize(self, candidates: list[_Candidate], language: str | None) -> ChunkingResult:
        result = empty_result()
        for candidate in candidates:
            trimmed = trim_and_dedent(candidate.text, candidate.offset)
            if trimmed is None:
                continue
            content, offset = trimmed
            if self.filter_insignificant and is_insignificant(content, language):
                continue
            result.chunks.append(content)
            result.offsets.append(offset)
            result.metadata.append(candidate.metadata)

        if not result.chunks:
            return empty_result()
        _renumber_orders(result.metadata)
        return result

    def dispose(self) -> None:
        self._extractor.dispose()
