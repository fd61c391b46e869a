import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from codeembed import config
from codeembed.chunker import CodeChunker
from codeembed.indexer import FileIndexer, FileToProcess
from codeembed.languages import detect_language
from codeembed.pool import EmbeddingWorkerPool
from codeembed.tokens import TokenEstimator

logger = logging.getLogger(__name__)


def setup_logging() -> str:
    """Configure file logging. Returns the log file path."""
    log_dir = Path("log")
    log_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"codeembed-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    return str(log_file)


def build_chunker(model_name: str, context_length: int) -> CodeChunker:
    estimator = TokenEstimator(model_name, context_length, model_path=config.MODEL_PATH)
    return CodeChunker(estimator, filter_insignificant=config.FILTER_INSIGNIFICANT)


def _resolve_language(path: str, language: str | None) -> tuple[str | None, str | None]:
    if language:
        return language, None
    detected = detect_language(path)
    return detected if detected is not None else (None, None)


async def run_chunk(path: str, language: str | None, model_name: str, context_length: int) -> dict:
    """Chunk one file and return a JSON-ready summary."""
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    lang, variant = _resolve_language(path, language)
    chunker = build_chunker(model_name, context_length)
    try:
        result = await chunker.chunk(text, lang, variant)
    finally:
        chunker.dispose()
    return {
        "file": path,
        "language": lang,
        "chunks": [
            {
                "offset": offset,
                "content": content,
                "parent_id": meta.parent_id,
                "order": meta.order,
                "oversized": meta.oversized,
                "structure_type": meta.structure_type,
            }
            for content, offset, meta in zip(result.chunks, result.offsets, result.metadata)
        ],
    }


async def run_embed(path: str, language: str | None, model_name: str, context_length: int) -> dict:
    """Chunk and embed one file and return a JSON-ready summary."""
    chunker = build_chunker(model_name, context_length)
    pool = EmbeddingWorkerPool(
        model_name,
        config.MODEL_PATH,
        config.get_embedding_options(),
        max_workers=config.get_max_workers(),
    )
    try:
        async with pool:
            indexer = FileIndexer(chunker, pool)
            result = await indexer.process_file(
                FileToProcess(file_id=path, file_path=path, language=language)
            )
    finally:
        chunker.dispose()
    return {
        "file": path,
        "success": result.success,
        "error": result.error,
        "chunks": [
            {
                "offset": offset,
                "dimensions": None if vector is None else int(vector.shape[0]),
                "error": error,
            }
            for offset, vector, error in zip(result.offsets, result.vectors, result.errors)
        ],
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="codeembed – structure-aware code chunking and embedding")
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable logging to log/codeembed-{datetime}.log",
    )
    parser.add_argument(
        "--model",
        default=config.EMBEDDING_MODEL,
        help="Embedding model name (default: %(default)s)",
    )
    parser.add_argument(
        "--context-length",
        type=int,
        default=config.CONTEXT_LENGTH,
        help="Model context length in tokens (default: %(default)s)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("chunk", "Print the chunks of a file as JSON"),
        ("embed", "Chunk and embed a file, printing vector sizes as JSON"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("file", help="File to process")
        sub.add_argument(
            "--language",
            default=None,
            help="Language identifier (default: detected from the extension)",
        )
    args = parser.parse_args(argv)

    if args.log:
        log_file = setup_logging()
        print(f"Logging to: {log_file}", file=sys.stderr)

    if not Path(args.file).is_file():
        print(f"No such file: {args.file}", file=sys.stderr)
        return 1

    runner = run_chunk if args.command == "chunk" else run_embed
    try:
        output = asyncio.run(runner(args.file, args.language, args.model, args.context_length))
    except Exception as e:
        logger.error("Command %s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
