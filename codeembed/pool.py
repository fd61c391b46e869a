"""Bounded, cancellable pool of embedding worker processes."""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
from concurrent.futures import Executor, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import Callable, Literal, Sequence

from codeembed import config, embedworker
from codeembed.models import (
    CANCELLED_MESSAGE,
    NOT_INITIALIZED_MESSAGE,
    CancellationSignal,
    ChunkForEmbedding,
    EmbeddingOptions,
    EmbeddingResult,
    EmbeddingTask,
    EmbeddingTaskResult,
    OperationCancelledError,
)

logger = logging.getLogger(__name__)

PoolState = Literal["uninitialized", "ready", "disposed"]

# Interval at which in-flight tasks poll the cancellation signal
_POLL_INTERVAL = 0.05


def _default_executor(max_workers: int) -> Executor:
    return ProcessPoolExecutor(
        max_workers=max_workers,
        mp_context=multiprocessing.get_context("spawn"),
        initializer=embedworker.init_worker,
    )


class EmbeddingWorkerPool:
    """Maps chunk texts to vectors on a bounded set of worker processes.

    Results always match the input chunks one-to-one and in order. A task
    that fails or is cancelled yields an error result for its chunk only;
    calling :meth:`generate` on a pool that is not ready yields one
    "not initialized" error per chunk instead of raising.

    Args:
        model_name: embedding model to load in each worker.
        model_path: local model/cache directory ("" for the default cache).
        options: pooling and normalization.
        max_workers: concurrency cap, ``max(2, ceil(cores / 2))`` by default.
        executor_factory: builds the executor from the worker count.
    """

    def __init__(
        self,
        model_name: str,
        model_path: str = "",
        options: EmbeddingOptions | None = None,
        *,
        max_workers: int | None = None,
        executor_factory: Callable[[int], Executor] | None = None,
    ) -> None:
        self.model_name = model_name
        self.model_path = model_path
        self.options = options or EmbeddingOptions()
        self.max_workers = max_workers if max_workers and max_workers > 0 else config.default_max_workers()
        self._executor_factory = executor_factory or _default_executor
        self._executor: Executor | None = None
        self._state: PoolState = "uninitialized"

    @property
    def state(self) -> PoolState:
        return self._state

    def initialize(self) -> None:
        """Start the workers. Does nothing if the pool is already ready.

        Raises:
            RuntimeError: the pool has been disposed.
        """
        if self._state == "ready":
            return
        if self._state == "disposed":
            raise RuntimeError("EmbeddingWorkerPool has been disposed")

        logger.info(
            "Initializing embedding pool: model=%s workers=%d", self.model_name, self.max_workers
        )
        try:
            self._executor = self._executor_factory(self.max_workers)
        except Exception as e:
            logger.error("Failed to start embedding workers: %s", e)
            raise
        self._state = "ready"

    def set_model(self, model_name: str, model_path: str | None = None) -> None:
        """Switch models; each worker releases its cached model on next use."""
        self.model_name = model_name
        if model_path is not None:
            self.model_path = model_path

    def _not_ready(self, chunk: ChunkForEmbedding) -> EmbeddingResult:
        return EmbeddingResult(chunk_info=chunk, vector=None, error=NOT_INITIALIZED_MESSAGE)

    async def generate(
        self,
        chunks: Sequence[ChunkForEmbedding],
        signal: CancellationSignal | None = None,
    ) -> list[EmbeddingResult]:
        """Embed every chunk; the result list matches *chunks* index for index."""
        if self._state != "ready" or self._executor is None:
            logger.error("Embedding pool is not initialized")
            return [self._not_ready(chunk) for chunk in chunks]

        semaphore = asyncio.Semaphore(self.max_workers)
        results: list[EmbeddingResult | None] = [None] * len(chunks)

        async def run(index: int, chunk: ChunkForEmbedding) -> None:
            async with semaphore:
                results[index] = await self._run_task(chunk, signal)

        await asyncio.gather(*(run(i, chunk) for i, chunk in enumerate(chunks)))
        return [
            result if result is not None else self._not_ready(chunks[i])
            for i, result in enumerate(results)
        ]

    async def _run_task(
        self, chunk: ChunkForEmbedding, signal: CancellationSignal | None
    ) -> EmbeddingResult:
        executor = self._executor
        if executor is None:
            return self._not_ready(chunk)
        if signal is not None and signal.is_set():
            return EmbeddingResult(chunk, None, CANCELLED_MESSAGE, cancelled=True)

        task = EmbeddingTask(
            chunk_text=chunk.text,
            model_name=self.model_name,
            model_path=self.model_path,
            options=self.options,
        )
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(executor, embedworker.process_embedding_task, task)
            outcome = await self._wait(future, signal)
        except asyncio.CancelledError:
            # Futures cancelled by dispose() while pending; anything else propagates
            if self._executor is not None:
                raise
            return self._not_ready(chunk)
        except OperationCancelledError:
            return EmbeddingResult(chunk, None, CANCELLED_MESSAGE, cancelled=True)
        except BrokenProcessPool as e:
            logger.error("Embedding worker died: %s", e)
            self._restart(executor)
            return EmbeddingResult(chunk, None, f"Worker failed: {e}")
        except Exception as e:
            if self._executor is None:
                return self._not_ready(chunk)
            return EmbeddingResult(chunk, None, str(e) or type(e).__name__)
        # A task already running when dispose() was called cannot be interrupted
        if self._state == "disposed":
            return self._not_ready(chunk)
        return EmbeddingResult(chunk, outcome.vector, outcome.error)

    async def _wait(
        self, future: asyncio.Future, signal: CancellationSignal | None
    ) -> EmbeddingTaskResult:
        if signal is None:
            return await future
        while True:
            done, _ = await asyncio.wait({future}, timeout=_POLL_INTERVAL)
            if done:
                return future.result()
            if signal.is_set():
                future.cancel()
                raise OperationCancelledError()

    def _restart(self, broken: Executor) -> None:
        """Replace a broken executor so later tasks can run."""
        if self._executor is not broken or self._state != "ready":
            return
        try:
            broken.shutdown(wait=False, cancel_futures=True)
        except Exception as e:
            logger.warning("Error shutting down broken executor: %s", e)
        self._executor = self._executor_factory(self.max_workers)
        logger.info("Embedding workers restarted")

    def dispose(self) -> None:
        """Stop the workers. Safe to call more than once."""
        if self._executor is not None:
            try:
                self._executor.shutdown(wait=False, cancel_futures=True)
            except Exception as e:
                logger.error("Error disposing embedding workers: %s", e)
            self._executor = None
        if self._state != "disposed":
            self._state = "disposed"
            logger.info("Embedding pool disposed")

    async def __aenter__(self) -> EmbeddingWorkerPool:
        self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.dispose()
