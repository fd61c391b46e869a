"""Unit tests for codeembed.pool.

Workers run on a ThreadPoolExecutor and the model loader is patched, so no
process is spawned and no model is downloaded.
"""

import asyncio
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from unittest import mock

import numpy as np
import pytest

from codeembed import embedworker
from codeembed.models import (
    CANCELLED_MESSAGE,
    NOT_INITIALIZED_MESSAGE,
    ChunkForEmbedding,
    EmbeddingOptions,
)
from codeembed.pool import EmbeddingWorkerPool

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class _FakeModel:
    """Returns one token row per word; the word count is the first value."""

    def __init__(self, fail_on=None, gate=None):
        self.fail_on = fail_on
        self.gate = gate

    def encode(self, text, **kwargs):
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_on is not None and self.fail_on in text:
            raise RuntimeError(f"cannot embed {text!r}")
        words = text.split()
        return np.array([[float(len(words)), 1.0] for _ in words], dtype=np.float32)


@pytest.fixture(autouse=True)
def fresh_context():
    embedworker.init_worker()
    yield
    embedworker._context = None


def _chunks(*texts):
    return [
        ChunkForEmbedding(file_id="f1", file_path="a.py", chunk_index=i, text=t, offset=i * 10)
        for i, t in enumerate(texts)
    ]


def _pool(**kwargs):
    kwargs.setdefault("max_workers", 2)
    return EmbeddingWorkerPool(
        "test-model",
        options=EmbeddingOptions(pooling="mean", normalize=False),
        executor_factory=lambda n: ThreadPoolExecutor(max_workers=n),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Tests for generate
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_empty_chunk_in_batch(self):
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel()):
            async with _pool() as pool:
                results = await pool.generate(_chunks("alpha beta", "", "gamma"))

        assert len(results) == 3
        assert results[0].ok and results[2].ok
        assert results[1].error is None
        assert results[1].vector is not None
        assert results[1].vector.size == 0
        np.testing.assert_allclose(results[0].vector, [2.0, 1.0])

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        texts = [" ".join(["w"] * (i + 1)) for i in range(12)]
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel()):
            async with _pool(max_workers=4) as pool:
                results = await pool.generate(_chunks(*texts))

        assert [r.chunk_info.chunk_index for r in results] == list(range(12))
        assert [float(r.vector[0]) for r in results] == [float(i + 1) for i in range(12)]

    @pytest.mark.asyncio
    async def test_task_error_isolated(self):
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel(fail_on="bad")):
            async with _pool() as pool:
                results = await pool.generate(_chunks("good one", "bad one", "fine"))

        assert results[0].ok and results[2].ok
        assert results[1].vector is None
        assert "cannot embed" in results[1].error
        assert results[1].cancelled is False

    @pytest.mark.asyncio
    async def test_model_load_failure_reported_per_chunk(self):
        with mock.patch.object(
            embedworker, "_load_pipeline", side_effect=RuntimeError("Failed to load embedding model")
        ):
            async with _pool() as pool:
                results = await pool.generate(_chunks("a", "b"))
        assert all(r.vector is None for r in results)
        assert all("Failed to load" in r.error for r in results)

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async with _pool() as pool:
            assert await pool.generate([]) == []


# ---------------------------------------------------------------------------
# Tests for lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_not_initialized(self):
        pool = _pool()
        results = await pool.generate(_chunks("a", "b"))
        assert [r.error for r in results] == [NOT_INITIALIZED_MESSAGE] * 2
        assert all(r.vector is None for r in results)
        assert pool.state == "uninitialized"

    @pytest.mark.asyncio
    async def test_after_dispose(self):
        pool = _pool()
        pool.initialize()
        pool.dispose()
        results = await pool.generate(_chunks("a"))
        assert results[0].error == NOT_INITIALIZED_MESSAGE
        assert pool.state == "disposed"

    @pytest.mark.asyncio
    async def test_dispose_while_generating_discards_results(self):
        gate = threading.Event()
        pool = _pool(max_workers=1)

        def dispose_then_release():
            pool.dispose()
            gate.set()

        loop = asyncio.get_running_loop()
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel(gate=gate)):
            pool.initialize()
            loop.call_later(0.1, dispose_then_release)
            try:
                results = await pool.generate(_chunks("a", "b", "c", "d"))
            finally:
                gate.set()
                pool.dispose()

        assert [r.error for r in results] == [NOT_INITIALIZED_MESSAGE] * 4
        assert all(r.vector is None for r in results)
        assert pool.state == "disposed"

    def test_dispose_idempotent(self):
        pool = _pool()
        pool.initialize()
        pool.dispose()
        pool.dispose()
        assert pool.state == "disposed"

    def test_initialize_idempotent(self):
        factory = mock.MagicMock(return_value=mock.MagicMock(spec=Executor))
        pool = EmbeddingWorkerPool("m", max_workers=3, executor_factory=factory)
        pool.initialize()
        pool.initialize()
        factory.assert_called_once_with(3)
        assert pool.state == "ready"

    def test_initialize_after_dispose_raises(self):
        pool = _pool()
        pool.dispose()
        with pytest.raises(RuntimeError):
            pool.initialize()

    def test_default_worker_count(self):
        with mock.patch("codeembed.config.os.cpu_count", return_value=8):
            pool = EmbeddingWorkerPool("m")
        assert pool.max_workers == 4

    def test_default_executor_uses_spawn(self):
        pool = EmbeddingWorkerPool("m", max_workers=2)
        with mock.patch("codeembed.pool.ProcessPoolExecutor") as ppe:
            pool.initialize()
        kwargs = ppe.call_args.kwargs
        assert kwargs["max_workers"] == 2
        assert kwargs["mp_context"].get_start_method() == "spawn"
        assert kwargs["initializer"] is embedworker.init_worker

    @pytest.mark.asyncio
    async def test_set_model(self):
        models = {"m1": _FakeModel(), "m2": _FakeModel()}
        with mock.patch.object(
            embedworker, "_load_pipeline", side_effect=lambda name, path="": models[name]
        ) as load:
            async with _pool() as pool:
                pool.set_model("m1")
                await pool.generate(_chunks("a"))
                pool.set_model("m2", "/models")
                await pool.generate(_chunks("a"))
        assert [c.args for c in load.call_args_list] == [("m1", ""), ("m2", "/models")]


# ---------------------------------------------------------------------------
# Tests for cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_signal_set_before_generate(self):
        signal = asyncio.Event()
        signal.set()
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel()) as load:
            async with _pool() as pool:
                results = await pool.generate(_chunks("a", "b", "c"), signal)
        load.assert_not_called()
        assert all(r.cancelled for r in results)
        assert all(r.error == CANCELLED_MESSAGE for r in results)

    @pytest.mark.asyncio
    async def test_signal_set_during_generate(self):
        gate = threading.Event()
        signal = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, signal.set)
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel(gate=gate)):
            pool = _pool(max_workers=2)
            pool.initialize()
            try:
                results = await pool.generate(_chunks("a", "b", "c", "d"), signal)
            finally:
                gate.set()
                pool.dispose()

        assert len(results) == 4
        assert all(r.cancelled and r.vector is None for r in results)
        assert [r.chunk_info.chunk_index for r in results] == [0, 1, 2, 3]


# ---------------------------------------------------------------------------
# Tests for worker failure recovery
# ---------------------------------------------------------------------------


class _BrokenExecutor(Executor):
    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        future.set_exception(BrokenProcessPool("worker died"))
        return future


class TestBrokenPool:
    @pytest.mark.asyncio
    async def test_broken_pool_restarted(self):
        executors = [_BrokenExecutor(), ThreadPoolExecutor(max_workers=2)]
        factory = mock.MagicMock(side_effect=executors)
        pool = EmbeddingWorkerPool(
            "m", options=EmbeddingOptions(normalize=False), max_workers=1, executor_factory=factory
        )
        with mock.patch.object(embedworker, "_load_pipeline", return_value=_FakeModel()):
            async with pool:
                first = await pool.generate(_chunks("a b"))
                second = await pool.generate(_chunks("a b"))

        assert first[0].vector is None
        assert "worker died" in first[0].error
        assert second[0].ok
        assert factory.call_count == 2
