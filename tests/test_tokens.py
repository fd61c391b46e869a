"""Unit tests for codeembed.tokens."""

import sys
import threading
from unittest import mock

import pytest

from codeembed.tokens import TokenEstimator, TokenizationError, estimate_tokens


def _word_tokenizer():
    """Tokenizer double: one token per whitespace-separated word."""
    tokenizer = mock.MagicMock()
    tokenizer.encode.side_effect = lambda text: list(range(len(text.split())))
    return tokenizer


# ---------------------------------------------------------------------------
# Tests for estimate_tokens
# ---------------------------------------------------------------------------


class TestEstimateTokens:
    def test_rounds_up(self):
        assert estimate_tokens("abcde") == 2

    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_exact_multiple(self):
        assert estimate_tokens("x" * 40) == 10


# ---------------------------------------------------------------------------
# Tests for TokenEstimator
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_rejects_non_positive_context(self):
        with pytest.raises(ValueError):
            TokenEstimator("m", 0)

    def test_count_tokens(self):
        est = TokenEstimator("m", 100, tokenizer=_word_tokenizer())
        assert est.count_tokens("one two three") == 3

    def test_safe_chunk_budget(self):
        est = TokenEstimator("m", 256, tokenizer=_word_tokenizer())
        assert est.safe_chunk_budget() == 217
        assert est.safe_chunk_budget(0.5) == 128

    def test_will_fit_uses_95_percent(self):
        est = TokenEstimator("m", 20, tokenizer=_word_tokenizer())
        assert est.will_fit(" ".join(["w"] * 19)) is True
        assert est.will_fit(" ".join(["w"] * 20)) is False

    def test_tokenize_failure_raises(self):
        tokenizer = mock.MagicMock()
        tokenizer.encode.side_effect = RuntimeError("boom")
        est = TokenEstimator("m", 100, tokenizer=tokenizer)
        with pytest.raises(TokenizationError, match="boom"):
            est.count_tokens("hello")


class TestInitialize:
    """The tokenizer is loaded once, lazily."""

    def test_loads_auto_tokenizer_once(self):
        fake_transformers = mock.MagicMock()
        fake_transformers.AutoTokenizer.from_pretrained.return_value = _word_tokenizer()
        with mock.patch.dict(sys.modules, {"transformers": fake_transformers}):
            est = TokenEstimator("org/model", 100)
            assert est.count_tokens("a b") == 2
            assert est.count_tokens("a b c") == 3
        fake_transformers.AutoTokenizer.from_pretrained.assert_called_once_with(
            "org/model", cache_dir=None
        )

    def test_model_path_used_as_cache_dir(self):
        fake_transformers = mock.MagicMock()
        fake_transformers.AutoTokenizer.from_pretrained.return_value = _word_tokenizer()
        with mock.patch.dict(sys.modules, {"transformers": fake_transformers}):
            est = TokenEstimator("org/model", 100, model_path="/models")
            est.initialize()
        fake_transformers.AutoTokenizer.from_pretrained.assert_called_once_with(
            "org/model", cache_dir="/models"
        )

    def test_concurrent_initialize_builds_one(self):
        fake_transformers = mock.MagicMock()
        fake_transformers.AutoTokenizer.from_pretrained.return_value = _word_tokenizer()
        with mock.patch.dict(sys.modules, {"transformers": fake_transformers}):
            est = TokenEstimator("org/model", 100)
            threads = [threading.Thread(target=est.initialize) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        assert fake_transformers.AutoTokenizer.from_pretrained.call_count == 1

    def test_load_failure_wrapped(self):
        fake_transformers = mock.MagicMock()
        fake_transformers.AutoTokenizer.from_pretrained.side_effect = OSError("not found")
        with mock.patch.dict(sys.modules, {"transformers": fake_transformers}):
            est = TokenEstimator("missing/model", 100)
            with pytest.raises(TokenizationError, match="not found"):
                est.initialize()
