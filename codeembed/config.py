"""Centralised configuration for codeembed.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.codeembed/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables
"""

import json
import math
import os
from pathlib import Path

from dotenv import load_dotenv

from codeembed.models import EmbeddingOptions

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

_DEFAULTS = {
    "embedding_model": DEFAULT_EMBEDDING_MODEL,
    "model_path": "",  # Empty means the Hugging Face cache
    "context_length": "256",
    "pooling": "mean",
    "normalize": "true",
    "max_workers": "",  # Empty means max(2, ceil(cores / 2))
    "filter_insignificant": "true",
}

_ENV_MAP = {
    "embedding_model": "EMBEDDING_MODEL",
    "model_path": "EMBEDDING_MODEL_PATH",
    "context_length": "EMBEDDING_CONTEXT_LENGTH",
    "pooling": "EMBEDDING_POOLING",
    "normalize": "EMBEDDING_NORMALIZE",
    "max_workers": "EMBEDDING_MAX_WORKERS",
    "filter_insignificant": "CHUNK_FILTER_INSIGNIFICANT",
}

_TRUTHY = {"1", "true", "yes", "on"}


# ── data directory (configurable via CODEEMBED_DATA_DIR) ──────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting CODEEMBED_DATA_DIR env var."""
    env_dir = os.environ.get("CODEEMBED_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".codeembed"


_config_path = _get_data_dir() / "config.json"

_file_cfg: dict = {}
if _config_path.is_file():
    try:
        _file_cfg = json.loads(_config_path.read_text(encoding="utf-8"))
        if not isinstance(_file_cfg, dict):
            _file_cfg = {}
    except (json.JSONDecodeError, OSError):
        _file_cfg = {}


def _get(key: str) -> str:
    """Return a config value using the load-order described above."""
    # 4) env var  (highest priority)
    env_name = _ENV_MAP.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 2) ~/.codeembed/config.json
    val = _file_cfg.get(key)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


# ── public constants ──────────────────────────────────────────────────
EMBEDDING_MODEL: str = _get("embedding_model")
MODEL_PATH: str = _get("model_path")
CONTEXT_LENGTH: int = int(_get("context_length"))
POOLING: str = _get("pooling").strip().lower()
NORMALIZE: bool = _get("normalize").strip().lower() in _TRUTHY
FILTER_INSIGNIFICANT: bool = _get("filter_insignificant").strip().lower() in _TRUTHY


def default_max_workers(cpu_count: int | None = None) -> int:
    """Return ``max(2, ceil(cores / 2))`` for the given (or detected) core count."""
    cores = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(2, math.ceil(cores / 2))


def get_max_workers() -> int:
    """Return the worker concurrency cap.

    An explicit ``max_workers`` setting wins; otherwise the cap is derived
    from the number of available cores.
    """
    raw = _get("max_workers").strip()
    if raw:
        try:
            value = int(raw)
        except ValueError:
            value = 0
        if value > 0:
            return value
    return default_max_workers()


def get_embedding_options() -> EmbeddingOptions:
    """Return the pooling/normalize options from configuration."""
    pooling = POOLING if POOLING in ("mean", "cls", "none") else "mean"
    return EmbeddingOptions(pooling=pooling, normalize=NORMALIZE)


# ── persistence helpers ───────────────────────────────────────────────


def config_dir() -> Path:
    """Return the data directory path, respecting CODEEMBED_DATA_DIR env var."""
    return _get_data_dir()


def config_path() -> Path:
    """Return the canonical path to ``~/.codeembed/config.json``."""
    return config_dir() / "config.json"


def save_config(settings: dict[str, str]) -> Path:
    """Write *settings* to ``~/.codeembed/config.json``.

    Creates the ``~/.codeembed`` directory if it doesn't exist.
    Returns the path written to.
    """
    d = config_dir()
    d.mkdir(parents=True, exist_ok=True)
    path = config_path()
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return path
