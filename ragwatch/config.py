"""Centralised configuration for ragwatch.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.ragwatch/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from ragwatch.filters import DEFAULT_COMMON_EXCLUDES, DEFAULT_EXTENSIONS, IndexingConfig

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "db_path": "",  # Empty means <data dir>/index.db
    "base_table": "ragwatch_embeddings",
    "embedding_provider": "ollama",
    "embedding_base_url": "",  # Empty means the provider's default URL
    "embedding_model": "",  # Empty means the provider's default model
    "embedding_api_key": "",
    "preferred_dim": "",  # Empty means discover from the first embedding
    "max_chars_per_chunk": "1500",
    "chunk_overlap": "150",
    "retry_attempts": "4",
    "retry_base_delay_ms": "150",
    "retry_increment_ms": "150",
    "throttle_ms": "30",
    "request_timeout": "30",
    "distance_metric": "cosine",
    "max_file_bytes": "2000000",
    "supported_extensions": ",".join(sorted(DEFAULT_EXTENSIONS)),
    "common_excludes": ",".join(DEFAULT_COMMON_EXCLUDES),
    "debounce_ms": "500",
    "watch_workers": "4",
}

# Map config keys to the corresponding env-var names
_ENV_MAP = {
    "db_path": "RAGWATCH_DB_PATH",
    "base_table": "RAGWATCH_EMBED_TABLE",
    "embedding_provider": "RAGWATCH_EMBED_PROVIDER",
    "embedding_base_url": "RAGWATCH_EMBED_BASE_URL",
    "embedding_model": "RAGWATCH_EMBED_MODEL",
    "embedding_api_key": "OPENAI_API_KEY",
    "preferred_dim": "RAGWATCH_EMBED_DIM",
    "max_chars_per_chunk": "RAGWATCH_EMBED_MAX_CHARS",
    "chunk_overlap": "RAGWATCH_EMBED_OVERLAP",
    "retry_attempts": "RAGWATCH_RETRY_ATTEMPTS",
    "retry_base_delay_ms": "RAGWATCH_RETRY_BASE_MS",
    "retry_increment_ms": "RAGWATCH_RETRY_INCREMENT_MS",
    "throttle_ms": "RAGWATCH_THROTTLE_MS",
    "request_timeout": "RAGWATCH_EMBED_TIMEOUT",
    "distance_metric": "RAGWATCH_DISTANCE_METRIC",
    "max_file_bytes": "RAGWATCH_EMBED_MAX_FILE_BYTES",
    "supported_extensions": "RAGWATCH_INDEXING_SUPPORTED_EXTENSIONS",
    "common_excludes": "RAGWATCH_INDEXING_COMMON_EXCLUDES",
    "debounce_ms": "RAGWATCH_WATCH_DEBOUNCE_MS",
    "watch_workers": "RAGWATCH_WATCH_WORKERS",
}

DISTANCE_METRICS = ("cosine", "l2", "l1")

PROVIDER_DEFAULTS = {
    "ollama": {"base_url": "http://localhost:11434", "model": "nomic-embed-text:latest"},
    "openai": {"base_url": "https://api.openai.com/v1", "model": "text-embedding-3-small"},
}


# ── data directory (configurable via RAGWATCH_DATA_DIR) ───────────────
def _get_data_dir() -> Path:
    """Return the data directory, respecting RAGWATCH_DATA_DIR env var."""
    env_dir = os.environ.get("RAGWATCH_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".ragwatch"


_config_dir = _get_data_dir()
_config_path = _config_dir / "config.json"

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

    # 3) ~/.ragwatch/config.json
    val = _file_cfg.get(key)
    if val is not None and str(val):
        if isinstance(val, list):
            return ",".join(str(v) for v in val)
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


# ── public constants ──────────────────────────────────────────────────
BASE_TABLE: str = _get("base_table")
EMBEDDING_PROVIDER: str = _get("embedding_provider").strip().lower()
EMBEDDING_BASE_URL: str = _get("embedding_base_url")
EMBEDDING_MODEL: str = _get("embedding_model")
EMBEDDING_API_KEY: str = _get("embedding_api_key")
PREFERRED_DIM: int | None = int(_get("preferred_dim")) if _get("preferred_dim") else None
MAX_CHARS_PER_CHUNK: int = int(_get("max_chars_per_chunk"))
CHUNK_OVERLAP: int = int(_get("chunk_overlap"))
RETRY_ATTEMPTS: int = int(_get("retry_attempts"))
RETRY_BASE_DELAY_MS: int = int(_get("retry_base_delay_ms"))
RETRY_INCREMENT_MS: int = int(_get("retry_increment_ms"))
THROTTLE_MS: int = int(_get("throttle_ms"))
REQUEST_TIMEOUT: float = float(_get("request_timeout"))
DISTANCE_METRIC: str = _get("distance_metric").strip().lower()
MAX_FILE_BYTES: int = int(_get("max_file_bytes"))
SUPPORTED_EXTENSIONS: list[str] = _split_list(_get("supported_extensions"))
COMMON_EXCLUDES: list[str] = _split_list(_get("common_excludes"))
DEBOUNCE_MS: int = int(_get("debounce_ms"))
WATCH_WORKERS: int = int(_get("watch_workers"))


def get_db_path() -> Path:
    """Return the path to the vector index database."""
    custom_path = _get("db_path")
    if custom_path:
        return Path(custom_path)
    return _get_data_dir() / "index.db"


# ── typed settings ────────────────────────────────────────────────────


@dataclass(frozen=True)
class EmbeddingSettings:
    """Connection details for the embedding backend."""

    provider: str = "ollama"
    base_url: str = ""
    model: str = ""
    api_key: str = ""
    timeout: float = 30.0

    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return PROVIDER_DEFAULTS.get(self.provider, PROVIDER_DEFAULTS["ollama"])[
            "base_url"
        ]

    def resolved_model(self) -> str:
        if self.model:
            return self.model
        return PROVIDER_DEFAULTS.get(self.provider, PROVIDER_DEFAULTS["ollama"])[
            "model"
        ]


@dataclass(frozen=True)
class RetrySettings:
    """Linear backoff: the wait before retry n is base + n * increment."""

    attempts: int = 4
    base_delay: float = 0.15
    increment: float = 0.15


@dataclass(frozen=True)
class StoreSettings:
    """Chunking and storage parameters for a VectorStore."""

    max_chars: int = 1500
    overlap: int = 150
    preferred_dim: int | None = None
    distance_metric: str = "cosine"


def embedding_settings() -> EmbeddingSettings:
    return EmbeddingSettings(
        provider=EMBEDDING_PROVIDER,
        base_url=EMBEDDING_BASE_URL,
        model=EMBEDDING_MODEL,
        api_key=EMBEDDING_API_KEY,
        timeout=REQUEST_TIMEOUT,
    )


def retry_settings() -> RetrySettings:
    return RetrySettings(
        attempts=RETRY_ATTEMPTS,
        base_delay=RETRY_BASE_DELAY_MS / 1000.0,
        increment=RETRY_INCREMENT_MS / 1000.0,
    )


def store_settings() -> StoreSettings:
    if DISTANCE_METRIC not in DISTANCE_METRICS:
        raise ValueError(
            f"Unsupported distance metric '{DISTANCE_METRIC}'. "
            f"Choose one of: {', '.join(DISTANCE_METRICS)}"
        )
    return StoreSettings(
        max_chars=MAX_CHARS_PER_CHUNK,
        overlap=CHUNK_OVERLAP,
        preferred_dim=PREFERRED_DIM,
        distance_metric=DISTANCE_METRIC,
    )


def indexing_config() -> IndexingConfig:
    """Return the indexing policy built from configuration."""
    return IndexingConfig(
        max_file_bytes=MAX_FILE_BYTES,
        supported_extensions=frozenset(
            ext.lower().lstrip(".") for ext in SUPPORTED_EXTENSIONS
        ),
        common_excludes=tuple(COMMON_EXCLUDES),
    )


# ── logging ───────────────────────────────────────────────────────────


def setup_logging(log_dir: str | Path = "log", level: int = logging.DEBUG) -> str:
    """Configure file logging for an application embedding ragwatch.

    The library itself only logs through module loggers; the host calls
    this once at startup. Returns the log file path.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_path / f"ragwatch-{timestamp}.log"
    logging.basicConfig(
        filename=str(log_file),
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    return str(log_file)

