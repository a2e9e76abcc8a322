"""Configuration for recall-mcp."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True, slots=True)
class Config:
    """Indexer, search and server configuration with sensible defaults.

    Defaults are read from the environment when the class is defined, so tests
    and callers override fields with ``dataclasses.replace`` instead of
    setting environment variables after import.
    """

    db_path: Path = Path(os.environ.get("RECALL_DB_PATH", Path.home() / ".recall-mcp" / "lancedb"))
    sessions_dir: Path = Path(
        os.environ.get("RECALL_SESSIONS_DIR", Path.home() / ".recall-mcp" / "sessions")
    )
    secrets_dir: Path = Path(os.environ.get("RECALL_SECRETS_DIR", Path.home() / ".secrets"))

    # Embedding providers, tried in this order
    embedding_providers: tuple[str, ...] = field(
        default_factory=lambda: _env_list("EMBEDDING_PROVIDERS", "openai,google,ollama")
    )
    openai_model: str = os.environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    google_model: str = os.environ.get("GOOGLE_EMBEDDING_MODEL", "gemini-embedding-001")
    google_dim: int = int(os.environ.get("GOOGLE_EMBEDDING_DIM", "1536"))
    ollama_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    ollama_dim: int = int(os.environ.get("EMBEDDING_DIM", "1024"))
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    llm_model: str = os.environ.get("ENRICHMENT_MODEL", "gemini-2.5-flash-lite")
    request_timeout: float = 30.0
    max_retries: int = 2

    # Chunking
    max_chunk_tokens: int = 500  # ~2000 chars
    max_chunks_per_source: int = 2000
    chunk_overlap_chars: int = 200
    max_input_chars: int = 8000  # larger units are stored but never embedded

    # Embedding runs
    embed_batch_size: int = 10
    claim_timeout_minutes: int = 30
    index_interval_hours: float = float(os.environ.get("RECALL_INDEX_INTERVAL_HOURS", "0"))

    # Search
    default_limit: int = 5
    max_limit: int = 50
    default_threshold: float = 0.5
    min_vector_results: int = 3
    excerpt_chars: int = 200


CONFIG = Config()

VALID_MEMORY_CATEGORIES = frozenset(
    {"fact", "preference", "lesson", "todo", "person", "project", "other"}
)

LOG_PREFIX = "[recall-mcp]"


def setup_logging(level: int = logging.INFO) -> None:
    """Send diagnostics to stderr; stdout belongs to the MCP stdio transport."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(f"{LOG_PREFIX} %(levelname)s: %(message)s"))
    root = logging.getLogger("recall")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False
