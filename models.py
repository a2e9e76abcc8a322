"""Shared data models for recall-mcp.

LanceDB table schemas (LanceModel) plus the plain dataclasses passed between
components. IMPORTANT: changes to a LanceModel schema require migration of
existing tables.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lancedb.pydantic import LanceModel

# Chunk embedding states
PENDING = "pending"
IN_PROGRESS = "in_progress"
EMBEDDED = "embedded"
SKIPPED_OVERSIZED = "skipped_oversized"
FAILED = "failed"

EMBEDDING_STATUSES = (PENDING, IN_PROGRESS, EMBEDDED, SKIPPED_OVERSIZED, FAILED)

# Owner types in the vector store
OWNER_CHUNK = "chunk"
OWNER_KNOWLEDGE = "knowledge"
OWNER_MEMORY = "memory"


# =============================================================================
# LanceDB Schemas
# =============================================================================


class Chunk(LanceModel):
    """A bounded unit of transcript text, the unit of embedding."""

    id: str  # UUID hex
    source_id: str
    sequence_index: int
    content_hash: str  # sha256 of raw_text
    raw_text: str
    enriched_text: str | None = None
    token_count: int
    embedding_status: str
    speakers: str  # JSON array as string
    topic_tags: str  # JSON array as string
    has_decision: bool = False
    has_action: bool = False
    claim_token: str | None = None
    claimed_at: str | None = None
    error: str | None = None
    created_at: str
    indexed_at: str


class SourceState(LanceModel):
    """Whole-file hash of an indexed source, for cheap unchanged checks."""

    source_id: str
    path: str
    file_hash: str
    chunk_count: int
    last_indexed: str
    status: str


class KnowledgeRow(LanceModel):
    id: str
    title: str
    summary: str
    source_type: str
    tags: str  # JSON array as string
    confidence: float
    verified: bool
    source_url: str | None = None
    expires_at: str | None = None
    superseded_by: str | None = None
    created_at: str
    updated_at: str


class MemoryRow(LanceModel):
    id: str
    category: str
    subject: str
    content: str
    importance: int
    source: str
    version: int = 1
    supersedes: str | None = None
    created_at: str


class EmbeddingModelRow(LanceModel):
    """Registry pinning the vector width of each embedding model."""

    model: str
    dimensions: int
    table_name: str
    created_at: str


# =============================================================================
# Domain Objects
# =============================================================================


@dataclass(slots=True)
class KnowledgeEntry:
    title: str
    summary: str
    source_type: str = "manual"
    tags: set[str] = field(default_factory=set)
    confidence: float = 1.0
    verified: bool = False
    source_url: str | None = None
    expires_at: str | None = None
    superseded_by: str | None = None
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> KnowledgeEntry:
        return cls(
            id=row["id"],
            title=row["title"],
            summary=row["summary"],
            source_type=row["source_type"],
            tags=set(json.loads(row["tags"]) if row["tags"] else []),
            confidence=float(row["confidence"]),
            verified=bool(row["verified"]),
            source_url=row.get("source_url"),
            expires_at=row.get("expires_at"),
            superseded_by=row.get("superseded_by"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def embedding_text(self) -> str:
        return f"{self.title} {self.summary}"


@dataclass(slots=True)
class KnowledgePatch:
    """Fields ``update`` may change; ``None`` leaves a field as it is."""

    title: str | None = None
    summary: str | None = None
    tags: set[str] | None = None
    confidence: float | None = None
    source_type: str | None = None
    source_url: str | None = None
    expires_at: str | None = None


@dataclass(slots=True)
class KnowledgeFilter:
    source_type: str | None = None
    verified: bool | None = None
    tag: str | None = None
    min_confidence: float = 0.0
    include_expired: bool = False
    include_superseded: bool = False
    limit: int = 20


@dataclass(slots=True)
class MemoryRecord:
    id: str
    category: str
    subject: str
    content: str
    importance: int
    source: str
    created_at: str
    version: int = 1
    supersedes: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> MemoryRecord:
        return cls(
            id=row["id"],
            category=row["category"],
            subject=row["subject"],
            content=row["content"],
            importance=int(row["importance"]),
            source=row["source"],
            created_at=row["created_at"],
            version=int(row.get("version") or 1),
            supersedes=row.get("supersedes"),
        )


@dataclass(frozen=True, slots=True)
class Embedding:
    """A vector tagged with the model and provider that produced it."""

    values: list[float]
    model: str
    provider: str

    @property
    def dimensions(self) -> int:
        return len(self.values)


@dataclass(frozen=True, slots=True)
class VectorMatch:
    owner_id: str
    owner_type: str
    similarity: float
    created_at: str


@dataclass(frozen=True, slots=True)
class SearchOptions:
    """Per-query settings for vector and lexical search.

    model: embedding model to search in; ``None`` uses whichever provider
        answers first.
    limit: maximum number of results.
    threshold: minimum cosine similarity for vector hits (default 0.5).
    after: only records created at or after this time.
    before: only records created at or before this time.
    topic: only chunks tagged with this topic (chunk scope only).
    owner_type: which kind of record to search.
    """

    model: str | None = None
    limit: int = 5
    threshold: float = 0.5
    after: datetime | None = None
    before: datetime | None = None
    topic: str | None = None
    owner_type: str = OWNER_CHUNK


@dataclass(frozen=True, slots=True)
class SearchResult:
    owner_id: str
    owner_type: str
    score: float
    method: str  # "vector" or "lexical"
    excerpt: str
    created_at: str
    flags: tuple[str, ...] = ()  # "decision", "action" for chunks


@dataclass(slots=True)
class ScanResult:
    chunks_created: int = 0
    chunks_skipped: int = 0
    sources_scanned: int = 0
    sources_unchanged: int = 0
    lines_skipped: int = 0

    def __iadd__(self, other: ScanResult) -> ScanResult:
        self.chunks_created += other.chunks_created
        self.chunks_skipped += other.chunks_skipped
        self.sources_scanned += other.sources_scanned
        self.sources_unchanged += other.sources_unchanged
        self.lines_skipped += other.lines_skipped
        return self


@dataclass(slots=True)
class EmbedRunResult:
    embedded: int = 0
    failed: int = 0
    skipped_oversized: int = 0
    lost_claims: int = 0
    reclaimed: int = 0
    cancelled: bool = False


@dataclass(slots=True)
class BackfillResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    reembedded: int = 0
    remaining: int = 0
