"""Query-time entry point.

Vector search runs first. Lexical (BM25) results come from LanceDB's native
full-text index and are consulted in two cases:

- the query cannot be embedded, or the stored vectors of the query model have
  a different width: every live record is a lexical candidate
- vector search returns fewer than ``min_vector_results`` hits: only records
  with no vector for the query model (pending, failed, oversized) are
  candidates, so nothing vector search rejected comes back

Lexical hits are appended after the vector hits. The two score scales are not
comparable and are never normalized against each other.
"""

from __future__ import annotations

import logging
from typing import Any

from config import Config
from embeddings import EmbeddingGenerator
from errors import AllProvidersExhausted, DimensionMismatch, OversizedInputError
from memories import embedding_text
from models import (
    OWNER_CHUNK,
    OWNER_KNOWLEDGE,
    OWNER_MEMORY,
    KnowledgeEntry,
    MemoryRecord,
    SearchOptions,
    SearchResult,
    VectorMatch,
)
from store import CHUNKS, KNOWLEDGE, MEMORIES, MemoryStore
from utils import created_since, created_until, escape_filter_value, excerpt, in_filter
from vector_store import VectorStore

logger = logging.getLogger("recall.retrieval")

TABLES = {OWNER_CHUNK: CHUNKS, OWNER_KNOWLEDGE: KNOWLEDGE, OWNER_MEMORY: MEMORIES}


def normalize_topic(topic: str) -> str:
    """Topic tags are stored lowercase with hyphens as underscores."""
    return topic.strip().lower().replace("-", "_")


def searchable_text(owner_type: str, row: dict[str, Any]) -> str:
    if owner_type == OWNER_KNOWLEDGE:
        return KnowledgeEntry.from_row(row).embedding_text
    if owner_type == OWNER_MEMORY:
        return embedding_text(MemoryRecord.from_row(row))
    return row["raw_text"]


class RetrievalOrchestrator:
    def __init__(self, store: MemoryStore, embeddings: EmbeddingGenerator, vectors: VectorStore, config: Config):
        self.store = store
        self.embeddings = embeddings
        self.vectors = vectors
        self.config = config

    def query(self, text: str, options: SearchOptions | None = None) -> list[SearchResult]:
        options = options or SearchOptions(limit=self.config.default_limit, threshold=self.config.default_threshold)
        if not text.strip():
            raise ValueError("query is required")
        if options.limit <= 0:
            raise ValueError(f"limit must be positive, got {options.limit}")

        candidates = self.candidates(options)
        if not candidates:
            return []

        try:
            embedding = self.embeddings.embed(text, model=options.model)
            matches = self.vectors.search(
                embedding.model,
                embedding.values,
                limit=options.limit,
                threshold=options.threshold,
                owner_type=options.owner_type,
                owner_ids=candidates,
            )
        except (AllProvidersExhausted, OversizedInputError, DimensionMismatch) as e:
            logger.warning("Vector search unavailable, using lexical search: %s", e)
            return self._lexical(text, options.owner_type, candidates, options.limit)

        results = self._vector_results(options.owner_type, matches)
        if len(results) < min(self.config.min_vector_results, options.limit):
            unembedded = candidates - self.vectors.owners(options.owner_type, embedding.model)
            results += self._lexical(text, options.owner_type, unembedded, options.limit - len(results))
        return results

    def candidates(self, options: SearchOptions) -> set[str]:
        """Ids of live records of ``options.owner_type`` that pass its filters."""
        owner_type = options.owner_type
        if owner_type not in TABLES:
            raise ValueError(f"Unknown owner type '{owner_type}'")
        if options.topic is not None and owner_type != OWNER_CHUNK:
            raise ValueError("topic filter only applies to conversation chunks")

        if owner_type == OWNER_CHUNK:
            where = None
            if options.topic is not None:
                where = f"topic_tags LIKE '%\"{escape_filter_value(normalize_topic(options.topic))}\"%'"
            rows = self.store.query(CHUNKS, where=where, columns=["id", "created_at"])
        elif owner_type == OWNER_KNOWLEDGE:
            rows = self.store.query(KNOWLEDGE, where="superseded_by IS NULL", columns=["id", "created_at"])
        else:
            rows = self.store.query(MEMORIES, columns=["id", "created_at", "supersedes"])
            replaced = {r["supersedes"] for r in rows if r["supersedes"]}
            rows = [r for r in rows if r["id"] not in replaced]

        if options.after is not None:
            rows = [r for r in rows if created_since(r["created_at"], options.after)]
        if options.before is not None:
            rows = [r for r in rows if created_until(r["created_at"], options.before)]
        return {r["id"] for r in rows}

    def _vector_results(self, owner_type: str, matches: list[VectorMatch]) -> list[SearchResult]:
        if not matches:
            return []
        where = in_filter("id", [m.owner_id for m in matches])
        rows = {r["id"]: r for r in self.store.query(TABLES[owner_type], where=where)}
        return [
            self._result(owner_type, rows[m.owner_id], m.similarity, "vector")
            for m in matches
            if m.owner_id in rows
        ]

    def _lexical(self, text: str, owner_type: str, eligible: set[str], limit: int) -> list[SearchResult]:
        if not eligible or limit <= 0:
            return []
        hits = self.store.text_search(TABLES[owner_type], text, where=in_filter("id", eligible), limit=limit)
        return [self._result(owner_type, row, score, "lexical") for row, score in hits]

    def _result(self, owner_type: str, row: dict[str, Any], score: float, method: str) -> SearchResult:
        flags: tuple[str, ...] = ()
        if owner_type == OWNER_CHUNK:
            flags = tuple(name for name in ("decision", "action") if row.get(f"has_{name}"))
        return SearchResult(
            owner_id=row["id"],
            owner_type=owner_type,
            score=score,
            method=method,
            excerpt=excerpt(searchable_text(owner_type, row), self.config.excerpt_chars),
            created_at=row["created_at"],
            flags=flags,
        )
