"""Memory log: explicit facts, preferences and lessons.

Content never changes after it is written. ``revise`` stores a new version
that points at the one it replaces, so every stored vector always matches
the text it was computed from. Listings and searches only see the latest
version of each memory.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict

from config import VALID_MEMORY_CATEGORIES
from embeddings import EmbeddingGenerator
from errors import AllProvidersExhausted, DimensionMismatch, NotFound, OversizedInputError
from models import OWNER_MEMORY, MemoryRecord, MemoryRow, SearchOptions
from store import MEMORIES, MemoryStore
from utils import created_since, created_until, escape_filter_value, in_filter, now_iso
from vector_store import VectorStore

logger = logging.getLogger("recall.memories")


def normalize_category(category: str) -> str:
    normalized = category.strip().lower()
    if normalized not in VALID_MEMORY_CATEGORIES:
        raise ValueError(f"Invalid category '{category}'. Valid: {sorted(VALID_MEMORY_CATEGORIES)}")
    return normalized


def validate_importance(importance: int) -> int:
    if not 1 <= importance <= 10:
        raise ValueError(f"importance must be between 1 and 10, got {importance}")
    return int(importance)


class MemoryLog:
    def __init__(self, store: MemoryStore, embeddings: EmbeddingGenerator, vectors: VectorStore):
        self.store = store
        self.embeddings = embeddings
        self.vectors = vectors

    def add(
        self,
        category: str,
        subject: str,
        content: str,
        importance: int = 5,
        source: str = "manual",
    ) -> MemoryRecord:
        if not content.strip():
            raise ValueError("content is required")
        record = MemoryRecord(
            id=uuid.uuid4().hex,
            category=normalize_category(category),
            subject=subject.strip(),
            content=content,
            importance=validate_importance(importance),
            source=source,
            created_at=now_iso(),
        )
        return self._write(record)

    def revise(self, memory_id: str, content: str, importance: int | None = None) -> MemoryRecord:
        """Store ``content`` as the next version of ``memory_id``."""
        if not content.strip():
            raise ValueError("content is required")
        current = self.get(memory_id)
        if self._successor(memory_id) is not None:
            raise ValueError(f"memory {memory_id} has already been revised; revise the latest version")
        record = MemoryRecord(
            id=uuid.uuid4().hex,
            category=current.category,
            subject=current.subject,
            content=content,
            importance=validate_importance(importance) if importance is not None else current.importance,
            source=current.source,
            created_at=now_iso(),
            version=current.version + 1,
            supersedes=current.id,
        )
        return self._write(record)

    def _write(self, record: MemoryRecord) -> MemoryRecord:
        self.store.add(MEMORIES, [MemoryRow(**asdict(record)).model_dump()])
        try:
            embedding = self.embeddings.embed(embedding_text(record))
            self.vectors.store(record.id, OWNER_MEMORY, embedding.model, embedding.values, embedding.provider)
        except (AllProvidersExhausted, OversizedInputError, DimensionMismatch) as e:
            logger.warning("Failed to generate embedding for memory %s: %s", record.id, e)
        return record

    def _successor(self, memory_id: str) -> str | None:
        row = self.store.get(MEMORIES, memory_id, key="supersedes")
        return row["id"] if row else None

    def get(self, memory_id: str) -> MemoryRecord:
        row = self.store.get(MEMORIES, memory_id)
        if row is None:
            raise NotFound("memory", memory_id)
        return MemoryRecord.from_row(row)

    def history(self, memory_id: str) -> list[MemoryRecord]:
        """All versions of a memory, oldest first."""
        versions = [self.get(memory_id)]
        while versions[0].supersedes:
            versions.insert(0, self.get(versions[0].supersedes))
        successor = self._successor(versions[-1].id)
        while successor is not None:
            versions.append(self.get(successor))
            successor = self._successor(successor)
        return versions

    def latest(self, category: str | None = None) -> list[MemoryRecord]:
        """Current version of every memory, most important first."""
        where = f"category = '{escape_filter_value(normalize_category(category))}'" if category else None
        rows = self.store.query(MEMORIES, where=where)
        replaced = {row["supersedes"] for row in self.store.query(MEMORIES, columns=["supersedes"]) if row["supersedes"]}
        records = [MemoryRecord.from_row(row) for row in rows if row["id"] not in replaced]
        records.sort(key=lambda r: r.created_at, reverse=True)
        records.sort(key=lambda r: r.importance, reverse=True)
        return records

    def search(self, text: str, limit: int = 10) -> list[MemoryRecord]:
        """Lexical (BM25) search over subject and content, latest versions only."""
        latest = {r.id for r in self.latest()}
        if not latest:
            return []
        hits = self.store.text_search(MEMORIES, text, where=in_filter("id", latest), limit=limit)
        return [MemoryRecord.from_row(row) for row, _ in hits]

    def semantic_search(self, text: str, options: SearchOptions | None = None) -> list[tuple[MemoryRecord, float]]:
        options = options or SearchOptions(owner_type=OWNER_MEMORY)
        records = {r.id: r for r in self.latest()}
        if options.after is not None:
            records = {k: r for k, r in records.items() if created_since(r.created_at, options.after)}
        if options.before is not None:
            records = {k: r for k, r in records.items() if created_until(r.created_at, options.before)}
        if not records:
            return []
        embedding = self.embeddings.embed(text, model=options.model)
        matches = self.vectors.search(
            embedding.model,
            embedding.values,
            limit=options.limit,
            threshold=options.threshold,
            owner_type=OWNER_MEMORY,
            owner_ids=set(records),
        )
        return [(records[m.owner_id], m.similarity) for m in matches]


def embedding_text(record: MemoryRecord) -> str:
    return f"{record.subject}: {record.content}" if record.subject else record.content
