"""Knowledge cache: distilled facts with confidence and verification state.

An entry's vector is computed from ``KnowledgeEntry.embedding_text`` and lives in
the vector store under owner type ``knowledge``. Failing to embed never blocks a
write; the entry simply has no vector until the next update.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from dataclasses import replace
from typing import Any

from embeddings import EmbeddingGenerator
from errors import AllProvidersExhausted, DimensionMismatch, NotFound, OversizedInputError
from models import (
    OWNER_KNOWLEDGE,
    KnowledgeEntry,
    KnowledgeFilter,
    KnowledgePatch,
    KnowledgeRow,
    SearchOptions,
)
from store import KNOWLEDGE, MemoryStore
from utils import created_since, created_until, escape_filter_value, now_iso
from vector_store import VectorStore

logger = logging.getLogger("recall.knowledge")


def _validate_confidence(confidence: float) -> float:
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence must be between 0 and 1, got {confidence}")
    return float(confidence)


def _id_filter(entry_id: str) -> str:
    return f"id = '{escape_filter_value(entry_id)}'"


class KnowledgeCache:
    def __init__(self, store: MemoryStore, embeddings: EmbeddingGenerator, vectors: VectorStore):
        self.store = store
        self.embeddings = embeddings
        self.vectors = vectors

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add(self, entry: KnowledgeEntry) -> str:
        if not entry.title.strip() or not entry.summary.strip():
            raise ValueError("title and summary are required")
        _validate_confidence(entry.confidence)
        entry_id = uuid.uuid4().hex
        timestamp = now_iso()
        row = KnowledgeRow(
            id=entry_id,
            title=entry.title,
            summary=entry.summary,
            source_type=entry.source_type,
            tags=json.dumps(sorted(entry.tags)),
            confidence=entry.confidence,
            verified=entry.verified,
            source_url=entry.source_url,
            expires_at=entry.expires_at,
            created_at=timestamp,
            updated_at=timestamp,
        )
        self.store.add(KNOWLEDGE, [row.model_dump()])
        self._embed(entry_id, entry.embedding_text)
        return entry_id

    def update(self, entry_id: str, patch: KnowledgePatch) -> KnowledgeEntry:
        """Apply ``patch``; a changed summary clears ``verified``."""
        current = self.get(entry_id)
        values: dict[str, Any] = {}
        if patch.title is not None and patch.title != current.title:
            values["title"] = patch.title
        if patch.summary is not None and patch.summary != current.summary:
            values["summary"] = patch.summary
            values["verified"] = False
        if patch.tags is not None:
            values["tags"] = json.dumps(sorted(patch.tags))
        if patch.confidence is not None:
            values["confidence"] = _validate_confidence(patch.confidence)
        for name in ("source_type", "source_url", "expires_at"):
            value = getattr(patch, name)
            if value is not None:
                values[name] = value
        if not values:
            return current

        values["updated_at"] = now_iso()
        self.store.update(KNOWLEDGE, _id_filter(entry_id), values)
        updated = self.get(entry_id)
        if "title" in values or "summary" in values:
            self._embed(entry_id, updated.embedding_text)
        return updated

    def verify(self, entry_id: str, new_confidence: float | None = None) -> KnowledgeEntry:
        """Mark verified; confidence changes only when ``new_confidence`` is given."""
        current = self.get(entry_id)
        values: dict[str, Any] = {}
        if not current.verified:
            values["verified"] = True
        if new_confidence is not None and new_confidence != current.confidence:
            values["confidence"] = _validate_confidence(new_confidence)
        if not values:
            return current
        values["updated_at"] = now_iso()
        self.store.update(KNOWLEDGE, _id_filter(entry_id), values)
        return replace(current, **values)

    def supersede(self, old_id: str, entry: KnowledgeEntry) -> str:
        """Add ``entry`` as the replacement of ``old_id``; the old entry drops out of listings."""
        self.get(old_id)
        new_id = self.add(entry)
        self.store.update(
            KNOWLEDGE, _id_filter(old_id), {"superseded_by": new_id, "updated_at": now_iso()}
        )
        return new_id

    def delete(self, entry_id: str) -> None:
        self.get(entry_id)
        self.store.delete(KNOWLEDGE, _id_filter(entry_id))
        self.vectors.delete_owner(entry_id, OWNER_KNOWLEDGE)

    def _embed(self, entry_id: str, text: str) -> None:
        try:
            embedding = self.embeddings.embed(text)
            self.vectors.store(entry_id, OWNER_KNOWLEDGE, embedding.model, embedding.values, embedding.provider)
        except (AllProvidersExhausted, OversizedInputError, DimensionMismatch) as e:
            logger.warning("Failed to generate embedding for knowledge %s: %s", entry_id, e)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, entry_id: str) -> KnowledgeEntry:
        row = self.store.get(KNOWLEDGE, entry_id)
        if row is None:
            raise NotFound("knowledge", entry_id)
        return KnowledgeEntry.from_row(row)

    def list(self, criteria: KnowledgeFilter | None = None) -> list[KnowledgeEntry]:
        """Entries matching ``criteria``, newest first."""
        criteria = criteria or KnowledgeFilter()
        entries = self._matching(criteria)
        entries.sort(key=lambda e: e.created_at or "", reverse=True)
        return entries[: criteria.limit]

    def search(self, text: str, criteria: KnowledgeFilter | None = None) -> list[KnowledgeEntry]:
        """Lexical (BM25) search over title and summary, best match first."""
        criteria = criteria or KnowledgeFilter()
        hits = self.store.text_search(KNOWLEDGE, text, where=self._where(criteria), limit=criteria.limit)
        return [KnowledgeEntry.from_row(row) for row, _ in hits]

    def semantic_search(
        self, text: str, options: SearchOptions | None = None, criteria: KnowledgeFilter | None = None
    ) -> list[tuple[KnowledgeEntry, float]]:
        """Entries ranked by cosine similarity to ``text``.

        Raises ``AllProvidersExhausted`` when the query cannot be embedded and
        ``DimensionMismatch`` when the stored vectors of the model have another width.
        """
        options = options or SearchOptions(owner_type=OWNER_KNOWLEDGE)
        entries = {e.id: e for e in self._matching(criteria or KnowledgeFilter())}
        if options.after is not None:
            entries = {k: e for k, e in entries.items() if created_since(e.created_at, options.after)}
        if options.before is not None:
            entries = {k: e for k, e in entries.items() if created_until(e.created_at, options.before)}
        if not entries:
            return []
        embedding = self.embeddings.embed(text, model=options.model)
        matches = self.vectors.search(
            embedding.model,
            embedding.values,
            limit=options.limit,
            threshold=options.threshold,
            owner_type=OWNER_KNOWLEDGE,
            owner_ids=set(entries),
        )
        return [(entries[m.owner_id], m.similarity) for m in matches]

    def stats(self) -> dict[str, Any]:
        rows = self.store.query(KNOWLEDGE)
        now = now_iso()
        ids = {row["id"] for row in rows}
        return {
            "total": len(rows),
            "verified": sum(1 for row in rows if row["verified"]),
            "with_embeddings": len(ids & self.vectors.owners(OWNER_KNOWLEDGE)),
            "expired": sum(1 for row in rows if row.get("expires_at") and row["expires_at"] <= now),
            "superseded": sum(1 for row in rows if row.get("superseded_by")),
            "by_source": dict(Counter(row["source_type"] for row in rows)),
        }

    def _where(self, criteria: KnowledgeFilter) -> str:
        clauses = [f"confidence >= {float(criteria.min_confidence)}"]
        if criteria.source_type:
            clauses.append(f"source_type = '{escape_filter_value(criteria.source_type)}'")
        if criteria.verified is not None:
            clauses.append(f"verified = {str(criteria.verified).lower()}")
        if not criteria.include_superseded:
            clauses.append("superseded_by IS NULL")
        if not criteria.include_expired:
            clauses.append(f"(expires_at IS NULL OR expires_at > '{now_iso()}')")
        if criteria.tag:
            # tags are stored as a JSON array string
            clauses.append(f"tags LIKE '%{escape_filter_value(json.dumps(criteria.tag))}%'")
        return " AND ".join(clauses)

    def _matching(self, criteria: KnowledgeFilter) -> list[KnowledgeEntry]:
        rows = self.store.query(KNOWLEDGE, where=self._where(criteria))
        return [KnowledgeEntry.from_row(row) for row in rows]
