"""Incremental indexing of transcript sources.

scan -> chunk rows (pending | skipped_oversized)
embed_all -> claim, embed, store vectors (embedded | failed)
enrich / enrich_backfill -> contextual prefix, re-embedded when already indexed

Every step is safe to re-run: unchanged files and chunks are skipped and
embedding runs only pick up chunks nobody else holds a live claim on.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any

from chunker import ChunkUnit, SessionChunker, detect_action, detect_decision, extract_topics, iter_sources
from config import Config
from embeddings import EmbeddingGenerator
from errors import (
    AllProvidersExhausted,
    DimensionMismatch,
    EnrichmentError,
    NotFound,
    OversizedInputError,
    ProviderError,
)
from generation import TextGenerator
from models import (
    EMBEDDED,
    EMBEDDING_STATUSES,
    FAILED,
    IN_PROGRESS,
    OWNER_CHUNK,
    PENDING,
    SKIPPED_OVERSIZED,
    BackfillResult,
    Chunk,
    Embedding,
    EmbedRunResult,
    ScanResult,
    SourceState,
)
from store import CHUNKS, SOURCES, MemoryStore
from utils import content_hash, escape_filter_value, now_iso
from vector_store import VectorStore

logger = logging.getLogger("recall.indexer")

CLAIMABLE = f"embedding_status IN ('{PENDING}', '{FAILED}')"
BACKLOG_LIMIT = 20

CONTEXT_PROMPT = """Given this chunk from a conversation transcript, write a brief context (1-2 sentences, ~50 tokens max) that explains:
- Who is speaking (if identifiable)
- What topic/decision this relates to
- When this occurred (if timestamp available)

Source: {source_id}
Date: {date}
Participants: {speakers}

Chunk:
{text}

Context (be concise, 1-2 sentences):"""


def _id_filter(chunk_id: str) -> str:
    return f"id = '{escape_filter_value(chunk_id)}'"


def _embedding_text(row: dict[str, Any]) -> str:
    return row.get("enriched_text") or row["raw_text"]


class Indexer:
    def __init__(
        self,
        store: MemoryStore,
        embeddings: EmbeddingGenerator,
        vectors: VectorStore,
        config: Config,
        generator: TextGenerator | None = None,
        chunker: SessionChunker | None = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.vectors = vectors
        self.config = config
        self.generator = generator
        self.chunker = chunker or SessionChunker(
            max_chunk_tokens=config.max_chunk_tokens,
            max_chunks_per_source=config.max_chunks_per_source,
            overlap_chars=config.chunk_overlap_chars,
        )

    # =========================================================================
    # Scanning
    # =========================================================================

    def scan(self, source_id: str) -> ScanResult:
        """Chunk one source and persist units that are new or changed."""
        path = self.config.sessions_dir / source_id
        if not path.is_file():
            raise NotFound("source", source_id)

        file_hash = hashlib.sha256(path.read_bytes()).hexdigest()
        source_filter = f"source_id = '{escape_filter_value(source_id)}'"
        state = self.store.get(SOURCES, source_id, key="source_id")
        if state and state["file_hash"] == file_hash:
            return ScanResult(
                chunks_skipped=self.store.count(CHUNKS, source_filter),
                sources_scanned=1,
                sources_unchanged=1,
            )

        scan_time = now_iso()
        mtime = datetime.fromtimestamp(path.stat().st_mtime).isoformat()
        units, lines_skipped = self.chunker.chunk_file(source_id, path, timestamp=mtime)
        existing = {row["sequence_index"]: row for row in self.store.query(CHUNKS, where=source_filter)}

        result = ScanResult(sources_scanned=1, lines_skipped=lines_skipped)
        new_rows = []
        for unit in units:
            digest = content_hash(unit.text)
            stored = existing.pop(unit.sequence_index, None)
            if stored is not None:
                if stored["content_hash"] == digest:
                    result.chunks_skipped += 1
                    continue
                self._remove_chunk(stored["id"])
            new_rows.append(self._new_chunk(source_id, unit, digest, scan_time))

        # positions that no longer exist after the source shrank
        for stale in existing.values():
            self._remove_chunk(stale["id"])

        # keyed on position so an overlapping scan of the same source cannot
        # leave two rows for one position; identical content keeps the stored row
        self.store.upsert(
            CHUNKS,
            new_rows,
            on=["source_id", "sequence_index"],
            update_when="target.content_hash != source.content_hash",
        )
        result.chunks_created = len(new_rows)

        self.store.upsert(
            SOURCES,
            [
                SourceState(
                    source_id=source_id,
                    path=str(path),
                    file_hash=file_hash,
                    chunk_count=len(units),
                    last_indexed=scan_time,
                    status="indexed",
                ).model_dump()
            ],
            on=["source_id"],
        )
        logger.info(
            "Scanned %s: %d new, %d unchanged, %d malformed lines",
            source_id,
            result.chunks_created,
            result.chunks_skipped,
            lines_skipped,
        )
        return result

    def scan_all(self) -> ScanResult:
        total = ScanResult()
        root = self.config.sessions_dir
        for path in iter_sources(root):
            source_id = path.relative_to(root).as_posix()
            try:
                total += self.scan(source_id)
            except OSError as e:
                logger.warning("Could not read source %s: %s", source_id, e)
        return total

    def _new_chunk(self, source_id: str, unit: ChunkUnit, digest: str, scan_time: str) -> dict[str, Any]:
        oversized = len(unit.text) > self.config.max_input_chars
        return Chunk(
            id=uuid.uuid4().hex,
            source_id=source_id,
            sequence_index=unit.sequence_index,
            content_hash=digest,
            raw_text=unit.text,
            token_count=unit.token_count,
            embedding_status=SKIPPED_OVERSIZED if oversized else PENDING,
            speakers=json.dumps(unit.speakers),
            topic_tags=json.dumps(extract_topics(unit.text)),
            has_decision=detect_decision(unit.text),
            has_action=detect_action(unit.text),
            error=f"{len(unit.text)} chars exceeds limit of {self.config.max_input_chars}" if oversized else None,
            created_at=unit.timestamp or scan_time,
            indexed_at=scan_time,
        ).model_dump()

    def _remove_chunk(self, chunk_id: str) -> None:
        self.store.delete(CHUNKS, _id_filter(chunk_id))
        self.vectors.delete_owner(chunk_id, OWNER_CHUNK)

    # =========================================================================
    # Enrichment
    # =========================================================================

    def enrich(self, chunk_id: str) -> str:
        """Store and return ``[Context: ...]`` + raw text; existing enrichment is returned as is."""
        row = self.store.get(CHUNKS, chunk_id)
        if row is None:
            raise NotFound("chunk", chunk_id)
        if row.get("enriched_text"):
            return row["enriched_text"]
        if row["embedding_status"] == SKIPPED_OVERSIZED:
            raise EnrichmentError(f"chunk {chunk_id} is too large to enrich")
        if self.generator is None:
            raise EnrichmentError("no text generator configured")

        prompt = CONTEXT_PROMPT.format(
            source_id=row["source_id"],
            date=row["created_at"][:10],
            speakers=", ".join(json.loads(row["speakers"] or "[]")) or "unknown",
            text=row["raw_text"][:1500],
        )
        try:
            context = " ".join(self.generator.generate(prompt).split())
        except ProviderError as e:
            raise EnrichmentError(f"context generation failed for chunk {chunk_id}: {e}") from e
        if not context:
            raise EnrichmentError(f"empty context for chunk {chunk_id}")

        enriched = f"[Context: {context}]\n\n{row['raw_text']}"
        self.store.update(CHUNKS, _id_filter(chunk_id), {"enriched_text": enriched})
        return enriched

    def enrich_backfill(self, batch_size: int = 50) -> BackfillResult:
        """Enrich up to ``batch_size`` chunks that have no context yet.

        Already-embedded chunks get a new embedding row computed from the
        enriched text; their status does not change.
        """
        where = f"enriched_text IS NULL AND embedding_status != '{SKIPPED_OVERSIZED}'"
        rows = self.store.query(CHUNKS, where=where, limit=batch_size)
        result = BackfillResult()
        for row in rows:
            result.processed += 1
            try:
                enriched = self.enrich(row["id"])
            except EnrichmentError as e:
                logger.warning("Enrichment failed: %s", e)
                result.failed += 1
                continue
            result.completed += 1
            if row["embedding_status"] == EMBEDDED and self._reembed(row["id"], enriched):
                result.reembedded += 1
        result.remaining = self.store.count(CHUNKS, where)
        return result

    def _reembed(self, chunk_id: str, text: str) -> bool:
        try:
            embedding = self.embeddings.embed(text)
            self.vectors.store(chunk_id, OWNER_CHUNK, embedding.model, embedding.values, embedding.provider)
        except (AllProvidersExhausted, OversizedInputError, DimensionMismatch) as e:
            logger.warning("Re-embedding chunk %s failed, keeping previous vector: %s", chunk_id, e)
            return False
        return True

    # =========================================================================
    # Embedding runs
    # =========================================================================

    def reclaim_stale(self) -> int:
        """Return claims older than ``claim_timeout_minutes`` to pending."""
        cutoff = (datetime.now() - timedelta(minutes=self.config.claim_timeout_minutes)).isoformat()
        where = f"embedding_status = '{IN_PROGRESS}' AND claimed_at < '{cutoff}'"
        stale = self.store.count(CHUNKS, where)
        if stale:
            self.store.update(CHUNKS, where, {"embedding_status": PENDING})
            logger.info("Reclaimed %d stale claims", stale)
        return stale

    def _claim(self, chunk_id: str) -> str | None:
        token = uuid.uuid4().hex
        claimed = self.store.conditional_update(
            CHUNKS,
            chunk_id,
            CLAIMABLE,
            {"embedding_status": IN_PROGRESS, "claimed_at": now_iso()},
            token,
        )
        return token if claimed else None

    def _finish(self, chunk_id: str, token: str, status: str, error: str | None = None) -> None:
        where = f"{_id_filter(chunk_id)} AND claim_token = '{token}' AND embedding_status = '{IN_PROGRESS}'"
        self.store.update(CHUNKS, where, {"embedding_status": status, "error": error})

    def embed_all(self, cancel_event: threading.Event | None = None) -> EmbedRunResult:
        """Embed every pending or failed chunk in batches.

        Setting ``cancel_event`` stops the run before the next provider call;
        chunks claimed but not yet embedded go back to pending.
        """
        result = EmbedRunResult(reclaimed=self.reclaim_stale())
        candidates = self.store.query(CHUNKS, where=CLAIMABLE)
        batch_size = max(1, self.config.embed_batch_size)

        for start in range(0, len(candidates), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            claimed: list[tuple[dict[str, Any], str]] = []
            for row in candidates[start : start + batch_size]:
                token = self._claim(row["id"])
                if token is None:
                    result.lost_claims += 1
                else:
                    claimed.append((row, token))
            if claimed:
                self._embed_claimed(claimed, result, cancel_event)
            if result.cancelled:
                break

        logger.info(
            "Embedding run: %d embedded, %d failed, %d oversized, %d lost claims%s",
            result.embedded,
            result.failed,
            result.skipped_oversized,
            result.lost_claims,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def _embed_claimed(
        self,
        claimed: list[tuple[dict[str, Any], str]],
        result: EmbedRunResult,
        cancel_event: threading.Event | None,
    ) -> None:
        ready = []
        for row, token in claimed:
            if len(row["raw_text"]) > self.config.max_input_chars:
                self._finish(row["id"], token, SKIPPED_OVERSIZED, "exceeds input limit")
                result.skipped_oversized += 1
            else:
                ready.append((row, token))
        if not ready:
            return
        if cancel_event is not None and cancel_event.is_set():
            self._release(ready)
            result.cancelled = True
            return

        try:
            embeddings = self.embeddings.embed_batch([_embedding_text(row) for row, _ in ready])
        except OversizedInputError:
            self._embed_one_by_one(ready, result, cancel_event)
            return
        except AllProvidersExhausted as e:
            for row, token in ready:
                self._finish(row["id"], token, FAILED, str(e))
            result.failed += len(ready)
            return

        for (row, token), embedding in zip(ready, embeddings):
            self._store_embedding(row["id"], token, embedding, result)

    def _embed_one_by_one(
        self,
        ready: list[tuple[dict[str, Any], str]],
        result: EmbedRunResult,
        cancel_event: threading.Event | None,
    ) -> None:
        for i, (row, token) in enumerate(ready):
            if cancel_event is not None and cancel_event.is_set():
                self._release(ready[i:])
                result.cancelled = True
                return
            try:
                embedding = self.embeddings.embed(_embedding_text(row))
            except OversizedInputError as e:
                self._finish(row["id"], token, SKIPPED_OVERSIZED, str(e))
                result.skipped_oversized += 1
                continue
            except AllProvidersExhausted as e:
                self._finish(row["id"], token, FAILED, str(e))
                result.failed += 1
                continue
            self._store_embedding(row["id"], token, embedding, result)

    def _store_embedding(self, chunk_id: str, token: str, embedding: Embedding, result: EmbedRunResult) -> None:
        try:
            self.vectors.store(chunk_id, OWNER_CHUNK, embedding.model, embedding.values, embedding.provider)
        except DimensionMismatch as e:
            self._finish(chunk_id, token, FAILED, str(e))
            result.failed += 1
            return
        self._finish(chunk_id, token, EMBEDDED)
        result.embedded += 1

    def _release(self, claimed: list[tuple[dict[str, Any], str]]) -> None:
        for row, token in claimed:
            self._finish(row["id"], token, PENDING)

    # =========================================================================
    # Status
    # =========================================================================

    def embed_status(self) -> dict[str, Any]:
        counts = {
            status: self.store.count(CHUNKS, f"embedding_status = '{status}'")
            for status in EMBEDDING_STATUSES
        }
        backlog = self.store.query(
            CHUNKS,
            where=f"embedding_status IN ('{FAILED}', '{SKIPPED_OVERSIZED}')",
            limit=BACKLOG_LIMIT,
            columns=["id", "source_id", "sequence_index", "embedding_status", "error"],
        )
        return {
            "counts": counts,
            "total": self.store.count(CHUNKS),
            "enriched": self.store.count(CHUNKS, "enriched_text IS NOT NULL"),
            "sources": self.store.count(SOURCES),
            "backlog": backlog,
        }
