"""Tests for scanning, claiming, embedding and enrichment."""

import threading
from dataclasses import replace

import pytest

from conftest import ConceptProvider, FailingProvider, FakeGenerator
from embeddings import EmbeddingGenerator
from errors import EnrichmentError, NotFound
from indexer import Indexer
from models import EMBEDDED, FAILED, IN_PROGRESS, PENDING, SKIPPED_OVERSIZED
from store import CHUNKS, SOURCES
from utils import now_iso, parse_timestamp
from vector_store import table_name_for

EXCHANGES = [
    ("How should we store the vectors?", "We decided to use LanceDB with one table per model."),
    ("What about the quick fox example?", "The quick brown fox jumps over the lazy dog."),
    ("Any follow up?", "Remember to add retries to the provider calls."),
]


def chunk_rows(store, source_id=None):
    where = f"source_id = '{source_id}'" if source_id else None
    return sorted(store.query(CHUNKS, where=where), key=lambda r: (r["source_id"], r["sequence_index"]))


def statuses(store):
    return [r["embedding_status"] for r in chunk_rows(store)]


def set_status(store, chunk_id, **values):
    store.update(CHUNKS, f"id = '{chunk_id}'", values)


# =============================================================================
# Scanning
# =============================================================================


class TestScan:
    """Tests for source scanning."""

    def test_scan_creates_pending_chunks(self, indexer, store, write_transcript):
        """New exchanges become pending chunks with flags and timestamps."""
        write_transcript("s1.jsonl", EXCHANGES)
        result = indexer.scan("s1.jsonl")
        assert result.chunks_created == 3
        rows = chunk_rows(store)
        assert [r["sequence_index"] for r in rows] == [0, 1, 2]
        assert all(r["embedding_status"] == PENDING for r in rows)
        assert rows[0]["raw_text"].startswith("User: How should we store the vectors?\n\nAssistant: ")
        assert rows[0]["has_decision"]
        assert rows[2]["has_action"]
        assert parse_timestamp(rows[0]["created_at"]) == parse_timestamp("2026-01-01T10:00:00Z")

    def test_rescan_of_unchanged_file_is_a_no_op(self, indexer, store, write_transcript):
        """An unchanged file is skipped by its hash."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        ids = [r["id"] for r in chunk_rows(store)]
        result = indexer.scan("s1.jsonl")
        assert result.chunks_created == 0
        assert result.chunks_skipped == 3
        assert result.sources_unchanged == 1
        assert [r["id"] for r in chunk_rows(store)] == ids

    def test_changed_chunk_is_replaced(self, indexer, store, vectors, write_transcript):
        """Only the edited exchange gets a new row; its vectors go."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        indexer.embed_all()
        before = chunk_rows(store)

        edited = list(EXCHANGES)
        edited[1] = ("What about the quick fox example?", "Foxes are fast animals.")
        write_transcript("s1.jsonl", edited)
        result = indexer.scan("s1.jsonl")

        after = chunk_rows(store)
        assert result.chunks_created == 1
        assert result.chunks_skipped == 2
        assert len(after) == 3
        assert after[0]["id"] == before[0]["id"]
        assert after[1]["id"] != before[1]["id"]
        assert after[1]["embedding_status"] == PENDING
        assert before[1]["id"] not in vectors.owners("chunk")

    def test_shrunk_source_drops_stale_chunks(self, indexer, store, write_transcript):
        """Positions past the new end are removed."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        write_transcript("s1.jsonl", EXCHANGES[:1])
        indexer.scan("s1.jsonl")
        assert [r["sequence_index"] for r in chunk_rows(store)] == [0]

    def test_overlapping_scans_keep_one_row_per_position(self, indexer, store, write_note, monkeypatch):
        """A scan that runs between another scan's read and write leaves no duplicates."""
        write_note("note.txt", "A short note about foxes.")
        upsert = store.upsert
        interleaved = []

        def scan_first(name, rows, **kwargs):
            if name == CHUNKS and not interleaved:
                interleaved.append(name)
                indexer.scan("note.txt")
            upsert(name, rows, **kwargs)

        monkeypatch.setattr(store, "upsert", scan_first)
        indexer.scan("note.txt")

        assert interleaved == [CHUNKS]
        assert [r["sequence_index"] for r in chunk_rows(store, "note.txt")] == [0]
        assert store.count(SOURCES, "source_id = 'note.txt'") == 1

    def test_malformed_lines_are_skipped(self, indexer, store, write_transcript):
        """Malformed lines are counted, the rest is indexed."""
        write_transcript("s1.jsonl", EXCHANGES, extra_lines=["{broken", "[]"])
        result = indexer.scan("s1.jsonl")
        assert result.lines_skipped == 2
        assert result.chunks_created == 3

    def test_oversized_chunk_is_marked(self, store, embeddings, vectors, config, write_note):
        """Chunks over the input limit are marked skipped_oversized."""
        indexer = Indexer(store, embeddings, vectors, replace(config, max_input_chars=20))
        write_note("long.md", "This note is longer than twenty characters.")
        indexer.scan("long.md")
        (row,) = chunk_rows(store)
        assert row["embedding_status"] == SKIPPED_OVERSIZED
        assert "exceeds limit of 20" in row["error"]

    def test_missing_source(self, indexer):
        """Scanning a missing file raises NotFound."""
        with pytest.raises(NotFound):
            indexer.scan("nope.jsonl")

    def test_scan_all(self, indexer, store, write_transcript, write_note):
        """Transcripts and notes are both scanned."""
        write_transcript("a.jsonl", EXCHANGES[:2])
        write_note("b.md", "A short note.")
        result = indexer.scan_all()
        assert result.sources_scanned == 2
        assert result.chunks_created == 3
        assert {r["source_id"] for r in chunk_rows(store)} == {"a.jsonl", "b.md"}


# =============================================================================
# Embedding Runs
# =============================================================================


class CancellingProvider(ConceptProvider):
    """Sets ``event`` during its first call, like a shutdown arriving mid-run."""

    def __init__(self, event):
        super().__init__()
        self.event = event

    def _call(self, texts):
        self.event.set()
        return super()._call(texts)


class TestEmbedAll:
    """Tests for the embedding run."""

    def test_embeds_every_pending_chunk(self, indexer, store, vectors, write_transcript):
        """Every pending chunk gets a vector."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        result = indexer.embed_all()
        assert result.embedded == 3
        assert statuses(store) == [EMBEDDED] * 3
        assert vectors.owners("chunk") == {r["id"] for r in chunk_rows(store)}

    def test_second_run_has_nothing_to_do(self, indexer, write_transcript):
        """Embedded chunks are not claimed again."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        indexer.embed_all()
        result = indexer.embed_all()
        assert result.embedded == 0
        assert result.lost_claims == 0

    def test_provider_failure_marks_failed_then_retries(
        self, store, vectors, config, credentials, indexer, write_transcript
    ):
        """Failed chunks are picked up by the next run."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        broken = Indexer(store, EmbeddingGenerator([FailingProvider()], credentials), vectors, config)
        result = broken.embed_all()
        assert result.failed == 3
        assert statuses(store) == [FAILED] * 3
        assert "exhausted" in chunk_rows(store)[0]["error"]

        result = indexer.embed_all()
        assert result.embedded == 3
        assert statuses(store) == [EMBEDDED] * 3

    def test_stale_claim_is_reclaimed(self, indexer, store, write_transcript):
        """Claims older than the timeout are released."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        first = chunk_rows(store)[0]["id"]
        set_status(store, first, embedding_status=IN_PROGRESS, claimed_at="2020-01-01T00:00:00", claim_token="dead")
        result = indexer.embed_all()
        assert result.reclaimed == 1
        assert result.embedded == 3

    def test_live_claim_is_left_alone(self, indexer, store, write_transcript):
        """A fresh claim from another run is not touched."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        first = chunk_rows(store)[0]["id"]
        set_status(store, first, embedding_status=IN_PROGRESS, claimed_at=now_iso(), claim_token="live")
        result = indexer.embed_all()
        assert result.reclaimed == 0
        assert result.embedded == 2
        assert statuses(store) == [IN_PROGRESS, EMBEDDED, EMBEDDED]

    def test_lost_claim_race(self, indexer, store, monkeypatch, write_transcript):
        """Another worker claims a chunk between our read and our claim."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        real = store.conditional_update
        stolen = []

        def racing(name, record_id, condition, values, token, token_field="claim_token"):
            if not stolen:
                stolen.append(record_id)
                real(name, record_id, condition, values, "other-run", token_field)
            return real(name, record_id, condition, values, token, token_field)

        monkeypatch.setattr(store, "conditional_update", racing)
        result = indexer.embed_all()
        assert result.lost_claims == 1
        assert result.embedded == 2
        row = store.get(CHUNKS, stolen[0])
        assert row["embedding_status"] == IN_PROGRESS
        assert row["claim_token"] == "other-run"

    def test_cancel_stops_before_next_batch(self, store, vectors, config, credentials, write_transcript):
        """Cancelling stops the run between batches."""
        write_transcript("s1.jsonl", EXCHANGES)
        event = threading.Event()
        indexer = Indexer(
            store,
            EmbeddingGenerator([CancellingProvider(event)], credentials),
            vectors,
            replace(config, embed_batch_size=1),
        )
        indexer.scan("s1.jsonl")
        result = indexer.embed_all(cancel_event=event)
        assert result.cancelled
        assert result.embedded == 1
        assert sorted(statuses(store)) == [EMBEDDED, PENDING, PENDING]

    def test_cancel_releases_unused_claims(self, indexer, store, monkeypatch, write_transcript):
        """Claims not yet embedded are released on cancel."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        event = threading.Event()
        real_claim = indexer._claim

        def claim_then_cancel(chunk_id):
            token = real_claim(chunk_id)
            event.set()
            return token

        monkeypatch.setattr(indexer, "_claim", claim_then_cancel)
        result = indexer.embed_all(cancel_event=event)
        assert result.cancelled
        assert result.embedded == 0
        assert statuses(store) == [PENDING] * 3

    def test_oversized_for_provider_is_skipped(self, store, vectors, config, credentials, write_transcript):
        """Chunks too long for every provider are skipped."""
        small = ConceptProvider()
        small.max_input_chars = 60
        indexer = Indexer(store, EmbeddingGenerator([small], credentials), vectors, config)
        write_transcript("s1.jsonl", [("short?", "ok"), ("This question is long enough " * 3, "and so is the answer " * 3)])
        indexer.scan("s1.jsonl")
        result = indexer.embed_all()
        assert result.embedded == 1
        assert result.skipped_oversized == 1
        assert statuses(store) == [EMBEDDED, SKIPPED_OVERSIZED]

    def test_embed_status(self, indexer, store, config, embeddings, vectors, write_transcript, write_note):
        """Status counts chunks per state."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        indexer.embed_all()
        write_note("big.md", "x" * (config.max_input_chars + 1))
        indexer.scan("big.md")
        status = indexer.embed_status()
        assert status["counts"][EMBEDDED] == 3
        assert status["counts"][SKIPPED_OVERSIZED] == 1
        assert status["total"] == 4
        assert status["sources"] == 2
        assert [b["source_id"] for b in status["backlog"]] == ["big.md"]


# =============================================================================
# Enrichment
# =============================================================================


class TestEnrichment:
    """Tests for chunk enrichment."""

    def test_enrich_prefixes_context(self, indexer, store, generator, write_transcript):
        """Enrichment prepends a generated context line."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        row = chunk_rows(store)[0]
        enriched = indexer.enrich(row["id"])
        assert enriched == f"[Context: A conversation about animals.]\n\n{row['raw_text']}"
        assert store.get(CHUNKS, row["id"])["enriched_text"] == enriched
        assert "Source: s1.jsonl" in generator.prompts[0]
        assert "Participants: user, assistant" in generator.prompts[0]

    def test_enrich_is_idempotent(self, indexer, store, generator, write_transcript):
        """Enriching twice calls the generator once."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        chunk_id = chunk_rows(store)[0]["id"]
        first = indexer.enrich(chunk_id)
        assert indexer.enrich(chunk_id) == first
        assert len(generator.prompts) == 1

    def test_enrich_errors(self, store, embeddings, vectors, config, indexer, write_transcript):
        """Missing chunks and generator failures raise."""
        with pytest.raises(NotFound):
            indexer.enrich("missing")
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        chunk_id = chunk_rows(store)[0]["id"]
        with pytest.raises(EnrichmentError):
            Indexer(store, embeddings, vectors, config).enrich(chunk_id)
        with pytest.raises(EnrichmentError):
            Indexer(store, embeddings, vectors, config, generator=FakeGenerator(fail=True)).enrich(chunk_id)
        assert store.get(CHUNKS, chunk_id)["enriched_text"] is None

    def test_backfill_reembeds_embedded_chunks(self, indexer, store, write_transcript):
        """Backfill re-embeds chunks that already had a vector."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        indexer.embed_all()
        result = indexer.enrich_backfill()
        assert (result.processed, result.completed, result.failed) == (3, 3, 0)
        assert result.reembedded == 3
        assert result.remaining == 0
        assert statuses(store) == [EMBEDDED] * 3
        assert store.count(table_name_for("concept-v1")) == 6

    def test_backfill_of_pending_chunks_does_not_embed(self, indexer, store, write_transcript):
        """Pending chunks are enriched but left for embed_all."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        result = indexer.enrich_backfill(batch_size=2)
        assert result.completed == 2
        assert result.reembedded == 0
        assert result.remaining == 1
        # the next embedding run uses the enriched text
        indexer.embed_all()
        assert statuses(store) == [EMBEDDED] * 3

    def test_backfill_counts_failures(self, store, embeddings, vectors, config, indexer, write_transcript):
        """Generator failures are counted, not raised."""
        write_transcript("s1.jsonl", EXCHANGES)
        indexer.scan("s1.jsonl")
        failing = Indexer(store, embeddings, vectors, config, generator=FakeGenerator(fail=True))
        result = failing.enrich_backfill()
        assert result.failed == 3
        assert result.remaining == 3
