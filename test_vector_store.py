"""Tests for per-model vector tables."""

import pytest

import vector_store
from errors import DimensionMismatch
from vector_store import table_name_for


def unit(*values, dims=4):
    vector = [0.0] * dims
    for i, v in enumerate(values):
        vector[i] = v
    return vector


class TestStore:
    """Tests for vector writes and model registration."""

    def test_first_write_registers_model(self, vectors):
        """The first vector pins the model's width."""
        assert vectors.dimensions("m") is None
        vectors.store("a", "chunk", "m", unit(1.0), "test")
        assert vectors.dimensions("m") == 4
        assert vectors.models() == ["m"]

    def test_width_mismatch_is_rejected(self, vectors):
        """A vector of another width is rejected."""
        vectors.store("a", "chunk", "m", unit(1.0))
        with pytest.raises(DimensionMismatch) as excinfo:
            vectors.store("b", "chunk", "m", [1.0, 0.0])
        assert excinfo.value.expected == 4
        assert excinfo.value.actual == 2
        # existing rows are untouched
        matches = vectors.search("m", unit(1.0), limit=5, threshold=0.0)
        assert [m.owner_id for m in matches] == ["a"]

    def test_models_are_isolated(self, vectors):
        """Each model searches only its own table."""
        vectors.store("a", "chunk", "small", unit(1.0))
        vectors.store("b", "chunk", "wide", unit(1.0, dims=8))
        assert [m.owner_id for m in vectors.search("small", unit(1.0), 5, 0.0)] == ["a"]
        assert [m.owner_id for m in vectors.search("wide", unit(1.0, dims=8), 5, 0.0)] == ["b"]

    def test_empty_vector_rejected(self, vectors):
        """Empty vectors are rejected."""
        with pytest.raises(ValueError):
            vectors.store("a", "chunk", "m", [])

    def test_table_name_is_sanitized(self):
        """Model names become safe table names."""
        assert table_name_for("qwen3-embedding:0.6b") == "embeddings__qwen3_embedding_0_6b"


class TestSearch:
    """Tests for cosine search."""

    @pytest.fixture
    def populated(self, vectors):
        vectors.store("exact", "chunk", "m", unit(1.0))
        vectors.store("close", "chunk", "m", unit(0.9, 0.1))
        vectors.store("far", "chunk", "m", unit(0.1, 0.9))
        vectors.store("orthogonal", "chunk", "m", unit(0.0, 0.0, 1.0))
        vectors.store("note", "knowledge", "m", unit(1.0))
        return vectors

    def test_sorted_by_similarity(self, populated):
        """Results are sorted by similarity."""
        matches = populated.search("m", unit(1.0), limit=10, threshold=0.0, owner_type="chunk")
        assert [m.owner_id for m in matches][:3] == ["exact", "close", "far"]
        similarities = [m.similarity for m in matches]
        assert similarities == sorted(similarities, reverse=True)
        assert matches[0].similarity == pytest.approx(1.0, abs=1e-5)

    def test_threshold_filters(self, populated):
        """Results below the threshold are dropped."""
        matches = populated.search("m", unit(1.0), limit=10, threshold=0.5, owner_type="chunk")
        assert {m.owner_id for m in matches} == {"exact", "close"}
        assert all(m.similarity >= 0.5 for m in matches)

    def test_raising_threshold_never_adds_results(self, populated):
        """A higher threshold never adds results."""
        previous = None
        for threshold in (0.0, 0.3, 0.6, 0.9, 0.99):
            ids = {m.owner_id for m in populated.search("m", unit(1.0), 10, threshold, owner_type="chunk")}
            if previous is not None:
                assert ids <= previous
            previous = ids

    def test_limit(self, populated):
        """The limit caps the result count."""
        assert len(populated.search("m", unit(1.0), limit=2, threshold=0.0)) == 2
        assert populated.search("m", unit(1.0), limit=0, threshold=0.0) == []

    def test_owner_type_filter(self, populated):
        """Owner type narrows the search."""
        matches = populated.search("m", unit(1.0), limit=10, threshold=0.9, owner_type="knowledge")
        assert [m.owner_id for m in matches] == ["note"]

    def test_owner_id_allowlist(self, populated):
        """Only allowed owners are returned."""
        matches = populated.search("m", unit(1.0), 10, 0.0, owner_ids={"far", "close"})
        assert [m.owner_id for m in matches] == ["close", "far"]

    def test_equal_similarity_prefers_newest(self, vectors, monkeypatch):
        """Ties in similarity go to the most recently created vector."""
        stamps = iter(f"2026-01-0{day}T00:00:00" for day in range(1, 10))
        monkeypatch.setattr(vector_store, "now_iso", lambda: next(stamps))
        vectors.store("older", "chunk", "m", unit(1.0))
        vectors.store("newer", "chunk", "m", unit(1.0))
        matches = vectors.search("m", unit(1.0), limit=2, threshold=0.0)
        assert [m.owner_id for m in matches] == ["newer", "older"]
        assert matches[0].similarity == matches[1].similarity
        assert [m.owner_id for m in vectors.search("m", unit(1.0), limit=1, threshold=0.0)] == ["newer"]

    def test_newest_vector_per_owner_wins(self, vectors):
        """Only the newest vector of an owner counts."""
        vectors.store("a", "chunk", "m", unit(1.0))
        vectors.store("a", "chunk", "m", unit(0.0, 1.0))
        matches = vectors.search("m", unit(0.0, 1.0), limit=10, threshold=0.0)
        assert len(matches) == 1
        assert matches[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert vectors.search("m", unit(1.0), limit=10, threshold=0.5) == []

    def test_unknown_model_returns_nothing(self, vectors):
        """An unknown model has no results."""
        assert vectors.search("never-stored", unit(1.0), 5, 0.0) == []

    def test_query_width_mismatch(self, populated):
        """A query of the wrong width raises."""
        with pytest.raises(DimensionMismatch):
            populated.search("m", [1.0, 0.0], 5, 0.0)

    def test_zero_query_returns_nothing(self, populated):
        """A zero query vector matches nothing."""
        assert populated.search("m", unit(), 5, 0.0) == []


class TestOwners:
    """Tests for owner listing and deletion."""

    def test_owners_by_type(self, vectors):
        """Owners are listed per type and model."""
        vectors.store("a", "chunk", "m", unit(1.0))
        vectors.store("b", "memory", "m", unit(1.0))
        assert vectors.owners("chunk") == {"a"}
        assert vectors.owners("memory", model="m") == {"b"}
        assert vectors.owners("chunk", model="other") == set()

    def test_delete_owner_removes_every_version(self, vectors):
        """Deleting an owner removes all its vectors."""
        vectors.store("a", "chunk", "m", unit(1.0))
        vectors.store("a", "chunk", "m", unit(0.5, 0.5))
        vectors.store("b", "chunk", "m", unit(1.0))
        vectors.delete_owner("a", "chunk")
        assert [m.owner_id for m in vectors.search("m", unit(1.0), 10, 0.0)] == ["b"]
