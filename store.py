"""LanceDB persistence handle shared by every component.

One ``MemoryStore`` is created per process (or per test) and passed to the
components that need it; nothing in the package reaches for a global
connection.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa
from lancedb.pydantic import LanceModel

from models import Chunk, EmbeddingModelRow, KnowledgeRow, MemoryRow, SourceState
from utils import escape_filter_value

logger = logging.getLogger("recall.store")

CHUNKS = "chunks"
SOURCES = "sources"
KNOWLEDGE = "knowledge_entries"
MEMORIES = "memories"
EMBEDDING_MODELS = "embedding_models"

TABLE_SCHEMAS: dict[str, type[LanceModel]] = {
    CHUNKS: Chunk,
    SOURCES: SourceState,
    KNOWLEDGE: KnowledgeRow,
    MEMORIES: MemoryRow,
    EMBEDDING_MODELS: EmbeddingModelRow,
}

# Columns carrying a native full-text (BM25) index
FTS_COLUMNS: dict[str, tuple[str, ...]] = {
    CHUNKS: ("raw_text",),
    KNOWLEDGE: ("title", "summary"),
    MEMORIES: ("subject", "content"),
}


class MemoryStore:
    """Thin wrapper over a LanceDB connection with row-level helpers."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._db: lancedb.DBConnection | None = None
        self._tables: dict[str, lancedb.table.Table] = {}
        self._lock = threading.RLock()  # RLock allows reentrant calls (table -> connect)
        self._fts_ready: set[str] = set()

    def connect(self) -> lancedb.DBConnection:
        if self._db is None:
            with self._lock:
                if self._db is None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                    self._db = lancedb.connect(str(self.db_path))
        return self._db

    def table(self, name: str, schema: type[LanceModel] | pa.Schema | None = None) -> lancedb.table.Table:
        """Open ``name``, creating it from ``schema`` (or the known schema) if missing."""
        table = self._tables.get(name)
        if table is None:
            with self._lock:
                table = self._tables.get(name)
                if table is None:
                    schema = schema if schema is not None else TABLE_SCHEMAS[name]
                    table = self.connect().create_table(name, schema=schema, exist_ok=True)
                    self._tables[name] = table
        return table

    def init(self) -> None:
        """Create all fixed tables."""
        for name in TABLE_SCHEMAS:
            self.table(name)
        logger.info("Store ready at %s", self.db_path)

    # -------------------------------------------------------------------------
    # Row helpers
    # -------------------------------------------------------------------------

    def add(self, name: str, rows: list[dict[str, Any]]) -> None:
        if rows:
            self.table(name).add(rows)

    def query(
        self,
        name: str,
        where: str | None = None,
        limit: int | None = None,
        columns: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching ``where``; every row when ``limit`` is None."""
        table = self.table(name)
        if limit is None:
            limit = table.count_rows(where) if where else table.count_rows()
        if limit <= 0:
            return []
        builder = table.search()
        if where:
            builder = builder.where(where)
        if columns:
            builder = builder.select(columns)
        return builder.limit(limit).to_list()

    def upsert(self, name: str, rows: list[dict[str, Any]], on: list[str], update_when: str | None = None) -> None:
        """Insert ``rows``, replacing stored rows with the same ``on`` key.

        ``update_when`` limits which matched rows are replaced; columns of the
        stored row are referenced as ``target.<column>``.
        """
        if rows:
            (
                self.table(name)
                .merge_insert(on)
                .when_matched_update_all(where=update_when)
                .when_not_matched_insert_all()
                .execute(rows)
            )

    def ensure_fts_index(self, name: str) -> bool:
        """Build the native FTS indexes of ``name``; False while the table is empty.

        Rows written after the index was built are still searched, LanceDB
        scans unindexed fragments, so each index is built once.
        """
        if name in self._fts_ready:
            return True
        with self._lock:
            if name in self._fts_ready:
                return True
            table = self.table(name)
            if table.count_rows() == 0:
                return False
            indexed = {column for index in table.list_indices() for column in index.columns}
            for column in FTS_COLUMNS[name]:
                if column not in indexed:
                    table.create_fts_index(column, use_tantivy=False, replace=True)
                    logger.info("Native FTS index (BM25) created on %s.%s", name, column)
            self._fts_ready.add(name)
        return True

    def fts_indexed(self) -> list[str]:
        """``table.column`` names that carry a native FTS index."""
        indexed = []
        for name, columns in FTS_COLUMNS.items():
            present = {column for index in self.table(name).list_indices() for column in index.columns}
            indexed.extend(f"{name}.{column}" for column in columns if column in present)
        return indexed

    def text_search(
        self, name: str, text: str, where: str | None = None, limit: int = 10
    ) -> list[tuple[dict[str, Any], float]]:
        """BM25 search over the indexed columns of ``name``, best first.

        A row matching in several columns scores the sum of its column scores.
        """
        if limit <= 0 or not text.strip() or not self.ensure_fts_index(name):
            return []
        table = self.table(name)
        hits: dict[str, tuple[dict[str, Any], float]] = {}
        for column in FTS_COLUMNS[name]:
            builder = table.search(text, query_type="fts", fts_columns=column)
            if where:
                builder = builder.where(where, prefilter=True)
            for row in builder.limit(limit).to_list():
                score = float(row.pop("_score"))
                previous = hits.get(row["id"])
                hits[row["id"]] = (row, score + (previous[1] if previous else 0.0))
        ranked = sorted(hits.values(), key=lambda hit: hit[1], reverse=True)
        return ranked[:limit]

    def get(self, name: str, value: str, key: str = "id") -> dict[str, Any] | None:
        rows = self.query(name, where=f"{key} = '{escape_filter_value(value)}'", limit=1)
        return rows[0] if rows else None

    def count(self, name: str, where: str | None = None) -> int:
        table = self.table(name)
        return table.count_rows(where) if where else table.count_rows()

    def update(self, name: str, where: str, values: dict[str, Any]) -> None:
        self.table(name).update(where=where, values=values)

    def delete(self, name: str, where: str) -> None:
        self.table(name).delete(where)

    def conditional_update(
        self,
        name: str,
        record_id: str,
        condition: str,
        values: dict[str, Any],
        token: str,
        token_field: str = "claim_token",
    ) -> bool:
        """Apply ``values`` to one row only if ``condition`` still holds.

        The update writes ``token`` into ``token_field``; reading it back tells
        the caller whether this update is the one that landed. A concurrent
        writer that lost the race sees a different token (or a row that no
        longer matches ``condition``) and gets ``False``.
        """
        safe_id = escape_filter_value(record_id)
        self.update(name, f"id = '{safe_id}' AND ({condition})", {**values, token_field: token})
        row = self.get(name, record_id)
        return row is not None and row.get(token_field) == token

    def size_kb(self) -> float:
        if not self.db_path.exists():
            return 0.0
        return sum(f.stat().st_size for f in self.db_path.rglob("*") if f.is_file()) / 1024
