"""Versioned embedding vectors, one LanceDB table per model.

Each model gets its own ``embeddings__<model>`` table because vector columns
are fixed width. The ``embedding_models`` registry pins the width the first
time a model is seen; later writes of another width are rejected.
Rows are appended; the newest row per owner is the one searched.
"""

from __future__ import annotations

import logging
import math
import re
import threading

import lancedb
import numpy as np
import pyarrow as pa

from errors import DimensionMismatch
from models import VectorMatch
from store import EMBEDDING_MODELS, MemoryStore
from utils import escape_filter_value, now_iso

logger = logging.getLogger("recall.vector_store")


def table_name_for(model: str) -> str:
    return "embeddings__" + re.sub(r"[^a-zA-Z0-9_]", "_", model)


def embedding_schema(dimensions: int) -> pa.Schema:
    return pa.schema(
        [
            pa.field("owner_id", pa.string()),
            pa.field("owner_type", pa.string()),
            pa.field("model", pa.string()),
            pa.field("provider", pa.string()),
            pa.field("dimensions", pa.int32()),
            pa.field("vector", pa.list_(pa.float32(), dimensions)),
            pa.field("created_at", pa.string()),
        ]
    )


class VectorStore:
    def __init__(self, store: MemoryStore):
        self._store = store
        self._register_lock = threading.Lock()

    def dimensions(self, model: str) -> int | None:
        """Registered vector width for ``model``, or None if never stored."""
        row = self._store.get(EMBEDDING_MODELS, model, key="model")
        return int(row["dimensions"]) if row else None

    def models(self) -> list[str]:
        return [row["model"] for row in self._store.query(EMBEDDING_MODELS)]

    def _table(self, model: str, dimensions: int) -> lancedb.table.Table:
        return self._store.table(table_name_for(model), schema=embedding_schema(dimensions))

    def _register(self, model: str, dimensions: int) -> int:
        with self._register_lock:
            registered = self.dimensions(model)
            if registered is None:
                self._store.add(
                    EMBEDDING_MODELS,
                    [
                        {
                            "model": model,
                            "dimensions": dimensions,
                            "table_name": table_name_for(model),
                            "created_at": now_iso(),
                        }
                    ],
                )
                logger.info("Registered embedding model %s (%d dims)", model, dimensions)
                return dimensions
            return registered

    def store(
        self,
        owner_id: str,
        owner_type: str,
        model: str,
        vector: list[float],
        provider: str | None = None,
    ) -> None:
        """Append a vector for ``owner_id``; it supersedes earlier rows at search time."""
        if not vector:
            raise ValueError("vector is empty")
        registered = self._register(model, len(vector))
        if registered != len(vector):
            raise DimensionMismatch(model, registered, len(vector))
        self._table(model, registered).add(
            [
                {
                    "owner_id": owner_id,
                    "owner_type": owner_type,
                    "model": model,
                    "provider": provider or "",
                    "dimensions": registered,
                    "vector": [float(v) for v in vector],
                    "created_at": now_iso(),
                }
            ]
        )

    def search(
        self,
        model: str,
        query_vector: list[float],
        limit: int,
        threshold: float,
        owner_type: str | None = None,
        owner_ids: set[str] | None = None,
    ) -> list[VectorMatch]:
        """Cosine search over every stored vector of ``model``.

        Only the newest vector of each owner is considered. Results have
        ``similarity >= threshold``, sorted by similarity descending with ties
        going to the most recently stored vector, at most ``limit`` of them.
        """
        if limit <= 0:
            return []
        dims = self.dimensions(model)
        if dims is None:
            return []
        if len(query_vector) != dims:
            raise DimensionMismatch(model, dims, len(query_vector))
        query = np.asarray(query_vector, dtype=np.float32)
        if not np.all(np.isfinite(query)) or np.linalg.norm(query) == 0:
            return []

        table = self._table(model, dims)
        where = f"owner_type = '{escape_filter_value(owner_type)}'" if owner_type else None
        total = table.count_rows(where) if where else table.count_rows()
        if total == 0:
            return []

        builder = table.search(query.tolist(), vector_column_name="vector").metric("cosine")
        if where:
            builder = builder.where(where, prefilter=True)
        rows = builder.limit(total).to_list()

        latest: dict[str, dict] = {}
        for row in rows:
            if owner_ids is not None and row["owner_id"] not in owner_ids:
                continue
            current = latest.get(row["owner_id"])
            if current is None or row["created_at"] > current["created_at"]:
                latest[row["owner_id"]] = row

        matches = []
        for row in latest.values():
            similarity = 1 - row["_distance"]
            if math.isnan(similarity) or similarity < threshold:
                continue
            matches.append(
                VectorMatch(
                    owner_id=row["owner_id"],
                    owner_type=row["owner_type"],
                    similarity=float(similarity),
                    created_at=row["created_at"],
                )
            )
        matches.sort(key=lambda m: m.created_at, reverse=True)
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    def owners(self, owner_type: str, model: str | None = None) -> set[str]:
        """Ids of ``owner_type`` records that have at least one vector."""
        found: set[str] = set()
        where = f"owner_type = '{escape_filter_value(owner_type)}'"
        for name in [model] if model else self.models():
            dims = self.dimensions(name)
            if dims is None:
                continue
            self._table(name, dims)
            found.update(
                row["owner_id"]
                for row in self._store.query(table_name_for(name), where=where, columns=["owner_id"])
            )
        return found

    def delete_owner(self, owner_id: str, owner_type: str | None = None) -> None:
        where = f"owner_id = '{escape_filter_value(owner_id)}'"
        if owner_type:
            where += f" AND owner_type = '{escape_filter_value(owner_type)}'"
        for model in self.models():
            dims = self.dimensions(model)
            self._table(model, dims).delete(where)
