"""Vector storage for chunk embeddings.

Built chunks and their vectors go into a LanceDB table with one column per
taxonomy key so nearest-neighbour queries can be prefiltered.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Mapping, Sequence

from docs_mcp.corpus.schema import TABLE_NAME, Chunk

logger = logging.getLogger(__name__)

META_COLUMN_PREFIX = "meta_"
# Below this many rows brute-force search is fast enough.
MIN_ROWS_FOR_ANN_INDEX = 256


def meta_column(key: str) -> str:
    return f"{META_COLUMN_PREFIX}{key}"


def _quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def _escape_sql_string(value: str) -> str:
    return value.replace("'", "''")


def collect_metadata_keys(chunks: Sequence[Chunk]) -> list[str]:
    keys: set[str] = set()
    for chunk in chunks:
        keys.update(chunk.metadata)
    return sorted(keys)


def serialize_chunk_row(
    chunk: Chunk,
    metadata_keys: Sequence[str],
    vector: list[float],
    file_fingerprint: str,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "chunk_id": chunk.chunk_id,
        "filepath": chunk.filepath,
        "heading": chunk.heading,
        "heading_level": chunk.heading_level,
        "content": chunk.content,
        "content_text": chunk.content_text,
        "breadcrumb": chunk.breadcrumb,
        "chunk_index": chunk.chunk_index,
        "metadata": json.dumps(chunk.metadata, sort_keys=True),
        "file_fingerprint": file_fingerprint,
        "vector": vector,
    }
    for key in metadata_keys:
        row[meta_column(key)] = chunk.metadata.get(key, "")
    return row


def build_lance_index(
    db_path: Path,
    chunks: Sequence[Chunk],
    vectors: Mapping[str, list[float]],
    file_fingerprints: Mapping[str, str] | None = None,
    metadata_keys: Sequence[str] | None = None,
    table_name: str = TABLE_NAME,
) -> int:
    """Write chunks and vectors to a fresh LanceDB table.

    Chunks without a vector are skipped. Returns the number of rows written.
    """
    import lancedb

    file_fingerprints = file_fingerprints or {}
    keys = list(metadata_keys) if metadata_keys is not None else collect_metadata_keys(chunks)
    rows = [
        serialize_chunk_row(chunk, keys, vectors[chunk.chunk_id], file_fingerprints.get(chunk.filepath, ""))
        for chunk in chunks
        if vectors.get(chunk.chunk_id)
    ]
    if not rows:
        return 0

    db = lancedb.connect(str(db_path))
    table = db.create_table(table_name, rows, mode="overwrite")

    if len(rows) >= MIN_ROWS_FOR_ANN_INDEX:
        num_partitions = max(1, round(math.sqrt(len(rows))))
        try:
            table.create_index(num_partitions=num_partitions, replace=True)
        except Exception as e:
            logger.warning("Vector index creation failed, falling back to brute-force search: %s", e)

    return len(rows)


def build_where_clause(
    filters: Mapping[str, str],
    metadata_keys: Sequence[str],
    taxonomy_keys: Sequence[str] | None = None,
) -> str | None:
    """SQL predicate equivalent to :func:`matches_metadata_filters`.

    Raises LookupError when a filter can never match any stored row.
    """
    auto_include = None if taxonomy_keys is None else set(taxonomy_keys)
    known = set(metadata_keys)
    clauses = []
    for key, value in filters.items():
        included = auto_include is None or key in auto_include
        if key not in known:
            # No stored row carries this key.
            if included:
                continue
            raise LookupError(key)
        column = _quote_identifier(meta_column(key))
        literal = f"'{_escape_sql_string(value)}'"
        if included:
            clauses.append(f"({column} = {literal} OR {column} = '')")
        else:
            clauses.append(f"{column} = {literal}")
    return " AND ".join(clauses) if clauses else None


class LanceVectorIndex:
    """Nearest-neighbour queries against a built LanceDB table."""

    def __init__(self, db_path: Path, metadata_keys: Sequence[str], table_name: str = TABLE_NAME):
        import lancedb

        self.metadata_keys = list(metadata_keys)
        self._table = lancedb.connect(str(db_path)).open_table(table_name)

    def query(
        self,
        vector: Sequence[float],
        limit: int,
        filters: Mapping[str, str],
        taxonomy_keys: Sequence[str] | None = None,
    ) -> list[tuple[str, float]]:
        try:
            where = build_where_clause(filters, self.metadata_keys, taxonomy_keys)
        except LookupError:
            return []

        builder = self._table.search(list(vector)).select(["chunk_id"])
        if where:
            builder = builder.where(where, prefilter=True)
        rows = builder.limit(limit).to_list()
        # Stored vectors are unit length, so squared L2 distance maps onto cosine.
        return [(row["chunk_id"], 1.0 - row.get("_distance", 0.0) / 2) for row in rows]
