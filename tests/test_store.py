"""Tests for vector storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from docs_mcp.corpus.store import (
    build_where_clause,
    collect_metadata_keys,
    serialize_chunk_row,
)
from conftest import make_chunk


@pytest.fixture
def indexed_chunks():
    chunks = [
        make_chunk("sdk/python/a.md", "python retry", metadata={"language": "python"}),
        make_chunk("sdk/node/a.md", "node retry", metadata={"language": "node"}),
        make_chunk("guides/a.md", "guide", metadata={"scope": "guide"}),
    ]
    vectors = {
        "sdk/python/a.md": [1.0, 0.0],
        "sdk/node/a.md": [0.0, 1.0],
        "guides/a.md": [0.6, 0.8],
    }
    return chunks, vectors


class TestRows:
    def test_serialize_chunk_row(self):
        chunk = make_chunk("a.md#x", "body", "X", {"language": "python"})
        row = serialize_chunk_row(chunk, ["language", "scope"], [0.1, 0.2], "fp")
        assert row["chunk_id"] == "a.md#x"
        assert json.loads(row["metadata"]) == {"language": "python"}
        assert row["meta_language"] == "python"
        assert row["meta_scope"] == ""
        assert row["file_fingerprint"] == "fp"
        assert row["vector"] == [0.1, 0.2]

    def test_collect_metadata_keys(self, indexed_chunks):
        chunks, _ = indexed_chunks
        assert collect_metadata_keys(chunks) == ["language", "scope"]


class TestWhereClause:
    def test_no_filters(self):
        assert build_where_clause({}, ["language"]) is None

    def test_auto_include_clause(self):
        clause = build_where_clause({"language": "python"}, ["language"])
        assert clause == "(`meta_language` = 'python' OR `meta_language` = '')"

    def test_exact_clause_for_non_taxonomy_key(self):
        clause = build_where_clause({"language": "python"}, ["language"], taxonomy_keys=[])
        assert clause == "`meta_language` = 'python'"

    def test_quotes_escaped(self):
        clause = build_where_clause({"scope": "it's"}, ["scope"], taxonomy_keys=[])
        assert clause == "`meta_scope` = 'it''s'"

    def test_unknown_auto_included_key_skipped(self):
        assert build_where_clause({"version": "2"}, ["language"]) is None

    def test_unknown_exact_key_cannot_match(self):
        with pytest.raises(LookupError):
            build_where_clause({"version": "2"}, ["language"], taxonomy_keys=[])

    def test_clauses_joined(self):
        clause = build_where_clause({"language": "python", "scope": "api"}, ["language", "scope"], ["language"])
        assert clause == "(`meta_language` = 'python' OR `meta_language` = '') AND `meta_scope` = 'api'"


class TestLanceVectorIndex:
    def test_build_and_query(self, tmp_path: Path, indexed_chunks):
        pytest.importorskip("lancedb")
        from docs_mcp.corpus.store import LanceVectorIndex, build_lance_index

        chunks, vectors = indexed_chunks
        db_path = tmp_path / ".lancedb"
        rows = build_lance_index(
            db_path, chunks, vectors, file_fingerprints={"guides/a.md": "fp"},
            metadata_keys=["language", "scope"],
        )
        assert rows == 3

        index = LanceVectorIndex(db_path, ["language", "scope"])
        results = index.query([1.0, 0.0], limit=3, filters={})
        assert results[0][0] == "sdk/python/a.md"
        assert results[0][1] == pytest.approx(1.0)

        filtered = index.query([1.0, 0.0], limit=3, filters={"language": "node"})
        assert {chunk_id for chunk_id, _ in filtered} == {"sdk/node/a.md", "guides/a.md"}

    def test_nothing_to_write(self, tmp_path: Path):
        pytest.importorskip("lancedb")
        from docs_mcp.corpus.store import build_lance_index

        assert build_lance_index(tmp_path / ".lancedb", [make_chunk("a.md")], {}) == 0
