"""Tests for corpus metadata building and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from docs_mcp.corpus.manifest import TaxonomyFieldConfig, TaxonomyValueProperties
from docs_mcp.corpus.metadata import (
    EmbeddingMetadata,
    MetadataError,
    build_metadata,
    get_collapse_keys,
    get_resource_values,
    load_metadata,
    normalize_metadata,
    write_metadata,
)
from conftest import make_chunk

SHA = "0123456789abcdef0123456789abcdef01234567"


def raw_metadata(**overrides) -> dict:
    data = {
        "metadata_version": "1.0.0",
        "corpus_description": "Acme docs",
        "taxonomy": {"language": {"values": ["python", "node"]}},
        "stats": {"total_chunks": 2, "total_files": 1, "indexed_at": "2024-01-01T00:00:00Z"},
    }
    data.update(overrides)
    return data


class TestNormalizeMetadata:
    def test_valid(self):
        metadata = normalize_metadata(raw_metadata())
        assert metadata.major_version == 1
        assert metadata.taxonomy["language"].values == ["node", "python"]
        assert metadata.embedding is None

    def test_values_deduped_and_trimmed(self):
        metadata = normalize_metadata(raw_metadata(taxonomy={"language": {"values": [" python", "python "]}}))
        assert metadata.taxonomy["language"].values == ["python"]

    def test_unsupported_major(self):
        with pytest.raises(MetadataError, match="Unsupported metadata_version major"):
            normalize_metadata(raw_metadata(metadata_version="2.0.0"))

    def test_invalid_semver(self):
        with pytest.raises(MetadataError, match="semver"):
            normalize_metadata(raw_metadata(metadata_version="1.0"))

    def test_empty_description(self):
        with pytest.raises(MetadataError, match="corpus_description"):
            normalize_metadata(raw_metadata(corpus_description="  "))

    def test_empty_taxonomy_value(self):
        with pytest.raises(MetadataError, match="empty"):
            normalize_metadata(raw_metadata(taxonomy={"language": {"values": [""]}}))

    def test_too_long_key(self):
        with pytest.raises(MetadataError, match="max length"):
            normalize_metadata(raw_metadata(taxonomy={"k" * 65: {"values": ["x"]}}))

    def test_negative_stats(self):
        stats = {"total_chunks": -1, "total_files": 1, "indexed_at": "now"}
        with pytest.raises(MetadataError, match="total_chunks"):
            normalize_metadata(raw_metadata(stats=stats))

    def test_bad_commit(self):
        stats = {"total_chunks": 1, "total_files": 1, "indexed_at": "now", "source_commit": "abc"}
        with pytest.raises(MetadataError, match="source_commit"):
            normalize_metadata(raw_metadata(stats=stats))

    def test_embedding_dimensions_positive(self):
        embedding = {"provider": "hash", "model": "hash-v1", "dimensions": 0}
        with pytest.raises(MetadataError, match="dimensions"):
            normalize_metadata(raw_metadata(embedding=embedding))

    def test_not_an_object(self):
        with pytest.raises(MetadataError, match="must be an object"):
            normalize_metadata([])


class TestBuildMetadata:
    def test_taxonomy_from_observed_values(self):
        chunks = [
            make_chunk("sdk/python/a.md", metadata={"language": "python"}),
            make_chunk("sdk/node/a.md", metadata={"language": "node", "scope": "api"}),
            make_chunk("sdk/node/a.md#x", metadata={"language": "node"}, chunk_index=1),
        ]
        config = {
            "language": TaxonomyFieldConfig(vector_collapse=True),
            "scope": TaxonomyFieldConfig(properties={
                "api": TaxonomyValueProperties(mcp_resource=True),
                "guide": TaxonomyValueProperties(mcp_resource=True),
            }),
        }
        metadata = build_metadata(
            chunks,
            taxonomy_config=config,
            embedding=EmbeddingMetadata(provider="hash", model="hash-v1", dimensions=8),
            source_commit=SHA,
            instructions="Search first.",
        )

        assert metadata.metadata_version == "1.0.0"
        assert metadata.corpus_description == "Documentation corpus"
        assert metadata.taxonomy["language"].values == ["node", "python"]
        assert metadata.taxonomy["language"].vector_collapse is True
        assert metadata.taxonomy["scope"].properties == {"api": {"mcp_resource": True}}
        assert metadata.stats.total_chunks == 3
        assert metadata.stats.total_files == 2
        assert metadata.stats.source_commit == SHA
        assert metadata.embedding.dimensions == 8
        assert metadata.index.path == ".lancedb"
        assert metadata.mcp_server_instructions == "Search first."

    def test_collapse_and_resource_helpers(self):
        metadata = normalize_metadata(raw_metadata(taxonomy={
            "language": {"values": ["python"], "vector_collapse": True},
            "scope": {"values": ["guide", "api"], "properties": {"guide": {"mcp_resource": True}}},
        }))
        assert get_collapse_keys(metadata.taxonomy) == ["language"]
        assert get_resource_values(metadata.taxonomy) == [("scope", "guide")]


class TestMetadataFile:
    def test_write_and_load(self, tmp_path: Path):
        metadata = build_metadata([make_chunk("a.md", metadata={"scope": "guide"})], corpus_description="Acme")
        path = write_metadata(tmp_path, metadata)
        assert json.loads(path.read_text())["embedding"] is None

        loaded = load_metadata(tmp_path)
        assert loaded == metadata

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(MetadataError, match="docs-mcp build"):
            load_metadata(tmp_path)

    def test_corrupt_file(self, tmp_path: Path):
        (tmp_path / "metadata.json").write_text("{")
        with pytest.raises(MetadataError, match="Failed to read"):
            load_metadata(tmp_path)
