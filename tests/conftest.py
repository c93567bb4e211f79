"""Shared test fixtures for docs-mcp."""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Mapping, Sequence

import pytest

from docs_mcp.corpus.ranking import matches_metadata_filters
from docs_mcp.corpus.schema import Chunk


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch):
    """Keep the real user settings and API keys out of every test."""
    monkeypatch.setattr(
        "docs_mcp.config.get_user_settings_path",
        lambda: tmp_path / "home" / ".docs-mcp" / "settings.json",
    )
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DOCS_MCP_EMBEDDING_PROVIDER", raising=False)


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    """Create a small corpus with a root manifest and per-language SDK docs."""
    root = tmp_path / "docs"
    root.mkdir()
    (root / ".docs-mcp.json").write_text(json.dumps({
        "version": "1",
        "strategy": {"chunk_by": "h2"},
        "metadata": {"product": "acme"},
        "taxonomy": {
            "language": {"vector_collapse": True},
            "scope": {"properties": {"guide": {"mcp_resource": True}}},
        },
        "instructions": "Search before answering questions about the Acme SDK.",
        "overrides": [
            {"pattern": "sdk/python/**", "metadata": {"language": "python"}},
            {"pattern": "sdk/node/**", "metadata": {"language": "node"}},
            {"pattern": "guides/**", "metadata": {"scope": "guide"}},
        ],
    }))

    (root / "guides").mkdir()
    (root / "guides" / "retries.md").write_text(
        "# Retries\n\n"
        "How the client retries failed requests.\n\n"
        "## Backoff strategy\n\n"
        "Use exponential backoff when the API is rate limited.\n\n"
        "## Idempotency\n\n"
        "Send an idempotency key with every retried request.\n"
    )

    for language in ("python", "node"):
        sdk = root / "sdk" / language
        sdk.mkdir(parents=True)
        (sdk / "links.md").write_text(
            "# Links\n\n"
            "## Create a link\n\n"
            "Call links.create to make a short link.\n\n"
            "## Delete a link\n\n"
            "Call links.delete with the link id.\n"
        )
    return root


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


def make_chunk(
    chunk_id: str,
    content: str = "",
    heading: str = "",
    metadata: dict[str, str] | None = None,
    chunk_index: int = 0,
) -> Chunk:
    """Build a chunk whose filepath is taken from its id."""
    filepath = chunk_id.split("#", 1)[0]
    return Chunk(
        chunk_id=chunk_id,
        filepath=filepath,
        heading=heading,
        heading_level=2 if heading else 0,
        content=content,
        content_text=content,
        breadcrumb=" > ".join(p for p in (filepath, heading) if p),
        chunk_index=chunk_index,
        metadata=dict(metadata or {}),
    )


@pytest.fixture
def built_out_dir(docs_dir: Path, out_dir: Path) -> Path:
    """Build the sample corpus lexically (no vectors) and return the output dir."""
    from docs_mcp.corpus.embedding import NoopEmbeddingProvider
    from docs_mcp.corpus.indexer import build_corpus

    build_corpus(docs_dir, out_dir, NoopEmbeddingProvider(), corpus_description="Acme SDK documentation")
    return out_dir


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorIndex:
    """Brute-force cosine search standing in for the LanceDB table."""

    def __init__(self, chunks: Sequence[Chunk], vectors: Mapping[str, list[float]]):
        self._entries = [
            (chunk.chunk_id, chunk.metadata, vectors[chunk.chunk_id])
            for chunk in chunks
            if vectors.get(chunk.chunk_id)
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def query(
        self,
        vector: Sequence[float],
        limit: int,
        filters: Mapping[str, str],
        taxonomy_keys: Sequence[str] | None = None,
    ) -> list[tuple[str, float]]:
        scored = [
            (chunk_id, cosine_similarity(vector, stored))
            for chunk_id, metadata, stored in self._entries
            if matches_metadata_filters(metadata, filters, taxonomy_keys)
        ]
        scored.sort(key=lambda entry: (-entry[1], entry[0]))
        return scored[:limit]
