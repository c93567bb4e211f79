"""FastAPI application factory for the docs search service."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI

from docs_mcp import __version__
from docs_mcp.config import DocsSettings, load_settings
from docs_mcp.corpus.embedding import EmbeddingError, create_embedding_provider
from docs_mcp.corpus.metadata import CorpusMetadata, load_metadata
from docs_mcp.routes import docs, health
from docs_mcp.tools import DocsServer, create_docs_server
from docs_mcp.utils.paths import get_lance_dir

logger = logging.getLogger(__name__)


def create_app(
    out_dir: Path | None = None,
    settings: DocsSettings | None = None,
    server: DocsServer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without arguments the build output directory is read from
    ``DOCS_MCP_OUT_DIR`` and settings from ``DOCS_MCP_DOCS_DIR``.
    """
    if server is None:
        if out_dir is None:
            out_dir = Path(os.environ.get("DOCS_MCP_OUT_DIR", ".docs-mcp-index"))
        if settings is None:
            docs_dir = os.environ.get("DOCS_MCP_DOCS_DIR")
            settings = load_settings(Path(docs_dir) if docs_dir else None)
        server = load_server(Path(out_dir), settings)

    app = FastAPI(
        title="docs-mcp",
        version=__version__,
        description="Search and retrieval over an indexed markdown documentation corpus",
    )
    app.state.docs_server = server

    app.include_router(health.router)
    app.include_router(docs.router)
    return app


def load_server(out_dir: Path, settings: DocsSettings) -> DocsServer:
    """Build a :class:`DocsServer`, enabling vector search when the index allows it."""
    metadata = load_metadata(out_dir)
    query_embedder = None
    vector_index = None

    if metadata.embedding is not None and get_lance_dir(out_dir).exists():
        query_embedder = _query_embedder(metadata, settings)
        if query_embedder is not None:
            from docs_mcp.corpus.store import LanceVectorIndex

            vector_index = LanceVectorIndex(get_lance_dir(out_dir), list(metadata.taxonomy))

    return create_docs_server(
        out_dir,
        tool_prefix=settings.tool_prefix,
        rrf_weights=settings.rrf_weights,
        query_embedder=query_embedder,
        vector_index=vector_index,
        metadata=metadata,
    )


def _query_embedder(metadata: CorpusMetadata, settings: DocsSettings):
    embedding = metadata.embedding
    try:
        provider = create_embedding_provider(
            embedding.provider,
            model=embedding.model,
            dimensions=embedding.dimensions,
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_base_url,
            max_retries=settings.embedding_max_retries,
            timeout=settings.embedding_timeout,
        )
    except EmbeddingError as e:
        logger.warning("Vector search disabled: %s", e)
        return None
    return provider
