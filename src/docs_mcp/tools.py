"""Tool provider exposing search and document retrieval over a built corpus."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from docs_mcp.corpus.cursor import CursorError
from docs_mcp.corpus.embedding import EmbeddingError, EmbeddingProvider
from docs_mcp.corpus.indexer import load_chunks
from docs_mcp.corpus.metadata import (
    CorpusMetadata,
    get_collapse_keys,
    get_resource_values,
    load_metadata,
)
from docs_mcp.corpus.search import ChunkNotFoundError, SearchEngine, SearchError, VectorIndex
from docs_mcp.models.requests import (
    GetDocRequest,
    RrfWeights,
    ToolInputError,
    build_get_doc_schema,
    build_search_docs_schema,
    build_search_request_model,
    parse_tool_arguments,
)
from docs_mcp.models.responses import (
    ResourceContents,
    ResourceEntry,
    ToolDefinition,
    ToolResult,
)

logger = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
RESOURCE_SCHEME = "docs"

GET_DOC_DESCRIPTION = (
    "Retrieve the full content of a documentation page by its chunk_id (returned by "
    "search_docs). Each chunk is self-contained; do NOT set context on your first read. "
    "Only use context=1..3 if, after reading, you need adjacent sections."
)

_EXPECTED_ERRORS = (
    ToolInputError,
    SearchError,
    ChunkNotFoundError,
    CursorError,
    EmbeddingError,
)


class ResourceError(LookupError):
    """Raised for unreadable or unknown resource URIs."""


class DocsServer:
    """Dispatches tool calls to the search engine and shapes their results."""

    def __init__(
        self,
        engine: SearchEngine,
        metadata: CorpusMetadata,
        tool_prefix: str | None = None,
        rrf_weights: RrfWeights | None = None,
        query_embedder: EmbeddingProvider | None = None,
    ):
        self.engine = engine
        self.metadata = metadata
        self.rrf_weights = rrf_weights
        self.query_embedder = query_embedder
        self.search_tool_name = f"{tool_prefix}_search_docs" if tool_prefix else "search_docs"
        self.get_doc_tool_name = f"{tool_prefix}_get_doc" if tool_prefix else "get_doc"

        for name in (self.search_tool_name, self.get_doc_tool_name):
            if not TOOL_NAME_PATTERN.match(name):
                raise ValueError(
                    f"Tool name '{name}' exceeds 64 characters or contains invalid characters. "
                    "Use a shorter tool prefix."
                )

        self._search_model = build_search_request_model(metadata.taxonomy)

    def get_instructions(self) -> str | None:
        return self.metadata.mcp_server_instructions

    def get_tools(self) -> list[ToolDefinition]:
        search_description = (
            f"Search the pre-indexed {self.metadata.corpus_description}, the authoritative "
            "reference for this documentation set. Use exact identifiers, method names, or "
            "conceptual queries. Apply taxonomy filters to narrow results."
        )
        return [
            ToolDefinition(
                name=self.search_tool_name,
                description=search_description,
                input_schema=build_search_docs_schema(self.metadata.taxonomy),
            ),
            ToolDefinition(
                name=self.get_doc_tool_name,
                description=GET_DOC_DESCRIPTION,
                input_schema=build_get_doc_schema(),
            ),
        ]

    async def call_tool(self, name: str, args: Any) -> ToolResult:
        if name == self.search_tool_name:
            handler = self._search_docs
        elif name == self.get_doc_tool_name:
            handler = self._get_doc
        else:
            return ToolResult.error(f"Unknown tool '{name}'.")

        try:
            return await handler(args)
        except _EXPECTED_ERRORS as e:
            return ToolResult.error(str(e))
        except Exception:
            logger.exception("Tool '%s' failed", name)
            return ToolResult.error(f"{name} failed")

    async def _search_docs(self, args: Any) -> ToolResult:
        request = parse_tool_arguments(self._search_model, args, self.search_tool_name)

        query_vector = None
        if self.query_embedder is not None and self.engine.vector_index is not None:
            try:
                vectors = await self.query_embedder.embed([request.query])
                query_vector = vectors[0] if vectors else None
            except EmbeddingError as e:
                logger.warning("Query embedding failed, using text signals only: %s", e)

        result = self.engine.search(
            request.query,
            limit=request.limit,
            filters=request.filters(),
            cursor=request.cursor,
            taxonomy_keys=request.taxonomy_keys,
            rrf_weights=self.rrf_weights.model_dump() if self.rrf_weights else None,
            query_vector=query_vector,
        )
        return ToolResult.text(json.dumps(result.model_dump(), indent=2))

    async def _get_doc(self, args: Any) -> ToolResult:
        request = parse_tool_arguments(GetDocRequest, args, self.get_doc_tool_name)
        result = self.engine.get_doc(request.chunk_id, request.context)
        return ToolResult.text(result.text)

    def get_resources(self) -> list[ResourceEntry]:
        """Files exposed as resources by taxonomy values flagged ``mcp_resource``."""
        resources = []
        seen = set()
        for key, value in get_resource_values(self.metadata.taxonomy):
            for entry in self.engine.list_filepaths({key: value}):
                uri = f"{RESOURCE_SCHEME}:///{entry.filepath}"
                if uri in seen:
                    continue
                seen.add(uri)
                resources.append(ResourceEntry(
                    uri=uri,
                    name=entry.filepath,
                    description=f"{entry.filepath} ({key}={value})",
                ))
        return resources

    def read_resource(self, uri: str) -> ResourceContents:
        parsed = urlparse(uri)
        if parsed.scheme != RESOURCE_SCHEME:
            raise ResourceError(f"Invalid URI scheme: '{parsed.scheme}:'. Expected '{RESOURCE_SCHEME}:'")

        filepath = unquote(parsed.path).lstrip("/")
        if not filepath:
            raise ResourceError(f"Invalid URI: missing filepath in '{uri}'")

        first_chunk_id = self.engine.first_chunk_id(filepath)
        if first_chunk_id is None:
            raise ResourceError(f"Resource not found: {uri}. Use resources/list to discover available resources.")

        result = self.engine.get_doc(first_chunk_id, context=-1)
        return ResourceContents(uri=uri, text=result.text)


def create_docs_server(
    out_dir: Path,
    tool_prefix: str | None = None,
    rrf_weights: dict[str, float] | None = None,
    query_embedder: EmbeddingProvider | None = None,
    vector_index: VectorIndex | None = None,
    metadata: CorpusMetadata | None = None,
) -> DocsServer:
    """Load a built corpus from ``out_dir`` and wrap it in a :class:`DocsServer`."""
    out_dir = Path(out_dir)
    if metadata is None:
        metadata = load_metadata(out_dir)
    chunks = load_chunks(out_dir)
    weights = RrfWeights(**(rrf_weights or {}))

    engine = SearchEngine(
        chunks,
        collapse_keys=get_collapse_keys(metadata.taxonomy),
        vector_index=vector_index,
        rrf_weights=weights.model_dump(),
    )
    logger.info("Loaded %d chunks from %d files", engine.chunk_count, engine.file_count)
    return DocsServer(
        engine,
        metadata,
        tool_prefix=tool_prefix,
        rrf_weights=weights,
        query_embedder=query_embedder,
    )
