"""Search and retrieval over an immutable chunk set.

Scores chunks lexically (term counts plus a verbatim-phrase bonus). When a
query vector and a vector index are supplied, the match, phrase and vector
rankings are blended with weighted reciprocal-rank fusion instead.
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol, Sequence

from docs_mcp.corpus.cursor import decode_search_cursor, encode_search_cursor
from docs_mcp.corpus.ranking import (
    DEFAULT_RRF_WEIGHTS,
    clamp_limit,
    dedup_key,
    is_chunk_id_format,
    lexical_score,
    make_snippet,
    matches_exact_filters,
    matches_metadata_filters,
    normalize_search_text,
    phrase_match,
    reciprocal_rank_fusion,
    tokenize_search_text,
)
from docs_mcp.corpus.schema import Chunk
from docs_mcp.models.responses import (
    FileEntry,
    GetDocResponse,
    SearchHint,
    SearchHit,
    SearchResponse,
)

logger = logging.getLogger(__name__)

MAX_CONTEXT = 5
MAX_VECTOR_FETCH = 5000


class SearchError(ValueError):
    """Raised for unusable search or lookup input."""


class ChunkNotFoundError(LookupError):
    """Raised when a chunk id is well-formed but not in the corpus."""


class VectorIndex(Protocol):
    def query(
        self,
        vector: Sequence[float],
        limit: int,
        filters: Mapping[str, str],
        taxonomy_keys: Sequence[str] | None = None,
    ) -> list[tuple[str, float]]: ...


class SearchEngine:
    """Answers search, document and file-listing queries for one build.

    Holds no per-request state; pagination lives entirely in the cursor.
    """

    def __init__(
        self,
        chunks: Sequence[Chunk],
        collapse_keys: Sequence[str] | None = None,
        proximity_weight: float = DEFAULT_RRF_WEIGHTS["phrase"],
        vector_index: VectorIndex | None = None,
        rrf_weights: Mapping[str, float] | None = None,
    ):
        self._chunks = list(chunks)
        self._by_id = {chunk.chunk_id: chunk for chunk in self._chunks}
        self._by_file: dict[str, list[Chunk]] = {}
        for chunk in self._chunks:
            self._by_file.setdefault(chunk.filepath, []).append(chunk)
        for file_chunks in self._by_file.values():
            file_chunks.sort(key=lambda c: c.chunk_index)

        self._normalized = {
            chunk.chunk_id: (normalize_search_text(chunk.heading), normalize_search_text(chunk.content_text))
            for chunk in self._chunks
        }
        self.collapse_keys = list(collapse_keys or [])
        self.vector_index = vector_index
        self.rrf_weights = {**DEFAULT_RRF_WEIGHTS, "phrase": proximity_weight, **(rrf_weights or {})}

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def file_count(self) -> int:
        return len(self._by_file)

    def first_chunk_id(self, filepath: str) -> str | None:
        file_chunks = self._by_file.get(filepath)
        return file_chunks[0].chunk_id if file_chunks else None

    def search(
        self,
        query: str,
        limit: int | None = None,
        filters: Mapping[str, str] | None = None,
        cursor: str | None = None,
        taxonomy_keys: Sequence[str] | None = None,
        rrf_weights: Mapping[str, float] | None = None,
        query_vector: Sequence[float] | None = None,
    ) -> SearchResponse:
        query = query.strip()
        if not query:
            raise SearchError("query is required")

        limit = clamp_limit(limit)
        filters = dict(filters or {})
        offset = decode_search_cursor(cursor, query, filters).offset if cursor else 0
        weights = {**self.rrf_weights, **(rrf_weights or {})}

        candidates = [
            chunk for chunk in self._chunks
            if matches_metadata_filters(chunk.metadata, filters, taxonomy_keys)
        ]

        normalized_query = normalize_search_text(query)
        tokens = tokenize_search_text(normalized_query)

        if query_vector and self.vector_index is not None:
            fetch_limit = min(max(offset + limit + 200, limit * 5), MAX_VECTOR_FETCH)
            scored = self._fused_scores(
                candidates, normalized_query, tokens, query_vector,
                fetch_limit, filters, taxonomy_keys, weights,
            )
        else:
            scored = []
            for chunk in candidates:
                score = self._lexical_score(chunk, normalized_query, tokens, weights["phrase"])
                if score > 0:
                    scored.append((chunk, score))

        scored.sort(key=lambda entry: (-entry[1], entry[0].chunk_id))

        active_collapse_keys = [key for key in self.collapse_keys if not filters.get(key)]
        ranked = _collapse_variants(scored, active_collapse_keys)

        page = ranked[offset:offset + limit]
        hits = [
            SearchHit(
                chunk_id=chunk.chunk_id,
                heading=chunk.heading,
                breadcrumb=chunk.breadcrumb,
                snippet=make_snippet(chunk.content_text, query),
                filepath=chunk.filepath,
                metadata=dict(chunk.metadata),
                score=round(score, 6),
            )
            for chunk, score in page
        ]

        next_offset = offset + len(page)
        next_cursor = (
            encode_search_cursor(next_offset, limit, query, filters)
            if next_offset < len(ranked)
            else None
        )
        hint = None if ranked else self._build_hint(query, normalized_query, tokens, filters)
        return SearchResponse(hits=hits, next_cursor=next_cursor, hint=hint)

    def _lexical_score(
        self,
        chunk: Chunk,
        normalized_query: str,
        tokens: list[str],
        proximity_weight: float,
    ) -> float:
        if not tokens:
            return 0.0
        heading, content = self._normalized[chunk.chunk_id]
        score = float(lexical_score(heading, content, tokens))
        if phrase_match(heading, content, normalized_query):
            score += proximity_weight
        return score

    def _fused_scores(
        self,
        candidates: list[Chunk],
        normalized_query: str,
        tokens: list[str],
        query_vector: Sequence[float],
        fetch_limit: int,
        filters: dict[str, str],
        taxonomy_keys: Sequence[str] | None,
        weights: Mapping[str, float],
    ) -> list[tuple[Chunk, float]]:
        lexical: list[tuple[Chunk, int]] = []
        phrase: list[tuple[Chunk, int]] = []
        for chunk in candidates:
            heading, content = self._normalized[chunk.chunk_id]
            score = lexical_score(heading, content, tokens)
            if score > 0:
                lexical.append((chunk, score))
            if phrase_match(heading, content, normalized_query):
                phrase.append((chunk, score))

        def ranked_ids(entries: list[tuple[Chunk, int]]) -> list[str]:
            entries.sort(key=lambda e: (-e[1], e[0].chunk_id))
            return [chunk.chunk_id for chunk, _ in entries[:fetch_limit]]

        allowed = {chunk.chunk_id for chunk in candidates}
        try:
            neighbours = self.vector_index.query(query_vector, fetch_limit, filters, taxonomy_keys)
        except Exception as e:
            logger.warning("Vector search failed, using text signals only: %s", e)
            neighbours = []
        vector_ids = [chunk_id for chunk_id, _ in neighbours if chunk_id in allowed]

        fused = reciprocal_rank_fusion(
            {"match": ranked_ids(lexical), "phrase": ranked_ids(phrase), "vector": vector_ids},
            weights,
        )
        return [(self._by_id[chunk_id], score) for chunk_id, score in fused.items() if score > 0]

    def _build_hint(
        self,
        query: str,
        normalized_query: str,
        tokens: list[str],
        filters: dict[str, str],
    ) -> SearchHint:
        summary = ", ".join(f"{key}='{value}'" for key, value in filters.items())
        if summary:
            message = f"0 results found for query '{query}' with filters {summary}."
        else:
            message = f"0 results found for query '{query}'."

        query_matches = [
            chunk for chunk in self._chunks
            if self._lexical_score(chunk, normalized_query, tokens, 0.0) > 0
        ]
        if not query_matches:
            return SearchHint(
                message=f"{message} No matches were found for this query in the indexed corpus.",
            )

        suggestions: dict[str, list[str]] = {}
        for key, active in filters.items():
            values = {
                chunk.metadata[key] for chunk in query_matches
                if chunk.metadata.get(key) and chunk.metadata[key] != active
            }
            if values:
                suggestions[key] = sorted(values)

        return SearchHint(message=message, suggested_filters=suggestions)

    def get_doc(self, chunk_id: str, context: int = 0) -> GetDocResponse:
        """Return a chunk, its neighbours, or with ``context=-1`` the whole file."""
        if not is_chunk_id_format(chunk_id):
            raise SearchError(
                f"Chunk ID '{chunk_id}' has invalid format. Expected {{filepath}} or {{filepath}}#{{heading-path}}."
            )

        target = self._by_id.get(chunk_id)
        if target is None:
            raise ChunkNotFoundError(
                f"Chunk ID '{chunk_id}' not found. Use search_docs to discover valid chunk IDs."
            )

        file_chunks = self._by_file[target.filepath]
        if context == -1:
            return GetDocResponse(text="\n\n".join(chunk.content for chunk in file_chunks))

        context = max(0, min(MAX_CONTEXT, context))
        position = next(i for i, chunk in enumerate(file_chunks) if chunk.chunk_id == chunk_id)
        start = max(0, position - context)
        end = min(len(file_chunks) - 1, position + context)

        blocks = []
        for i in range(start, end + 1):
            chunk = file_chunks[i]
            delta = i - position
            role = "Target" if delta == 0 else f"Context: {delta:+d}"
            blocks.append(
                f"--- Chunk: {chunk.chunk_id} (Chunk {i + 1} of {len(file_chunks)}) ({role}) ---\n{chunk.content}"
            )
        return GetDocResponse(text="\n\n".join(blocks))

    def list_filepaths(self, filters: Mapping[str, str] | None = None) -> list[FileEntry]:
        """Files whose first chunk carries every filter value exactly."""
        filters = filters or {}
        entries = []
        for filepath, file_chunks in self._by_file.items():
            first = file_chunks[0]
            if matches_exact_filters(first.metadata, filters):
                entries.append(FileEntry(filepath=filepath, first_chunk_id=first.chunk_id))
        return sorted(entries, key=lambda entry: entry.filepath)


def _collapse_variants(
    scored: list[tuple[Chunk, float]],
    collapse_keys: list[str],
) -> list[tuple[Chunk, float]]:
    """Keep only the best-ranked chunk of each variant group."""
    if not collapse_keys:
        return scored

    seen: set[str] = set()
    kept = []
    for chunk, score in scored:
        key = dedup_key(chunk.filepath, chunk.heading, chunk.chunk_id, chunk.metadata, collapse_keys)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        kept.append((chunk, score))
    return kept
