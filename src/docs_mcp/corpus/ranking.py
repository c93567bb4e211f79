"""Scoring, fusion and result-shaping helpers shared by the search engine."""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Sequence

DEFAULT_LIMIT = 10
MAX_LIMIT = 50
SNIPPET_LENGTH = 220
SNIPPET_LEAD = 60
HEADING_WEIGHT = 3
RRF_K = 60

DEFAULT_RRF_WEIGHTS = {"match": 1.0, "phrase": 1.25, "vector": 1.0}

_CHUNK_ID = re.compile(r"^(?!\s)([^#\s]+)(#[^#\s]+)?$")
_WHITESPACE = re.compile(r"\s+")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_PART_SUFFIX = re.compile(r"-part-(\d+)$")


def clamp_limit(limit: int | None) -> int:
    if limit is None or isinstance(limit, bool) or not isinstance(limit, int):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, limit))


def is_chunk_id_format(value: str) -> bool:
    return bool(_CHUNK_ID.match(value))


def normalize_search_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value.lower()).strip()


def tokenize_search_text(value: str) -> list[str]:
    return [token for token in _TOKEN_SPLIT.split(value) if token]


def count_token(value: str, token: str) -> int:
    """Count non-overlapping occurrences of ``token`` in ``value``."""
    if not token:
        return 0
    return value.count(token)


def lexical_score(heading: str, content_text: str, tokens: Sequence[str]) -> int:
    """Term hits in the content plus heavier-weighted hits in the heading.

    ``heading`` and ``content_text`` must already be normalized.
    """
    return sum(count_token(content_text, t) + HEADING_WEIGHT * count_token(heading, t) for t in tokens)


def phrase_match(heading: str, content_text: str, normalized_query: str) -> bool:
    if not normalized_query:
        return False
    return normalized_query in content_text or normalized_query in heading


def reciprocal_rank_fusion(
    rankings: Mapping[str, Sequence[str]],
    weights: Mapping[str, float],
    k: int = RRF_K,
) -> dict[str, float]:
    """Blend ranked id lists into one score per id.

    Each signal contributes ``weight / (k + rank)`` with 1-based ranks; a
    signal with a non-positive weight contributes nothing.
    """
    scores: dict[str, float] = {}
    for signal, ids in rankings.items():
        weight = weights.get(signal, 0.0)
        if weight <= 0:
            continue
        seen: set[str] = set()
        for rank, item_id in enumerate(ids, start=1):
            if item_id in seen:
                continue
            seen.add(item_id)
            scores[item_id] = scores.get(item_id, 0.0) + weight / (k + rank)
    return scores


def make_snippet(content: str, query: str) -> str:
    normalized = normalize_search_text(content)
    if len(normalized) <= SNIPPET_LENGTH:
        return normalized

    anchor = 0
    for term in tokenize_search_text(normalize_search_text(query)):
        index = normalized.find(term)
        if index >= 0:
            anchor = index
            break

    start = max(0, anchor - SNIPPET_LEAD)
    end = min(len(normalized), start + SNIPPET_LENGTH)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(normalized) else ""
    return f"{prefix}{normalized[start:end].strip()}{suffix}"


def dedup_key(
    filepath: str,
    heading: str,
    chunk_id: str,
    metadata: Mapping[str, str],
    collapse_keys: Iterable[str],
) -> str | None:
    """Identity of a chunk with its variant-axis values blanked out.

    Path segments equal to a collapse key's value become ``*``; chunks that
    end up with the same path, heading and part number are variants of one
    another. Returns None when nothing was blanked out.
    """
    keys = list(collapse_keys)
    if not keys:
        return None

    parts = filepath.split("/")
    normalized = False
    for key in keys:
        value = metadata.get(key, "")
        if not value:
            return None
        for i, part in enumerate(parts):
            if part == value:
                parts[i] = "*"
                normalized = True
                break

    if not normalized:
        return None

    part_match = _PART_SUFFIX.search(chunk_id)
    part_suffix = f":{part_match.group(1)}" if part_match else ""
    return f"{'/'.join(parts)}:{heading}{part_suffix}"


def matches_metadata_filters(
    metadata: Mapping[str, str],
    filters: Mapping[str, str],
    taxonomy_keys: Iterable[str] | None = None,
) -> bool:
    """All filters must pass; a chunk without a value for a key passes it.

    When ``taxonomy_keys`` is given, only keys in it are auto-included;
    any other filter key needs an exact value match.
    """
    auto_include = None if taxonomy_keys is None else set(taxonomy_keys)
    for key, value in filters.items():
        actual = metadata.get(key)
        if actual == value:
            continue
        if not actual and (auto_include is None or key in auto_include):
            continue
        return False
    return True


def matches_exact_filters(metadata: Mapping[str, str], filters: Mapping[str, str]) -> bool:
    return all(metadata.get(key) == value for key, value in filters.items())
