"""Incremental embedding with an on-disk, content-fingerprinted cache.

A chunk is re-embedded only when its fingerprint is missing from the cache
saved under the current provider configuration. A configuration change
discards the whole cache before any diffing happens.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from docs_mcp.corpus.embedding import (
    EmbeddingError,
    EmbeddingProvider,
    estimate_tokens,
    sha256hex,
    to_embedding_input,
)
from docs_mcp.corpus.schema import Chunk, ChunkingStrategy

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = ".embedding-cache"
CACHE_META_FILE = "cache-meta.json"
CACHE_ENTRIES_FILE = "embeddings.json"

CACHE_VERSION = 1
EMBEDDING_FORMAT_VERSION = "v1"

DEFAULT_BATCH_SIZE = 128
DEFAULT_CONCURRENCY = 4


@dataclass
class EmbeddingCache:
    """Vectors keyed by chunk fingerprint, valid for one provider configuration."""
    config_fingerprint: str
    entries: dict[str, list[float]] = field(default_factory=dict)


@dataclass
class EmbeddingStats:
    hits: int = 0
    misses: int = 0
    total: int = 0
    estimated_tokens: int = 0
    estimated_cost: float = 0.0


@dataclass
class EmbeddingResult:
    vectors: dict[str, list[float]]
    cache: EmbeddingCache
    stats: EmbeddingStats


class EmbeddingBatchError(EmbeddingError):
    """One or more batches failed after retries.

    ``cache`` holds every vector that was computed, so it can still be
    persisted to warm the next build.
    """

    def __init__(self, message: str, cache: EmbeddingCache, failures: list[BaseException]):
        super().__init__(message)
        self.cache = cache
        self.failures = failures


def compute_fingerprint(
    chunk: Chunk,
    config_fingerprint: str,
    strategy: ChunkingStrategy | None = None,
) -> str:
    """Fingerprint everything that influences a chunk's vector.

    Covers the provider configuration, the strategy that produced the chunk,
    its tags and its markdown. The chunk id is left out so renaming a
    heading's anchor alone does not force a re-embed.
    """
    metadata = json.dumps(chunk.metadata, sort_keys=True, separators=(",", ":"))
    strategy_key = json.dumps(strategy.to_dict(), sort_keys=True) if strategy is not None else ""
    return sha256hex("\n".join([
        EMBEDDING_FORMAT_VERSION,
        config_fingerprint,
        strategy_key,
        metadata,
        chunk.content,
        to_embedding_input(chunk),
    ]))


def cache_dir_for(base_dir: Path) -> Path:
    return Path(base_dir) / CACHE_DIR_NAME


def _remove_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)


def load_cache(base_dir: Path, config_fingerprint: str) -> EmbeddingCache:
    """Load the prior cache, or an empty one on any mismatch or read error."""
    cache_dir = cache_dir_for(base_dir)
    _remove_dir(cache_dir.with_name(CACHE_DIR_NAME + ".tmp"))
    _remove_dir(cache_dir.with_name(CACHE_DIR_NAME + ".old"))

    empty = EmbeddingCache(config_fingerprint=config_fingerprint)
    meta_path = cache_dir / CACHE_META_FILE
    if not meta_path.exists():
        return empty

    try:
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Embedding cache metadata unreadable, starting cold: %s", e)
        _remove_dir(cache_dir)
        return empty

    if (
        not isinstance(meta, dict)
        or meta.get("cache_version") != CACHE_VERSION
        or meta.get("format_version") != EMBEDDING_FORMAT_VERSION
        or meta.get("config_fingerprint") != config_fingerprint
    ):
        logger.warning("Embedding cache invalidated (version or provider configuration changed)")
        _remove_dir(cache_dir)
        return empty

    try:
        raw = json.loads((cache_dir / CACHE_ENTRIES_FILE).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Embedding cache entries unreadable, starting cold: %s", e)
        _remove_dir(cache_dir)
        return empty

    if not isinstance(raw, dict):
        logger.warning("Embedding cache entries malformed, starting cold")
        _remove_dir(cache_dir)
        return empty

    entries = {}
    for fingerprint, vector in raw.items():
        if isinstance(vector, list) and all(isinstance(v, (int, float)) for v in vector):
            entries[fingerprint] = [float(v) for v in vector]
    return EmbeddingCache(config_fingerprint=config_fingerprint, entries=entries)


def save_cache(base_dir: Path, cache: EmbeddingCache) -> bool:
    """Persist the cache via a temp directory swap. Returns False on failure."""
    cache_dir = cache_dir_for(base_dir)
    tmp_dir = cache_dir.with_name(CACHE_DIR_NAME + ".tmp")
    old_dir = cache_dir.with_name(CACHE_DIR_NAME + ".old")

    try:
        _remove_dir(tmp_dir)
        tmp_dir.mkdir(parents=True)
        meta = {
            "cache_version": CACHE_VERSION,
            "format_version": EMBEDDING_FORMAT_VERSION,
            "config_fingerprint": cache.config_fingerprint,
        }
        (tmp_dir / CACHE_META_FILE).write_text(json.dumps(meta, indent=2), encoding="utf-8")
        (tmp_dir / CACHE_ENTRIES_FILE).write_text(json.dumps(cache.entries), encoding="utf-8")

        _remove_dir(old_dir)
        if cache_dir.exists():
            cache_dir.rename(old_dir)
        tmp_dir.rename(cache_dir)
        _remove_dir(old_dir)
    except OSError as e:
        logger.warning("Failed to write embedding cache: %s", e)
        return False
    return True


async def embed_chunks_incremental(
    chunks: list[Chunk],
    provider: EmbeddingProvider,
    cache: EmbeddingCache,
    batch_size: int | None = None,
    concurrency: int | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    strategies: Mapping[str, ChunkingStrategy] | None = None,
) -> EmbeddingResult:
    """Embed only the chunks whose fingerprint is not cached.

    ``strategies`` maps each filepath to the strategy its chunks were built
    with, so a strategy change re-embeds that file's chunks.

    Returns vectors keyed by ``chunk_id`` and a cache holding exactly the
    fingerprints of ``chunks``. Batches run concurrently and fail
    independently; if any batch fails, :class:`EmbeddingBatchError` carries
    the vectors the other batches produced.
    """
    stats = EmbeddingStats(total=len(chunks))
    config_fingerprint = provider.config_fingerprint

    if provider.dimensions <= 0:
        return EmbeddingResult(vectors={}, cache=EmbeddingCache(config_fingerprint), stats=stats)

    prior = cache.entries
    if cache.config_fingerprint != config_fingerprint:
        logger.warning("Embedding provider configuration changed; discarding cached vectors")
        prior = {}

    fingerprints: dict[str, str] = {}
    pending: dict[str, str] = {}
    updated: dict[str, list[float]] = {}
    strategies = strategies or {}
    for chunk in chunks:
        fp = compute_fingerprint(chunk, config_fingerprint, strategies.get(chunk.filepath))
        fingerprints[chunk.chunk_id] = fp
        if fp in prior:
            stats.hits += 1
            updated[fp] = prior[fp]
        else:
            stats.misses += 1
            pending.setdefault(fp, to_embedding_input(chunk))

    stats.estimated_tokens = sum(estimate_tokens(text) for text in pending.values())
    stats.estimated_cost = stats.estimated_tokens * provider.cost_per_million_tokens / 1_000_000

    size = batch_size or provider.batch_size or DEFAULT_BATCH_SIZE
    items = list(pending.items())
    batches = [items[i:i + size] for i in range(0, len(items), size)]
    semaphore = asyncio.Semaphore(max(1, concurrency or provider.concurrency or DEFAULT_CONCURRENCY))
    done = 0

    async def run_batch(batch: list[tuple[str, str]]) -> list[tuple[str, list[float]]]:
        nonlocal done
        async with semaphore:
            vectors = await provider.embed([text for _, text in batch])
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for a batch of {len(batch)}"
            )
        for vector in vectors:
            if len(vector) != provider.dimensions:
                raise EmbeddingError(
                    f"Provider returned a {len(vector)}-dim vector, expected {provider.dimensions}"
                )
        done += 1
        if on_progress is not None:
            on_progress(done, len(batches))
        return [(fp, vector) for (fp, _), vector in zip(batch, vectors)]

    results = await asyncio.gather(*(run_batch(b) for b in batches), return_exceptions=True)

    failures: list[BaseException] = []
    for result in results:
        if isinstance(result, BaseException):
            failures.append(result)
            continue
        for fp, vector in result:
            updated[fp] = vector

    new_cache = EmbeddingCache(config_fingerprint=config_fingerprint, entries=updated)
    if failures:
        raise EmbeddingBatchError(
            f"{len(failures)} of {len(batches)} embedding batches failed: {failures[0]}",
            cache=new_cache,
            failures=failures,
        )

    logger.info("Embedding cache: %d hits, %d misses, %d chunks", stats.hits, stats.misses, stats.total)
    vectors = {chunk_id: updated[fp] for chunk_id, fp in fingerprints.items()}
    return EmbeddingResult(vectors=vectors, cache=new_cache, stats=stats)
