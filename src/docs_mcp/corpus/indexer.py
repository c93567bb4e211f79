"""Corpus indexer: converts a markdown docs tree into searchable artifacts.

Walks the corpus, resolves each file's strategy and tags, chunks it, embeds
changed chunks, and writes ``chunks.json``, ``metadata.json``,
``file-fingerprints.json`` and (when vectors exist) a LanceDB table.
Files whose fingerprint is unchanged since the last build reuse their
previous chunks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from docs_mcp.corpus.chunker import build_chunks
from docs_mcp.corpus.embedding import EmbeddingProvider, sha256hex
from docs_mcp.corpus.embedding_cache import (
    EmbeddingBatchError,
    EmbeddingCache,
    EmbeddingStats,
    embed_chunks_incremental,
    load_cache,
    save_cache,
)
from docs_mcp.corpus.manifest import (
    Manifest,
    ManifestContext,
    load_nearest_manifest,
    merge_taxonomy_configs,
    resolve_file_config,
    to_posix_path,
)
from docs_mcp.corpus.metadata import (
    CorpusMetadata,
    EmbeddingMetadata,
    build_metadata,
    write_metadata,
)
from docs_mcp.corpus.schema import MANIFEST_FILENAME, Chunk, ChunkingStrategy
from docs_mcp.corpus.store import build_lance_index
from docs_mcp.utils.paths import (
    get_chunks_path,
    get_file_fingerprints_path,
    get_lance_dir,
    list_markdown_files,
)

logger = logging.getLogger(__name__)


@dataclass
class FileReport:
    """Per-file outcome of resolving and chunking."""
    filepath: str
    chunk_count: int
    strategy: ChunkingStrategy
    metadata: dict[str, str]
    has_manifest: bool
    reused: bool = False


@dataclass
class CorpusChunks:
    chunks: list[Chunk] = field(default_factory=list)
    fingerprints: dict[str, str] = field(default_factory=dict)
    files: list[FileReport] = field(default_factory=list)
    manifests: list[Manifest] = field(default_factory=list)
    instructions: str | None = None


@dataclass
class BuildResult:
    chunks: list[Chunk]
    metadata: CorpusMetadata
    files: list[FileReport]
    embedding_stats: EmbeddingStats
    rows_written: int = 0
    cache_saved: bool = False
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def files_reused(self) -> int:
        return sum(1 for f in self.files if f.reused)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "files_indexed": len(self.files),
            "files_reused": self.files_reused,
            "chunks_created": len(self.chunks),
            "embedding_hits": self.embedding_stats.hits,
            "embedding_misses": self.embedding_stats.misses,
            "rows_written": self.rows_written,
            "files_added": len(self.added),
            "files_modified": len(self.modified),
            "files_deleted": len(self.deleted),
        }


def compute_file_fingerprint(strategy: ChunkingStrategy, metadata: dict[str, str], markdown: str) -> str:
    """Fingerprint of everything that determines a file's chunks."""
    payload = json.dumps(
        {"strategy": strategy.to_dict(), "metadata": metadata, "markdown": markdown},
        sort_keys=True,
    )
    return sha256hex(payload)


def load_file_fingerprints(out_dir: Path) -> dict[str, str]:
    """Load the per-file fingerprint map from the previous build."""
    path = get_file_fingerprints_path(out_dir)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


def save_file_fingerprints(out_dir: Path, fingerprints: dict[str, str]) -> None:
    path = get_file_fingerprints_path(out_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(fingerprints, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def load_chunks(out_dir: Path) -> list[Chunk]:
    """Load ``chunks.json`` written by a build."""
    data = json.loads(get_chunks_path(out_dir).read_text(encoding="utf-8"))
    return [Chunk.from_dict(item) for item in data]


def _load_previous_chunks(out_dir: Path) -> dict[str, list[Chunk]]:
    try:
        chunks = load_chunks(out_dir)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        return {}
    by_file: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        by_file.setdefault(chunk.filepath, []).append(chunk)
    return by_file


def read_markdown(path: Path, relative: str) -> str:
    """Read a markdown file as UTF-8, replacing undecodable bytes."""
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("%s is not valid UTF-8; undecodable bytes were replaced", relative)
        return raw.decode("utf-8", errors="replace")


def find_changes(
    current: dict[str, str],
    previous: dict[str, str],
) -> tuple[list[str], list[str], list[str]]:
    """Compare file fingerprints against the previous build.

    Returns sorted (added, modified, deleted) filepath lists.
    """
    current_files, previous_files = set(current), set(previous)
    changed = {path for path in current_files & previous_files if current[path] != previous[path]}
    return (
        sorted(current_files - previous_files),
        sorted(changed),
        sorted(previous_files - current_files),
    )


def chunk_corpus(
    docs_dir: Path,
    previous_fingerprints: dict[str, str] | None = None,
    previous_chunks: dict[str, list[Chunk]] | None = None,
) -> CorpusChunks:
    """Resolve and chunk every markdown file under ``docs_dir``."""
    docs_dir = docs_dir.resolve()
    previous_fingerprints = previous_fingerprints or {}
    previous_chunks = previous_chunks or {}
    manifest_cache: dict[Path, Manifest] = {}
    result = CorpusChunks()

    for path in list_markdown_files(docs_dir):
        relative = to_posix_path(str(path.relative_to(docs_dir)))
        markdown = read_markdown(path, relative)

        context: ManifestContext | None = load_nearest_manifest(path, docs_dir, manifest_cache)
        if context is None:
            logger.warning("No %s found for %s; using default strategy", MANIFEST_FILENAME, relative)
            resolved = resolve_file_config(relative, markdown=markdown)
        else:
            resolved = resolve_file_config(
                relative,
                manifest=context.manifest,
                manifest_base_dir=context.base_dir,
                markdown=markdown,
            )

        fingerprint = compute_file_fingerprint(resolved.strategy, resolved.metadata, markdown)
        reused = previous_fingerprints.get(relative) == fingerprint and relative in previous_chunks
        if reused:
            file_chunks = previous_chunks[relative]
        else:
            file_chunks = build_chunks(relative, markdown, resolved.strategy, resolved.metadata)

        result.chunks.extend(file_chunks)
        result.fingerprints[relative] = fingerprint
        result.files.append(FileReport(
            filepath=relative,
            chunk_count=len(file_chunks),
            strategy=resolved.strategy,
            metadata=resolved.metadata,
            has_manifest=context is not None,
            reused=reused,
        ))

    result.manifests = list(manifest_cache.values())
    root_manifest = manifest_cache.get(docs_dir / MANIFEST_FILENAME)
    if root_manifest is not None:
        result.instructions = root_manifest.instructions
    return result


async def build_corpus_async(
    docs_dir: Path,
    out_dir: Path,
    provider: EmbeddingProvider,
    corpus_description: str | None = None,
    rebuild_cache: bool = False,
    cache_dir: Path | None = None,
    source_commit: str | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> BuildResult:
    """Build all index artifacts for ``docs_dir`` into ``out_dir``."""
    out_dir = Path(out_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    previous_fingerprints = load_file_fingerprints(out_dir)
    previous_chunks = _load_previous_chunks(out_dir) if previous_fingerprints else {}
    corpus = chunk_corpus(Path(docs_dir), previous_fingerprints, previous_chunks)

    added, modified, deleted = find_changes(corpus.fingerprints, previous_fingerprints)
    logger.info(
        "Chunked %d files (%d added, %d modified, %d deleted): %d chunks",
        len(corpus.files), len(added), len(modified), len(deleted), len(corpus.chunks),
    )
    for filepath in deleted:
        logger.info("Dropped %s: no longer in the corpus", filepath)

    stats = EmbeddingStats(total=len(corpus.chunks))
    vectors: dict[str, list[float]] = {}
    cache_saved = False
    embedding_meta = None

    if provider.dimensions > 0:
        cache_base = Path(cache_dir).resolve() if cache_dir else out_dir
        if rebuild_cache:
            cache = EmbeddingCache(config_fingerprint=provider.config_fingerprint)
        else:
            cache = load_cache(cache_base, provider.config_fingerprint)

        try:
            embedded = await embed_chunks_incremental(
                corpus.chunks, provider, cache, on_progress=on_progress,
                strategies={report.filepath: report.strategy for report in corpus.files},
            )
        except EmbeddingBatchError as e:
            save_cache(cache_base, e.cache)
            raise

        vectors = embedded.vectors
        stats = embedded.stats
        cache_saved = save_cache(cache_base, embedded.cache)
        embedding_meta = EmbeddingMetadata(
            provider=provider.name,
            model=provider.model,
            dimensions=provider.dimensions,
        )

    metadata = build_metadata(
        corpus.chunks,
        taxonomy_config=merge_taxonomy_configs(corpus.manifests),
        corpus_description=corpus_description,
        embedding=embedding_meta,
        source_commit=source_commit,
        instructions=corpus.instructions,
    )

    lance_dir = get_lance_dir(out_dir)
    if lance_dir.exists():
        shutil.rmtree(lance_dir)
    rows_written = 0
    if vectors:
        rows_written = build_lance_index(
            lance_dir,
            corpus.chunks,
            vectors,
            file_fingerprints=corpus.fingerprints,
            metadata_keys=list(metadata.taxonomy),
        )

    get_chunks_path(out_dir).write_text(
        json.dumps([chunk.to_dict() for chunk in corpus.chunks], indent=2),
        encoding="utf-8",
    )
    write_metadata(out_dir, metadata)
    save_file_fingerprints(out_dir, corpus.fingerprints)

    logger.info("Wrote %d chunks to %s", len(corpus.chunks), out_dir)
    return BuildResult(
        chunks=corpus.chunks,
        metadata=metadata,
        files=corpus.files,
        embedding_stats=stats,
        rows_written=rows_written,
        cache_saved=cache_saved,
        added=added,
        modified=modified,
        deleted=deleted,
    )


def build_corpus(
    docs_dir: Path,
    out_dir: Path,
    provider: EmbeddingProvider,
    **kwargs: Any,
) -> BuildResult:
    """Synchronous wrapper around :func:`build_corpus_async`."""
    return asyncio.run(build_corpus_async(docs_dir, out_dir, provider, **kwargs))


def validate_corpus(docs_dir: Path) -> list[FileReport]:
    """Resolve and chunk every file without embedding or writing anything."""
    reports = chunk_corpus(Path(docs_dir)).files
    for report in reports:
        if report.chunk_count == 0:
            logger.warning("%s produced no chunks", report.filepath)
    return reports
