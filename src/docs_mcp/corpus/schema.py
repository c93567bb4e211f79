"""Core data types for the documentation corpus."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


MANIFEST_FILENAME = ".docs-mcp.json"
TABLE_NAME = "chunks"
DEFAULT_CHUNK_BY = "h2"

ChunkBy = Literal["h1", "h2", "h3", "file"]
CHUNK_BY_VALUES: tuple[str, ...] = ("h1", "h2", "h3", "file")


@dataclass(frozen=True)
class ChunkingStrategy:
    """How a markdown file is split into chunks."""
    chunk_by: str = DEFAULT_CHUNK_BY
    max_chunk_size: int | None = None
    min_chunk_size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"chunk_by": self.chunk_by}
        if self.max_chunk_size is not None:
            result["max_chunk_size"] = self.max_chunk_size
        if self.min_chunk_size is not None:
            result["min_chunk_size"] = self.min_chunk_size
        return result


@dataclass
class ResolvedFileConfig:
    """Effective chunking strategy and tags for one file."""
    strategy: ChunkingStrategy
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    """An addressable, independently retrievable slice of a markdown document."""
    chunk_id: str
    filepath: str
    heading: str
    heading_level: int
    content: str
    content_text: str
    breadcrumb: str
    chunk_index: int
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "filepath": self.filepath,
            "heading": self.heading,
            "heading_level": self.heading_level,
            "content": self.content,
            "content_text": self.content_text,
            "breadcrumb": self.breadcrumb,
            "chunk_index": self.chunk_index,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chunk:
        metadata = data.get("metadata") or {}
        return cls(
            chunk_id=str(data["chunk_id"]),
            filepath=str(data["filepath"]),
            heading=str(data.get("heading", "")),
            heading_level=int(data.get("heading_level", 0)),
            content=str(data.get("content", "")),
            content_text=str(data.get("content_text", "")),
            breadcrumb=str(data.get("breadcrumb", "")),
            chunk_index=int(data.get("chunk_index", 0)),
            metadata={str(k): str(v) for k, v in metadata.items() if isinstance(v, str)},
        )
