"""Pydantic response models for the docs search API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str
    chunks: int = 0
    files: int = 0
    embedding: dict[str, Any] | None = None


class SearchHit(BaseModel):
    """A single ranked chunk."""
    chunk_id: str
    heading: str
    breadcrumb: str
    snippet: str
    filepath: str
    metadata: dict[str, str] = Field(default_factory=dict)
    score: float


class SearchHint(BaseModel):
    """Guidance returned when a search finds nothing."""
    message: str
    suggested_filters: dict[str, list[str]] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    """One page of search results."""
    hits: list[SearchHit] = Field(default_factory=list)
    next_cursor: str | None = None
    hint: SearchHint | None = None


class GetDocResponse(BaseModel):
    """Chunk text, optionally with neighbouring context."""
    text: str


class FileEntry(BaseModel):
    """A corpus file and the id of its first chunk."""
    filepath: str
    first_chunk_id: str


class ToolContent(BaseModel):
    type: str = "text"
    text: str


class ToolResult(BaseModel):
    """Result of a tool call; failures carry ``is_error`` and a message."""
    content: list[ToolContent] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(text=text)])

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=[ToolContent(text=message)], is_error=True)


class ToolDefinition(BaseModel):
    """A tool advertised to clients."""
    name: str
    description: str
    input_schema: dict[str, Any]


class ResourceEntry(BaseModel):
    """A readable markdown resource."""
    uri: str
    name: str
    mime_type: str = "text/markdown"
    description: str | None = None


class ResourceContents(BaseModel):
    uri: str
    mime_type: str = "text/markdown"
    text: str
