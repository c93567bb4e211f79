"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request

from docs_mcp import __version__
from docs_mcp.models.responses import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Return service status and corpus size."""
    server = request.app.state.docs_server
    embedding = server.metadata.embedding
    return HealthResponse(
        status="ok",
        version=__version__,
        chunks=server.engine.chunk_count,
        files=server.engine.file_count,
        embedding=embedding.model_dump() if embedding else None,
    )
