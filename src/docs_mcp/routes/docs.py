"""Tool, resource and instruction endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from docs_mcp.corpus.search import ChunkNotFoundError
from docs_mcp.models.responses import ResourceContents, ResourceEntry, ToolDefinition, ToolResult
from docs_mcp.tools import DocsServer, ResourceError

router = APIRouter()


def _server(request: Request) -> DocsServer:
    return request.app.state.docs_server


@router.get("/tools", response_model=list[ToolDefinition])
async def list_tools(request: Request) -> list[ToolDefinition]:
    """List the tools and their input schemas."""
    return _server(request).get_tools()


@router.post("/tools/{name}", response_model=ToolResult)
async def call_tool(name: str, request: Request, args: Any = Body(default=None)) -> ToolResult:
    """Call a tool. Failures come back as ``is_error`` results, not HTTP errors."""
    return await _server(request).call_tool(name, {} if args is None else args)


@router.get("/instructions")
async def get_instructions(request: Request) -> dict[str, str | None]:
    return {"instructions": _server(request).get_instructions()}


@router.get("/resources", response_model=list[ResourceEntry])
async def list_resources(request: Request) -> list[ResourceEntry]:
    return _server(request).get_resources()


@router.get("/resources/read", response_model=ResourceContents)
async def read_resource(uri: str, request: Request) -> ResourceContents:
    """Read a ``docs:///`` resource as markdown."""
    try:
        return _server(request).read_resource(uri)
    except (ResourceError, ChunkNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
