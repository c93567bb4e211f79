"""Tests for the HTTP routes."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docs_mcp import __version__
from docs_mcp.app import create_app
from docs_mcp.config import DocsSettings
from docs_mcp.tools import create_docs_server


@pytest.fixture
def client(built_out_dir: Path) -> TestClient:
    return TestClient(create_app(server=create_docs_server(built_out_dir)))


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["chunks"] == 9
        assert data["files"] == 3
        assert data["embedding"] is None

    def test_app_from_out_dir(self, built_out_dir):
        client = TestClient(create_app(out_dir=built_out_dir, settings=DocsSettings(tool_prefix="acme")))
        assert client.get("/health").json()["chunks"] == 9
        names = [tool["name"] for tool in client.get("/tools").json()]
        assert names == ["acme_search_docs", "acme_get_doc"]

    def test_app_from_environment(self, built_out_dir, monkeypatch):
        monkeypatch.setenv("DOCS_MCP_OUT_DIR", str(built_out_dir))
        monkeypatch.delenv("DOCS_MCP_DOCS_DIR", raising=False)
        client = TestClient(create_app())
        assert client.get("/health").json()["files"] == 3


class TestTools:
    def test_list_tools(self, client):
        tools = client.get("/tools").json()
        assert [tool["name"] for tool in tools] == ["search_docs", "get_doc"]
        assert tools[0]["input_schema"]["required"] == ["query"]

    def test_call_search(self, client):
        response = client.post("/tools/search_docs", json={"query": "backoff"})
        assert response.status_code == 200
        data = response.json()
        assert data["is_error"] is False
        assert "guides/retries.md#retries/backoff-strategy" in data["content"][0]["text"]

    def test_tool_error_is_not_http_error(self, client):
        response = client.post("/tools/search_docs", json={"query": ""})
        assert response.status_code == 200
        assert response.json()["is_error"] is True

    def test_unknown_tool(self, client):
        response = client.post("/tools/nope", json={})
        assert response.status_code == 200
        assert response.json()["content"][0]["text"] == "Unknown tool 'nope'."

    def test_missing_body(self, client):
        response = client.post("/tools/get_doc")
        assert response.json()["is_error"] is True
        assert "chunk_id" in response.json()["content"][0]["text"]


class TestInstructionsAndResources:
    def test_instructions(self, client):
        assert client.get("/instructions").json() == {
            "instructions": "Search before answering questions about the Acme SDK.",
        }

    def test_list_resources(self, client):
        resources = client.get("/resources").json()
        assert [r["uri"] for r in resources] == ["docs:///guides/retries.md"]

    def test_read_resource(self, client):
        response = client.get("/resources/read", params={"uri": "docs:///guides/retries.md"})
        assert response.status_code == 200
        assert "## Backoff strategy" in response.json()["text"]

    def test_read_missing_resource(self, client):
        response = client.get("/resources/read", params={"uri": "docs:///nope.md"})
        assert response.status_code == 404
        assert "Resource not found" in response.json()["detail"]
