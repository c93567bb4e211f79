"""Tests for the docs-mcp command line."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from docs_mcp.cli import main


@pytest.fixture
def lance_calls(monkeypatch):
    calls = []

    def fake_build(db_path, chunks, vectors, file_fingerprints=None, metadata_keys=None):
        calls.append(len(vectors))
        return len(vectors)

    monkeypatch.setattr("docs_mcp.corpus.indexer.build_lance_index", fake_build)
    return calls


class TestBuild:
    def test_lexical_build(self, docs_dir, out_dir, capsys):
        code = main(["build", "--docs-dir", str(docs_dir), "--out", str(out_dir), "--description", "Acme docs"])
        assert code == 0
        out = capsys.readouterr().out
        assert "Indexed 3 files (0 unchanged), 9 chunks" in out
        assert "Embedding cache" not in out
        metadata = json.loads((out_dir / "metadata.json").read_text())
        assert metadata["corpus_description"] == "Acme docs"

    def test_hash_build_reports_cache(self, docs_dir, out_dir, capsys, lance_calls):
        args = ["build", "--docs-dir", str(docs_dir), "--out", str(out_dir), "--embedding-provider", "hash"]
        assert main(args) == 0
        assert "0 hits, 9 misses" in capsys.readouterr().out

        assert main(args) == 0
        out = capsys.readouterr().out
        assert "Indexed 3 files (3 unchanged)" in out
        assert "9 hits, 0 misses (100.0% hit rate)" in out
        assert lance_calls == [9, 9]
        assert "Estimated embedding cost" not in out

    def test_build_reports_cost_and_changes(self, docs_dir, out_dir, capsys, lance_calls, monkeypatch):
        monkeypatch.setattr("docs_mcp.corpus.embedding.HashEmbeddingProvider.cost_per_million_tokens", 0.13)
        args = ["build", "--docs-dir", str(docs_dir), "--out", str(out_dir), "--embedding-provider", "hash"]
        assert main(args) == 0
        out = capsys.readouterr().out
        assert "Estimated embedding cost: $0.0" in out
        assert "Changes:" not in out

        (docs_dir / "sdk" / "node" / "links.md").unlink()
        assert main(args) == 0
        out = capsys.readouterr().out
        assert "Changes: 0 added, 0 modified, 1 removed" in out
        assert "Estimated embedding cost" not in out

    def test_missing_docs_dir(self, tmp_path, out_dir, capsys):
        assert main(["build", "--docs-dir", str(tmp_path / "nope"), "--out", str(out_dir)]) == 1
        assert "Docs directory not found" in capsys.readouterr().err

    def test_invalid_setting(self, docs_dir, out_dir, capsys):
        code = main([
            "build", "--docs-dir", str(docs_dir), "--out", str(out_dir), "--embedding-concurrency", "0",
        ])
        assert code == 1
        assert "Invalid setting: embedding_concurrency" in capsys.readouterr().err

    def test_openai_without_key(self, docs_dir, out_dir, capsys):
        code = main(["build", "--docs-dir", str(docs_dir), "--out", str(out_dir), "--embedding-provider", "openai"])
        assert code == 1
        assert "OPENAI_API_KEY" in capsys.readouterr().err

    def test_bad_manifest(self, docs_dir, out_dir, capsys):
        (docs_dir / ".docs-mcp.json").write_text("{not json")
        assert main(["build", "--docs-dir", str(docs_dir), "--out", str(out_dir)]) == 1
        assert "Build failed" in capsys.readouterr().err


class TestValidate:
    def test_reports_each_file(self, docs_dir, capsys):
        assert main(["validate", "--docs-dir", str(docs_dir)]) == 0
        out = capsys.readouterr().out
        assert "guides/retries.md: 3 chunks, chunk_by=h2" in out
        assert "sdk/node/links.md: 3 chunks, chunk_by=h2" in out
        assert out.strip().endswith("3 files, 9 chunks")

    def test_file_without_manifest(self, tmp_path, capsys):
        root = tmp_path / "plain"
        root.mkdir()
        (root / "intro.md").write_text("# Intro\n\nHello.\n")
        assert main(["validate", "--docs-dir", str(root)]) == 0
        assert "(no manifest)" in capsys.readouterr().out

    def test_bad_manifest(self, docs_dir, capsys):
        (docs_dir / ".docs-mcp.json").write_text(json.dumps({"strategy": {"chunk_by": "h9"}}))
        assert main(["validate", "--docs-dir", str(docs_dir)]) == 1
        assert "Invalid manifest" in capsys.readouterr().err


class TestServe:
    def test_runs_app_factory(self, built_out_dir, docs_dir, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.delenv("DOCS_MCP_OUT_DIR", raising=False)
        monkeypatch.delenv("DOCS_MCP_DOCS_DIR", raising=False)

        code = main(["serve", "--out", str(built_out_dir), "--docs-dir", str(docs_dir), "--port", "9000"])
        assert code == 0
        app, kwargs = calls[0]
        assert app == "docs_mcp.app:create_app"
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9000
        assert kwargs["host"] == "127.0.0.1"
        assert os.environ["DOCS_MCP_OUT_DIR"] == str(Path(built_out_dir).resolve())
        assert os.environ["DOCS_MCP_DOCS_DIR"] == str(Path(docs_dir).resolve())


class TestMain:
    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_config_command(self, docs_dir, capsys):
        assert main(["config", "set", "tool_prefix", "acme", "--docs-dir", str(docs_dir)]) == 0
        assert main(["config", "get", "tool_prefix", "--docs-dir", str(docs_dir)]) == 0
        assert capsys.readouterr().out.splitlines()[-1] == "acme"
