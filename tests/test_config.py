"""Tests for docs-mcp configuration management."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import pytest

from docs_mcp.cli import cmd_config
from docs_mcp.config import (
    DEFAULT_SETTINGS,
    DocsSettings,
    deep_merge,
    load_json_file,
    load_settings,
    validate_settings,
)


def write_settings(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


@pytest.fixture
def user_settings_path(tmp_path: Path) -> Path:
    return tmp_path / "home" / ".docs-mcp" / "settings.json"


@pytest.fixture
def corpus(tmp_path: Path) -> Path:
    root = tmp_path / "corpus"
    root.mkdir()
    return root


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"rrf_weights": {"match": 1.0, "phrase": 1.25}}
        override = {"rrf_weights": {"phrase": 2.0}}
        assert deep_merge(base, override) == {"rrf_weights": {"match": 1.0, "phrase": 2.0}}

    def test_scalar_replacement(self):
        assert deep_merge({"tool_prefix": "a"}, {"tool_prefix": "b"}) == {"tool_prefix": "b"}

    def test_does_not_mutate_base(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"c": 2}})
        assert base == {"a": {"b": 1}}


class TestLoadJsonFile:
    def test_load_valid_file(self, tmp_path: Path):
        p = tmp_path / "settings.json"
        p.write_text('{"tool_prefix": "acme"}')
        assert load_json_file(p) == {"tool_prefix": "acme"}

    def test_load_missing_file(self, tmp_path: Path):
        assert load_json_file(tmp_path / "missing.json") == {}

    def test_load_invalid_json(self, tmp_path: Path):
        p = tmp_path / "bad.json"
        p.write_text("not json")
        assert load_json_file(p) == {}

    def test_non_object_is_ignored(self, tmp_path: Path):
        p = tmp_path / "list.json"
        p.write_text("[1, 2]")
        assert load_json_file(p) == {}


class TestDocsSettings:
    def test_defaults(self):
        s = DocsSettings()
        assert s.embedding_provider == "none"
        assert s.embedding_batch_size == 128
        assert s.embedding_concurrency == 4
        assert s.embedding_max_retries == 3
        assert s.rrf_weights == {"match": 1.0, "phrase": 1.25, "vector": 1.0}
        assert s.tool_prefix is None

    def test_to_dict_omits_api_key(self):
        d = DocsSettings(embedding_api_key="sk-secret", tool_prefix="acme").to_dict()
        assert d["tool_prefix"] == "acme"
        assert "embedding_api_key" not in d
        assert "sk-secret" not in json.dumps(d)


class TestLoadSettings:
    def test_defaults_without_files(self, corpus):
        s = load_settings(corpus, env={})
        assert s.embedding_provider == "none"

    def test_user_settings(self, corpus, user_settings_path):
        write_settings(user_settings_path, {"embedding_batch_size": 64})
        assert load_settings(corpus, env={}).embedding_batch_size == 64

    def test_corpus_overrides_user(self, corpus, user_settings_path):
        write_settings(user_settings_path, {"tool_prefix": "user", "embedding_concurrency": 2})
        write_settings(corpus / ".docs-mcp" / "settings.json", {"tool_prefix": "corpus"})
        s = load_settings(corpus, env={})
        assert s.tool_prefix == "corpus"
        assert s.embedding_concurrency == 2

    def test_rrf_weights_merge(self, corpus):
        write_settings(corpus / ".docs-mcp" / "settings.json", {"rrf_weights": {"vector": 2.0}})
        s = load_settings(corpus, env={})
        assert s.rrf_weights == {"match": 1.0, "phrase": 1.25, "vector": 2.0}

    def test_rrf_weights_not_shared_with_defaults(self, corpus):
        first = load_settings(corpus, env={})
        first.rrf_weights["vector"] = 9.0
        assert DEFAULT_SETTINGS["rrf_weights"]["vector"] != 9.0
        assert load_settings(corpus, env={}).rrf_weights["vector"] != 9.0

    def test_environment_overrides(self, corpus):
        write_settings(corpus / ".docs-mcp" / "settings.json", {"embedding_provider": "hash"})
        s = load_settings(corpus, env={"DOCS_MCP_EMBEDDING_PROVIDER": "openai", "OPENAI_API_KEY": "sk-test"})
        assert s.embedding_provider == "openai"
        assert s.embedding_api_key == "sk-test"

    def test_process_environment(self, corpus, monkeypatch):
        monkeypatch.setenv("DOCS_MCP_EMBEDDING_PROVIDER", "hash")
        assert load_settings(corpus).embedding_provider == "hash"

    def test_unknown_keys_ignored(self, corpus):
        write_settings(corpus / ".docs-mcp" / "settings.json", {"printer": "prusa"})
        assert not hasattr(load_settings(corpus, env={}), "printer")


class TestValidateSettings:
    def test_valid_defaults(self):
        assert validate_settings(DocsSettings()) == []

    def test_unknown_provider(self):
        errors = validate_settings(DocsSettings(embedding_provider="cohere"))
        assert any("embedding_provider" in e for e in errors)

    def test_openai_requires_key(self):
        errors = validate_settings(DocsSettings(embedding_provider="openai"))
        assert any("OPENAI_API_KEY" in e for e in errors)
        assert validate_settings(DocsSettings(embedding_provider="openai", embedding_api_key="sk")) == []

    @pytest.mark.parametrize("field, value", [
        ("embedding_batch_size", 0),
        ("embedding_concurrency", 33),
        ("embedding_max_retries", 11),
        ("embedding_dimensions", 0),
        ("embedding_timeout", 0),
        ("embedding_batch_size", True),
    ])
    def test_numeric_bounds(self, field, value):
        errors = validate_settings(DocsSettings(**{field: value}))
        assert any(field in e for e in errors)

    def test_rrf_weights(self):
        errors = validate_settings(DocsSettings(rrf_weights={"match": -1, "bm25": 1.0}))
        assert "rrf_weights.match must be a non-negative number" in errors
        assert "rrf_weights.bm25 is not a known signal" in errors

    def test_tool_prefix(self):
        assert validate_settings(DocsSettings(tool_prefix="acme-docs_v2")) == []
        assert validate_settings(DocsSettings(tool_prefix="x" * 41))
        assert validate_settings(DocsSettings(tool_prefix="has space"))


class TestCmdConfig:
    def run(self, corpus: Path, action: str, key=None, value=None) -> int:
        return cmd_config(argparse.Namespace(action=action, key=key, value=value, docs_dir=str(corpus)))

    def test_show(self, corpus, capsys):
        assert self.run(corpus, "show") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["embedding_provider"] == "none"

    def test_set_then_get(self, corpus, capsys):
        assert self.run(corpus, "set", "embedding_batch_size", "32") == 0
        assert "Set embedding_batch_size = 32" in capsys.readouterr().out
        saved = json.loads((corpus / ".docs-mcp" / "settings.json").read_text())
        assert saved == {"embedding_batch_size": 32}

        assert self.run(corpus, "get", "embedding_batch_size") == 0
        assert capsys.readouterr().out.strip() == "32"

    def test_set_preserves_other_keys(self, corpus):
        write_settings(corpus / ".docs-mcp" / "settings.json", {"rrf_weights": {"vector": 2.0}})
        assert self.run(corpus, "set", "tool_prefix", "acme") == 0
        saved = json.loads((corpus / ".docs-mcp" / "settings.json").read_text())
        assert saved == {"rrf_weights": {"vector": 2.0}, "tool_prefix": "acme"}

    def test_get_unset_value(self, corpus, capsys):
        assert self.run(corpus, "get", "tool_prefix") == 0
        assert capsys.readouterr().out == "\n"

    def test_unknown_key(self, corpus, capsys):
        assert self.run(corpus, "get", "printer") == 1
        assert "Unknown key: printer" in capsys.readouterr().err

    def test_missing_key(self, corpus, capsys):
        assert self.run(corpus, "get") == 1
        assert "Usage" in capsys.readouterr().err

    def test_set_requires_value(self, corpus, capsys):
        assert self.run(corpus, "set", "tool_prefix") == 1
        assert "<value>" in capsys.readouterr().err

    def test_set_non_number(self, corpus, capsys):
        assert self.run(corpus, "set", "embedding_concurrency", "many") == 1
        assert "must be a number" in capsys.readouterr().err

    def test_set_invalid_value_not_written(self, corpus, capsys):
        assert self.run(corpus, "set", "embedding_concurrency", "64") == 1
        assert "Invalid setting" in capsys.readouterr().err
        assert not (corpus / ".docs-mcp" / "settings.json").exists()
