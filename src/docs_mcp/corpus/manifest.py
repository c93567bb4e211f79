"""Manifest parsing and per-file configuration resolution.

A manifest (``.docs-mcp.json``) configures chunking and tagging for the
directory tree it lives in. The effective configuration for one file is
resolved in precedence order, lowest to highest:

1. manifest default ``strategy`` / ``metadata``
2. manifest ``overrides`` whose glob matches the file (array order, last wins)
3. an HTML comment chunking hint in the markdown body
4. frontmatter directives (``metadata``, ``mcp_metadata``, ``mcp_strategy``,
   ``mcp_chunking_hint``)
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from docs_mcp.corpus.schema import (
    CHUNK_BY_VALUES,
    DEFAULT_CHUNK_BY,
    MANIFEST_FILENAME,
    ChunkingStrategy,
    ResolvedFileConfig,
)

logger = logging.getLogger(__name__)

HTML_HINT_PATTERN = re.compile(r"<!--\s*mcp_chunking_hint:\s*(\{[^}]+\})\s*-->")


class ManifestError(ValueError):
    """Raised for malformed manifests or frontmatter directives."""


def _normalize_tag_map(value: dict[str, str] | None) -> dict[str, str] | None:
    if value is None:
        return None
    normalized: dict[str, str] = {}
    for raw_key, raw_value in value.items():
        key = raw_key.strip()
        if not key:
            raise ValueError("contains an empty key")
        tag = raw_value.strip()
        if not tag:
            raise ValueError(f"value for '{key}' cannot be empty")
        normalized[key] = tag
    return normalized


class StrategyModel(BaseModel):
    """Chunking strategy as written in a manifest or frontmatter."""
    model_config = ConfigDict(extra="forbid")

    chunk_by: Literal["h1", "h2", "h3", "file"]
    max_chunk_size: StrictInt | None = Field(default=None, gt=0)
    min_chunk_size: StrictInt | None = Field(default=None, gt=0)

    def to_strategy(self) -> ChunkingStrategy:
        return ChunkingStrategy(
            chunk_by=self.chunk_by,
            max_chunk_size=self.max_chunk_size,
            min_chunk_size=self.min_chunk_size,
        )


class TaxonomyValueProperties(BaseModel):
    """Per-value configuration for a taxonomy dimension value."""
    mcp_resource: bool = False


class TaxonomyFieldConfig(BaseModel):
    """Search-time behavior of a taxonomy dimension."""
    vector_collapse: bool = False
    properties: dict[str, TaxonomyValueProperties] | None = None


class ManifestOverride(BaseModel):
    """Strategy/metadata replacement for files matching a glob pattern."""
    pattern: str
    strategy: StrategyModel | None = None
    metadata: dict[str, str] | None = None

    @field_validator("pattern")
    @classmethod
    def _pattern_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("pattern must be a non-empty string")
        return value

    @field_validator("metadata")
    @classmethod
    def _normalize_metadata(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _normalize_tag_map(value)


class Manifest(BaseModel):
    """Directory-scoped chunking and tagging configuration."""
    model_config = ConfigDict(populate_by_name=True)

    schema_uri: str | None = Field(default=None, alias="$schema")
    version: Literal["1"]
    strategy: StrategyModel | None = None
    metadata: dict[str, str] | None = None
    taxonomy: dict[str, TaxonomyFieldConfig] | None = None
    instructions: str | None = None
    overrides: list[ManifestOverride] | None = None

    @field_validator("metadata")
    @classmethod
    def _normalize_metadata(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _normalize_tag_map(value)

    @field_validator("instructions")
    @classmethod
    def _instructions_not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("instructions must be a non-empty string")
        return value


@dataclass
class ManifestContext:
    """A loaded manifest plus its directory relative to the corpus root."""
    manifest: Manifest
    base_dir: str


def _format_validation_error(err: ValidationError) -> str:
    parts = []
    for issue in err.errors():
        loc = ".".join(str(p) for p in issue.get("loc", ()))
        msg = issue.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def parse_manifest(data: Any) -> Manifest:
    """Validate a decoded manifest object."""
    if not isinstance(data, dict):
        raise ManifestError("manifest must be an object")
    try:
        return Manifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Invalid manifest: {_format_validation_error(e)}") from e


def parse_manifest_json(contents: str) -> Manifest:
    """Parse and validate manifest JSON text."""
    try:
        data = json.loads(contents)
    except json.JSONDecodeError as e:
        raise ManifestError("Manifest is not valid JSON") from e
    return parse_manifest(data)


def parse_strategy(value: Any, field_name: str = "strategy") -> ChunkingStrategy:
    if not isinstance(value, dict):
        raise ManifestError(f"{field_name} must be an object")
    try:
        return StrategyModel.model_validate(value).to_strategy()
    except ValidationError as e:
        raise ManifestError(f"Invalid {field_name}: {_format_validation_error(e)}") from e


def parse_chunk_by(value: Any) -> str:
    if value not in CHUNK_BY_VALUES:
        raise ManifestError("chunk_by must be one of: h1, h2, h3, file")
    return value


def parse_metadata(value: Any, field_name: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ManifestError(f"{field_name} must be an object")
    for key, tag in value.items():
        if not isinstance(key, str):
            raise ManifestError(f"{field_name} keys must be strings (got {key!r})")
        if not isinstance(tag, str):
            raise ManifestError(f"{field_name}.{key} must be a string")
    try:
        return _normalize_tag_map(value) or {}
    except ValueError as e:
        raise ManifestError(f"{field_name} {e}") from e


def extract_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Extract YAML frontmatter and body from markdown content.

    Returns (frontmatter_dict, body_text). Unparseable frontmatter is
    treated as absent.
    """
    if not content.startswith("---"):
        return {}, content

    match = re.match(r"^---[ \t]*\r?\n(.*?)(?:^|\r?\n)---[ \t]*(?:\r?\n|$)", content, re.DOTALL | re.MULTILINE)
    if match is None:
        return {}, content

    try:
        fm = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError:
        fm = {}
    if not isinstance(fm, dict):
        fm = {}

    return fm, content[match.end():]


def parse_html_chunking_hint(markdown: str) -> str | None:
    """Return ``chunk_by`` from ``<!-- mcp_chunking_hint: {...} -->`` if present and valid."""
    match = HTML_HINT_PATTERN.search(markdown)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or parsed.get("chunk_by") not in CHUNK_BY_VALUES:
        return None
    return parsed["chunk_by"]


def _parse_frontmatter_overrides(
    markdown: str,
) -> tuple[ChunkingStrategy | None, dict[str, str] | None]:
    data, _ = extract_frontmatter(markdown)
    if not data:
        return None, None

    strategy: ChunkingStrategy | None = None
    if data.get("mcp_strategy"):
        strategy = parse_strategy(data["mcp_strategy"], "mcp_strategy")
    elif data.get("mcp_chunking_hint"):
        strategy = ChunkingStrategy(chunk_by=parse_chunk_by(data["mcp_chunking_hint"]))

    metadata: dict[str, str] | None = None
    if data.get("metadata"):
        metadata = parse_metadata(data["metadata"], "metadata")
    if data.get("mcp_metadata"):
        metadata = {**(metadata or {}), **parse_metadata(data["mcp_metadata"], "mcp_metadata")}

    return strategy, metadata


def to_posix_path(value: str) -> str:
    value = value.replace("\\", "/")
    if value.startswith("./"):
        value = value[2:]
    return value


def to_manifest_relative_path(relative_file_path: str, manifest_base_dir: str | None) -> str:
    normalized = to_posix_path(relative_file_path)
    if not manifest_base_dir:
        return normalized
    base = to_posix_path(manifest_base_dir).strip("/")
    if not base or base == ".":
        return normalized
    prefix = f"{base}/"
    if normalized.startswith(prefix):
        return normalized[len(prefix):]
    return normalized


def glob_match(pattern: str, path: str) -> bool:
    """Match a slash-separated path against a glob.

    ``*`` and ``?`` never cross a ``/``; a ``**`` segment matches zero or
    more whole segments. Dotfiles are matched like any other name.
    """
    return _match_segments(pattern.strip("/").split("/"), path.strip("/").split("/"))


def _match_segments(pattern: list[str], parts: list[str]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])


def resolve_file_config(
    relative_file_path: str,
    manifest: Manifest | None = None,
    manifest_base_dir: str | None = None,
    markdown: str | None = None,
    defaults: ResolvedFileConfig | None = None,
) -> ResolvedFileConfig:
    """Merge manifest defaults, matching overrides and frontmatter for one file."""
    strategy = defaults.strategy if defaults else ChunkingStrategy(chunk_by=DEFAULT_CHUNK_BY)
    metadata = dict(defaults.metadata) if defaults else {}

    if manifest is not None:
        metadata.update(manifest.metadata or {})
        if manifest.strategy is not None:
            strategy = manifest.strategy.to_strategy()

        match_path = to_manifest_relative_path(relative_file_path, manifest_base_dir)
        for override in manifest.overrides or []:
            if not glob_match(override.pattern, match_path):
                continue
            if override.metadata:
                metadata.update(override.metadata)
            if override.strategy is not None:
                strategy = override.strategy.to_strategy()

    if markdown:
        hint = parse_html_chunking_hint(markdown)
        if hint:
            strategy = ChunkingStrategy(
                chunk_by=hint,
                max_chunk_size=strategy.max_chunk_size,
                min_chunk_size=strategy.min_chunk_size,
            )

        fm_strategy, fm_metadata = _parse_frontmatter_overrides(markdown)
        if fm_metadata:
            metadata.update(fm_metadata)
        if fm_strategy is not None:
            strategy = fm_strategy

    return ResolvedFileConfig(strategy=strategy, metadata=metadata)


def load_nearest_manifest(
    file_path: Path,
    docs_dir: Path,
    cache: dict[Path, Manifest],
) -> ManifestContext | None:
    """Find the closest manifest walking up from ``file_path``.

    The walk stops at ``docs_dir`` and never crosses it. Parsed manifests
    are stored in the caller-owned ``cache`` keyed by absolute path.
    Returns None when no manifest applies.
    """
    stop_dir = docs_dir.resolve()
    current = file_path.resolve().parent

    while True:
        candidate = current / MANIFEST_FILENAME
        if candidate.is_file():
            manifest = cache.get(candidate)
            if manifest is None:
                try:
                    manifest = parse_manifest_json(candidate.read_text(encoding="utf-8"))
                except ManifestError as e:
                    raise ManifestError(f"{candidate}: {e}") from e
                except UnicodeDecodeError as e:
                    raise ManifestError(f"{candidate}: manifest is not valid UTF-8") from e
                cache[candidate] = manifest
            relative = current.relative_to(stop_dir).as_posix()
            return ManifestContext(manifest=manifest, base_dir=relative or ".")

        if current == stop_dir:
            return None

        parent = current.parent
        if parent == current or not parent.is_relative_to(stop_dir):
            return None
        current = parent


def merge_taxonomy_configs(manifests: Iterable[Manifest]) -> dict[str, TaxonomyFieldConfig]:
    """Union-merge taxonomy configs across manifests.

    A key is collapsed if any manifest flags it, and a value is a resource
    if any manifest flags it.
    """
    merged: dict[str, TaxonomyFieldConfig] = {}

    for manifest in manifests:
        for key, config in (manifest.taxonomy or {}).items():
            if config.vector_collapse:
                merged.setdefault(key, TaxonomyFieldConfig()).vector_collapse = True
            for value, props in (config.properties or {}).items():
                if not props.mcp_resource:
                    continue
                entry = merged.setdefault(key, TaxonomyFieldConfig())
                if entry.properties is None:
                    entry.properties = {}
                entry.properties[value] = TaxonomyValueProperties(mcp_resource=True)

    return merged
