"""Corpus metadata: the build-time snapshot of taxonomy, stats and embedding.

Written once per build as ``metadata.json`` and re-validated at serve time
before anything else in the output directory is trusted.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field, StrictInt, ValidationError, ValidationInfo, field_validator

from docs_mcp.corpus.manifest import TaxonomyFieldConfig
from docs_mcp.corpus.schema import TABLE_NAME, Chunk

METADATA_FILENAME = "metadata.json"
METADATA_VERSION = "1.0.0"
SUPPORTED_MAJOR = 1
DEFAULT_CORPUS_DESCRIPTION = "Documentation corpus"

MAX_KEYS = 64
MAX_KEY_LENGTH = 64
MAX_VALUES_PER_KEY = 512
MAX_VALUE_LENGTH = 128

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)
_COMMIT = re.compile(r"^[a-f0-9]{40}$")


class MetadataError(ValueError):
    """Raised when corpus metadata is missing, malformed or incompatible."""


def _non_empty(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} must be a non-empty string")
    return value


class TaxonomyField(BaseModel):
    """One filterable dimension and the values observed for it."""
    description: str | None = None
    values: list[str]
    vector_collapse: bool = False
    properties: dict[str, dict[str, Any]] | None = None

    @field_validator("description")
    @classmethod
    def _strip_description(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("values")
    @classmethod
    def _normalize_values(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_VALUES_PER_KEY:
            raise ValueError(f"values exceeds max length {MAX_VALUES_PER_KEY}")
        deduped = set()
        for raw in v:
            value = raw.strip()
            if not value:
                raise ValueError("values cannot include empty strings")
            if len(value) > MAX_VALUE_LENGTH:
                raise ValueError(f"value '{value}' exceeds max length {MAX_VALUE_LENGTH}")
            deduped.add(value)
        return sorted(deduped)


class MetadataStats(BaseModel):
    total_chunks: StrictInt = Field(..., ge=0)
    total_files: StrictInt = Field(..., ge=0)
    indexed_at: str
    source_commit: str | None = None

    @field_validator("indexed_at")
    @classmethod
    def _check_indexed_at(cls, v: str) -> str:
        return _non_empty(v, "indexed_at")

    @field_validator("source_commit")
    @classmethod
    def _check_commit(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not _COMMIT.match(v):
            raise ValueError("source_commit must be a 40-char lowercase SHA-1")
        return v


class EmbeddingMetadata(BaseModel):
    provider: str
    model: str
    dimensions: StrictInt = Field(..., ge=1)

    @field_validator("provider", "model")
    @classmethod
    def _check_names(cls, v: str, info: ValidationInfo) -> str:
        return _non_empty(v, info.field_name)


class IndexLocation(BaseModel):
    """Where the storage engine's table lives, relative to the output directory."""
    engine: str = "lancedb"
    path: str = ".lancedb"
    table: str = TABLE_NAME


class CorpusMetadata(BaseModel):
    metadata_version: str
    corpus_description: str
    taxonomy: dict[str, TaxonomyField] = Field(default_factory=dict)
    stats: MetadataStats
    embedding: EmbeddingMetadata | None = None
    index: IndexLocation | None = None
    mcp_server_instructions: str | None = None

    @field_validator("metadata_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        v = _non_empty(v, "metadata_version")
        if not _SEMVER.match(v):
            raise ValueError("metadata_version must be valid semver")
        return v

    @field_validator("corpus_description")
    @classmethod
    def _check_description(cls, v: str) -> str:
        return _non_empty(v, "corpus_description")

    @field_validator("taxonomy", mode="before")
    @classmethod
    def _normalize_keys(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        if len(v) > MAX_KEYS:
            raise ValueError(f"taxonomy has too many keys (max {MAX_KEYS})")
        normalized = {}
        for raw_key, field in v.items():
            key = str(raw_key).strip()
            if not key:
                raise ValueError("taxonomy keys cannot be empty")
            if len(key) > MAX_KEY_LENGTH:
                raise ValueError(f"taxonomy key '{key}' exceeds max length {MAX_KEY_LENGTH}")
            normalized[key] = field
        return normalized

    @property
    def major_version(self) -> int:
        return int(self.metadata_version.split(".", 1)[0])


def _format_validation_error(err: ValidationError) -> str:
    messages = []
    for error in err.errors():
        loc = ".".join(str(part) for part in error["loc"])
        msg = error["msg"].removeprefix("Value error, ")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(messages)


def normalize_metadata(data: Any, supported_major: int = SUPPORTED_MAJOR) -> CorpusMetadata:
    """Validate raw metadata and check its major version is supported."""
    if not isinstance(data, dict):
        raise MetadataError("metadata must be an object")
    try:
        metadata = CorpusMetadata.model_validate(data)
    except ValidationError as e:
        raise MetadataError(f"Invalid corpus metadata: {_format_validation_error(e)}") from e

    if metadata.major_version != supported_major:
        raise MetadataError(
            f"Unsupported metadata_version major: expected {supported_major}.x.x, "
            f"got {metadata.metadata_version}"
        )
    return metadata


def get_collapse_keys(taxonomy: Mapping[str, TaxonomyField]) -> list[str]:
    """Taxonomy keys whose values are variants to collapse at search time."""
    return [key for key, field in taxonomy.items() if field.vector_collapse]


def get_resource_values(taxonomy: Mapping[str, TaxonomyField]) -> list[tuple[str, str]]:
    """``(key, value)`` pairs whose files are exposed as readable resources."""
    pairs = []
    for key, field in taxonomy.items():
        for value, props in (field.properties or {}).items():
            if props.get("mcp_resource") is True:
                pairs.append((key, value))
    return pairs


def build_metadata(
    chunks: Iterable[Chunk],
    taxonomy_config: Mapping[str, TaxonomyFieldConfig] | None = None,
    corpus_description: str | None = None,
    embedding: EmbeddingMetadata | None = None,
    source_commit: str | None = None,
    instructions: str | None = None,
    indexed_at: str | None = None,
) -> CorpusMetadata:
    """Derive corpus metadata from the built chunks.

    Taxonomy values are those actually present on chunks; manifest taxonomy
    config contributes collapse flags and per-value properties.
    """
    chunks = list(chunks)
    taxonomy_config = taxonomy_config or {}

    observed: dict[str, set[str]] = {}
    for chunk in chunks:
        for key, value in chunk.metadata.items():
            observed.setdefault(key, set()).add(value)

    taxonomy = {}
    for key in sorted(observed):
        config = taxonomy_config.get(key)
        properties = None
        if config is not None and config.properties:
            properties = {
                value: props.model_dump()
                for value, props in config.properties.items()
                if value in observed[key]
            } or None
        taxonomy[key] = {
            "values": sorted(observed[key]),
            "vector_collapse": bool(config and config.vector_collapse),
            "properties": properties,
        }

    data = {
        "metadata_version": METADATA_VERSION,
        "corpus_description": corpus_description or DEFAULT_CORPUS_DESCRIPTION,
        "taxonomy": taxonomy,
        "stats": {
            "total_chunks": len(chunks),
            "total_files": len({chunk.filepath for chunk in chunks}),
            "indexed_at": indexed_at or datetime.now(timezone.utc).isoformat(),
            "source_commit": source_commit,
        },
        "embedding": embedding.model_dump() if embedding else None,
        "index": IndexLocation().model_dump(),
        "mcp_server_instructions": instructions,
    }
    return normalize_metadata(data)


def write_metadata(out_dir: Path, metadata: CorpusMetadata) -> Path:
    path = Path(out_dir) / METADATA_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(metadata.model_dump(), indent=2) + "\n",
        encoding="utf-8",
    )
    return path


def load_metadata(out_dir: Path, supported_major: int = SUPPORTED_MAJOR) -> CorpusMetadata:
    path = Path(out_dir) / METADATA_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise MetadataError(f"{path} not found; run 'docs-mcp build' first") from e
    except (OSError, json.JSONDecodeError) as e:
        raise MetadataError(f"Failed to read {path}: {e}") from e
    return normalize_metadata(data, supported_major=supported_major)
