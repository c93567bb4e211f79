"""docs-mcp configuration management.

Loads and merges settings from user, corpus-level settings.json files and
the environment.
"""

from __future__ import annotations

import copy
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from docs_mcp.corpus.embedding import PROVIDER_NAMES
from docs_mcp.corpus.ranking import DEFAULT_RRF_WEIGHTS
from docs_mcp.utils.paths import (
    get_project_settings_path,
    get_user_settings_path,
)

TOOL_PREFIX_PATTERN = r"^[a-zA-Z0-9_-]{1,40}$"

DEFAULT_SETTINGS: dict[str, Any] = {
    "embedding_provider": "none",
    "embedding_model": None,
    "embedding_dimensions": None,
    "embedding_api_key": None,
    "embedding_base_url": None,
    "embedding_batch_size": 128,
    "embedding_concurrency": 4,
    "embedding_max_retries": 3,
    "embedding_timeout": 60.0,
    "rrf_weights": dict(DEFAULT_RRF_WEIGHTS),
    "tool_prefix": None,
    "corpus_description": None,
}

ENV_OVERRIDES = {
    "DOCS_MCP_EMBEDDING_PROVIDER": "embedding_provider",
    "OPENAI_API_KEY": "embedding_api_key",
}


@dataclass
class DocsSettings:
    """Merged docs-mcp settings."""

    embedding_provider: str = "none"
    embedding_model: str | None = None
    embedding_dimensions: int | None = None
    embedding_api_key: str | None = None
    embedding_base_url: str | None = None
    embedding_batch_size: int = 128
    embedding_concurrency: int = 4
    embedding_max_retries: int = 3
    embedding_timeout: float = 60.0
    rrf_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RRF_WEIGHTS))
    tool_prefix: str | None = None
    corpus_description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "embedding_provider": self.embedding_provider,
            "embedding_model": self.embedding_model,
            "embedding_dimensions": self.embedding_dimensions,
            "embedding_base_url": self.embedding_base_url,
            "embedding_batch_size": self.embedding_batch_size,
            "embedding_concurrency": self.embedding_concurrency,
            "embedding_max_retries": self.embedding_max_retries,
            "embedding_timeout": self.embedding_timeout,
            "rrf_weights": self.rrf_weights,
            "tool_prefix": self.tool_prefix,
            "corpus_description": self.corpus_description,
        }


def load_json_file(path: Path) -> dict[str, Any]:
    """Load a JSON file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base, returning new dict.

    - Dicts are recursively merged
    - Lists are replaced (not appended)
    - Scalars are replaced
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(
    docs_dir: Path | None = None,
    env: dict[str, str] | None = None,
) -> DocsSettings:
    """Load and merge settings from user, corpus and environment.

    Precedence: environment overrides corpus settings override user
    settings override defaults.
    """
    merged = copy.deepcopy(DEFAULT_SETTINGS)

    user_settings = load_json_file(get_user_settings_path())
    if user_settings:
        merged = deep_merge(merged, user_settings)

    if docs_dir is not None:
        project_settings = load_json_file(get_project_settings_path(docs_dir))
        if project_settings:
            merged = deep_merge(merged, project_settings)

    env = os.environ if env is None else env
    for var, key in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            merged[key] = value

    defaults = DocsSettings()
    return DocsSettings(**{
        name: merged.get(name, getattr(defaults, name))
        for name in DEFAULT_SETTINGS
    })


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_settings(settings: DocsSettings) -> list[str]:
    """Validate settings, returning list of error messages (empty if valid)."""
    errors = []

    if settings.embedding_provider not in PROVIDER_NAMES:
        errors.append(f"embedding_provider must be one of: {', '.join(PROVIDER_NAMES)}")
    elif settings.embedding_provider == "openai" and not settings.embedding_api_key:
        errors.append("embedding_api_key (or OPENAI_API_KEY) is required for the openai provider")

    if settings.embedding_dimensions is not None and (
        not _is_int(settings.embedding_dimensions) or settings.embedding_dimensions < 1
    ):
        errors.append("embedding_dimensions must be a positive integer")

    if not _is_int(settings.embedding_batch_size) or settings.embedding_batch_size < 1:
        errors.append("embedding_batch_size must be a positive integer")

    if not _is_int(settings.embedding_concurrency) or not (1 <= settings.embedding_concurrency <= 32):
        errors.append("embedding_concurrency must be an integer between 1 and 32")

    if not _is_int(settings.embedding_max_retries) or not (0 <= settings.embedding_max_retries <= 10):
        errors.append("embedding_max_retries must be an integer between 0 and 10")

    if not isinstance(settings.embedding_timeout, (int, float)) or settings.embedding_timeout <= 0:
        errors.append("embedding_timeout must be a positive number")

    if not isinstance(settings.rrf_weights, dict):
        errors.append("rrf_weights must be a dict")
    else:
        for key, value in settings.rrf_weights.items():
            if key not in DEFAULT_RRF_WEIGHTS:
                errors.append(f"rrf_weights.{key} is not a known signal")
            elif not isinstance(value, (int, float)) or value < 0:
                errors.append(f"rrf_weights.{key} must be a non-negative number")

    if settings.tool_prefix is not None:
        if not isinstance(settings.tool_prefix, str) or not re.match(TOOL_PREFIX_PATTERN, settings.tool_prefix):
            errors.append("tool_prefix must match [a-zA-Z0-9_-] and be at most 40 characters")

    return errors
