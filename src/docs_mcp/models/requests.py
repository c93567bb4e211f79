"""Pydantic request models for the docs search tools.

The search request has one optional filter field per taxonomy key, so its
model and JSON schema are generated from the loaded corpus metadata.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    ValidationError,
    create_model,
    field_validator,
    model_validator,
)

from docs_mcp.corpus.metadata import TaxonomyField
from docs_mcp.corpus.ranking import DEFAULT_LIMIT, MAX_LIMIT

logger = logging.getLogger(__name__)

MAX_GET_DOC_CONTEXT = 5

QUERY_DESCRIPTION = (
    "The search query. Use method names, class names, error types, or describe "
    "what you want to do (e.g., 'links.create', 'RateLimitError', 'how to paginate')."
)
LIMIT_DESCRIPTION = f"Maximum number of results to return. Default is {DEFAULT_LIMIT}."
CURSOR_DESCRIPTION = "Opaque pagination token returned from a previous search. Omit for the first page."
CHUNK_ID_DESCRIPTION = (
    "The exact ID of the chunk to retrieve, as returned by search_docs "
    "(e.g., 'guides/retries.md#backoff-strategy')."
)
CONTEXT_DESCRIPTION = (
    "Number of adjacent chunks to include before and after the target chunk. "
    "Default 0 (recommended). Use -1 to return the whole document."
)


class ToolInputError(ValueError):
    """Raised when tool arguments fail validation."""


def _strip_non_empty(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} must be a non-empty string")
    return value


class SearchRequest(BaseModel):
    """Base search request; taxonomy filter fields are added per corpus."""
    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., description=QUERY_DESCRIPTION)
    limit: StrictInt = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description=LIMIT_DESCRIPTION)
    cursor: str | None = Field(default=None, description=CURSOR_DESCRIPTION)

    taxonomy_values: ClassVar[dict[str, list[str]]] = {}

    @field_validator("query")
    @classmethod
    def _check_query(cls, v: str) -> str:
        return _strip_non_empty(v, "query")

    @field_validator("cursor")
    @classmethod
    def _check_cursor(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return _strip_non_empty(v, "cursor")

    @model_validator(mode="after")
    def _check_filters(self) -> SearchRequest:
        for key, value in self.filters().items():
            allowed = self.taxonomy_values.get(key, [])
            if value not in allowed:
                raise ValueError(
                    f"Invalid taxonomy value for '{key}': '{value}'. Allowed values: {', '.join(allowed)}"
                )
        return self

    def filters(self) -> dict[str, str]:
        """Active taxonomy filters keyed by taxonomy key."""
        result = {}
        for name, field in type(self).model_fields.items():
            if field.alias and field.alias in self.taxonomy_values:
                value = getattr(self, name)
                if value is not None:
                    result[field.alias] = value
        return result

    @property
    def taxonomy_keys(self) -> list[str]:
        return list(self.taxonomy_values)


class GetDocRequest(BaseModel):
    """Request to retrieve a chunk and optional neighbouring context."""
    model_config = ConfigDict(extra="forbid")

    chunk_id: str = Field(..., description=CHUNK_ID_DESCRIPTION)
    context: StrictInt = Field(default=0, ge=-1, le=MAX_GET_DOC_CONTEXT, description=CONTEXT_DESCRIPTION)

    @field_validator("chunk_id")
    @classmethod
    def _check_chunk_id(cls, v: str) -> str:
        return _strip_non_empty(v, "chunk_id")


class RrfWeights(BaseModel):
    """Per-signal weights for reciprocal-rank fusion."""
    model_config = ConfigDict(extra="forbid")

    match: float = Field(default=1.0, ge=0)
    phrase: float = Field(default=1.25, ge=0)
    vector: float = Field(default=1.0, ge=0)


def build_search_request_model(taxonomy: Mapping[str, TaxonomyField]) -> type[SearchRequest]:
    """Create a search request model with one filter field per taxonomy key."""
    fields: dict[str, Any] = {}
    values: dict[str, list[str]] = {}
    reserved = set(SearchRequest.model_fields)

    for i, (key, field) in enumerate(taxonomy.items()):
        if key in reserved:
            logger.warning("Taxonomy key '%s' collides with a search parameter and is not filterable", key)
            continue
        fields[f"filter_{i}"] = (
            str | None,
            Field(default=None, alias=key, description=field.description or f"Filter results by {key}."),
        )
        values[key] = list(field.values)

    model = create_model("SearchDocsRequest", __base__=SearchRequest, **fields)
    model.taxonomy_values = values
    return model


def build_search_docs_schema(taxonomy: Mapping[str, TaxonomyField]) -> dict[str, Any]:
    """JSON schema advertised for the search tool."""
    properties: dict[str, Any] = {
        "query": {"type": "string", "description": QUERY_DESCRIPTION},
        "limit": {
            "type": "integer",
            "description": LIMIT_DESCRIPTION,
            "minimum": 1,
            "maximum": MAX_LIMIT,
            "default": DEFAULT_LIMIT,
        },
        "cursor": {"type": "string", "description": CURSOR_DESCRIPTION},
    }
    for key, field in taxonomy.items():
        if key in properties:
            continue
        properties[key] = {
            "type": "string",
            "description": field.description or f"Filter results by {key}.",
            "enum": list(field.values),
        }
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": ["query"],
    }


def build_get_doc_schema() -> dict[str, Any]:
    """JSON schema advertised for the document tool."""
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "chunk_id": {"type": "string", "description": CHUNK_ID_DESCRIPTION},
            "context": {
                "type": "integer",
                "description": CONTEXT_DESCRIPTION,
                "minimum": -1,
                "maximum": MAX_GET_DOC_CONTEXT,
                "default": 0,
            },
        },
        "required": ["chunk_id"],
    }


def format_validation_error(err: ValidationError) -> str:
    messages = []
    for error in err.errors():
        loc = ".".join(str(part) for part in error["loc"])
        msg = error["msg"].removeprefix("Value error, ")
        if error["type"] == "extra_forbidden":
            messages.append(f"Unexpected field '{loc}'")
        elif loc:
            messages.append(f"{loc}: {msg}")
        else:
            messages.append(msg)
    return "; ".join(messages)


def parse_tool_arguments(model: type[BaseModel], args: Any, tool_name: str) -> Any:
    """Validate raw tool arguments, raising :class:`ToolInputError` on failure."""
    if not isinstance(args, dict):
        raise ToolInputError(f"{tool_name} input must be an object")
    try:
        return model.model_validate(args)
    except ValidationError as e:
        raise ToolInputError(format_validation_error(e)) from e
