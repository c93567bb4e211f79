"""Embedding providers for chunk vectors.

Providers expose ``name``, ``model``, ``dimensions`` and a
``config_fingerprint`` that changes whenever the vectors they would produce
could change. ``embed()`` is one provider call; batching and concurrency
are driven by the embedding cache.
"""

from __future__ import annotations

import asyncio
import email.utils
import hashlib
import logging
import math
import random
import time
from typing import Any, Protocol

import httpx

from docs_mcp.corpus.schema import Chunk

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3
# ~8000 tokens
MAX_INPUT_CHARS = 24_000

DEFAULT_OPENAI_MODEL = "text-embedding-3-large"
DEFAULT_OPENAI_DIMENSIONS = 3072
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_HASH_DIMENSIONS = 256

PROVIDER_NAMES = ("none", "hash", "openai")


class EmbeddingError(RuntimeError):
    """Raised when vectors cannot be produced."""


class EmbeddingProvider(Protocol):
    name: str
    model: str
    dimensions: int
    config_fingerprint: str
    batch_size: int | None
    concurrency: int
    cost_per_million_tokens: float

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def sha256hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def compute_config_fingerprint(fields: dict[str, Any]) -> str:
    """Hash provider settings as sorted ``key=value`` pairs."""
    parts = [f"{key}={fields[key]}" for key in sorted(fields)]
    return sha256hex("\0".join(parts))


def to_embedding_input(chunk: Chunk) -> str:
    """Build the exact text sent to the embedding model for a chunk."""
    context = chunk.breadcrumb or chunk.filepath
    return f"Context: {context}\n\nContent:\n{chunk.content_text}"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _clamp_int(value: int | None, fallback: int, low: int, high: int) -> int:
    if value is None:
        return fallback
    return max(low, min(high, int(value)))


class NoopEmbeddingProvider:
    """Produces no vectors; the corpus is searched lexically only."""

    name = "none"
    model = "none"
    dimensions = 0
    batch_size = None
    concurrency = 1
    cost_per_million_tokens = 0.0

    def __init__(self) -> None:
        self.config_fingerprint = compute_config_fingerprint(
            {"provider": "none", "model": "none", "dimensions": 0}
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [[] for _ in texts]


class HashEmbeddingProvider:
    """Deterministic unit vectors derived from the input bytes.

    Useful for offline builds and tests; carries no semantic signal beyond
    byte overlap.
    """

    name = "hash"
    batch_size = None
    concurrency = 1
    cost_per_million_tokens = 0.0

    def __init__(self, dimensions: int = DEFAULT_HASH_DIMENSIONS, model: str = "hash-v1"):
        if dimensions <= 0:
            raise EmbeddingError("hash provider dimensions must be positive")
        self.model = model
        self.dimensions = dimensions
        self.config_fingerprint = compute_config_fingerprint(
            {"provider": "hash", "model": model, "dimensions": dimensions}
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [hash_to_unit_vector(text, self.dimensions) for text in texts]


def hash_to_unit_vector(text: str, dimensions: int) -> list[float]:
    vector = [0.0] * dimensions
    for i, byte in enumerate(text.encode("utf-8")):
        vector[i % dimensions] += byte if i % 2 == 0 else -byte

    norm = math.sqrt(sum(v * v for v in vector))
    if not norm:
        return vector
    return [v / norm for v in vector]


class OpenAIEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` endpoint client.

    Each ``embed()`` call is one request, retried with exponential backoff on
    429/5xx responses and transport errors up to ``max_retries`` times.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        dimensions: int = DEFAULT_OPENAI_DIMENSIONS,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        batch_size: int = 128,
        concurrency: int = 4,
        max_retries: int = 3,
        timeout: float = 60.0,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 10.0,
        cost_per_million_tokens: float = 0.13,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key.strip():
            raise EmbeddingError("OpenAIEmbeddingProvider requires a non-empty api_key")

        self._api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url.rstrip("/")
        self.batch_size = max(1, batch_size)
        self.concurrency = _clamp_int(concurrency, 4, 1, 32)
        self.max_retries = _clamp_int(max_retries, 3, 0, 10)
        self.timeout = timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.cost_per_million_tokens = cost_per_million_tokens
        self._transport = transport
        self.config_fingerprint = compute_config_fingerprint({
            "provider": "openai",
            "model": model,
            "dimensions": dimensions,
            "baseUrl": self.base_url,
        })

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        inputs = []
        for text in texts:
            if len(text) > MAX_INPUT_CHARS:
                logger.warning(
                    "Embedding input truncated from %d to %d characters; "
                    "consider lowering max_chunk_size",
                    len(text), MAX_INPUT_CHARS,
                )
                text = text[:MAX_INPUT_CHARS]
            inputs.append(text)

        payload = {"model": self.model, "input": inputs, "dimensions": self.dimensions}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            attempt = 0
            while True:
                retry_after = 0.0
                try:
                    response = await client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
                except (httpx.TimeoutException, httpx.TransportError) as e:
                    if attempt >= self.max_retries:
                        raise EmbeddingError(f"Embeddings request failed: {e}") from e
                    logger.warning("Embeddings request error, retrying (%d/%d): %s", attempt + 1, self.max_retries, e)
                else:
                    if response.status_code < 400:
                        return self._parse_response(response, len(inputs))
                    if not _is_retryable_status(response.status_code) or attempt >= self.max_retries:
                        raise EmbeddingError(
                            f"Embeddings request failed ({response.status_code}): {response.text[:500]}"
                        )
                    retry_after = parse_retry_after(response.headers.get("retry-after"))
                    logger.warning(
                        "Embeddings request returned %d, retrying (%d/%d)",
                        response.status_code, attempt + 1, self.max_retries,
                    )

                backoff = self.retry_base_delay * (2 ** attempt) + random.uniform(0, 0.25 * self.retry_base_delay)
                await asyncio.sleep(min(self.retry_max_delay, max(retry_after, backoff)))
                attempt += 1

    def _parse_response(self, response: httpx.Response, expected: int) -> list[list[float]]:
        try:
            data = response.json().get("data")
        except ValueError as e:
            raise EmbeddingError("Embeddings response is not valid JSON") from e
        if not isinstance(data, list):
            raise EmbeddingError("Embeddings response missing data array")

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        if len(ordered) != expected:
            raise EmbeddingError(
                f"Embeddings response size mismatch: expected {expected}, got {len(ordered)}"
            )
        return [list(item["embedding"]) for item in ordered]


def _is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


def parse_retry_after(value: str | None) -> float:
    """Seconds to wait from a ``Retry-After`` header (delta seconds or HTTP date)."""
    if not value:
        return 0.0
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else 0.0

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, when.timestamp() - time.time())


def create_embedding_provider(
    provider: str,
    model: str | None = None,
    dimensions: int | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
    max_retries: int | None = None,
    timeout: float | None = None,
) -> EmbeddingProvider:
    """Instantiate a provider by name."""
    if provider not in PROVIDER_NAMES:
        raise EmbeddingError(
            f"unsupported embedding provider '{provider}'. Expected one of: {', '.join(PROVIDER_NAMES)}"
        )

    if provider == "none":
        return NoopEmbeddingProvider()

    if provider == "hash":
        return HashEmbeddingProvider(
            dimensions=dimensions or DEFAULT_HASH_DIMENSIONS,
            model=model or "hash-v1",
        )

    key = (api_key or "").strip()
    if not key:
        raise EmbeddingError("openai embedding provider requires an API key (settings or OPENAI_API_KEY)")

    kwargs: dict[str, Any] = {}
    if model is not None:
        kwargs["model"] = model
    if dimensions is not None:
        kwargs["dimensions"] = dimensions
    if base_url is not None:
        kwargs["base_url"] = base_url
    if batch_size is not None:
        kwargs["batch_size"] = batch_size
    if concurrency is not None:
        kwargs["concurrency"] = concurrency
    if max_retries is not None:
        kwargs["max_retries"] = max_retries
    if timeout is not None:
        kwargs["timeout"] = timeout
    return OpenAIEmbeddingProvider(api_key=key, **kwargs)
