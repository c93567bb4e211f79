"""Stateless pagination cursors for search.

A cursor is base64url JSON holding the next offset, the page size and a
SHA-1 checksum of the (query, filters) pair it was issued for. The checksum
guards against reusing a cursor with a different search; it is not a
secret-keyed signature.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from typing import Any, NamedTuple

CURSOR_VERSION = 1

_B64URL = re.compile(r"[A-Za-z0-9_-]+")


class CursorError(ValueError):
    """Raised for any cursor that cannot be honoured."""


class CursorPayload(NamedTuple):
    offset: int
    limit: int


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    if not _B64URL.fullmatch(value):
        raise ValueError("not base64url")
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def compute_search_signature(query: str, filters: dict[str, str]) -> str:
    normalized = {
        "query": query.strip(),
        "filters": [[key, filters[key]] for key in sorted(filters)],
    }
    serialized = json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    return _b64url_encode(hashlib.sha1(serialized.encode("utf-8")).digest())


def encode_search_cursor(offset: int, limit: int, query: str, filters: dict[str, str]) -> str:
    payload = {
        "offset": offset,
        "limit": limit,
        "v": CURSOR_VERSION,
        "sig": compute_search_signature(query, filters),
    }
    return _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def decode_search_cursor(cursor: str, query: str, filters: dict[str, str]) -> CursorPayload:
    """Decode ``cursor`` and verify it was issued for ``query`` and ``filters``."""
    try:
        raw = _b64url_decode(cursor)
    except (binascii.Error, ValueError) as e:
        raise CursorError("Invalid cursor: not valid base64url") from e

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CursorError("Invalid cursor: malformed JSON payload") from e

    if (
        not isinstance(payload, dict)
        or not _is_int(payload.get("offset"))
        or not _is_int(payload.get("limit"))
        or payload["offset"] < 0
        or payload["limit"] <= 0
        or payload.get("v") != CURSOR_VERSION
        or not isinstance(payload.get("sig"), str)
        or not payload["sig"]
    ):
        raise CursorError("Invalid cursor: expected a search cursor payload")

    if payload["sig"] != compute_search_signature(query, filters):
        raise CursorError("Invalid cursor: does not match current query or filters")

    return CursorPayload(offset=payload["offset"], limit=payload["limit"])
