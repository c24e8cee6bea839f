from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable
from urllib.parse import urlsplit, urlunsplit


def sha256_bytes(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(*parts: Any) -> str:
    """Deterministic hash over JSON-serialisable parts."""

    encoded = json.dumps(parts, sort_keys=True, ensure_ascii=False, default=str, separators=(",", ":"))
    return sha256_text(encoded)


def conversation_digest(messages: Iterable[str]) -> str:
    return fingerprint([str(message) for message in messages])


def strip_signature(url: str) -> str:
    """Drop query string and fragment so re-signed URLs share a cache key."""

    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
