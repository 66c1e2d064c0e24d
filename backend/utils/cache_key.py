"""
Cache key helpers.

Stable key construction for the shared key-value store. Keys over
MAX_KV_KEY_BYTES are replaced by a content hash so every caller derives
the same short key for the same input.
"""

import json
from typing import Any

from constants import MAX_KV_KEY_BYTES
from utils.hashing import compute_json_hash


def bounded_key(key: str, *, max_bytes: int = MAX_KV_KEY_BYTES) -> str:
    """
    Return key unchanged if it fits, else '<prefix>:sha256:<hash>'.

    The prefix is everything before the first ':' so hashed keys stay
    grouped by namespace.
    """
    if len(key.encode("utf-8")) <= max_bytes:
        return key
    prefix = key.split(":", 1)[0]
    return f"{prefix}:sha256:{compute_json_hash(key)}"


def build_response_cache_key(provider: str, url: str, body: Any = None) -> str:
    """Cache key for a provider HTTP response (url plus optional request body)."""
    raw = f"cache:{provider}:{url}"
    if body is not None:
        raw = f"{raw}:{json.dumps(body, sort_keys=True, default=str)}"
    return bounded_key(raw)
