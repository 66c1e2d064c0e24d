"""
Shared key-value store client.

One lazily created Redis client per process. Quota counters, rate-limit
tokens, response cache, job status and queue streams all live here so
that any worker process sees the same state.
"""
import logging
from typing import Optional

import redis

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get the process-wide Redis client (lazy init)."""
    global _client
    if _client is None:
        from config import get_redis_url
        _client = redis.from_url(get_redis_url(), decode_responses=True)
        logger.info("Key-value store client created")
    return _client


def reset_redis() -> None:
    """Drop the cached client (tests / fork)."""
    global _client
    if _client is not None:
        _client.close()
    _client = None
