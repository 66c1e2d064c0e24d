"""
Provider Rate Limiter - persisted minimum spacing between provider calls.

Separate from the quota manager (which counts calls per day). This one
only spaces calls out so a provider never sees bursts above its plan.

One token per provider, stored in the shared key-value store:

    SET ratelimit:{provider} <ts> NX PX <spacing_ms>

Whoever sets the key may call now; everyone else waits for its TTL. The
token lives in shared storage so spacing holds across worker processes.

Spacing comes from pipeline.yaml (providers.<name>.rate_limit_ms).
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = 'ratelimit'

# Give up waiting after this long
MAX_WAIT_SECONDS = 60


class RateLimitTimeout(RuntimeError):
    """Could not obtain a call slot within MAX_WAIT_SECONDS."""
    pass


class ProviderRateLimiter:
    """Minimum inter-call spacing per provider."""

    def __init__(
        self,
        client: redis.Redis,
        settings_loader: Optional[Callable[[str], Dict[str, Any]]] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_wait_seconds: float = MAX_WAIT_SECONDS,
    ):
        if settings_loader is None:
            from config import get_provider_settings
            settings_loader = get_provider_settings
        self.client = client
        self._settings_loader = settings_loader
        self._sleep = sleep
        self.max_wait_seconds = max_wait_seconds

    def _make_key(self, provider: str) -> str:
        return f"{KEY_PREFIX}:{provider}"

    def spacing_ms(self, provider: str) -> int:
        """Configured spacing; 0 means unlimited."""
        return int(self._settings_loader(provider).get('rate_limit_ms', 0) or 0)

    def wait(self, provider: str) -> float:
        """
        Block until this process owns the next call slot.

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitTimeout: slot not obtained within max_wait_seconds
        """
        spacing = self.spacing_ms(provider)
        if spacing <= 0:
            return 0.0

        key = self._make_key(provider)
        waited = 0.0
        while waited <= self.max_wait_seconds:
            if self.client.set(key, str(time.time()), nx=True, px=spacing):
                if waited:
                    logger.debug(f"Rate limited for {provider}, waited {waited:.2f}s")
                return waited

            ttl_ms = self.client.pttl(key)
            # -1 (no expiry) should not happen, -2 means it just expired
            delay = max(ttl_ms, 1) / 1000.0 if ttl_ms and ttl_ms > 0 else 0.001
            self._sleep(delay)
            waited += delay

        raise RateLimitTimeout(f"Rate limit wait timeout for {provider}")

    def is_allowed(self, provider: str) -> bool:
        """Check if a call could go out now, without taking the slot."""
        if self.spacing_ms(provider) <= 0:
            return True
        return not self.client.exists(self._make_key(provider))

    def get_status(self, provider: str) -> Dict[str, Any]:
        spacing = self.spacing_ms(provider)
        ttl_ms = self.client.pttl(self._make_key(provider)) if spacing > 0 else -2
        return {
            'provider': provider,
            'spacing_ms': spacing,
            'next_slot_in_ms': max(ttl_ms, 0),
            'is_allowed': ttl_ms <= 0,
        }


# Global instance (lazy init)
_rate_limiter = None


def get_provider_rate_limiter() -> ProviderRateLimiter:
    """Get the process-wide provider rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        from services.kv_store import get_redis
        _rate_limiter = ProviderRateLimiter(get_redis())
    return _rate_limiter
