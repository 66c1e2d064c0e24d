"""
Enrichment error taxonomy.

- ProviderUnavailable: quota or capability gone; skip to the next provider.
- ProviderRefusal: a generator declined to answer; zero results, not a failure.
- TransientNetworkError: timeout / 408 / 429 / 5xx; retried by the queue, never in-line.
- ProviderResponseError: non-retryable 4xx or an unreadable body.
- QuotaExceeded: hard stop for paid providers.
- DataConflict: invariant violation at persist; the unit fails with the raw message.
- LockNotAcquired: another worker holds the unit.
"""
from typing import Any, Dict, Optional


class EnrichmentError(Exception):
    """Base exception for the enrichment pipeline."""
    pass


class ProviderUnavailable(EnrichmentError):
    """Provider cannot serve this call (missing key, quota, capability)."""

    def __init__(self, provider: str, reason: str = 'unavailable'):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {reason}")


class ProviderRefusal(EnrichmentError):
    """Generator explicitly declined (e.g. insufficient verifiable data)."""

    def __init__(self, provider: str, message: str = 'declined to answer'):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class TransientNetworkError(EnrichmentError):
    """Retryable transport failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderResponseError(EnrichmentError):
    """Non-retryable provider response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class QuotaExceeded(EnrichmentError):
    """Quota would be exceeded by this call."""

    def __init__(self, provider: str, status: Optional[Dict[str, Any]] = None, reason: str = ''):
        self.provider = provider
        self.status = status or {}
        self.reason = reason
        super().__init__(f"{provider} quota exceeded: {reason}" if reason else f"{provider} quota exceeded")


class DataConflict(EnrichmentError):
    """Persisting would violate a stored invariant."""

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw or message
        super().__init__(message)


class LockNotAcquired(EnrichmentError):
    """Advisory lock is held by another session."""

    def __init__(self, lock_key: int):
        self.lock_key = lock_key
        super().__init__(f"advisory lock {lock_key} is held elsewhere")
