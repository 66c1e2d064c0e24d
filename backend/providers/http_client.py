"""
Provider HTTP client - the single fetch path for every provider adapter

Per request:
1. Cache-first: a cached JSON body is returned without touching the network
2. before_request(method, url) may veto the call by raising; metered
   providers reserve quota here, so a call that cannot be counted is never sent
3. Rate limit: wait for the provider's persisted call slot
4. One bounded-timeout request, no in-line retry (retries belong to the queue)
5. on_attempt(FetchAttempt) fires for EVERY network attempt, whatever the
   outcome
6. 2xx JSON is cached with the provider's TTL; 404 returns None

Errors:
- timeout, connection error, 408, 429, 5xx -> TransientNetworkError
- other 4xx, malformed JSON                -> ProviderResponseError

Usage:
    client = ProviderHttpClient('google-books', on_attempt=quota_recorder)
    data = client.get_json(GOOGLE_BOOKS_URL, params={'q': 'isbn:9780...'})
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis
import requests

from constants import DEFAULT_HTTP_TIMEOUT
from errors import ProviderResponseError, TransientNetworkError
from utils.cache_key import build_response_cache_key

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset([408, 429, 500, 502, 503, 504])


@dataclass
class FetchAttempt:
    """One network attempt, reported to on_attempt."""
    provider: str
    method: str
    url: str
    status_code: Optional[int]
    duration_ms: int
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.status_code is not None and self.status_code < 400


class ProviderHttpClient:
    """Cache-aware, rate-limited JSON fetcher for one provider."""

    def __init__(
        self,
        provider: str,
        cache=None,
        rate_limiter=None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        cache_ttl_seconds: Optional[int] = None,
        before_request: Optional[Callable[[str, str], None]] = None,
        on_attempt: Optional[Callable[[FetchAttempt], None]] = None,
        user_agent: Optional[str] = None,
    ):
        """
        Args:
            provider: Provider name (settings, cache namespace, rate-limit key)
            cache: Redis client for the response cache (None disables caching)
            rate_limiter: ProviderRateLimiter (None disables spacing)
            timeout: Request timeout; defaults to providers.<name>.timeout_seconds
            cache_ttl_seconds: Defaults to providers.<name>.cache_ttl_seconds
            before_request: Called on a cache miss before the network; raising vetoes the call
            on_attempt: Called after every network attempt
        """
        from config import Config, get_provider_settings

        settings = get_provider_settings(provider)
        self.provider = provider
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.timeout = timeout if timeout is not None else settings.get('timeout_seconds', DEFAULT_HTTP_TIMEOUT)
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None
            else int(settings.get('cache_ttl_seconds', 0) or 0)
        )
        self.before_request = before_request
        self.on_attempt = on_attempt

        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": user_agent or Config.USER_AGENT,
            "Accept": "application/json",
        })

    # =========================================================================
    # Public API
    # =========================================================================

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        use_cache: bool = True,
    ) -> Optional[Any]:
        """GET and decode JSON. None on 404."""
        return self._request('GET', url, params=params, headers=headers, use_cache=use_cache)

    def post_json(
        self,
        url: str,
        body: Any,
        headers: Optional[Dict[str, str]] = None,
        use_cache: bool = False,
    ) -> Optional[Any]:
        """POST a JSON body and decode the JSON reply. None on 404."""
        return self._request('POST', url, body=body, headers=headers, use_cache=use_cache)

    # =========================================================================
    # Internals
    # =========================================================================

    def _cache_key(self, url: str, params: Optional[Dict[str, Any]], body: Any) -> str:
        full_url = requests.Request('GET', url, params=params).prepare().url
        return build_response_cache_key(self.provider, full_url, body)

    def _cache_get(self, key: str) -> Optional[Any]:
        try:
            cached = self.cache.get(key)
        except redis.RedisError as e:
            logger.warning(f"{self.provider}: cache read failed, fetching: {e}")
            return None
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning(f"{self.provider}: dropping unreadable cache entry {key}")
            return None

    def _cache_put(self, key: str, data: Any) -> None:
        try:
            self.cache.set(key, json.dumps(data), ex=self.cache_ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"{self.provider}: cache write failed: {e}")

    def _report(self, attempt: FetchAttempt) -> None:
        if self.on_attempt is not None:
            self.on_attempt(attempt)

    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        use_cache: bool = True,
    ) -> Optional[Any]:
        caching = use_cache and self.cache is not None and self.cache_ttl_seconds > 0
        cache_key = self._cache_key(url, params, body) if caching else None

        if caching:
            cached = self._cache_get(cache_key)
            if cached is not None:
                logger.debug(f"{self.provider}: cache hit {url}")
                return cached

        if self.before_request is not None:
            self.before_request(method, url)

        if self.rate_limiter is not None:
            self.rate_limiter.wait(self.provider)

        start = time.time()
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            self._report(FetchAttempt(self.provider, method, url, None, _ms_since(start), f"timeout: {e}"))
            raise TransientNetworkError(f"{self.provider}: timeout after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            self._report(FetchAttempt(self.provider, method, url, None, _ms_since(start), str(e)))
            raise TransientNetworkError(f"{self.provider}: {e}") from e

        duration_ms = _ms_since(start)
        status = response.status_code

        if status == 404:
            self._report(FetchAttempt(self.provider, method, url, status, duration_ms))
            return None

        if status in RETRYABLE_STATUS_CODES:
            self._report(FetchAttempt(self.provider, method, url, status, duration_ms, f"HTTP {status}"))
            raise TransientNetworkError(f"{self.provider}: HTTP {status}", status_code=status)

        if status >= 400:
            self._report(FetchAttempt(self.provider, method, url, status, duration_ms, f"HTTP {status}"))
            raise ProviderResponseError(
                f"{self.provider}: HTTP {status}: {response.text[:200]}", status_code=status
            )

        try:
            data = response.json()
        except ValueError as e:
            self._report(FetchAttempt(self.provider, method, url, status, duration_ms, "malformed JSON"))
            raise ProviderResponseError(f"{self.provider}: malformed JSON body", status_code=status) from e

        self._report(FetchAttempt(self.provider, method, url, status, duration_ms))

        if caching:
            self._cache_put(cache_key, data)
        return data

    def close(self) -> None:
        self._session.close()


def _ms_since(start: float) -> int:
    return int((time.time() - start) * 1000)
