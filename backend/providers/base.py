"""
Base Provider - shared plumbing for every provider adapter.

Provides:
- API key lookup (a provider that needs a key and has none is unavailable)
- Quota-aware availability (circuit breaker for metered providers)
- A ProviderHttpClient that reserves quota before every network attempt
  (hard stop: QuotaExceeded, nothing sent)
- Capability discovery from the implemented contracts

Subclasses set class attributes:
- NAME: Unique provider identifier ('isbndb', 'google-books', ...)
- PROVIDER_TYPE: 'free' | 'paid' | 'ai'
- REQUIRES_API_KEY: whether is_available() needs an API key
"""
import logging
from typing import List, Optional

from config import get_api_key
from constants import PROVIDER_TYPE_FREE
from errors import ProviderUnavailable
from providers.capabilities import capabilities_of
from providers.http_client import FetchAttempt, ProviderHttpClient

logger = logging.getLogger(__name__)


class BaseProvider:
    """Common base for provider adapters."""

    # Override in subclass
    NAME: str = "base"
    PROVIDER_TYPE: str = PROVIDER_TYPE_FREE
    REQUIRES_API_KEY: bool = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        quota_manager=None,
        http_client: Optional[ProviderHttpClient] = None,
        cache=None,
        rate_limiter=None,
    ):
        """
        Args:
            api_key: Overrides the <NAME>_API_KEY environment variable
            quota_manager: QuotaManager for metered providers (None = unmetered)
            http_client: Prebuilt client (tests); otherwise built from settings
            cache: Redis client used as the response cache
            rate_limiter: ProviderRateLimiter shared across providers
        """
        self.api_key = api_key if api_key is not None else get_api_key(self.NAME)
        self.quota_manager = quota_manager
        self.http = http_client or ProviderHttpClient(
            self.NAME,
            cache=cache,
            rate_limiter=rate_limiter,
            before_request=self._reserve_call,
            on_attempt=self._record_attempt,
        )

    @property
    def name(self) -> str:
        return self.NAME

    @property
    def provider_type(self) -> str:
        return self.PROVIDER_TYPE

    @property
    def capabilities(self) -> List[str]:
        return capabilities_of(self)

    def is_available(self) -> bool:
        """
        Can this provider take a call right now?

        False when a required key is missing or the quota manager says the
        safety ceiling is reached. Never raises for an exhausted budget.
        """
        if self.REQUIRES_API_KEY and not self.api_key:
            return False
        if self.quota_manager is not None:
            check = self.quota_manager.check_quota(1)
            if not check.allowed:
                logger.info(f"{self.NAME} unavailable: {check.reason}")
                return False
        return True

    def _reserve_call(self, method: str, url: str) -> None:
        """
        Claim one call of today's budget before it goes out.

        The reservation is the attempt record for metered providers: it is
        counted whatever the call's outcome, and a call that cannot be
        counted is never sent.

        Raises:
            ProviderUnavailable: a required API key is missing
            QuotaExceeded: the call would pass the safety ceiling, or the
                           counter cannot be reached (fail closed)
        """
        if self.REQUIRES_API_KEY and not self.api_key:
            raise ProviderUnavailable(self.NAME, 'missing API key')
        if self.quota_manager is None:
            return
        logger.debug(f"{self.NAME} reserving quota for {method} {url}")
        self.quota_manager.ensure_quota(1, reserve=True)

    def _record_attempt(self, attempt: FetchAttempt) -> None:
        # Quota was already taken by _reserve_call
        if attempt.error:
            logger.debug(f"{self.NAME} attempt failed: {attempt.error} ({attempt.duration_ms}ms)")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.NAME} ({self.PROVIDER_TYPE})>"
