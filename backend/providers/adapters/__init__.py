"""
Concrete provider adapters and the default provider set.
"""
import logging

from providers.adapters.archive_org import ArchiveOrgProvider
from providers.adapters.gemini import GeminiProvider
from providers.adapters.google_books import GoogleBooksProvider
from providers.adapters.isbndb import ISBNdbProvider
from providers.adapters.open_library import OpenLibraryProvider
from providers.adapters.wikidata import WikidataProvider
from providers.adapters.xai import XaiProvider
from providers.rate_limiter import ProviderRateLimiter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = (
    ISBNdbProvider,
    GoogleBooksProvider,
    OpenLibraryProvider,
    ArchiveOrgProvider,
    WikidataProvider,
    GeminiProvider,
    XaiProvider,
)


def build_default_providers(redis_client):
    """
    Instantiate every adapter sharing one rate limiter and response cache.

    Metered providers (daily_limit in pipeline.yaml) get a QuotaManager.
    """
    from services.quota_manager import QuotaManager

    rate_limiter = ProviderRateLimiter(redis_client)
    providers = []
    for cls in ADAPTER_CLASSES:
        providers.append(cls(
            quota_manager=QuotaManager.for_provider(redis_client, cls.NAME),
            cache=redis_client,
            rate_limiter=rate_limiter,
        ))
    logger.info(f"Built {len(providers)} providers: {', '.join(p.name for p in providers)}")
    return providers


__all__ = [
    'ADAPTER_CLASSES',
    'ArchiveOrgProvider',
    'GeminiProvider',
    'GoogleBooksProvider',
    'ISBNdbProvider',
    'OpenLibraryProvider',
    'WikidataProvider',
    'XaiProvider',
    'build_default_providers',
]
