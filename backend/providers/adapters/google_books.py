"""
Google Books adapter (free, optional API key).

Every lookup goes through the volumes search endpoint:
    ?q=isbn:<isbn13>                     metadata, cover, subjects
    ?q=intitle:<t>+inauthor:<a>          ISBN resolution
"""
import logging
from typing import Any, Dict, List, Optional

from constants import PROVIDER_TYPE_FREE
from providers.base import BaseProvider
from providers.capabilities import (
    BookMetadata,
    CoverFetcher,
    CoverResult,
    ISBNResolver,
    MetadataFetcher,
    ResolutionResult,
    SubjectProvider,
)
from utils.isbn import normalize_isbn
from utils.normalize import authors_match, normalize_title

logger = logging.getLogger(__name__)

GOOGLE_BOOKS_API_BASE = "https://www.googleapis.com/books/v1/volumes"

STOP_WORDS = frozenset(['the', 'a', 'an', 'of', 'and', 'in', 'on', 'to', 'for'])

# imageLinks key -> stored size, best first
_IMAGE_SIZES = (
    ('extraLarge', 'large'),
    ('large', 'large'),
    ('medium', 'medium'),
    ('thumbnail', 'medium'),
    ('smallThumbnail', 'small'),
)


def _https(url: str) -> str:
    return url.replace('http://', 'https://', 1)


def title_match_points(query_title: str, result_title: Optional[str]) -> int:
    """Up to 20 points: containment scores full, otherwise meaningful word overlap."""
    query = normalize_title(query_title)
    result = normalize_title(result_title)
    if not query or not result:
        return 0
    if query in result or result in query:
        return 20
    query_words = {w for w in query.split() if w not in STOP_WORDS}
    result_words = {w for w in result.split() if w not in STOP_WORDS}
    if not query_words or not result_words:
        return 0
    ratio = len(query_words & result_words) / max(len(query_words), len(result_words))
    return int(ratio * 20)


class GoogleBooksProvider(BaseProvider, ISBNResolver, MetadataFetcher, CoverFetcher, SubjectProvider):
    NAME = "google-books"
    PROVIDER_TYPE = PROVIDER_TYPE_FREE

    def _params(self, query: str, **extra) -> Dict[str, Any]:
        params = {'q': query, **extra}
        if self.api_key:
            params['key'] = self.api_key
        return params

    def _first_volume(self, isbn: str) -> Optional[Dict[str, Any]]:
        key = normalize_isbn(isbn)
        if not key:
            logger.debug(f"Invalid ISBN {isbn!r}, skipping {self.NAME} call")
            return None
        data = self.http.get_json(GOOGLE_BOOKS_API_BASE, params=self._params(f"isbn:{key}"))
        items = (data or {}).get('items') or []
        return items[0] if items else None

    # =========================================================================
    # Capabilities
    # =========================================================================

    def resolve_isbn(self, title: str, author: Optional[str] = None) -> Optional[ResolutionResult]:
        query = f"intitle:{title}"
        if author:
            query += f"+inauthor:{author}"
        data = self.http.get_json(GOOGLE_BOOKS_API_BASE, params=self._params(query, maxResults=1))
        items = (data or {}).get('items') or []
        if not items:
            return None

        info = items[0].get('volumeInfo') or {}
        identifiers = {i.get('type'): i.get('identifier') for i in info.get('industryIdentifiers') or []}
        isbn = normalize_isbn(identifiers.get('ISBN_13') or identifiers.get('ISBN_10'))
        if not isbn:
            return None

        return ResolutionResult(
            isbn=isbn,
            confidence=self.calculate_confidence(info, title, author),
            source=self.NAME,
            title=info.get('title'),
            authors=list(info.get('authors') or []),
        )

    @staticmethod
    def calculate_confidence(info: Dict[str, Any], title: str, author: Optional[str]) -> int:
        confidence = 50 + title_match_points(title, info.get('title'))
        if authors_match(author, info.get('authors')):
            confidence += 20
        if (info.get('imageLinks') or {}).get('thumbnail'):
            confidence += 5
        if info.get('categories'):
            confidence += 5
        return min(confidence, 100)

    def fetch_metadata(self, isbn: str) -> Optional[BookMetadata]:
        volume = self._first_volume(isbn)
        if volume is None:
            return None
        info = volume.get('volumeInfo') or {}
        identifiers = {i.get('type'): i.get('identifier') for i in info.get('industryIdentifiers') or []}
        key = normalize_isbn(isbn)
        isbn10 = identifiers.get('ISBN_10')
        return BookMetadata(
            isbn=key,
            source=self.NAME,
            title=info.get('title'),
            subtitle=info.get('subtitle'),
            authors=list(info.get('authors') or []),
            publisher=info.get('publisher'),
            publication_date=info.get('publishedDate'),
            page_count=info.get('pageCount'),
            language=info.get('language'),
            description=info.get('description'),
            subjects=list(info.get('categories') or []),
            cover_urls=self._cover_urls(info),
            alternate_isbns=[isbn10] if isbn10 else [],
            external_ids={'google_books_volume_ids': [volume['id']]} if volume.get('id') else {},
        )

    @staticmethod
    def _cover_urls(info: Dict[str, Any]) -> Dict[str, str]:
        links = info.get('imageLinks') or {}
        covers: Dict[str, str] = {}
        for link_key, size in _IMAGE_SIZES:
            if links.get(link_key) and size not in covers:
                covers[size] = _https(links[link_key])
        return covers

    def fetch_cover(self, isbn: str) -> Optional[CoverResult]:
        volume = self._first_volume(isbn)
        if volume is None:
            return None
        covers = self._cover_urls(volume.get('volumeInfo') or {})
        for size in ('large', 'medium', 'small'):
            if covers.get(size):
                return CoverResult(url=covers[size], source=self.NAME, size=size)
        return None

    def fetch_subjects(self, isbn: str) -> Optional[List[str]]:
        volume = self._first_volume(isbn)
        if volume is None:
            return None
        return list((volume.get('volumeInfo') or {}).get('categories') or []) or None
