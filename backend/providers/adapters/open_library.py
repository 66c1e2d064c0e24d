"""
Open Library adapter (free, no key; 100 requests per 5 minutes).

Uses the search API for both title/author resolution and ISBN lookup.
Covers come from the covers CDN by cover id.
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

logger = logging.getLogger(__name__)

OPEN_LIBRARY_SEARCH_API = "https://openlibrary.org/search.json"
OPEN_LIBRARY_COVERS = "https://covers.openlibrary.org/b/id"

SEARCH_FIELDS = (
    "key,title,author_name,author_key,first_publish_year,isbn,"
    "edition_count,publisher,language,cover_i,subject"
)


def cover_url(cover_id: int, size: str = 'L') -> str:
    return f"{OPEN_LIBRARY_COVERS}/{cover_id}-{size}.jpg"


class OpenLibraryProvider(BaseProvider, ISBNResolver, MetadataFetcher, CoverFetcher, SubjectProvider):
    NAME = "open-library"
    PROVIDER_TYPE = PROVIDER_TYPE_FREE

    def _search(self, limit: int, **query) -> List[Dict[str, Any]]:
        params = {**query, 'fields': SEARCH_FIELDS, 'limit': limit}
        data = self.http.get_json(OPEN_LIBRARY_SEARCH_API, params=params)
        return (data or {}).get('docs') or []

    def _doc_for_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        key = normalize_isbn(isbn)
        if not key:
            logger.debug(f"Invalid ISBN {isbn!r}, skipping {self.NAME} call")
            return None
        docs = self._search(1, isbn=key)
        return docs[0] if docs else None

    @staticmethod
    def calculate_confidence(doc: Dict[str, Any]) -> int:
        """How complete the matched work record is: 50 base, up to 100."""
        confidence = 50
        if doc.get('author_name'):
            confidence += 20
        if doc.get('first_publish_year'):
            confidence += 10
        if doc.get('isbn'):
            confidence += 10
        if doc.get('cover_i'):
            confidence += 5
        if (doc.get('edition_count') or 0) > 1:
            confidence += 5
        return min(confidence, 100)

    def resolve_isbn(self, title: str, author: Optional[str] = None) -> Optional[ResolutionResult]:
        query = {'title': title}
        if author:
            query['author'] = author
        docs = self._search(5, **query)
        if not docs:
            return None

        doc = docs[0]
        isbn = next((k for k in map(normalize_isbn, doc.get('isbn') or []) if k), None)
        if not isbn:
            logger.debug(f"No usable ISBN in {self.NAME} result {doc.get('key')}")
            return None

        return ResolutionResult(
            isbn=isbn,
            confidence=self.calculate_confidence(doc),
            source=self.NAME,
            title=doc.get('title'),
            authors=list(doc.get('author_name') or []),
        )

    def fetch_metadata(self, isbn: str) -> Optional[BookMetadata]:
        doc = self._doc_for_isbn(isbn)
        if doc is None:
            return None

        year = doc.get('first_publish_year')
        covers = {}
        if doc.get('cover_i'):
            covers = {
                'large': cover_url(doc['cover_i'], 'L'),
                'medium': cover_url(doc['cover_i'], 'M'),
                'small': cover_url(doc['cover_i'], 'S'),
            }
        external_ids = {}
        if doc.get('key'):
            external_ids['openlibrary_work_id'] = doc['key'].rsplit('/', 1)[-1]

        return BookMetadata(
            isbn=normalize_isbn(isbn),
            source=self.NAME,
            title=doc.get('title'),
            authors=list(doc.get('author_name') or []),
            publisher=(doc.get('publisher') or [None])[0],
            publication_date=str(year) if year else None,
            language=(doc.get('language') or [None])[0],
            subjects=list(doc.get('subject') or []),
            cover_urls=covers,
            external_ids=external_ids,
        )

    def fetch_cover(self, isbn: str) -> Optional[CoverResult]:
        doc = self._doc_for_isbn(isbn)
        if not doc or not doc.get('cover_i'):
            return None
        return CoverResult(url=cover_url(doc['cover_i']), source=self.NAME, size='large')

    def fetch_subjects(self, isbn: str) -> Optional[List[str]]:
        doc = self._doc_for_isbn(isbn)
        if doc is None:
            return None
        return list(doc.get('subject') or []) or None
