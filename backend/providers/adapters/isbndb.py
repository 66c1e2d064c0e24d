"""
ISBNdb adapter (paid, metered).

Premium endpoint, 3 req/sec, 15,000 calls per UTC day. Implements ISBN
resolution by title/author, single and batch metadata, and covers. A
batch call for up to 100 keys costs one call against quota.

Confidence for resolved keys: 60 base, +20 title match, +20 author match.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from constants import BATCH_METADATA_MAX_KEYS, PROVIDER_TYPE_PAID
from providers.base import BaseProvider
from providers.capabilities import (
    BookMetadata,
    CoverFetcher,
    CoverResult,
    ISBNResolver,
    MetadataFetcher,
    ResolutionResult,
)
from utils.isbn import clean_isbn, normalize_isbn, normalize_isbns
from utils.normalize import (
    author_similarity,
    authors_match,
    match_title_similarity,
    normalize_format,
    normalize_title,
)

logger = logging.getLogger(__name__)

ISBNDB_API_BASE = "https://api.premium.isbndb.com"


def _related_by_isbn(related: Optional[Dict[str, str]]) -> Dict[str, str]:
    """ISBNdb reports {format: isbn}; stored as {isbn13: format}."""
    result = {}
    for left, right in (related or {}).items():
        if clean_isbn(left):
            isbn, fmt = left, right
        else:
            isbn, fmt = right, left
        key = normalize_isbn(isbn)
        if key:
            result[key] = str(fmt).lower()
    return result


class ISBNdbProvider(BaseProvider, ISBNResolver, MetadataFetcher, CoverFetcher):
    NAME = "isbndb"
    PROVIDER_TYPE = PROVIDER_TYPE_PAID
    REQUIRES_API_KEY = True

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": self.api_key or ""}

    # =========================================================================
    # ISBN resolution
    # =========================================================================

    def resolve_isbn(self, title: str, author: Optional[str] = None) -> Optional[ResolutionResult]:
        """Best-scoring book of the search page (0.7 title + 0.3 author), not the first."""
        query = f"{title} {author or ''}".strip()
        data = self.http.get_json(
            f"{ISBNDB_API_BASE}/books/{quote(query)}",
            params={"pageSize": 10},
            headers=self._headers(),
        )
        best, best_score = None, -1.0
        for book in (data or {}).get("books") or []:
            if not normalize_isbn(book.get("isbn13") or book.get("isbn")):
                continue
            score = self.match_score(book, title, author)
            if score > best_score:
                best, best_score = book, score
        if best is None:
            return None

        return ResolutionResult(
            isbn=normalize_isbn(best.get("isbn13") or best.get("isbn")),
            confidence=self.calculate_confidence(best, title, author),
            source=self.NAME,
            title=best.get("title_long") or best.get("title"),
            authors=list(best.get("authors") or []),
        )

    @staticmethod
    def match_score(book: Dict[str, Any], title: str, author: Optional[str]) -> float:
        title_score = max(
            match_title_similarity(title, book.get("title_long")),
            match_title_similarity(title, book.get("title")),
        )
        return title_score * 0.7 + author_similarity(author, book.get("authors")) * 0.3

    @staticmethod
    def calculate_confidence(book: Dict[str, Any], title: str, author: Optional[str]) -> int:
        confidence = 60
        if normalize_title(title) and normalize_title(title) in normalize_title(book.get("title")):
            confidence += 20
        if authors_match(author, book.get("authors")):
            confidence += 20
        return min(confidence, 100)

    # =========================================================================
    # Metadata
    # =========================================================================

    def _to_metadata(self, book: Dict[str, Any]) -> Optional[BookMetadata]:
        isbn = normalize_isbn(book.get("isbn13") or book.get("isbn"))
        if not isbn:
            return None
        alternates = [k for k in normalize_isbns([book.get("isbn"), book.get("isbn10")]) if k != isbn]
        isbn10 = clean_isbn(book.get("isbn10") or book.get("isbn"))
        if isbn10 and len(isbn10) == 10:
            alternates.append(isbn10)
        cover = book.get("image_original") or book.get("image")
        return BookMetadata(
            isbn=isbn,
            source=self.NAME,
            title=book.get("title_long") or book.get("title"),
            authors=list(book.get("authors") or []),
            publisher=book.get("publisher"),
            publication_date=book.get("date_published"),
            page_count=book.get("pages"),
            format=normalize_format(book.get("binding")),
            language=book.get("language"),
            description=book.get("synopsis"),
            subjects=list(book.get("subjects") or []),
            cover_urls={"large": cover} if cover else {},
            alternate_isbns=sorted(set(alternates)),
            related_isbns=_related_by_isbn(book.get("related")),
        )

    def fetch_metadata(self, isbn: str, use_cache: bool = True) -> Optional[BookMetadata]:
        key = normalize_isbn(isbn)
        if not key:
            logger.debug(f"Invalid ISBN {isbn!r}, skipping {self.NAME} call")
            return None
        data = self.http.get_json(f"{ISBNDB_API_BASE}/book/{key}", headers=self._headers(), use_cache=use_cache)
        book = (data or {}).get("book")
        return self._to_metadata(book) if book else None

    def fetch_metadata_batch(self, isbns: List[str]) -> Dict[str, BookMetadata]:
        """One POST for up to BATCH_METADATA_MAX_KEYS keys; extras are ignored."""
        keys = normalize_isbns(isbns)
        if not keys:
            return {}
        if len(keys) > BATCH_METADATA_MAX_KEYS:
            logger.warning(f"{self.NAME} batch of {len(keys)} truncated to {BATCH_METADATA_MAX_KEYS}")
            keys = keys[:BATCH_METADATA_MAX_KEYS]

        data = self.http.post_json(
            f"{ISBNDB_API_BASE}/books",
            {"isbns": keys},
            headers=self._headers(),
        )
        results = {}
        for book in (data or {}).get("data") or []:
            metadata = self._to_metadata(book)
            if metadata is not None:
                results[metadata.isbn] = metadata
        logger.info(f"{self.NAME} batch: requested={len(keys)} retrieved={len(results)}")
        return results

    def fetch_cover(self, isbn: str, fresh: bool = False) -> Optional[CoverResult]:
        """Large cover URL. fresh=True bypasses the response cache (signed URLs expire)."""
        metadata = self.fetch_metadata(isbn, use_cache=not fresh)
        if not metadata or not metadata.cover_urls.get("large"):
            return None
        return CoverResult(url=metadata.cover_urls["large"], source=self.NAME, size="large")
