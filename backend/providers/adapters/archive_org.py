"""
Archive.org adapter (free). Covers via the image service, light metadata
from advanced search. Strongest for pre-2000 titles.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from constants import PROVIDER_TYPE_FREE
from providers.base import BaseProvider
from providers.capabilities import BookMetadata, CoverFetcher, CoverResult, MetadataFetcher
from utils.isbn import normalize_isbn

logger = logging.getLogger(__name__)

ARCHIVE_ORG_SEARCH_API = "https://archive.org/advancedsearch.php"
ARCHIVE_ORG_IMAGE_SERVICE = "https://archive.org/services/img"


def _as_list(value: Union[None, str, List[str]]) -> List[str]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


class ArchiveOrgProvider(BaseProvider, CoverFetcher, MetadataFetcher):
    NAME = "archive-org"
    PROVIDER_TYPE = PROVIDER_TYPE_FREE

    def _first_doc(self, isbn: str, fields: str) -> Optional[Dict[str, Any]]:
        key = normalize_isbn(isbn)
        if not key:
            logger.debug(f"Invalid ISBN {isbn!r}, skipping {self.NAME} call")
            return None
        data = self.http.get_json(
            ARCHIVE_ORG_SEARCH_API,
            params={'q': f"isbn:{key}", 'fl[]': fields, 'output': 'json', 'rows': 1},
        )
        docs = ((data or {}).get('response') or {}).get('docs') or []
        return docs[0] if docs else None

    def fetch_cover(self, isbn: str) -> Optional[CoverResult]:
        doc = self._first_doc(isbn, 'identifier')
        if not doc or not doc.get('identifier'):
            return None
        return CoverResult(
            url=f"{ARCHIVE_ORG_IMAGE_SERVICE}/{doc['identifier']}",
            source=self.NAME,
            size='large',
        )

    def fetch_metadata(self, isbn: str) -> Optional[BookMetadata]:
        doc = self._first_doc(isbn, 'identifier,title,creator,publisher,date,description,subject')
        if doc is None:
            return None
        identifier = doc.get('identifier')
        return BookMetadata(
            isbn=normalize_isbn(isbn),
            source=self.NAME,
            title=doc.get('title'),
            authors=_as_list(doc.get('creator')),
            publisher=(_as_list(doc.get('publisher')) or [None])[0],
            publication_date=doc.get('date'),
            description=(_as_list(doc.get('description')) or [None])[0],
            subjects=_as_list(doc.get('subject')),
            cover_urls={'large': f"{ARCHIVE_ORG_IMAGE_SERVICE}/{identifier}"} if identifier else {},
            external_ids={'archive_org_id': identifier} if identifier else {},
        )
