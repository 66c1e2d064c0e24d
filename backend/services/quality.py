"""
Quality and completeness scoring for editions, works and authors.

quality_score (0-100) = provider weight + points for present fields.
completeness_score (0-100) = percentage of tracked fields present.
"""
from typing import Any, Dict, Iterable

from constants import DEFAULT_PROVIDER_QUALITY, PROVIDER_QUALITY_WEIGHTS

EDITION_COMPLETENESS_FIELDS = (
    'title', 'subtitle', 'publisher', 'publication_date', 'page_count',
    'format', 'language', 'cover_url_large', 'subject_tags', 'work_key',
)

WORK_COMPLETENESS_FIELDS = (
    'title', 'description', 'original_language', 'first_publication_year',
    'subject_tags', 'cover_url_large',
)

AUTHOR_COMPLETENESS_FIELDS = (
    'name', 'gender', 'nationality', 'birth_year', 'bio', 'author_photo_url', 'wikidata_id',
)

EXTERNAL_ID_FAMILIES = (
    'openlibrary_edition_id',
    'google_books_volume_ids',
    'goodreads_edition_ids',
    'amazon_asins',
)


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    return True


def provider_weight(provider: str) -> int:
    return PROVIDER_QUALITY_WEIGHTS.get(provider, DEFAULT_PROVIDER_QUALITY)


def completeness_score(record: Dict[str, Any], fields: Iterable[str]) -> int:
    fields = list(fields)
    if not fields:
        return 0
    filled = sum(1 for f in fields if _present(record.get(f)))
    return round(filled * 100 / len(fields))


def edition_quality(record: Dict[str, Any], provider: str) -> int:
    score = provider_weight(provider)
    if _present(record.get('title')):
        score += 10
    if _present(record.get('publisher')):
        score += 5
    if _present(record.get('publication_date')):
        score += 5
    if _present(record.get('page_count')):
        score += 5
    if _present(record.get('cover_url_large')):
        score += 10
    elif _present(record.get('cover_url_medium')):
        score += 3
    elif _present(record.get('cover_url_small')):
        score += 2
    if _present(record.get('language')):
        score += 5
    if _present(record.get('format')):
        score += 5
    score += 5 * sum(1 for family in EXTERNAL_ID_FAMILIES if _present(record.get(family)))
    return min(score, 100)


def work_quality(record: Dict[str, Any], provider: str) -> int:
    score = provider_weight(provider)
    if _present(record.get('title')):
        score += 10
    description = record.get('description') or ''
    if len(description) > 50:
        score += 15
        if len(description) > 200:
            score += 5
    if _present(record.get('original_language')):
        score += 5
    if _present(record.get('first_publication_year')):
        score += 5
    if _present(record.get('subject_tags')):
        score += 10
    if _present(record.get('cover_url_large')):
        score += 10
    return min(score, 100)


def edition_completeness(record: Dict[str, Any]) -> int:
    return completeness_score(record, EDITION_COMPLETENESS_FIELDS)


def work_completeness(record: Dict[str, Any]) -> int:
    return completeness_score(record, WORK_COMPLETENESS_FIELDS)


def author_completeness(record: Dict[str, Any]) -> int:
    return completeness_score(record, AUTHOR_COMPLETENESS_FIELDS)
