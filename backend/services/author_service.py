"""
Author Service - find-or-create, work links, biography and erasure.

Authors are matched by normalized name only. Biographical facts come
exclusively from an AuthorBiography (an explicit source); each written
fact is recorded in field_sources with the provider that stated it.

All functions take an open connection and run inside the caller's
transaction.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import text

from models.author import BIOGRAPHICAL_FIELDS, build_author_key
from utils.normalize import normalize_author_name

logger = logging.getLogger(__name__)

# AuthorBiography attribute -> enriched_authors column
BIOGRAPHY_COLUMNS = {
    'bio': 'bio',
    'birth_year': 'birth_year',
    'death_year': 'death_year',
    'nationality': 'nationality',
    'gender': 'gender',
    'birth_place': 'birth_place',
    'photo_url': 'author_photo_url',
}

EXTERNAL_ID_COLUMNS = ('wikidata_id', 'viaf_id', 'isni', 'openlibrary_author_id')


# =============================================================================
# Find / create / link
# =============================================================================

def find_or_create_author(conn, name: str, provider: str) -> Optional[str]:
    """
    Author key for a display name, creating the row when unknown.

    Returns:
        author_key, or None when the name normalizes to nothing
    """
    normalized = normalize_author_name(name)
    if not normalized:
        return None

    existing = conn.execute(
        text("SELECT author_key FROM enriched_authors WHERE normalized_name = :n ORDER BY author_key LIMIT 1"),
        {'n': normalized},
    ).scalar()
    if existing:
        return existing

    author_key = build_author_key(normalized)
    conn.execute(text("""
        INSERT INTO enriched_authors (author_key, name, normalized_name, primary_provider, contributors)
        VALUES (:key, :name, :normalized, :provider, CAST(:contributors AS text[]))
        ON CONFLICT (author_key) DO NOTHING
    """), {
        'key': author_key,
        'name': name.strip(),
        'normalized': normalized,
        'provider': provider,
        'contributors': [provider],
    })
    logger.debug(f"Author {author_key} for {name!r}")
    return author_key


def find_or_create_authors(conn, names: List[str], provider: str) -> List[str]:
    """Keys for a credit list, order kept, duplicates dropped."""
    keys: List[str] = []
    for name in names or []:
        if not name:
            continue
        key = find_or_create_author(conn, name, provider)
        if key and key not in keys:
            keys.append(key)
    return keys


def link_work_authors(conn, work_key: str, author_keys: List[str]) -> None:
    """Link authors to a work (1-based order) and refresh their book counts."""
    if not author_keys:
        return
    for order, author_key in enumerate(author_keys, start=1):
        conn.execute(text("""
            INSERT INTO work_authors_enriched (work_key, author_key, author_order)
            VALUES (:work_key, :author_key, :author_order)
            ON CONFLICT (work_key, author_key) DO NOTHING
        """), {'work_key': work_key, 'author_key': author_key, 'author_order': order})
    refresh_book_counts(conn, author_keys)


def refresh_book_counts(conn, author_keys: List[str]) -> None:
    conn.execute(text("""
        UPDATE enriched_authors a
        SET book_count = (
                SELECT COUNT(*) FROM work_authors_enriched wa
                WHERE wa.author_key = a.author_key
            ),
            updated_at = NOW()
        WHERE a.author_key = ANY(CAST(:keys AS text[]))
    """), {'keys': list(author_keys)})


# =============================================================================
# Biography
# =============================================================================

def biography_record(author_key: str, biography) -> Dict:
    """Merge record for the authors table built from an explicit source."""
    record = {
        'author_key': author_key,
        'name': biography.name,
        'normalized_name': normalize_author_name(biography.name),
        'field_sources': biography.field_sources(),
    }
    for attr, column in BIOGRAPHY_COLUMNS.items():
        value = getattr(biography, attr)
        if value not in (None, ''):
            record[column] = value
    if record.get('bio'):
        record['bio_source'] = biography.source

    external = biography.external_ids or {}
    for column in EXTERNAL_ID_COLUMNS:
        if external.get(column):
            record[column] = external[column]
    if external.get('goodreads_author_ids'):
        record['goodreads_author_ids'] = list(external['goodreads_author_ids'])
    return record


def apply_author_biography(conn, author_key: str, biography, merger) -> None:
    """
    Merge a biography into an existing author row.

    Erased authors keep their cleared fields; only external ids merge.
    """
    merger.merge(conn, 'authors', biography_record(author_key, biography), biography.source)


# =============================================================================
# Privacy erasure
# =============================================================================

def erase_author_privacy(conn, author_key: str, requested_by: str = 'privacy-request') -> bool:
    """
    Clear biographical facts and photo; keep the row and its links.

    Returns:
        False when the author does not exist
    """
    from services.merge_engine import write_audit_log

    assignments = ', '.join(f"{column} = NULL" for column in BIOGRAPHICAL_FIELDS)
    result = conn.execute(text(f"""
        UPDATE enriched_authors
        SET {assignments},
            field_sources = CAST('{{}}' AS jsonb),
            privacy_erased_at = NOW(),
            updated_at = NOW()
        WHERE author_key = :key
    """), {'key': author_key})

    if result.rowcount == 0:
        logger.warning(f"Privacy erasure: author {author_key} not found")
        return False

    write_audit_log(
        conn,
        entity_type='author',
        entity_key=author_key,
        provider=requested_by,
        operation='erase',
        fields_updated=list(BIOGRAPHICAL_FIELDS) + ['field_sources'],
    )
    logger.info(f"Privacy erasure applied to {author_key}")
    return True


def enrich_author_biographies(engine, author_keys: List[str], registry=None, merger=None) -> int:
    """
    Fetch biographies through the author-biography cascade.

    Returns:
        number of authors updated
    """
    from constants import CAPABILITY_AUTHOR_BIOGRAPHY
    from services.merge_engine import MergeEngine
    from services.resolution_orchestrator import resolve

    merger = merger or MergeEngine(engine)
    updated = 0
    for author_key in author_keys:
        with engine.connect() as conn:
            row = conn.execute(
                text("SELECT name, privacy_erased_at, wikidata_id FROM enriched_authors WHERE author_key = :key"),
                {'key': author_key},
            ).mappings().first()
        if row is None or row['privacy_erased_at'] is not None or row['wikidata_id']:
            continue

        outcome = resolve(CAPABILITY_AUTHOR_BIOGRAPHY, {'name': row['name']}, registry=registry)
        if not outcome.found:
            continue
        with engine.begin() as conn:
            apply_author_biography(conn, author_key, outcome.result, merger)
        updated += 1
    return updated
