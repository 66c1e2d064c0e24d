"""
Enrichment Merge Engine - field-policy reconciliation on persist.

Every write to works, editions and authors is one generated
INSERT ... ON CONFLICT DO UPDATE whose SET clause comes from the static
policy table in services.merge_policy. Replaying the same record is a
no-op, so queue retries never duplicate side effects.

Every persist writes one enrichment_log row per entity touched.

Usage:
    merger = MergeEngine()
    result = merger.persist_metadata(metadata)          # work + edition + authors
    work_key = merger.persist_synthetic_work(candidate) # unresolved candidate
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.exc import DBAPIError, IntegrityError

from constants import SYNTHETIC_QUALITY
from errors import DataConflict
from services import quality
from services.merge_policy import FIELD_POLICIES, TABLES, MergePolicy, provider_rank_sql
from utils.normalize import parse_year

logger = logging.getLogger(__name__)

ENTITY_LABELS = {'editions': 'edition', 'works': 'work', 'authors': 'author'}


def _model_for(entity_type: str):
    from models import EnrichedAuthor, EnrichedEdition, EnrichedWork
    return {'editions': EnrichedEdition, 'works': EnrichedWork, 'authors': EnrichedAuthor}[entity_type]


def _column_types(entity_type: str) -> Dict[str, Any]:
    return {col.name: col.type for col in _model_for(entity_type).__table__.columns}


# =============================================================================
# SQL generation
# =============================================================================

def merge_expression(entity_type: str, column: str) -> Optional[str]:
    """
    SET expression for one column, or None for the conflict key.

    `t` is the stored row, EXCLUDED the incoming one.
    """
    rule = FIELD_POLICIES[entity_type][column]
    incoming = f"EXCLUDED.{column}"
    stored = f"t.{column}"

    if rule.policy == MergePolicy.IMMUTABLE:
        return None
    if rule.policy == MergePolicy.QUALITY_WINS:
        expr = (
            f"CASE WHEN EXCLUDED.quality_score > t.quality_score "
            f"THEN COALESCE({incoming}, {stored}) ELSE {stored} END"
        )
    elif rule.policy == MergePolicy.FILL_GAPS:
        value = f"NULLIF({incoming}, '')" if rule.empty_is_null else incoming
        expr = f"COALESCE({value}, {stored})"
    elif rule.policy == MergePolicy.SET_UNION:
        expr = (
            f"(SELECT array_agg(DISTINCT v ORDER BY v) "
            f"FROM unnest(array_cat({stored}, {incoming})) AS v)"
        )
    elif rule.policy == MergePolicy.MAP_UNION:
        expr = f"COALESCE({incoming}, CAST('{{}}' AS jsonb)) || COALESCE({stored}, CAST('{{}}' AS jsonb))"
    elif rule.policy == MergePolicy.PRIORITY_ORDER:
        rank_in = provider_rank_sql(f"EXCLUDED.{rule.rank_by}")
        rank_stored = provider_rank_sql(f"t.{rule.rank_by}")
        expr = (
            f"CASE WHEN {incoming} IS NOT NULL AND ({stored} IS NULL OR {rank_in} <= {rank_stored}) "
            f"THEN {incoming} ELSE {stored} END"
        )
    elif rule.policy == MergePolicy.MAX:
        expr = f"GREATEST({incoming}, {stored})"
    elif rule.policy == MergePolicy.ALL_TRUE:
        expr = f"({stored} AND {incoming})"
    else:
        raise ValueError(f"Unhandled merge policy {rule.policy}")

    if rule.erasable:
        expr = f"CASE WHEN t.privacy_erased_at IS NOT NULL THEN {stored} ELSE {expr} END"
    return expr


def _placeholder(column: str, column_type) -> str:
    if isinstance(column_type, JSONB):
        return f"CAST(:{column} AS jsonb)"
    if isinstance(column_type, ARRAY):
        return f"CAST(:{column} AS text[])"
    return f":{column}"


def build_merge_upsert_sql(entity_type: str) -> str:
    """
    Upsert for one entity type, driven entirely by the policy table.

    Returns:
        SQL with :named params; RETURNING <key>, was_insert
    """
    table, key = TABLES[entity_type]
    columns = list(FIELD_POLICIES[entity_type])
    types = _column_types(entity_type)

    values = ', '.join(_placeholder(c, types[c]) for c in columns)
    update_set = ',\n        '.join(
        f"{c} = {merge_expression(entity_type, c)}"
        for c in columns
        if merge_expression(entity_type, c) is not None
    )

    return f"""
    INSERT INTO {table} AS t ({', '.join(columns)})
    VALUES ({values})
    ON CONFLICT ({key}) DO UPDATE SET
        {update_set}
    RETURNING {key}, (xmax = 0) AS was_insert
    """


AUDIT_LOG_SQL = """
    INSERT INTO enrichment_log (
        entity_type, entity_key, provider, operation, success,
        fields_updated, error_message, response_time_ms
    ) VALUES (
        :entity_type, :entity_key, :provider, :operation, :success,
        CAST(:fields_updated AS text[]), :error_message, :response_time_ms
    )
"""


def write_audit_log(
    conn,
    entity_type: str,
    entity_key: str,
    provider: str,
    operation: str,
    success: bool = True,
    fields_updated: Optional[List[str]] = None,
    error_message: Optional[str] = None,
    response_time_ms: Optional[int] = None,
) -> None:
    conn.execute(text(AUDIT_LOG_SQL), {
        'entity_type': entity_type,
        'entity_key': entity_key,
        'provider': provider,
        'operation': operation,
        'success': success,
        'fields_updated': fields_updated or [],
        'error_message': error_message,
        'response_time_ms': response_time_ms,
    })


# =============================================================================
# Record preparation
# =============================================================================

def normalize_tags(tags) -> Optional[List[str]]:
    """Lowercased, trimmed, de-duplicated, sorted; None when empty."""
    cleaned = sorted({t.strip().lower() for t in (tags or []) if t and t.strip()})
    return cleaned or None


def prepare_record(entity_type: str, record: Dict[str, Any], provider: str) -> Dict[str, Any]:
    """
    Full parameter dict for build_merge_upsert_sql.

    Missing columns become None, provider tracking and scores are filled
    in, JSONB values are serialized.
    """
    params = {column: record.get(column) for column in FIELD_POLICIES[entity_type]}
    params['contributors'] = sorted(set(record.get('contributors') or []) | {provider})
    params['primary_provider'] = record.get('primary_provider') or provider

    if 'subject_tags' in params:
        params['subject_tags'] = normalize_tags(params['subject_tags'])

    if entity_type == 'editions':
        params['quality_score'] = record.get('quality_score', quality.edition_quality(params, provider))
        params['completeness_score'] = quality.edition_completeness(params)
    elif entity_type == 'works':
        if params.get('synthetic') is None:
            params['synthetic'] = False
        params['quality_score'] = record.get('quality_score', quality.work_quality(params, provider))
        params['completeness_score'] = quality.work_completeness(params)

    types = _column_types(entity_type)
    for column, value in params.items():
        if isinstance(types.get(column), JSONB):
            params[column] = json.dumps(value) if value is not None else None
    return params


def changed_fields(entity_type: str, params: Dict[str, Any]) -> List[str]:
    """Incoming fields that carry a value (audit trail)."""
    key = TABLES[entity_type][1]
    return sorted(c for c, v in params.items() if c != key and v not in (None, [], '', '{}'))


# =============================================================================
# Engine
# =============================================================================

@dataclass
class MergeOutcome:
    entity_type: str
    entity_key: str
    action: str  # 'created' | 'updated'
    fields_updated: List[str] = field(default_factory=list)


@dataclass
class PersistResult:
    isbn: Optional[str]
    work_key: str
    outcomes: List[MergeOutcome] = field(default_factory=list)
    author_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MergeEngine:

    def __init__(self, engine=None):
        if engine is None:
            from db.engine import get_engine
            engine = get_engine("worker")
        self.engine = engine
        self._sql = {entity: build_merge_upsert_sql(entity) for entity in TABLES}

    def merge(self, conn, entity_type: str, record: Dict[str, Any], provider: str) -> MergeOutcome:
        """
        Merge one record inside the caller's transaction.

        Raises:
            DataConflict: a stored constraint rejected the write
        """
        start = time.time()
        params = prepare_record(entity_type, record, provider)
        key_column = TABLES[entity_type][1]
        try:
            row = conn.execute(text(self._sql[entity_type]), params).mappings().one()
        except IntegrityError as e:
            raise DataConflict(
                f"{entity_type} {params.get(key_column)} violates a stored constraint",
                raw=str(e.orig),
            ) from e

        action = 'created' if row['was_insert'] else 'updated'
        fields = changed_fields(entity_type, params)
        write_audit_log(
            conn,
            entity_type=ENTITY_LABELS[entity_type],
            entity_key=row[key_column],
            provider=provider,
            operation='create' if row['was_insert'] else 'update',
            fields_updated=fields,
            response_time_ms=int((time.time() - start) * 1000),
        )
        return MergeOutcome(entity_type, row[key_column], action, fields)

    # =========================================================================
    # Persist flows
    # =========================================================================

    def persist_metadata(self, metadata, work_key: Optional[str] = None) -> PersistResult:
        """
        Merge one provider's BookMetadata: work, edition, then authors.

        One transaction; the edition keeps the work it is already linked to.
        """
        from models.work import build_work_key
        from services.author_service import find_or_create_authors, link_work_authors

        provider = metadata.source
        first_author = metadata.authors[0] if metadata.authors else None

        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    text("SELECT work_key FROM enriched_editions WHERE isbn = :isbn"),
                    {'isbn': metadata.isbn},
                ).scalar()
                work_key = work_key or existing or build_work_key(metadata.title or metadata.isbn, first_author)

                outcomes = [
                    self.merge(conn, 'works', work_record_from_metadata(metadata, work_key), provider),
                    self.merge(conn, 'editions', edition_record_from_metadata(metadata, work_key), provider),
                ]
                author_keys = find_or_create_authors(conn, metadata.authors, provider)
                link_work_authors(conn, work_key, author_keys)
        except DBAPIError as e:
            if isinstance(e, IntegrityError):
                raise DataConflict(f"persist {metadata.isbn} failed", raw=str(e.orig)) from e
            raise

        logger.info(
            f"Merged {metadata.isbn} from {provider}: "
            + ', '.join(f"{o.entity_type}={o.action}" for o in outcomes)
        )
        return PersistResult(metadata.isbn, work_key, outcomes, author_keys)

    def persist_synthetic_work(self, candidate, source: Optional[str] = None) -> str:
        """
        Persist an unresolved generated candidate as a synthetic work.

        Deterministic key, so replaying the unit merges into the same row.
        """
        from models.work import build_work_key
        from services.author_service import find_or_create_authors, link_work_authors

        provider = source or candidate.source or 'synthetic'
        work_key = build_work_key(candidate.title, candidate.author)
        record = {
            'work_key': work_key,
            'title': candidate.title,
            'first_publication_year': candidate.publication_year,
            'synthetic': True,
            'quality_score': SYNTHETIC_QUALITY,
            'metadata': {
                k: v for k, v in {
                    'publisher': candidate.publisher,
                    'format': candidate.format,
                    'significance': candidate.significance,
                    'generated_by': candidate.source,
                }.items() if v
            },
        }
        with self.engine.begin() as conn:
            self.merge(conn, 'works', record, provider)
            author_keys = find_or_create_authors(conn, [candidate.author], provider)
            link_work_authors(conn, work_key, author_keys)
        logger.info(f"Synthetic work {work_key} for {candidate.title!r}")
        return work_key


def edition_record_from_metadata(metadata, work_key: str) -> Dict[str, Any]:
    covers = metadata.cover_urls or {}
    external = metadata.external_ids or {}
    return {
        'isbn': metadata.isbn,
        'work_key': work_key,
        'title': metadata.title,
        'subtitle': metadata.subtitle,
        'publisher': metadata.publisher,
        'publication_date': metadata.publication_date,
        'page_count': metadata.page_count,
        'format': metadata.format,
        'language': metadata.language,
        'subject_tags': metadata.subjects,
        'cover_url_large': covers.get('large'),
        'cover_url_medium': covers.get('medium'),
        'cover_url_small': covers.get('small'),
        'cover_source': metadata.source if covers else None,
        'alternate_isbns': sorted(set(metadata.alternate_isbns)) or None,
        'related_isbns': metadata.related_isbns or None,
        'google_books_volume_ids': external.get('google_books_volume_ids'),
        'openlibrary_edition_id': external.get('openlibrary_edition_id'),
    }


def work_record_from_metadata(metadata, work_key: str) -> Dict[str, Any]:
    covers = metadata.cover_urls or {}
    external = metadata.external_ids or {}
    return {
        'work_key': work_key,
        'title': metadata.title,
        'description': metadata.description,
        'original_language': metadata.language,
        'first_publication_year': parse_year(metadata.publication_date),
        'subject_tags': metadata.subjects,
        'cover_url_large': covers.get('large'),
        'cover_url_medium': covers.get('medium'),
        'cover_url_small': covers.get('small'),
        'cover_source': metadata.source if covers else None,
        'openlibrary_work_id': external.get('openlibrary_work_id'),
        'google_books_volume_ids': external.get('google_books_volume_ids'),
        'synthetic': False,
    }
