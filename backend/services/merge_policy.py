"""
Field Merge Policies - how each stored field reconciles incoming data.

One static table per entity type. Every column written by the merge
engine has exactly one policy; the upsert SQL is generated from it.

Policies:
- IMMUTABLE:      conflict key, never updated
- QUALITY_WINS:   replaced only when the incoming record's quality score is
                  strictly higher (a NULL incoming value never erases)
- FILL_GAPS:      COALESCE(incoming, stored); a missing incoming value
                  never erases a stored one
- SET_UNION:      sorted, de-duplicated union of both arrays
- MAP_UNION:      JSONB union, entries already stored win
- PRIORITY_ORDER: taken from whichever source ranks higher in
                  PROVIDER_PRECEDENCE, regardless of recency
- MAX:            GREATEST(incoming, stored)
- ALL_TRUE:       stays true only while every source says true

All policies are idempotent: merging the same record twice leaves the
row exactly as merging it once.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from constants import PROVIDER_PRECEDENCE


class MergePolicy(Enum):
    IMMUTABLE = "immutable"
    QUALITY_WINS = "quality_wins"
    FILL_GAPS = "fill_gaps"
    SET_UNION = "set_union"
    MAP_UNION = "map_union"
    PRIORITY_ORDER = "priority_order"
    MAX = "max"
    ALL_TRUE = "all_true"


@dataclass(frozen=True)
class FieldPolicy:
    """Merge rule for one column."""
    field_name: str
    policy: MergePolicy
    # Column whose provider name ranks the row (PRIORITY_ORDER only)
    rank_by: Optional[str] = None
    # Treat '' as missing (FILL_GAPS on free text)
    empty_is_null: bool = False
    # Frozen once the row is privacy-erased
    erasable: bool = False


def _policies(*rules: FieldPolicy) -> Dict[str, FieldPolicy]:
    return {rule.field_name: rule for rule in rules}


QW = MergePolicy.QUALITY_WINS
FG = MergePolicy.FILL_GAPS
SU = MergePolicy.SET_UNION
PO = MergePolicy.PRIORITY_ORDER


FIELD_POLICIES: Dict[str, Dict[str, FieldPolicy]] = {
    "editions": _policies(
        FieldPolicy("isbn", MergePolicy.IMMUTABLE),
        FieldPolicy("title", QW),
        FieldPolicy("subtitle", QW),
        FieldPolicy("publisher", QW),
        FieldPolicy("publication_date", QW),
        FieldPolicy("page_count", FG),
        FieldPolicy("format", FG),
        FieldPolicy("language", FG),
        FieldPolicy("edition_description", FG, empty_is_null=True),
        FieldPolicy("work_key", FG),
        FieldPolicy("openlibrary_edition_id", FG),
        FieldPolicy("cover_url_large", PO, rank_by="cover_source"),
        FieldPolicy("cover_url_medium", PO, rank_by="cover_source"),
        FieldPolicy("cover_url_small", PO, rank_by="cover_source"),
        FieldPolicy("cover_source", PO, rank_by="cover_source"),
        FieldPolicy("primary_provider", PO, rank_by="primary_provider"),
        FieldPolicy("subject_tags", SU),
        FieldPolicy("alternate_isbns", SU),
        FieldPolicy("google_books_volume_ids", SU),
        FieldPolicy("goodreads_edition_ids", SU),
        FieldPolicy("amazon_asins", SU),
        FieldPolicy("contributors", SU),
        FieldPolicy("related_isbns", MergePolicy.MAP_UNION),
        FieldPolicy("metadata", MergePolicy.MAP_UNION),
        FieldPolicy("quality_score", MergePolicy.MAX),
        FieldPolicy("completeness_score", MergePolicy.MAX),
    ),
    "works": _policies(
        FieldPolicy("work_key", MergePolicy.IMMUTABLE),
        FieldPolicy("title", QW),
        FieldPolicy("description", FG, empty_is_null=True),
        FieldPolicy("subtitle", FG, empty_is_null=True),
        FieldPolicy("original_language", FG),
        FieldPolicy("first_publication_year", FG),
        FieldPolicy("openlibrary_work_id", FG),
        FieldPolicy("isbndb_id", FG),
        FieldPolicy("cover_url_large", PO, rank_by="cover_source"),
        FieldPolicy("cover_url_medium", PO, rank_by="cover_source"),
        FieldPolicy("cover_url_small", PO, rank_by="cover_source"),
        FieldPolicy("cover_source", PO, rank_by="cover_source"),
        FieldPolicy("primary_provider", PO, rank_by="primary_provider"),
        FieldPolicy("subject_tags", SU),
        FieldPolicy("goodreads_work_ids", SU),
        FieldPolicy("google_books_volume_ids", SU),
        FieldPolicy("contributors", SU),
        FieldPolicy("synthetic", MergePolicy.ALL_TRUE),
        FieldPolicy("metadata", MergePolicy.MAP_UNION),
        FieldPolicy("quality_score", MergePolicy.MAX),
        FieldPolicy("completeness_score", MergePolicy.MAX),
    ),
    "authors": _policies(
        FieldPolicy("author_key", MergePolicy.IMMUTABLE),
        FieldPolicy("name", FG),
        FieldPolicy("normalized_name", FG),
        FieldPolicy("gender", FG, erasable=True),
        FieldPolicy("nationality", FG, erasable=True),
        FieldPolicy("birth_year", FG, erasable=True),
        FieldPolicy("death_year", FG, erasable=True),
        FieldPolicy("birth_place", FG, erasable=True),
        FieldPolicy("bio", FG, empty_is_null=True, erasable=True),
        FieldPolicy("bio_source", FG, erasable=True),
        FieldPolicy("author_photo_url", FG, erasable=True),
        FieldPolicy("field_sources", MergePolicy.MAP_UNION, erasable=True),
        FieldPolicy("wikidata_id", FG),
        FieldPolicy("openlibrary_author_id", FG),
        FieldPolicy("viaf_id", FG),
        FieldPolicy("isni", FG),
        FieldPolicy("goodreads_author_ids", SU),
        FieldPolicy("primary_provider", PO, rank_by="primary_provider"),
        FieldPolicy("contributors", SU),
    ),
}

TABLES = {
    "editions": ("enriched_editions", "isbn"),
    "works": ("enriched_works", "work_key"),
    "authors": ("enriched_authors", "author_key"),
}


def get_field_policy(entity_type: str, field_name: str) -> FieldPolicy:
    """
    Raises:
        KeyError: unknown entity type or a field without a policy
    """
    return FIELD_POLICIES[entity_type][field_name]


def fields_with_policy(entity_type: str, policy: MergePolicy) -> List[str]:
    return [name for name, rule in FIELD_POLICIES[entity_type].items() if rule.policy == policy]


def provider_rank(provider: Optional[str]) -> int:
    """Position in PROVIDER_PRECEDENCE; unknown and missing providers rank last."""
    if provider in PROVIDER_PRECEDENCE:
        return PROVIDER_PRECEDENCE.index(provider)
    return len(PROVIDER_PRECEDENCE)


def provider_rank_sql(column: str) -> str:
    """CASE expression ranking a provider-name column like provider_rank()."""
    whens = " ".join(f"WHEN '{name}' THEN {i}" for i, name in enumerate(PROVIDER_PRECEDENCE))
    return f"(CASE {column} {whens} ELSE {len(PROVIDER_PRECEDENCE)} END)"
