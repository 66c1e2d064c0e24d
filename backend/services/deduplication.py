"""
Deduplication Engine - "is this candidate already known?"

Three checks run in parallel, each on its own connection, as one round
trip for the whole batch:

1. exact key:     isbn = ANY(:isbns)
2. related key:   alternate_isbns && :isbns  OR  related_isbns ?| :isbns
3. fuzzy title:   pg_trgm similarity(lower(title), lower(:title)) >= 0.6,
                  top 3 per title, over editions and works

A candidate is classified by the first tier that matches
(exact > related > fuzzy); unmatched candidates go to `to_enrich`.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import text

from constants import FUZZY_MATCH_LIMIT, FUZZY_TITLE_SIMILARITY_THRESHOLD
from utils.isbn import normalize_isbn

logger = logging.getLogger(__name__)


# =============================================================================
# SQL
# =============================================================================

EXACT_MATCH_SQL = """
    SELECT isbn
    FROM enriched_editions
    WHERE isbn = ANY(CAST(:isbns AS text[]))
"""

RELATED_MATCH_SQL = """
    SELECT isbn, alternate_isbns, related_isbns
    FROM enriched_editions
    WHERE alternate_isbns && CAST(:isbns AS text[])
       OR related_isbns ?| CAST(:isbns AS text[])
"""

FUZZY_MATCH_SQL = """
    SELECT q.title AS query_title, m.entity_key, m.title, m.similarity
    FROM unnest(CAST(:titles AS text[])) AS q(title)
    CROSS JOIN LATERAL (
        SELECT known.entity_key, known.title,
               similarity(lower(known.title), lower(q.title)) AS similarity
        FROM (
            SELECT isbn AS entity_key, title FROM enriched_editions
            UNION ALL
            SELECT work_key AS entity_key, title FROM enriched_works
        ) known
        WHERE known.title IS NOT NULL
          AND similarity(lower(known.title), lower(q.title)) >= :threshold
        ORDER BY similarity DESC
        LIMIT :limit
    ) m
"""


@dataclass
class DedupResult:
    to_enrich: List[Any] = field(default_factory=list)
    exact_matches: List[Dict[str, Any]] = field(default_factory=list)
    related_matches: List[Dict[str, Any]] = field(default_factory=list)
    fuzzy_matches: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def known_count(self) -> int:
        return len(self.exact_matches) + len(self.related_matches) + len(self.fuzzy_matches)


def _get(candidate: Any, attr: str) -> Optional[Any]:
    if isinstance(candidate, dict):
        return candidate.get(attr)
    return getattr(candidate, attr, None)


def candidate_isbn(candidate: Any) -> Optional[str]:
    return normalize_isbn(_get(candidate, 'isbn'))


def candidate_title(candidate: Any) -> str:
    return (_get(candidate, 'title') or '').strip()


class DeduplicationEngine:

    def __init__(
        self,
        engine=None,
        threshold: float = FUZZY_TITLE_SIMILARITY_THRESHOLD,
        fuzzy_limit: int = FUZZY_MATCH_LIMIT,
    ):
        if engine is None:
            from db.engine import get_engine
            engine = get_engine("worker")
        self.engine = engine
        self.threshold = threshold
        self.fuzzy_limit = fuzzy_limit

    # =========================================================================
    # Queries (each opens its own connection)
    # =========================================================================

    def find_exact(self, isbns: List[str]) -> Set[str]:
        if not isbns:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(text(EXACT_MATCH_SQL), {'isbns': isbns}).fetchall()
        return {row[0] for row in rows}

    def find_related(self, isbns: List[str]) -> Dict[str, str]:
        """Candidate key -> edition key that lists it as alternate/related."""
        if not isbns:
            return {}
        wanted = set(isbns)
        with self.engine.connect() as conn:
            rows = conn.execute(text(RELATED_MATCH_SQL), {'isbns': isbns}).mappings().all()

        matches: Dict[str, str] = {}
        for row in rows:
            listed = set(row['alternate_isbns'] or []) | set((row['related_isbns'] or {}).keys())
            for key in listed & wanted:
                matches.setdefault(key, row['isbn'])
        return matches

    def find_fuzzy(self, titles: List[str]) -> Dict[str, Dict[str, Any]]:
        """Query title -> best match {entity_key, title, similarity}."""
        if not titles:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(text(FUZZY_MATCH_SQL), {
                'titles': titles,
                'threshold': self.threshold,
                'limit': self.fuzzy_limit,
            }).mappings().all()

        best: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            current = best.get(row['query_title'])
            if current is None or row['similarity'] > current['similarity']:
                best[row['query_title']] = {
                    'entity_key': row['entity_key'],
                    'title': row['title'],
                    'similarity': float(row['similarity']),
                }
        return best

    # =========================================================================
    # Classification
    # =========================================================================

    def check(self, candidates: List[Any]) -> DedupResult:
        """Classify a candidate batch as known (by tier) or new."""
        start = time.time()
        isbns = sorted({k for k in (candidate_isbn(c) for c in candidates) if k})
        titles = sorted({t for t in (candidate_title(c) for c in candidates) if t})

        with ThreadPoolExecutor(max_workers=3) as executor:
            exact_future = executor.submit(self.find_exact, isbns)
            related_future = executor.submit(self.find_related, isbns)
            fuzzy_future = executor.submit(self.find_fuzzy, titles)
            exact = exact_future.result()
            related = related_future.result()
            fuzzy = fuzzy_future.result()

        result = DedupResult()
        for candidate in candidates:
            isbn = candidate_isbn(candidate)
            title = candidate_title(candidate)
            if isbn and isbn in exact:
                result.exact_matches.append({'candidate': candidate, 'isbn': isbn})
            elif isbn and isbn in related:
                result.related_matches.append({'candidate': candidate, 'isbn': isbn, 'matched_isbn': related[isbn]})
            elif title and title in fuzzy:
                result.fuzzy_matches.append({'candidate': candidate, 'title': title, **fuzzy[title]})
            else:
                result.to_enrich.append(candidate)

        result.stats = {
            'total': len(candidates),
            'exact': len(result.exact_matches),
            'related': len(result.related_matches),
            'fuzzy': len(result.fuzzy_matches),
            'new': len(result.to_enrich),
            'duration_ms': int((time.time() - start) * 1000),
        }
        logger.info(
            f"Dedup: {result.stats['total']} candidates -> "
            f"exact={result.stats['exact']} related={result.stats['related']} "
            f"fuzzy={result.stats['fuzzy']} new={result.stats['new']}"
        )
        return result
