"""
Text Normalization Utilities
============================

Single source of truth for title/author normalization and title similarity.
Every duplicate check (generation pooling, storage dedup, resolution
verification, author matching) goes through these functions.

Usage:
    from utils.normalize import normalize_title, title_similarity, normalize_author_name

    if title_similarity(a, b) > FUZZY_TITLE_SIMILARITY_THRESHOLD:
        ...  # same book

    author_key_source = normalize_author_name("Martin Luther King, Jr.")
    # -> "martin luther king"
"""

import re
import unicodedata
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein


_ARTICLES = re.compile(r'\b(a|an|the)\b')
_WHITESPACE = re.compile(r'\s+')
_PERIOD_SPACING = re.compile(r'\.\s+')
_NAME_SUFFIX = re.compile(r',?\s+(jr\.?|sr\.?|ii|iii|iv|phd|md|esq\.?)$', re.IGNORECASE)
_CO_AUTHOR = re.compile(r'\s+(and|&)\s+.*$', re.IGNORECASE)
_SUBTITLE = re.compile(r'(?::|\s[-\u2013\u2014]\s|[\u2013\u2014]).*$', re.DOTALL)

_COLLECTIVE_AUTHORS = frozenset([
    'various authors',
    'multiple authors',
    'collective',
    'anthology',
    'various',
])

_QUOTE_TRANSLATION = str.maketrans({
    '‘': "'",
    '’': "'",
    '“': '"',
    '”': '"',
})


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a title for comparison.

    Lowercases, decomposes accents (NFD) and keeps only letters/digits/spaces,
    removes the articles a/an/the anywhere and collapses whitespace.

    Args:
        title: Raw title (None allowed)

    Returns:
        Normalized title, '' for empty input
    """
    if not title:
        return ''

    decomposed = unicodedata.normalize('NFD', title.lower())
    kept = []
    for ch in decomposed:
        category = unicodedata.category(ch)
        if category[0] in ('L', 'N'):
            kept.append(ch)
        elif ch.isspace():
            kept.append(' ')
        # combining marks and punctuation are dropped
    text = _ARTICLES.sub('', ''.join(kept))
    return _WHITESPACE.sub(' ', text).strip()


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Levenshtein similarity of two normalized titles.

    1 - distance / max(len(a), len(b)); two empty titles score 1.0.

    Returns:
        Similarity in [0.0, 1.0]
    """
    left = normalize_title(a)
    right = normalize_title(b)
    if not left and not right:
        return 1.0
    return Levenshtein.normalized_similarity(left, right)


def strip_subtitle(title: Optional[str]) -> str:
    """
    Main title without its subtitle.

    Cuts at the first colon, a spaced hyphen or an en/em dash, so
    "The Overstory: A Novel" -> "The Overstory". Hyphenated words such as
    "Spider-Man" are kept.
    """
    if not title:
        return ''
    return _SUBTITLE.sub('', title).strip()


def match_title_similarity(query: Optional[str], candidate: Optional[str]) -> float:
    """
    Similarity of a query title to a provider title, tolerating a subtitle
    the provider adds ("The Overstory" vs "The Overstory: A Novel").

    A subtitle on the query itself is still compared in full.
    """
    return max(
        title_similarity(query, candidate),
        title_similarity(query, strip_subtitle(candidate)),
    )


def author_similarity(query_author: Optional[str], candidates) -> float:
    """Best Levenshtein similarity of the query author to any credited author (0.0 when unknown)."""
    wanted = normalize_author_name(query_author)
    if not wanted:
        return 0.0
    scores = [
        Levenshtein.normalized_similarity(wanted, name)
        for name in (normalize_author_name(c) for c in candidates or [])
        if name
    ]
    return max(scores, default=0.0)


def normalize_author_name(name: Optional[str]) -> str:
    """
    Normalize an author name for duplicate detection.

    Pure and idempotent: normalize_author_name(normalize_author_name(x))
    equals normalize_author_name(x).

    - trims and lowercases, collapses whitespace
    - joins initials ("J. K. Rowling" -> "j.k.rowling")
    - drops suffixes (Jr., Sr., II, III, IV, PhD, MD, Esq.)
    - keeps only the first of "X & Y" / "X and Y"
    - folds collective names to 'various authors'
    """
    if not name:
        return ''

    normalized = name.strip().lower()
    normalized = _WHITESPACE.sub(' ', normalized)
    normalized = _PERIOD_SPACING.sub('.', normalized)
    normalized = _NAME_SUFFIX.sub('', normalized)
    normalized = normalized.translate(_QUOTE_TRANSLATION)

    if ' & ' in normalized or ' and ' in normalized:
        normalized = _CO_AUTHOR.sub('', normalized)

    if normalized in _COLLECTIVE_AUTHORS:
        normalized = 'various authors'

    return normalized.strip()


def parse_year(value: Any) -> Optional[int]:
    """
    Pull a four-digit year out of a date-ish value.

    Accepts ints, '2019', '2019-05-01', 'May 2019'. Returns None when no
    plausible year (1000-2999) is present.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value if 1000 <= value <= 2999 else None
    match = re.search(r'\b([12]\d{3})\b', str(value))
    if not match:
        return None
    return int(match.group(1))


_FORMAT_KEYWORDS = (
    ('audio', 'Audiobook'),
    ('kindle', 'eBook'),
    ('ebook', 'eBook'),
    ('e-book', 'eBook'),
    ('epub', 'eBook'),
    ('digital', 'eBook'),
    ('hardcover', 'Hardcover'),
    ('hardback', 'Hardcover'),
    ('library binding', 'Hardcover'),
    ('paperback', 'Paperback'),
    ('mass market', 'Paperback'),
    ('softcover', 'Paperback'),
)


def normalize_format(binding: Optional[str]) -> Optional[str]:
    """
    Map a provider binding label onto Hardcover / Paperback / eBook / Audiobook.

    Returns 'Unknown' for unrecognized labels, None for empty input.
    """
    if not binding:
        return None
    lowered = binding.lower()
    for keyword, fmt in _FORMAT_KEYWORDS:
        if keyword in lowered:
            return fmt
    return 'Unknown'


def authors_match(query_author: Optional[str], candidates) -> bool:
    """True if any candidate author normalizes to (or contains) the query author."""
    wanted = normalize_author_name(query_author)
    if not wanted:
        return False
    for candidate in candidates or []:
        name = normalize_author_name(candidate)
        if name and (wanted in name or name in wanted):
            return True
    return False
