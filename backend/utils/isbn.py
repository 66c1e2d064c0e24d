"""
ISBN helpers - the natural key of an Edition.

Editions are keyed by ISBN-13. ISBN-10 input is converted so the same
book never lands under two keys; the ISBN-10 form is kept as an
alternate key by the caller.
"""
import re
from typing import Iterable, List, Optional

_STRIP = re.compile(r'[-\s]')
_ISBN10 = re.compile(r'^[0-9]{9}[0-9X]$')
_ISBN13 = re.compile(r'^[0-9]{13}$')


def clean_isbn(isbn: Optional[str]) -> Optional[str]:
    """
    Strip hyphens/spaces and check the shape (10 or 13 chars).

    Returns:
        Cleaned ISBN-10 or ISBN-13, or None if malformed.
    """
    if not isbn:
        return None
    cleaned = _STRIP.sub('', str(isbn)).upper()
    if len(cleaned) == 10 and _ISBN10.match(cleaned):
        return cleaned
    if len(cleaned) == 13 and _ISBN13.match(cleaned):
        return cleaned
    return None


def has_valid_checksum(isbn: str) -> bool:
    """Check the ISBN-10 (mod 11) or ISBN-13 (mod 10) check digit."""
    if len(isbn) == 10:
        total = 0
        for i, ch in enumerate(isbn):
            digit = 10 if ch == 'X' else int(ch)
            total += (10 - i) * digit
        return total % 11 == 0
    if len(isbn) == 13:
        total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(isbn))
        return total % 10 == 0
    return False


def isbn10_to_isbn13(isbn10: str) -> str:
    """Convert a cleaned ISBN-10 to ISBN-13 (978 prefix)."""
    core = '978' + isbn10[:9]
    total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(core))
    check = (10 - total % 10) % 10
    return core + str(check)


def normalize_isbn(isbn: Optional[str], *, require_checksum: bool = False) -> Optional[str]:
    """
    Normalize any ISBN to its ISBN-13 natural key.

    Args:
        isbn: Raw ISBN (hyphens, spaces, ISBN-10 all accepted)
        require_checksum: Reject keys whose check digit is wrong

    Returns:
        13-digit string or None
    """
    cleaned = clean_isbn(isbn)
    if cleaned is None:
        return None
    if require_checksum and not has_valid_checksum(cleaned):
        return None
    if len(cleaned) == 10:
        return isbn10_to_isbn13(cleaned)
    return cleaned


def normalize_isbns(isbns: Iterable[Optional[str]]) -> List[str]:
    """Normalize a batch, dropping invalid entries and duplicates (order kept)."""
    seen = set()
    result = []
    for raw in isbns:
        key = normalize_isbn(raw)
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    return result
