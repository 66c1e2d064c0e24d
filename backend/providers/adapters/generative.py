"""
Shared parsing for generative (AI) providers.

Models return JSON text, sometimes wrapped in Markdown fences, sometimes
as {"books": [...]}, and sometimes a refusal instead of data. Each item
is validated individually; a bad item is dropped, not the whole reply.
"""
import json
import logging
import re
from typing import Any, List

from pydantic import ValidationError

from errors import ProviderRefusal, ProviderResponseError
from providers.capabilities import GeneratedBook

logger = logging.getLogger(__name__)

REFUSAL_MARKERS = (
    'insufficient verifiable data',
    'cannot provide',
    'unable to provide',
    'i cannot',
    "i can't",
)

BOOK_FIELDS_INSTRUCTION = (
    "For each book, provide: title, author, publisher (if known), "
    "publication_year, format (Hardcover, Paperback, eBook, Audiobook or Unknown), "
    "and significance (why it's notable)."
)

_FENCE_RE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub('', text.strip()).strip()


def is_refusal(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in REFUSAL_MARKERS)


def parse_generated_books(text: str, source: str) -> List[GeneratedBook]:
    """
    Turn model output into validated books.

    Raises:
        ProviderRefusal: the model declined instead of answering
        ProviderResponseError: output is not a JSON array of objects
    """
    cleaned = strip_code_fences(text or '')
    if not cleaned:
        raise ProviderResponseError(f"{source}: empty generation response")

    try:
        parsed: Any = json.loads(cleaned)
    except ValueError as e:
        if is_refusal(cleaned):
            raise ProviderRefusal(source, cleaned[:200])
        raise ProviderResponseError(f"{source}: generation response is not JSON") from e

    if isinstance(parsed, dict):
        if parsed.get('error') and is_refusal(str(parsed['error'])):
            raise ProviderRefusal(source, str(parsed['error'])[:200])
        parsed = parsed.get('books')
    if not isinstance(parsed, list):
        raise ProviderResponseError(f"{source}: expected a JSON array of books")

    books = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            books.append(GeneratedBook(**{**item, 'source': source}))
        except ValidationError as e:
            logger.warning(f"{source}: dropping invalid generated book {item.get('title')!r}: {e.errors()[0]['msg']}")
    return books
