"""
Generation Orchestrator - concurrent multi-provider candidate discovery.

Modes:
- concurrent (default): every available generator runs at once under its
  own timeout; outputs are pooled and deduplicated by title similarity
- sequential: providers tried in priority order, first non-empty wins

A refusal ("insufficient verifiable data") is a zero-result outcome,
logged at WARNING. Timeouts and provider errors are also zero-result
outcomes; nothing is raised to the caller.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from constants import (
    CAPABILITY_BOOK_GENERATION,
    FUZZY_TITLE_SIMILARITY_THRESHOLD,
    GENERATION_PROVIDER_TIMEOUT,
)
from errors import ProviderRefusal
from providers.capabilities import GeneratedBook
from utils.normalize import normalize_title, title_similarity

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_PRIORITY = ['gemini', 'xai']

STATUS_OK = 'ok'
STATUS_EMPTY = 'empty'
STATUS_REFUSED = 'refused'
STATUS_TIMEOUT = 'timeout'
STATUS_ERROR = 'error'


@dataclass
class ProviderGenerationStats:
    provider: str
    status: str
    books: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class GenerationResult:
    candidates: List[GeneratedBook] = field(default_factory=list)
    providers: List[ProviderGenerationStats] = field(default_factory=list)
    total_generated: int = 0
    duplicates_removed: int = 0

    def calls_by_provider(self) -> Dict[str, int]:
        return {p.provider: 1 for p in self.providers}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidates': [c.model_dump() for c in self.candidates],
            'providers': [asdict(p) for p in self.providers],
            'total_generated': self.total_generated,
            'duplicates_removed': self.duplicates_removed,
        }


def dedupe_by_title(books: List[GeneratedBook], threshold: float = FUZZY_TITLE_SIMILARITY_THRESHOLD) -> List[GeneratedBook]:
    """
    Keep the first of any group of books whose titles are similar.

    Input order decides which copy survives, so callers pass books in
    provider priority order.
    """
    unique: List[GeneratedBook] = []
    seen: List[str] = []
    for book in books:
        normalized = normalize_title(book.title)
        if normalized in seen:
            continue
        duplicate_of = next((s for s in seen if title_similarity(normalized, s) >= threshold), None)
        if duplicate_of is not None:
            logger.debug(f"Duplicate candidate {book.title!r} ({book.source}) ~ {duplicate_of!r}")
            continue
        unique.append(book)
        seen.append(normalized)
    return unique


class GenerationOrchestrator:

    def __init__(
        self,
        registry,
        timeout: float = GENERATION_PROVIDER_TIMEOUT,
        provider_priority: Optional[List[str]] = None,
        concurrent: bool = True,
        dedup_threshold: float = FUZZY_TITLE_SIMILARITY_THRESHOLD,
    ):
        self.registry = registry
        self.timeout = timeout
        self.provider_priority = provider_priority or DEFAULT_PROVIDER_PRIORITY
        self.concurrent = concurrent
        self.dedup_threshold = dedup_threshold

    def _sorted(self, providers: List[Any]) -> List[Any]:
        def rank(provider):
            if provider.name in self.provider_priority:
                return self.provider_priority.index(provider.name)
            return len(self.provider_priority)
        return sorted(providers, key=rank)

    def generate_candidates(self, prompt: str, count: int) -> GenerationResult:
        """Generate up to `count` candidates per provider; never raises for provider failures."""
        providers = self._sorted(self.registry.get_available(CAPABILITY_BOOK_GENERATION))
        if not providers:
            logger.error("No book generation providers available")
            return GenerationResult()

        logger.info(
            f"Generating {count} books with {', '.join(p.name for p in providers)} "
            f"({'concurrent' if self.concurrent else 'sequential'})"
        )
        if self.concurrent:
            return self._generate_concurrent(providers, prompt, count)
        return self._generate_sequential(providers, prompt, count)

    # =========================================================================
    # Strategies
    # =========================================================================

    def _generate_concurrent(self, providers, prompt: str, count: int) -> GenerationResult:
        result = GenerationResult()
        executor = ThreadPoolExecutor(max_workers=len(providers))
        try:
            start = time.time()
            futures = [(p, executor.submit(p.generate_books, prompt, count)) for p in providers]
            # Each provider has its own timeout, all measured from the shared start
            wait([f for _, f in futures], timeout=self.timeout)

            pooled: List[GeneratedBook] = []
            for provider, future in futures:
                duration_ms = int((time.time() - start) * 1000)
                if not future.done():
                    future.cancel()
                    self._record(result, provider.name, STATUS_TIMEOUT, duration_ms,
                                 error=f"timeout after {self.timeout}s")
                    continue
                books = self._collect(result, provider.name, future, duration_ms)
                pooled.extend(books)
        finally:
            executor.shutdown(wait=False)

        return self._finish(result, pooled)

    def _generate_sequential(self, providers, prompt: str, count: int) -> GenerationResult:
        result = GenerationResult()
        for provider in providers:
            executor = ThreadPoolExecutor(max_workers=1)
            start = time.time()
            try:
                future = executor.submit(provider.generate_books, prompt, count)
                wait([future], timeout=self.timeout)
                duration_ms = int((time.time() - start) * 1000)
                if not future.done():
                    self._record(result, provider.name, STATUS_TIMEOUT, duration_ms,
                                 error=f"timeout after {self.timeout}s")
                    continue
                books = self._collect(result, provider.name, future, duration_ms)
            finally:
                executor.shutdown(wait=False)
            if books:
                return self._finish(result, books)
        return self._finish(result, [])

    # =========================================================================
    # Helpers
    # =========================================================================

    def _collect(self, result: GenerationResult, name: str, future, duration_ms: int) -> List[GeneratedBook]:
        try:
            books = list(future.result() or [])
        except ProviderRefusal as e:
            logger.warning(f"{name} declined to generate: {e}")
            self._record(result, name, STATUS_REFUSED, duration_ms, error=str(e))
            return []
        except Exception as e:
            logger.warning(f"{name} generation failed: {type(e).__name__}: {e}")
            self._record(result, name, STATUS_ERROR, duration_ms, error=str(e))
            return []

        if not books:
            logger.warning(f"{name} returned no books")
            self._record(result, name, STATUS_EMPTY, duration_ms)
            return []

        for book in books:
            if not book.source:
                book.source = name
        logger.info(f"{name} generated {len(books)} books in {duration_ms}ms")
        self._record(result, name, STATUS_OK, duration_ms, books=len(books))
        return books

    @staticmethod
    def _record(result: GenerationResult, name: str, status: str, duration_ms: int,
                books: int = 0, error: Optional[str] = None) -> None:
        if status == STATUS_TIMEOUT:
            logger.warning(f"{name} generation {error}")
        result.providers.append(ProviderGenerationStats(name, status, books, duration_ms, error))

    def _finish(self, result: GenerationResult, pooled: List[GeneratedBook]) -> GenerationResult:
        result.total_generated = len(pooled)
        result.candidates = dedupe_by_title(pooled, self.dedup_threshold)
        result.duplicates_removed = result.total_generated - len(result.candidates)
        if pooled:
            logger.info(
                f"Generation complete: {result.total_generated} generated, "
                f"{len(result.candidates)} after dedup"
            )
        else:
            logger.warning("Generation produced no candidates")
        return result


def generate_candidates(prompt: str, count: int, registry=None) -> List[GeneratedBook]:
    """Pooled, deduplicated candidates from the process-wide registry."""
    if registry is None:
        from providers.registry import get_global_registry
        registry = get_global_registry()
    return GenerationOrchestrator(registry).generate_candidates(prompt, count).candidates
