"""
Resolution Orchestrator - single-item cascading fallback.

Walks the registry's ordered list of available providers for one
capability and returns the first usable result:

    isbndb -> google-books -> open-library      (isbn-resolution)

Rules:
- First non-null (and, for ISBN resolution, verified) result wins
- Every attempt is logged as {provider, success, duration_ms, error}
- A provider exception or timeout is "no result, try next"; it is never
  raised to the caller
- No in-step retry: retries happen at the queue layer
- An exhausted chain is NotFound, not an error; the caller decides to
  persist a synthetic record

Quota usage is recorded by the provider's fetch layer on every network
attempt, so the orchestrator never double-counts.

Usage:
    orchestrator = ResolutionOrchestrator(get_global_registry())
    outcome = orchestrator.resolve('isbn-resolution', {'title': t, 'author': a})
    if outcome.found:
        isbn = outcome.result.isbn
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from constants import (
    CAPABILITY_ISBN_RESOLUTION,
    ISBN_RESOLUTION_SIMILARITY_THRESHOLD,
    RESOLUTION_PROVIDER_TIMEOUT,
)
from providers.capabilities import CAPABILITY_METHODS
from utils.isbn import normalize_isbn
from utils.normalize import match_title_similarity

logger = logging.getLogger(__name__)


@dataclass
class ProviderAttempt:
    provider: str
    success: bool
    duration_ms: int
    error: Optional[str] = None


@dataclass
class ResolutionOutcome:
    """Result of one resolve() call; result is None for NotFound."""
    capability: str
    result: Any = None
    provider: Optional[str] = None
    attempts: List[ProviderAttempt] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.result is not None

    @property
    def providers_tried(self) -> List[str]:
        return [a.provider for a in self.attempts]

    def to_dict(self) -> Dict[str, Any]:
        result = self.result
        if result is not None and hasattr(result, 'to_dict'):
            result = result.to_dict()
        elif result is not None and hasattr(result, '__dataclass_fields__'):
            result = asdict(result)
        return {
            'capability': self.capability,
            'found': self.found,
            'provider': self.provider,
            'result': result,
            'attempts': [asdict(a) for a in self.attempts],
        }


class ResultRejected(Exception):
    """A provider answered, but the answer failed verification."""
    pass


def call_args(capability: str, query: Dict[str, Any]) -> tuple:
    """Positional arguments for the capability method from a query dict."""
    if capability == CAPABILITY_ISBN_RESOLUTION:
        return (query['title'], query.get('author'))
    if 'isbn' in query:
        return (query['isbn'],)
    if 'name' in query:
        return (query['name'],)
    raise ValueError(f"Query for {capability} needs 'isbn' or 'name': {query}")


def verify_isbn_result(result, query: Dict[str, Any]):
    """
    Check a resolved ISBN before accepting it.

    - the key must normalize with a valid checksum
    - when the provider reports a title, it must be similar to the query
      (a subtitle the provider adds, e.g. ": A Novel", is ignored)

    Raises:
        ResultRejected: verification failed
    """
    isbn = normalize_isbn(result.isbn, require_checksum=True)
    if not isbn:
        raise ResultRejected(f"invalid ISBN {result.isbn!r}")
    result.isbn = isbn

    if result.title:
        score = match_title_similarity(query.get('title'), result.title)
        if score < ISBN_RESOLUTION_SIMILARITY_THRESHOLD:
            raise ResultRejected(
                f"title mismatch ({score:.2f}): {result.title!r} vs {query.get('title')!r}"
            )
    return result


class ResolutionOrchestrator:
    """First-success-wins fold over the providers for one capability."""

    def __init__(self, registry, timeout: float = RESOLUTION_PROVIDER_TIMEOUT):
        self.registry = registry
        self.timeout = timeout

    def resolve(self, capability: str, query: Dict[str, Any], exclude: Optional[List[str]] = None) -> ResolutionOutcome:
        """
        Resolve one item through the capability's provider chain.

        `exclude` names providers already asked for this item (e.g. by a
        batch call) that the cascade skips.

        Never raises for provider failures; returns NotFound (result=None)
        when no provider yields a usable result.
        """
        method_name = CAPABILITY_METHODS.get(capability)
        if method_name is None:
            raise ValueError(f"Capability has no single-item method: {capability}")
        args = call_args(capability, query)

        outcome = ResolutionOutcome(capability=capability)
        providers = [p for p in self.registry.get_available(capability) if p.name not in (exclude or ())]
        if not providers:
            logger.warning(f"No available providers for {capability}")
            return outcome

        for provider in providers:
            result = self._attempt(provider, method_name, args, capability, query, outcome)
            if result is not None:
                outcome.result = result
                outcome.provider = provider.name
                logger.info(
                    f"{capability} resolved by {provider.name} "
                    f"after {len(outcome.attempts)} attempt(s)"
                )
                return outcome

        logger.info(f"{capability} not found after trying {', '.join(outcome.providers_tried)}")
        return outcome

    def _attempt(self, provider, method_name, args, capability, query, outcome):
        start = time.time()
        error = None
        result = None
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(getattr(provider, method_name), *args)
            result = future.result(timeout=self.timeout)
            if result is not None and capability == CAPABILITY_ISBN_RESOLUTION:
                result = verify_isbn_result(result, query)
        except FutureTimeout:
            error = f"timeout after {self.timeout}s"
        except ResultRejected as e:
            error = f"rejected: {e}"
            result = None
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        finally:
            # A hung call keeps its thread; the cascade moves on without it
            executor.shutdown(wait=False)

        duration_ms = int((time.time() - start) * 1000)
        outcome.attempts.append(ProviderAttempt(
            provider=provider.name,
            success=error is None and result is not None,
            duration_ms=duration_ms,
            error=error,
        ))
        if error:
            logger.warning(f"{provider.name} failed for {capability}: {error}")
        return result if error is None else None


def resolve(capability: str, query: Dict[str, Any], registry=None, exclude: Optional[List[str]] = None) -> ResolutionOutcome:
    """Resolve through the process-wide registry unless one is given."""
    if registry is None:
        from providers.registry import get_global_registry
        registry = get_global_registry()
    return ResolutionOrchestrator(registry).resolve(capability, query, exclude=exclude)
