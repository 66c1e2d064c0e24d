"""
Stage handlers for the three queues.

Each handler receives a batch of QueueMessage objects and sets an outcome
on every one of them:

    ack    - done (including "nothing to do" and permanent data errors)
    retry  - transient failure, redelivered after the visibility timeout
             and dead-lettered once the queue's retry budget is spent

Handlers never ack or delete messages themselves; the consumer settles
the batch afterwards (see queues.consumer).

Messages:
    discovery   {job_id, unit_id, year, month, batch_size, prompt_variant}
                {job_id, unit_id, isbns}
    enrichment  {isbns, source, priority, job_id}
    assets      {isbn, source_url, priority}
"""
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import text

from config import Config
from constants import (
    ASSET_STORE_SOURCE,
    BATCH_METADATA_MAX_KEYS,
    CAPABILITY_COVERS,
    CAPABILITY_METADATA,
    DEFAULT_HTTP_TIMEOUT,
    NOT_FOUND_CACHE_PREFIX,
    NOT_FOUND_CACHE_TTL_SECONDS,
    PRIORITY_NORMAL,
)
from errors import (
    DataConflict,
    EnrichmentError,
    LockNotAcquired,
    ProviderResponseError,
    ProviderUnavailable,
    QuotaExceeded,
    TransientNetworkError,
)
from providers.http_client import RETRYABLE_STATUS_CODES
from queues.message_queue import QueueMessage, chunked, enqueue_asset
from utils.isbn import normalize_isbn, normalize_isbns

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED = 'batch budget exhausted before processing'


# =============================================================================
# Handler base
# =============================================================================

class StageHandler:
    """Runs handle_message() over a batch and turns exceptions into outcomes."""

    name = 'stage'

    def __init__(self, concurrency: int = 1):
        self.concurrency = max(1, concurrency)

    def handle_message(self, message: QueueMessage) -> Any:
        raise NotImplementedError

    def handle(self, messages: List[QueueMessage], deadline: Optional[float] = None) -> None:
        """
        Process a batch. Messages not started before `deadline` (epoch
        seconds) are marked for retry.
        """
        if self.concurrency == 1 or len(messages) <= 1:
            for message in messages:
                self._run(message, deadline)
            return
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(messages))) as executor:
            list(executor.map(lambda m: self._run(m, deadline), messages))

    def _run(self, message: QueueMessage, deadline: Optional[float]) -> None:
        if deadline is not None and time.time() >= deadline:
            message.retry(BUDGET_EXHAUSTED)
            return
        try:
            self.handle_message(message)
            if message.outcome is None:
                message.ack()
        except TransientNetworkError as e:
            logger.warning(f"{self.name} message {message.id} transient failure: {e}")
            message.retry(f"TransientNetworkError: {e}")
        except Exception as e:
            logger.exception(f"{self.name} message {message.id} failed: {e}")
            message.retry(f"{type(e).__name__}: {e}")


# =============================================================================
# Discovery
# =============================================================================

class DiscoveryHandler(StageHandler):
    """
    One enrichment unit per message.

    Unit failures are recorded on the unit row by the pipeline and the
    message is acked; the unit's own retry state schedules the next
    attempt. A busy unit lock means another worker has this unit.
    """

    name = 'discovery'

    def __init__(self, pipeline=None, concurrency: int = 1):
        super().__init__(concurrency)
        if pipeline is None:
            from services.discovery_pipeline import DiscoveryPipeline
            pipeline = DiscoveryPipeline()
        self.pipeline = pipeline

    def handle_message(self, message: QueueMessage):
        try:
            result = self.pipeline.process(message.body)
        except LockNotAcquired as e:
            logger.info(f"Unit {message.body.get('unit_id')} lock {e.lock_key} is held elsewhere, dropping delivery")
            message.ack()
            return None
        message.ack()
        return result


# =============================================================================
# Enrichment
# =============================================================================

@dataclass
class EnrichmentResult:
    requested: int = 0
    cached_not_found: int = 0
    batch_provider: Optional[str] = None
    batch_hits: int = 0
    fallback_hits: int = 0
    not_found: List[str] = field(default_factory=list)
    merged: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    assets_queued: int = 0
    authors_enriched: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def not_found_key(isbn: str) -> str:
    return f"{NOT_FOUND_CACHE_PREFIX}{isbn}"


def best_cover_url(cover_urls: Optional[Dict[str, str]]) -> Optional[str]:
    covers = cover_urls or {}
    return covers.get('large') or covers.get('medium') or covers.get('small')


class EnrichmentHandler(StageHandler):
    """
    Fetch and merge metadata for up to 100 keys per message.

    1. Skip keys cached as not found (24h)
    2. One batch call to the first available metadata provider
    3. Per-key cascade over the remaining providers for batch misses
    4. Merge work, edition and authors (idempotent, safe to replay)
    5. Queue a cover harvest per merged edition that has a cover URL
    6. Fetch biographies for newly linked authors
    """

    name = 'enrichment'

    def __init__(
        self,
        registry=None,
        resolver=None,
        merger=None,
        cache=None,
        asset_queue=None,
        engine=None,
        concurrency: int = 1,
    ):
        super().__init__(concurrency)
        if registry is None:
            from providers.registry import get_global_registry
            registry = get_global_registry()
        if resolver is None:
            from services.resolution_orchestrator import ResolutionOrchestrator
            resolver = ResolutionOrchestrator(registry)
        if merger is None:
            from services.merge_engine import MergeEngine
            merger = MergeEngine(engine)
        if cache is None:
            from services.kv_store import get_redis
            cache = get_redis()
        self.registry = registry
        self.resolver = resolver
        self.merger = merger
        self.cache = cache
        self.asset_queue = asset_queue
        self.engine = engine or merger.engine

    def handle_message(self, message: QueueMessage) -> EnrichmentResult:
        body = message.body
        keys = normalize_isbns(body.get('isbns') or [])
        priority = body.get('priority') or PRIORITY_NORMAL
        result = EnrichmentResult(requested=len(keys))

        pending = []
        for isbn in keys:
            if self.cache.get(not_found_key(isbn)):
                result.cached_not_found += 1
            else:
                pending.append(isbn)

        fetched = self._fetch_batch(pending, result)

        author_keys: List[str] = []
        for isbn in pending:
            metadata = fetched.get(isbn)
            if metadata is not None:
                result.batch_hits += 1
            else:
                metadata = self._fetch_single(isbn, result.batch_provider)
                if metadata is not None:
                    result.fallback_hits += 1
            if metadata is None:
                self.cache.set(not_found_key(isbn), '1', ex=NOT_FOUND_CACHE_TTL_SECONDS)
                result.not_found.append(isbn)
                continue

            try:
                persisted = self.merger.persist_metadata(metadata)
            except DataConflict as e:
                self._record_conflict(isbn, metadata.source, e)
                result.conflicts.append(isbn)
                continue
            result.merged.append(isbn)
            author_keys.extend(k for k in persisted.author_keys if k not in author_keys)

            cover_url = best_cover_url(metadata.cover_urls)
            if cover_url is None:
                logger.debug(f"No cover URL for {isbn}, no asset harvest queued")
                continue
            enqueue_asset(isbn, cover_url, priority=priority, queue=self.asset_queue)
            result.assets_queued += 1

        if author_keys:
            from services.author_service import enrich_author_biographies
            result.authors_enriched = enrich_author_biographies(
                self.engine, author_keys, registry=self.registry, merger=self.merger
            )

        logger.info(
            f"Enrichment {body.get('source')}: requested={result.requested} "
            f"batch={result.batch_hits} fallback={result.fallback_hits} "
            f"not_found={len(result.not_found)} cached_not_found={result.cached_not_found} "
            f"conflicts={len(result.conflicts)}"
        )
        return result

    def _fetch_batch(self, keys: List[str], result: EnrichmentResult) -> Dict[str, Any]:
        """
        Batch metadata from the first available provider.

        TransientNetworkError propagates so the message is retried; quota
        or availability problems leave the keys to the per-key cascade.
        """
        if not keys:
            return {}
        providers = self.registry.get_available(CAPABILITY_METADATA)
        if not providers:
            logger.warning("No metadata provider available for batch fetch")
            return {}

        provider = providers[0]
        result.batch_provider = provider.name
        fetched: Dict[str, Any] = {}
        for chunk in chunked(keys, BATCH_METADATA_MAX_KEYS):
            try:
                fetched.update(provider.fetch_metadata_batch(chunk))
            except (QuotaExceeded, ProviderUnavailable, ProviderResponseError) as e:
                logger.warning(f"{provider.name} batch fetch stopped: {e}")
                break
        return fetched

    def _fetch_single(self, isbn: str, exclude_provider: Optional[str]):
        exclude = [exclude_provider] if exclude_provider else None
        outcome = self.resolver.resolve(CAPABILITY_METADATA, {'isbn': isbn}, exclude=exclude)
        return outcome.result if outcome.found else None

    def _record_conflict(self, isbn: str, provider: str, error: DataConflict) -> None:
        from services.merge_engine import write_audit_log

        logger.error(f"Data conflict persisting {isbn} from {provider}: {error.raw}")
        with self.engine.begin() as conn:
            write_audit_log(
                conn,
                entity_type='edition',
                entity_key=isbn,
                provider=provider,
                operation='update',
                success=False,
                error_message=error.raw,
            )


# =============================================================================
# Assets
# =============================================================================

ASSET_STORED = 'stored'
ASSET_FAILED = 'failed'


@dataclass
class AssetResult:
    status: str
    urls: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    http_status: Optional[int] = None

    @property
    def stored(self) -> bool:
        return self.status == ASSET_STORED

    @property
    def retryable(self) -> bool:
        return not self.stored and (self.http_status is None or self.http_status in RETRYABLE_STATUS_CODES)


class AssetProcessor(ABC):
    """Downloads a cover and stores it in the blob store, keyed by ISBN."""

    @abstractmethod
    def exists(self, isbn: str) -> bool:
        ...

    @abstractmethod
    def process(self, isbn: str, url: str) -> AssetResult:
        ...


class LocalAssetStore(AssetProcessor):
    """
    Filesystem blob store: {ASSET_STORE_DIR}/{isbn}.jpg served under
    {ASSET_PUBLIC_BASE_URL}/{isbn}.jpg. One image serves every size.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        public_base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_HTTP_TIMEOUT,
    ):
        self.root = Path(root or Config.ASSET_STORE_DIR)
        self.public_base_url = (public_base_url or Config.ASSET_PUBLIC_BASE_URL).rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', Config.USER_AGENT)
        self.timeout = timeout

    def _path(self, isbn: str) -> Path:
        return self.root / f"{isbn}.jpg"

    def exists(self, isbn: str) -> bool:
        return self._path(isbn).exists()

    def process(self, isbn: str, url: str) -> AssetResult:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            return AssetResult(ASSET_FAILED, error=f"download failed: {e}")

        if response.status_code != 200:
            return AssetResult(ASSET_FAILED, error=f"HTTP {response.status_code}", http_status=response.status_code)

        content_type = response.headers.get('Content-Type', '')
        if not content_type.startswith('image/') or not response.content:
            return AssetResult(
                ASSET_FAILED,
                error=f"not an image ({content_type or 'no content type'})",
                http_status=response.status_code,
            )

        path = self._path(isbn)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(response.content)

        public_url = f"{self.public_base_url}/{isbn}.jpg"
        logger.debug(f"Stored cover {isbn} ({len(response.content)} bytes)")
        return AssetResult(ASSET_STORED, urls={'large': public_url, 'medium': public_url, 'small': public_url})


COVER_WRITE_BACK_SQL = """
UPDATE enriched_editions
SET cover_url_large = :large,
    cover_url_medium = :medium,
    cover_url_small = :small,
    cover_source = :source,
    updated_at = NOW()
WHERE isbn = :isbn
"""

# Works take the harvested cover only when they have none of their own yet
WORK_COVER_FILL_SQL = """
UPDATE enriched_works w
SET cover_url_large = :large,
    cover_url_medium = :medium,
    cover_url_small = :small,
    cover_source = :source,
    updated_at = NOW()
FROM enriched_editions e
WHERE e.isbn = :isbn
  AND w.work_key = e.work_key
  AND w.cover_url_large IS NULL
"""


class AssetHandler(StageHandler):
    """Harvest one cover per message into the asset store."""

    name = 'assets'

    def __init__(self, processor: Optional[AssetProcessor] = None, registry=None, resolver=None,
                 engine=None, concurrency: int = 1):
        super().__init__(concurrency)
        if registry is None:
            from providers.registry import get_global_registry
            registry = get_global_registry()
        if resolver is None:
            from services.resolution_orchestrator import ResolutionOrchestrator
            resolver = ResolutionOrchestrator(registry)
        if engine is None:
            from db.engine import get_engine
            engine = get_engine("worker")
        self.processor = processor or LocalAssetStore()
        self.registry = registry
        self.resolver = resolver
        self.engine = engine

    def handle_message(self, message: QueueMessage) -> Optional[AssetResult]:
        isbn = normalize_isbn(message.body.get('isbn'))
        if not isbn:
            logger.warning(f"Asset message {message.id} has no valid ISBN: {message.body.get('isbn')!r}")
            return None

        if self.processor.exists(isbn):
            logger.debug(f"Cover for {isbn} already stored")
            return None

        url = message.body.get('source_url') or self._find_cover(isbn)
        if not url:
            logger.info(f"No cover source for {isbn}")
            return None

        outcome = self.processor.process(isbn, url)
        if outcome.http_status in (401, 403):
            fresh_url = self._refresh_url(isbn)
            if fresh_url and fresh_url != url:
                logger.info(f"Cover URL for {isbn} rejected with {outcome.http_status}, retrying with a fresh URL")
                outcome = self.processor.process(isbn, fresh_url)

        if outcome.stored:
            self._write_back(isbn, outcome.urls)
            return outcome
        if outcome.retryable:
            raise TransientNetworkError(f"cover {isbn}: {outcome.error}", status_code=outcome.http_status)
        logger.warning(f"Cover for {isbn} not harvested: {outcome.error}")
        return outcome

    def _find_cover(self, isbn: str) -> Optional[str]:
        outcome = self.resolver.resolve(CAPABILITY_COVERS, {'isbn': isbn})
        return outcome.result.url if outcome.found else None

    def _refresh_url(self, isbn: str) -> Optional[str]:
        """Signed cover URLs from the paid provider expire; ask it for a new one."""
        provider = self.registry.get('isbndb')
        if provider is None or not provider.is_available():
            return None
        try:
            cover = provider.fetch_cover(isbn, fresh=True)
        except EnrichmentError as e:
            logger.warning(f"Fresh cover lookup for {isbn} failed: {e}")
            return None
        return cover.url if cover else None

    def _write_back(self, isbn: str, urls: Dict[str, str]) -> None:
        from services.merge_engine import write_audit_log

        params = {
            'isbn': isbn,
            'large': urls.get('large'),
            'medium': urls.get('medium'),
            'small': urls.get('small'),
            'source': ASSET_STORE_SOURCE,
        }
        with self.engine.begin() as conn:
            updated = conn.execute(text(COVER_WRITE_BACK_SQL), params).rowcount
            conn.execute(text(WORK_COVER_FILL_SQL), params)
            write_audit_log(
                conn,
                entity_type='edition',
                entity_key=isbn,
                provider=ASSET_STORE_SOURCE,
                operation='update',
                fields_updated=['cover_url_large', 'cover_url_medium', 'cover_url_small', 'cover_source'],
            )
        if not updated:
            logger.warning(f"Cover stored for {isbn} but no edition row exists")
