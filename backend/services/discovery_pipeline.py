"""
Discovery Pipeline - processes one claimed enrichment unit end to end.

Workflow:
1. Take the unit's advisory lock (busy -> LockNotAcquired, nothing done)
2. Confirm the unit is still 'processing' under this job and stamp started_at
3. Candidates: generation for a period unit, the given keys for an ISBN batch
4. Deduplication: drop candidates already in the catalog
5. Resolution: ISBN cascade for candidates without a verified key
6. Persist a synthetic work for every unresolved candidate
7. Queue resolved keys for enrichment (<= 100 keys per message)
8. Complete the unit with its metrics; on failure move it to retry/failed

Zero resolutions is a completed unit, not a failure. Errors are written
to the unit row and the job status; the queue message is not retried,
the unit's own retry state drives the next attempt.

Usage:
    pipeline = DiscoveryPipeline()
    result = pipeline.process({'job_id': ..., 'unit_id': 7, 'year': 2019, 'month': 5,
                               'batch_size': 20, 'prompt_variant': 'baseline'})
"""
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from constants import (
    CAPABILITY_ISBN_RESOLUTION,
    PRIORITY_LOW,
    PROMPT_VARIANT_BASELINE,
    UNIT_BATCH_SIZE,
    UNIT_STATUS_PROCESSING,
)
from db.advisory_locks import release_lock, try_acquire_lock, unit_lock_key
from errors import DataConflict, LockNotAcquired
from models.enrichment_unit import UNIT_TYPE_ISBN_BATCH, UNIT_TYPE_PERIOD, InvalidTransition
from services.backfill_scheduler import complete_unit, fail_unit, mark_unit_started, resolution_rate
from services.job_status import JOB_COMPLETE, JOB_ENRICHING, JOB_FAILED, JOB_PROCESSING
from utils.isbn import normalize_isbn

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class DiscoveryResult:
    """Outcome of processing one unit."""
    success: bool
    unit_id: int
    job_id: Optional[str] = None
    skipped: bool = False
    generated: int = 0
    known: int = 0
    resolved: int = 0
    unresolved: int = 0
    queued: int = 0
    synthetic_works: List[str] = field(default_factory=list)
    provider_calls: Dict[str, int] = field(default_factory=dict)
    unit_status: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def resolution_rate(self) -> Optional[float]:
        return resolution_rate(self.generated, self.known, self.resolved)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['resolution_rate'] = self.resolution_rate
        return data


def unit_from_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Unit identity (for the lock key) from a discovery message."""
    if message.get('isbns'):
        return {'id': message['unit_id'], 'unit_type': UNIT_TYPE_ISBN_BATCH}
    return {
        'id': message['unit_id'],
        'unit_type': UNIT_TYPE_PERIOD,
        'year': message['year'],
        'month': message['month'],
    }


def _count_call(calls: Dict[str, int], provider: str, n: int = 1) -> None:
    calls[provider] = calls.get(provider, 0) + n


# =============================================================================
# Pipeline
# =============================================================================

class DiscoveryPipeline:

    def __init__(
        self,
        engine=None,
        registry=None,
        generator=None,
        deduplicator=None,
        resolver=None,
        merger=None,
        job_store=None,
        enrichment_queue=None,
        max_retries: Optional[int] = None,
    ):
        if engine is None:
            from db.engine import get_engine
            engine = get_engine("worker")
        self.engine = engine

        if registry is None and (generator is None or resolver is None):
            from providers.registry import get_global_registry
            registry = get_global_registry()
        if generator is None:
            from services.generation_orchestrator import GenerationOrchestrator
            generator = GenerationOrchestrator(registry)
        if resolver is None:
            from services.resolution_orchestrator import ResolutionOrchestrator
            resolver = ResolutionOrchestrator(registry)
        if deduplicator is None:
            from services.deduplication import DeduplicationEngine
            deduplicator = DeduplicationEngine(engine)
        if merger is None:
            from services.merge_engine import MergeEngine
            merger = MergeEngine(engine)
        if job_store is None:
            from services.job_status import get_job_store
            job_store = get_job_store()

        self.generator = generator
        self.resolver = resolver
        self.deduplicator = deduplicator
        self.merger = merger
        self.job_store = job_store
        self.enrichment_queue = enrichment_queue
        self.max_retries = max_retries

    # =========================================================================
    # Entry point
    # =========================================================================

    def process(self, message: Dict[str, Any]) -> DiscoveryResult:
        """
        Process one discovery message while holding the unit's lock.

        Raises:
            LockNotAcquired: another session holds the unit
        """
        lock_key = unit_lock_key(unit_from_message(message))
        with self.engine.connect() as lock_conn:
            acquired = try_acquire_lock(lock_conn, lock_key)
            # Session lock outlives the commit; no transaction stays open
            lock_conn.commit()
            if not acquired:
                raise LockNotAcquired(lock_key)
            try:
                return self._process_locked(message)
            finally:
                release_lock(lock_conn, lock_key)
                lock_conn.commit()

    def _start_unit(self, unit_id: int, job_id: Optional[str]) -> bool:
        """Confirm the unit is still ours and stamp its pickup time."""
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT status, job_id FROM enrichment_units WHERE id = :id FOR UPDATE"),
                {'id': unit_id},
            ).mappings().first()
            if row is None:
                logger.warning(f"Unit {unit_id} does not exist, dropping message")
                return False
            if row['status'] != UNIT_STATUS_PROCESSING:
                logger.info(f"Unit {unit_id} is {row['status']}, not processing; dropping message")
                return False
            if job_id and row['job_id'] and row['job_id'] != job_id:
                logger.info(f"Unit {unit_id} was re-claimed as job {row['job_id']}; dropping job {job_id}")
                return False
            return mark_unit_started(conn, unit_id)

    def _process_locked(self, message: Dict[str, Any]) -> DiscoveryResult:
        start_time = time.time()
        unit_id = message['unit_id']
        job_id = message.get('job_id')
        result = DiscoveryResult(success=True, unit_id=unit_id, job_id=job_id)
        label = (
            f"{len(message['isbns'])} ISBNs" if message.get('isbns')
            else f"{message['year']}-{int(message['month']):02d}"
        )

        logger.info("=" * 70)
        logger.info(f"DISCOVERY - unit {unit_id} ({label})")
        logger.info("=" * 70)

        if not self._start_unit(unit_id, job_id):
            result.skipped = True
            return result

        self._job_update(job_id, JOB_PROCESSING, f"Discovering candidates for {label}")
        try:
            if message.get('isbns'):
                self._run_isbn_batch(message, result)
            else:
                self._run_period(message, result)

            self._job_update(
                job_id, JOB_ENRICHING,
                f"Queued {result.queued} keys for enrichment",
                stats=self._stats(result),
            )
            with self.engine.begin() as conn:
                complete_unit(
                    conn, unit_id,
                    generated=result.generated,
                    resolved=result.resolved,
                    queued=result.queued,
                    provider_calls=result.provider_calls,
                    known=result.known,
                )
            result.unit_status = 'completed'
            self._job_update(job_id, JOB_COMPLETE, f"Unit {label} complete", stats=self._stats(result))
        except DataConflict as e:
            self._record_failure(result, f"DataConflict: {e.raw}", permanent=True)
        except (InvalidTransition, LockNotAcquired):
            raise
        except Exception as e:
            self._record_failure(result, f"{type(e).__name__}: {e}")

        result.duration_seconds = time.time() - start_time
        logger.info("=" * 70)
        logger.info(f"DISCOVERY - unit {unit_id} {'COMPLETE' if result.success else 'FAILED'}")
        logger.info(f"  Generated:   {result.generated}")
        logger.info(f"  Known:       {result.known}")
        logger.info(f"  Resolved:    {result.resolved}")
        logger.info(f"  Unresolved:  {result.unresolved}")
        logger.info(f"  Queued:      {result.queued}")
        logger.info(f"  Rate:        {result.resolution_rate}%")
        logger.info(f"  Duration:    {result.duration_seconds:.1f}s")
        logger.info("=" * 70)
        return result

    # =========================================================================
    # Unit kinds
    # =========================================================================

    def _run_period(self, message: Dict[str, Any], result: DiscoveryResult) -> None:
        from services.generation_prompts import build_prompt

        year, month = int(message['year']), int(message['month'])
        batch_size = int(message.get('batch_size') or UNIT_BATCH_SIZE)
        variant = message.get('prompt_variant') or PROMPT_VARIANT_BASELINE

        prompt = build_prompt(variant, year, month, batch_size)
        generation = self.generator.generate_candidates(prompt, batch_size)
        for provider, calls in generation.calls_by_provider().items():
            _count_call(result.provider_calls, provider, calls)
        candidates = generation.candidates
        result.generated = len(candidates)
        if not candidates:
            logger.warning(f"No candidates generated for {year}-{month:02d}")
            return

        dedup = self.deduplicator.check(candidates)
        result.known = dedup.known_count

        resolved_keys: List[str] = []
        for candidate in dedup.to_enrich:
            isbn = self._resolve_candidate(candidate, result)
            if isbn:
                resolved_keys.append(isbn)
                result.resolved += 1
            else:
                result.unresolved += 1
                result.synthetic_works.append(self.merger.persist_synthetic_work(candidate))

        self._enqueue(sorted(set(resolved_keys)), f"backfill-{year}-{month:02d}", result)

    def _run_isbn_batch(self, message: Dict[str, Any], result: DiscoveryResult) -> None:
        keys = []
        for raw in message['isbns']:
            isbn = normalize_isbn(raw)
            if isbn and isbn not in keys:
                keys.append(isbn)
        result.generated = len(keys)

        dedup = self.deduplicator.check([{'isbn': k} for k in keys])
        result.known = dedup.known_count
        new_keys = [c['isbn'] for c in dedup.to_enrich]
        result.resolved = len(new_keys)
        self._enqueue(new_keys, f"isbn-batch-{result.unit_id}", result)

    def _resolve_candidate(self, candidate, result: DiscoveryResult) -> Optional[str]:
        """Verified ISBN for a generated candidate, or None."""
        supplied = normalize_isbn(getattr(candidate, 'isbn', None), require_checksum=True)
        if supplied:
            return supplied

        outcome = self.resolver.resolve(
            CAPABILITY_ISBN_RESOLUTION,
            {'title': candidate.title, 'author': candidate.author},
        )
        for provider in outcome.providers_tried:
            _count_call(result.provider_calls, provider)
        if outcome.found:
            return outcome.result.isbn
        return None

    def _enqueue(self, keys: List[str], source: str, result: DiscoveryResult) -> None:
        from queues.message_queue import enqueue_enrichment

        if not keys:
            return
        enqueue_enrichment(
            keys, source=source, priority=PRIORITY_LOW,
            job_id=result.job_id, queue=self.enrichment_queue,
        )
        result.queued = len(keys)

    # =========================================================================
    # Status helpers
    # =========================================================================

    @staticmethod
    def _stats(result: DiscoveryResult) -> Dict[str, Any]:
        return {
            'generated': result.generated,
            'known': result.known,
            'resolved': result.resolved,
            'unresolved': result.unresolved,
            'queued': result.queued,
            'resolution_rate': result.resolution_rate,
            'provider_calls': result.provider_calls,
        }

    def _job_update(self, job_id: Optional[str], status: str, progress: str, **kwargs) -> None:
        if job_id:
            self.job_store.update(job_id, status, progress=progress, **kwargs)

    def _record_failure(self, result: DiscoveryResult, error: str, permanent: bool = False) -> None:
        logger.error(f"Unit {result.unit_id} failed: {error}")
        result.success = False
        result.error_message = error
        with self.engine.begin() as conn:
            result.unit_status = fail_unit(
                conn, result.unit_id, error, max_retries=self.max_retries, permanent=permanent
            )
        if result.unit_status == 'failed':
            self._job_update(result.job_id, JOB_FAILED, 'Unit failed', error=error)
        else:
            self._job_update(result.job_id, JOB_PROCESSING, 'Retry scheduled', error=error)
