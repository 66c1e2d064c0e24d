"""
Backfill Scheduler - claims enrichment units and hands them to discovery.

Workflow (one tick):
1. Check kill switch (BACKFILL_ENABLED)
2. One REPEATABLE READ transaction:
   a. select claimable units (pending, retry past backoff, stale
      processing, failed when force_retry), recent periods first
   b. per unit: pg_try_advisory_lock on its key; busy -> skip
   c. guarded UPDATE to 'processing' (only from the status just read),
      stamping claimed_at
3. Commit, release the claim locks
4. Create job status + send one discovery message per claimed unit

The discovery worker takes the same advisory lock while it processes the
unit and stamps started_at when it picks the unit up, so a unit in
'processing' is held by exactly one session. If that worker dies its
connection closes, the lock is freed, and once started_at is older than
BACKFILL_STALE_MINUTES the next tick re-claims it. A unit no worker ever
picked up is re-claimed after BACKFILL_QUEUE_STALE_MINUTES.

A stale re-claim counts as a failed attempt: once the retry budget is
spent the unit is moved to 'failed' instead of being claimed again.

Usage:
    # As module
    from services.backfill_scheduler import run_scheduler, seed_units
    seed_units(2000, 2024)
    result = run_scheduler(batch_size=10)

    # As CLI
    python -m services.backfill_scheduler --seed
    python -m services.backfill_scheduler --batch-size 5 --dry-run
"""

import sys
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text

from constants import (
    BACKFILL_YEAR_END,
    BACKFILL_YEAR_START,
    CONTEMPORARY_YEAR,
    PROMPT_VARIANT_BASELINE,
    PROMPT_VARIANT_CONTEMPORARY,
    UNIT_BATCH_SIZE,
    UNIT_STATUS_COMPLETED,
    UNIT_STATUS_FAILED,
    UNIT_STATUS_PROCESSING,
    get_prompt_variant_for_year,
)
from db.advisory_locks import release_lock, try_acquire_lock, unit_lock_key
from models.enrichment_unit import (
    UNIT_TYPE_ISBN_BATCH,
    UNIT_TYPE_PERIOD,
    InvalidTransition,
    check_transition,
    status_after_failure,
)
from services.backfill_config import (
    get_batch_size,
    get_max_retries,
    get_retry_backoff_minutes,
    get_queue_stale_minutes,
    get_stale_minutes,
    is_backfill_enabled,
    is_dry_run,
    iter_periods,
    log_backfill_config,
    validate_backfill_config,
)
from services.job_status import JOB_FAILED

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class ClaimedUnit:
    unit_id: int
    job_id: str
    unit_type: str
    year: Optional[int] = None
    month: Optional[int] = None
    isbns: Optional[List[str]] = None
    previous_status: Optional[str] = None
    # Job of the attempt a stale re-claim supersedes
    previous_job_id: Optional[str] = None

    def message(self) -> Dict[str, Any]:
        """Discovery queue message body."""
        if self.unit_type == UNIT_TYPE_ISBN_BATCH:
            return {'job_id': self.job_id, 'unit_id': self.unit_id, 'isbns': list(self.isbns or [])}
        return {
            'job_id': self.job_id,
            'unit_id': self.unit_id,
            'year': self.year,
            'month': self.month,
            'batch_size': UNIT_BATCH_SIZE,
            'prompt_variant': get_prompt_variant_for_year(self.year),
        }


@dataclass
class SchedulerResult:
    """Result of one scheduler tick."""
    success: bool
    dry_run: bool = False
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    claimed: List[ClaimedUnit] = field(default_factory=list)
    # Stale units that ran out of attempts: {'unit_id', 'job_id', 'error'}
    abandoned: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def job_ids(self) -> List[str]:
        return [unit.job_id for unit in self.claimed]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['job_ids'] = self.job_ids
        return data


# =============================================================================
# SQL
# =============================================================================

CANDIDATES_SQL = """
    SELECT id, unit_type, year, month, isbns, status, retry_count, job_id,
           last_retry_at, claimed_at, started_at, items_generated, items_resolved, error_message
    FROM enrichment_units
    WHERE (unit_type = 'isbn_batch' OR year BETWEEN :year_start AND :year_end)
      AND (
            status = 'pending'
         OR (status = 'retry' AND (
                last_retry_at IS NULL
             OR last_retry_at
                + (:backoff_minutes * POWER(2, GREATEST(retry_count - 1, 0))) * INTERVAL '1 minute'
                <= :now
            ))
         OR (status = 'processing' AND (
                started_at < :stale_before
             OR (started_at IS NULL AND COALESCE(claimed_at, created_at) < :unpicked_before)
            ))
         OR (:force_retry AND status = 'failed')
      )
    ORDER BY year DESC NULLS FIRST, month DESC NULLS FIRST, id
    LIMIT :limit
    FOR UPDATE SKIP LOCKED
"""

# started_at is left for the worker that picks the unit up
CLAIM_SQL = """
    UPDATE enrichment_units
    SET status = 'processing',
        claimed_at = :now,
        started_at = NULL,
        completed_at = NULL,
        error_message = CASE WHEN status = 'processing' THEN CAST(:stale_error AS text) ELSE NULL END,
        job_id = :job_id,
        retry_count = CASE
            WHEN status = 'failed' THEN 0
            WHEN status = 'processing' THEN retry_count + 1
            ELSE retry_count
        END,
        last_retry_at = CASE WHEN status IN ('retry', 'processing') THEN :now ELSE last_retry_at END
    WHERE id = :id
      AND status = :expected_status
"""

ABANDON_SQL = """
    UPDATE enrichment_units
    SET status = 'failed',
        retry_count = retry_count + 1,
        last_retry_at = :now,
        error_message = :error,
        completed_at = GREATEST(CAST(:now AS timestamptz), started_at)
    WHERE id = :id
      AND status = 'processing'
"""

START_SQL = """
    UPDATE enrichment_units
    SET started_at = NOW()
    WHERE id = :id
      AND status = 'processing'
"""

SEED_SQL = """
    INSERT INTO enrichment_units (unit_type, year, month, status, prompt_variant, batch_size)
    SELECT 'period', y.year, m.month, 'pending',
           CASE WHEN y.year >= :contemporary_year THEN :contemporary ELSE :baseline END,
           :batch_size
    FROM generate_series(CAST(:year_start AS int), CAST(:year_end AS int)) AS y(year)
    CROSS JOIN generate_series(1, 12) AS m(month)
    ON CONFLICT (year, month) WHERE unit_type = 'period' DO NOTHING
"""

INSERT_PERIOD_SQL = """
    INSERT INTO enrichment_units (unit_type, year, month, status, prompt_variant, batch_size)
    VALUES ('period', :year, :month, 'pending', :prompt_variant, :batch_size)
    ON CONFLICT (year, month) WHERE unit_type = 'period' DO NOTHING
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_engine():
    from db.engine import get_engine
    return get_engine("job")


# =============================================================================
# Seeding
# =============================================================================

def seed_units(year_start: int = BACKFILL_YEAR_START, year_end: int = BACKFILL_YEAR_END, engine=None) -> int:
    """
    Insert one pending period unit per month of the range.

    Idempotent: existing (year, month) units are left untouched.

    Returns:
        number of units inserted
    """
    # Validates the range
    expected = len(list(iter_periods(year_start, year_end)))
    engine = engine or _default_engine()
    with engine.begin() as conn:
        result = conn.execute(text(SEED_SQL), {
            'year_start': year_start,
            'year_end': year_end,
            'contemporary_year': CONTEMPORARY_YEAR,
            'contemporary': PROMPT_VARIANT_CONTEMPORARY,
            'baseline': PROMPT_VARIANT_BASELINE,
            'batch_size': UNIT_BATCH_SIZE,
        })
    inserted = result.rowcount or 0
    logger.info(f"Seeded {inserted} of {expected} period units ({year_start}-{year_end})")
    return inserted


# =============================================================================
# Claiming
# =============================================================================

def _stale_error(row: Dict[str, Any], max_retries: int) -> str:
    attempt = (row.get('retry_count') or 0) + 1
    return f"worker lost: unit stale in processing (attempt {attempt}/{max_retries})"


def _abandon_stale(conn, row: Dict[str, Any], result: SchedulerResult, now: datetime, max_retries: int) -> None:
    """processing -> failed for a stale unit with no attempts left."""
    check_transition(row['status'], UNIT_STATUS_FAILED)
    error = _stale_error(row, max_retries)
    updated = conn.execute(text(ABANDON_SQL), {'id': row['id'], 'now': now, 'error': error})
    if updated.rowcount != 1:
        logger.info(f"Unit {row['id']} changed status before abandon, skipping")
        result.skipped += 1
        return
    result.abandoned.append({'unit_id': row['id'], 'job_id': row.get('job_id'), 'error': error})
    logger.error(f"Unit {row['id']} ({_describe(row)}) -> failed: {error}")


def _claim_candidates(
    conn,
    candidates: List[Dict[str, Any]],
    result: SchedulerResult,
    now: datetime,
    max_retries: int,
) -> List[int]:
    """Lock and mark candidates processing. Returns the lock keys taken."""
    from services.job_status import new_job_id

    held: List[int] = []
    for row in candidates:
        lock_key = unit_lock_key(row)
        if not try_acquire_lock(conn, lock_key):
            result.skipped += 1
            continue
        held.append(lock_key)

        stale = row['status'] == UNIT_STATUS_PROCESSING
        if stale and status_after_failure(row['retry_count'] or 0, max_retries) == UNIT_STATUS_FAILED:
            _abandon_stale(conn, row, result, now, max_retries)
            continue

        check_transition(row['status'], UNIT_STATUS_PROCESSING)
        job_id = new_job_id()
        updated = conn.execute(text(CLAIM_SQL), {
            'id': row['id'],
            'now': now,
            'job_id': job_id,
            'expected_status': row['status'],
            'stale_error': _stale_error(row, max_retries) if stale else None,
        })
        if updated.rowcount != 1:
            logger.info(f"Unit {row['id']} changed status before claim, skipping")
            result.skipped += 1
            continue

        result.claimed.append(ClaimedUnit(
            unit_id=row['id'],
            job_id=job_id,
            unit_type=row['unit_type'],
            year=row['year'],
            month=row['month'],
            isbns=list(row['isbns'] or []) or None,
            previous_status=row['status'],
            previous_job_id=row.get('job_id') if stale else None,
        ))
        logger.info(
            f"Claimed unit {row['id']} ({_describe(row)}) from {row['status']} as job {job_id}"
        )
    return held


def _describe(row: Dict[str, Any]) -> str:
    if row.get('unit_type') == UNIT_TYPE_ISBN_BATCH:
        return f"{len(row.get('isbns') or [])} ISBNs"
    return f"{row['year']}-{row['month']:02d}"


def _dispatch(claimed: List[ClaimedUnit], result: SchedulerResult, job_store, queue) -> None:
    """Job status + discovery message per claimed unit (after commit)."""
    from queues.message_queue import enqueue_discovery

    for unit in claimed:
        if unit.previous_job_id:
            job_store.update(unit.previous_job_id, JOB_FAILED,
                             error=f"superseded by job {unit.job_id} after the unit went stale")
        body = unit.message()
        job_store.create(unit.job_id, body, progress='Queued for discovery')
        try:
            enqueue_discovery(body, queue=queue)
        except Exception as e:
            # The unit stays 'processing' and is re-claimed once stale
            error = f"enqueue failed for unit {unit.unit_id}: {e}"
            logger.error(error)
            result.errors.append(error)
            job_store.update(unit.job_id, JOB_FAILED, error=error)


def run_scheduler(
    batch_size: Optional[int] = None,
    year_range: Optional[Tuple[int, int]] = None,
    dry_run: Optional[bool] = None,
    force_retry: bool = False,
    engine=None,
    job_store=None,
    queue=None,
    now: Optional[datetime] = None,
) -> SchedulerResult:
    """
    Claim up to batch_size units and queue them for discovery.

    Returns:
        SchedulerResult (claimed units carry their job ids)
    """
    start_time = time.time()
    batch_size = batch_size or get_batch_size()
    dry_run = is_dry_run() if dry_run is None else dry_run
    year_start, year_end = year_range or (BACKFILL_YEAR_START, BACKFILL_YEAR_END)
    now = now or _utc_now()

    logger.info("=" * 70)
    logger.info("BACKFILL SCHEDULER - STARTING")
    logger.info("=" * 70)
    logger.info(f"  Batch size:  {batch_size}")
    logger.info(f"  Years:       {year_start}-{year_end}")
    logger.info(f"  Dry run:     {dry_run}")
    logger.info(f"  Force retry: {force_retry}")
    logger.info("=" * 70)

    is_valid, error = validate_backfill_config()
    if not is_valid:
        logger.error(f"Backfill configuration invalid: {error}")
        return SchedulerResult(success=False, dry_run=dry_run, error_message=error)

    engine = engine or _default_engine()
    if job_store is None:
        from services.job_status import get_job_store
        job_store = get_job_store()

    result = SchedulerResult(success=True, dry_run=dry_run)
    params = {
        'year_start': year_start,
        'year_end': year_end,
        'backoff_minutes': get_retry_backoff_minutes(),
        'stale_before': now - timedelta(minutes=get_stale_minutes()),
        'unpicked_before': now - timedelta(minutes=get_queue_stale_minutes()),
        'force_retry': force_retry,
        'now': now,
        'limit': batch_size,
    }

    max_retries = get_max_retries()
    held: List[int] = []
    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level="REPEATABLE READ")
        try:
            with conn.begin() as tx:
                candidates = [dict(r) for r in conn.execute(text(CANDIDATES_SQL), params).mappings().all()]
                result.candidates = [
                    {k: v for k, v in c.items() if k in ('id', 'unit_type', 'year', 'month', 'status', 'retry_count', 'error_message')}
                    for c in candidates
                ]
                logger.info(f"{len(candidates)} candidate units (requested {batch_size})")

                if dry_run:
                    tx.rollback()
                else:
                    held = _claim_candidates(conn, candidates, result, now, max_retries)
        except Exception as e:
            logger.error(f"Scheduler claim transaction failed: {type(e).__name__}: {e}")
            result.success = False
            result.error_message = str(e)
            result.claimed = []
            result.abandoned = []
        finally:
            for lock_key in held:
                release_lock(conn, lock_key)
            if held:
                conn.commit()

    if result.success and result.claimed:
        _dispatch(result.claimed, result, job_store, queue)
    for unit in result.abandoned:
        if unit['job_id']:
            job_store.update(unit['job_id'], JOB_FAILED, error=unit['error'])

    result.duration_seconds = time.time() - start_time
    logger.info("=" * 70)
    logger.info("BACKFILL SCHEDULER - " + ("DRY RUN" if dry_run else "COMPLETE"))
    logger.info(f"  Candidates:  {len(result.candidates)}")
    logger.info(f"  Claimed:     {len(result.claimed)}")
    logger.info(f"  Abandoned:   {len(result.abandoned)}")
    logger.info(f"  Skipped:     {result.skipped}")
    logger.info(f"  Errors:      {len(result.errors)}")
    logger.info(f"  Duration:    {result.duration_seconds:.1f}s")
    logger.info("=" * 70)
    return result


# =============================================================================
# Explicit enqueue
# =============================================================================

def enqueue_unit(
    unit: Dict[str, Any],
    engine=None,
    job_store=None,
    queue=None,
) -> str:
    """
    Create (or reuse) a unit, claim it and queue it for discovery.

    Args:
        unit: {'year': 2019, 'month': 5} or {'isbns': [...]}

    Returns:
        job id

    Raises:
        ValueError: neither a period nor an ISBN list
        InvalidTransition: the unit is already processing or completed
    """
    from db.advisory_locks import isbn_batch_lock_key, period_lock_key
    from services.job_status import get_job_store, new_job_id
    from utils.isbn import normalize_isbns

    engine = engine or _default_engine()
    job_store = job_store or get_job_store()
    now = _utc_now()
    job_id = new_job_id()

    if unit.get('isbns'):
        isbns = normalize_isbns(unit['isbns'])
        if not isbns:
            raise ValueError("ISBN batch unit has no valid ISBNs")
        with engine.begin() as conn:
            unit_id = conn.execute(text("""
                INSERT INTO enrichment_units (unit_type, isbns, status, claimed_at, job_id)
                VALUES ('isbn_batch', CAST(:isbns AS text[]), 'processing', :now, :job_id)
                RETURNING id
            """), {'isbns': isbns, 'now': now, 'job_id': job_id}).scalar()
        claimed = ClaimedUnit(unit_id, job_id, UNIT_TYPE_ISBN_BATCH, isbns=isbns)
        lock_key = isbn_batch_lock_key(unit_id)
    elif unit.get('year') and unit.get('month'):
        year, month = int(unit['year']), int(unit['month'])
        lock_key = period_lock_key(year, month)
        with engine.begin() as conn:
            conn.execute(text(INSERT_PERIOD_SQL), {
                'year': year,
                'month': month,
                'prompt_variant': get_prompt_variant_for_year(year),
                'batch_size': UNIT_BATCH_SIZE,
            })
            row = conn.execute(text("""
                SELECT id, status FROM enrichment_units
                WHERE unit_type = 'period' AND year = :year AND month = :month
                FOR UPDATE
            """), {'year': year, 'month': month}).mappings().one()
            check_transition(row['status'], UNIT_STATUS_PROCESSING)
            if row['status'] == UNIT_STATUS_PROCESSING:
                raise InvalidTransition(f"Unit {year}-{month:02d} is already processing")
            conn.execute(text(CLAIM_SQL), {
                'id': row['id'], 'now': now, 'job_id': job_id, 'expected_status': row['status'], 'stale_error': None,
            })
        claimed = ClaimedUnit(row['id'], job_id, UNIT_TYPE_PERIOD, year=year, month=month)
    else:
        raise ValueError("unit needs 'year' and 'month', or 'isbns'")

    result = SchedulerResult(success=True, claimed=[claimed])
    _dispatch([claimed], result, job_store, queue)
    if result.errors:
        logger.error(f"Job {job_id} created but not queued: {result.errors[0]}")
    logger.info(f"Enqueued unit {claimed.unit_id} (lock key {lock_key}) as job {job_id}")
    return job_id


# =============================================================================
# Worker transitions (called by discovery workers)
# =============================================================================

def mark_unit_started(conn, unit_id: int) -> bool:
    """
    Stamp started_at when a worker picks the unit up under its lock.

    Staleness is measured from this stamp, not from the claim, so a unit
    that waited in the queue is not re-claimed while it is being worked.

    Returns:
        False when the unit is no longer 'processing'
    """
    updated = conn.execute(text(START_SQL), {'id': unit_id})
    return updated.rowcount == 1


def _locked_unit(conn, unit_id: int) -> Dict[str, Any]:
    row = conn.execute(text("""
        SELECT id, status, retry_count, started_at
        FROM enrichment_units WHERE id = :id
        FOR UPDATE
    """), {'id': unit_id}).mappings().first()
    if row is None:
        raise ValueError(f"Unknown enrichment unit {unit_id}")
    return dict(row)


def complete_unit(
    conn,
    unit_id: int,
    generated: int,
    resolved: int,
    queued: int,
    provider_calls: Optional[Dict[str, int]] = None,
    known: int = 0,
) -> None:
    """
    processing -> completed with final metrics.

    completed_at is never earlier than started_at, whatever the clocks say.
    """
    import json

    row = _locked_unit(conn, unit_id)
    check_transition(row['status'], UNIT_STATUS_COMPLETED)
    conn.execute(text("""
        UPDATE enrichment_units
        SET status = 'completed',
            completed_at = GREATEST(NOW(), started_at),
            items_generated = :generated,
            items_known = :known,
            items_resolved = :resolved,
            items_queued = :queued,
            provider_calls = CAST(:provider_calls AS jsonb),
            error_message = NULL
        WHERE id = :id AND status = 'processing'
    """), {
        'id': unit_id,
        'generated': generated,
        'known': known,
        'resolved': resolved,
        'queued': queued,
        'provider_calls': json.dumps(provider_calls or {}),
    })


def fail_unit(
    conn,
    unit_id: int,
    error_message: str,
    max_retries: Optional[int] = None,
    permanent: bool = False,
) -> str:
    """
    processing -> retry (budget left) or failed (exhausted / permanent).

    Only a transition to 'failed' stamps completed_at; 'retry' clears it.

    Returns:
        the new status
    """
    max_retries = max_retries or get_max_retries()
    row = _locked_unit(conn, unit_id)
    target = UNIT_STATUS_FAILED if permanent else status_after_failure(row['retry_count'] or 0, max_retries)
    check_transition(row['status'], target)

    conn.execute(text("""
        UPDATE enrichment_units
        SET status = :target,
            retry_count = retry_count + 1,
            last_retry_at = NOW(),
            error_message = :error,
            completed_at = CASE WHEN :target = 'failed' THEN GREATEST(NOW(), started_at) ELSE NULL END
        WHERE id = :id AND status = 'processing'
    """), {'id': unit_id, 'target': target, 'error': error_message[:2000]})
    log = logger.error if target == UNIT_STATUS_FAILED else logger.warning
    log(f"Unit {unit_id} -> {target} (attempt {(row['retry_count'] or 0) + 1}/{max_retries}): {error_message}")
    return target


# =============================================================================
# Stats
# =============================================================================

STATS_SQL = """
    SELECT
        COUNT(*) AS total_units,
        COUNT(*) FILTER (WHERE status = 'pending') AS pending,
        COUNT(*) FILTER (WHERE status = 'processing') AS processing,
        COUNT(*) FILTER (WHERE status = 'completed') AS completed,
        COUNT(*) FILTER (WHERE status = 'failed') AS failed,
        COUNT(*) FILTER (WHERE status = 'retry') AS retry,
        COALESCE(SUM(items_generated), 0) AS total_generated,
        COALESCE(SUM(items_known), 0) AS total_known,
        COALESCE(SUM(items_resolved), 0) AS total_resolved,
        COALESCE(SUM(items_queued), 0) AS total_queued
    FROM enrichment_units
"""

RECENT_SQL = """
    SELECT id, unit_type, year, month, status, items_generated, items_known, items_resolved,
           items_queued, error_message, started_at, completed_at
    FROM enrichment_units
    WHERE completed_at IS NOT NULL
    ORDER BY completed_at DESC
    LIMIT 20
"""


def resolution_rate(generated: int, known: int, resolved: int, digits: int = 1) -> Optional[float]:
    """Resolved share of the candidates that needed resolution (not already known)."""
    attempted = (generated or 0) - (known or 0)
    if attempted <= 0:
        return None
    return round(100.0 * (resolved or 0) / attempted, digits)


def get_stats(engine=None) -> Dict[str, Any]:
    """Counts by status, item totals, overall resolution rate, recent activity."""
    engine = engine or _default_engine()
    with engine.connect() as conn:
        row = conn.execute(text(STATS_SQL)).mappings().one()
        recent = conn.execute(text(RECENT_SQL)).mappings().all()

    generated = int(row['total_generated'])
    known = int(row['total_known'])
    resolved = int(row['total_resolved'])
    return {
        'total_units': int(row['total_units']),
        'by_status': {s: int(row[s]) for s in ('pending', 'processing', 'completed', 'failed', 'retry')},
        'progress': {
            'total_generated': generated,
            'total_known': known,
            'total_resolved': resolved,
            'total_queued': int(row['total_queued']),
            'overall_resolution_rate': resolution_rate(generated, known, resolved, digits=2) or 0.0,
        },
        'recent_activity': [
            {
                **{k: r[k] for k in ('id', 'unit_type', 'year', 'month', 'status',
                                     'items_generated', 'items_known', 'items_resolved', 'items_queued', 'error_message')},
                'resolution_rate': resolution_rate(r['items_generated'], r['items_known'], r['items_resolved']),
                'completed_at': r['completed_at'].isoformat() if r['completed_at'] else None,
            }
            for r in recent
        ],
    }


# =============================================================================
# CLI Entry Point
# =============================================================================

def main():
    """
    CLI entry point for cron/manual execution.

    Exit codes:
        0: Success
        1: Failure
        2: Disabled via kill switch
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)

    import argparse
    parser = argparse.ArgumentParser(description='Backfill Scheduler')
    parser.add_argument('--seed', action='store_true', help='Seed period units and exit')
    parser.add_argument('--stats', action='store_true', help='Print unit statistics and exit')
    parser.add_argument('--batch-size', type=int, help='Units to claim this tick')
    parser.add_argument('--year-start', type=int, default=BACKFILL_YEAR_START)
    parser.add_argument('--year-end', type=int, default=BACKFILL_YEAR_END)
    parser.add_argument('--dry-run', action='store_true', help='List candidates only')
    parser.add_argument('--force-retry', action='store_true', help='Re-open failed units')
    args = parser.parse_args()

    if args.seed:
        inserted = seed_units(args.year_start, args.year_end)
        print(f"Seeded {inserted} units ({args.year_start}-{args.year_end})")
        sys.exit(0)

    if args.stats:
        stats = get_stats()
        print("=" * 70)
        print("BACKFILL STATS")
        print("=" * 70)
        for status, count in stats['by_status'].items():
            print(f"  {status:<12} {count}")
        print(f"  Resolution rate: {stats['progress']['overall_resolution_rate']}%")
        sys.exit(0)

    if not is_backfill_enabled():
        print("\n[DISABLED] Backfill is disabled via BACKFILL_ENABLED=false")
        sys.exit(2)

    log_backfill_config()
    result = run_scheduler(
        batch_size=args.batch_size,
        year_range=(args.year_start, args.year_end),
        dry_run=args.dry_run or None,
        force_retry=args.force_retry,
    )

    print("\n" + "=" * 70)
    print("SCHEDULER RESULT")
    print("=" * 70)
    print(f"  Status:     {'SUCCESS' if result.success else 'FAILED'}")
    print(f"  Candidates: {len(result.candidates)}")
    print(f"  Claimed:    {len(result.claimed)}")
    print(f"  Abandoned:  {len(result.abandoned)}")
    print(f"  Skipped:    {result.skipped}")
    for unit in result.claimed:
        print(f"    job {unit.job_id}  unit {unit.unit_id}")
    if result.error_message:
        print(f"\n  Error: {result.error_message}")
    print("=" * 70)
    sys.exit(0 if result.success else 1)


if __name__ == '__main__':
    main()
