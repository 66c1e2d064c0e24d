"""
Backfill Configuration - Environment-based settings and kill switch

Environment Variables:
    BACKFILL_ENABLED: 'true' or 'false' (default: 'true')
        Kill switch. Set to 'false' and the scheduler exits early.

    BACKFILL_DRY_RUN: 'true' or 'false' (default: 'false')
        List the units that would be claimed, claim nothing.

    BACKFILL_BATCH_SIZE: int (default: 10)
        Units (months) claimed per scheduler tick

    BACKFILL_MAX_RETRIES: int (default: 5)
        Failed attempts before a unit becomes permanently failed

    BACKFILL_RETRY_BACKOFF_MINUTES: int (default: 30)
        Base backoff, doubled per attempt

    BACKFILL_STALE_MINUTES: int (default: 60)
        'processing' units whose worker started more than this long ago, and
        whose lock is free, are re-claimable (their worker died)

    BACKFILL_QUEUE_STALE_MINUTES: int (default: 360)
        'processing' units claimed this long ago that no worker has picked
        up yet are re-claimable (their discovery message was lost)
"""

import os
import logging
from datetime import date, datetime, timedelta
from dateutil.relativedelta import relativedelta
from typing import Iterator, List, Optional, Tuple

from constants import BACKFILL_YEAR_END, BACKFILL_YEAR_START, LOCK_YEAR_MAX, LOCK_YEAR_MIN

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}={os.environ.get(name)!r}, using {default}")
        return default


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('true', '1', 'yes', 'on', 'enabled')


# =============================================================================
# Kill Switch
# =============================================================================

def is_backfill_enabled() -> bool:
    """
    Check if the backfill scheduler is enabled.

    Environment:
        BACKFILL_ENABLED: 'true' (default) or 'false'
    """
    enabled = os.environ.get('BACKFILL_ENABLED', 'true').lower()
    if enabled in ('false', '0', 'no', 'off', 'disabled'):
        logger.warning("Backfill is DISABLED via BACKFILL_ENABLED=false")
        return False
    return True


def is_dry_run() -> bool:
    return _bool_env('BACKFILL_DRY_RUN', False)


def get_batch_size() -> int:
    """Units claimed per scheduler tick (BACKFILL_BATCH_SIZE, default 10)."""
    return _int_env('BACKFILL_BATCH_SIZE', 10)


def get_max_retries() -> int:
    return _int_env('BACKFILL_MAX_RETRIES', 5)


def get_retry_backoff_minutes() -> int:
    return _int_env('BACKFILL_RETRY_BACKOFF_MINUTES', 30)


def get_stale_minutes() -> int:
    return _int_env('BACKFILL_STALE_MINUTES', 60)


def get_queue_stale_minutes() -> int:
    return _int_env('BACKFILL_QUEUE_STALE_MINUTES', 360)


# =============================================================================
# Backoff / periods
# =============================================================================

def retry_backoff(retry_count: int, base_minutes: Optional[int] = None) -> timedelta:
    """
    Wait before a unit in 'retry' becomes claimable again.

    base * 2^(retry_count - 1): 30m, 1h, 2h, 4h with the default base.
    """
    base = get_retry_backoff_minutes() if base_minutes is None else base_minutes
    return timedelta(minutes=base * (2 ** max(retry_count - 1, 0)))


def is_retry_due(retry_count: int, last_retry_at: Optional[datetime], now: datetime,
                 base_minutes: Optional[int] = None) -> bool:
    if last_retry_at is None:
        return True
    return now >= last_retry_at + retry_backoff(retry_count, base_minutes)


def iter_periods(year_start: int = BACKFILL_YEAR_START, year_end: int = BACKFILL_YEAR_END) -> Iterator[Tuple[int, int]]:
    """
    (year, month) for every month of the inclusive year range.

    Raises:
        ValueError: empty range or years outside the lockable window
    """
    if year_start > year_end:
        raise ValueError(f"year_start {year_start} is after year_end {year_end}")
    if year_start < LOCK_YEAR_MIN or year_end > LOCK_YEAR_MAX:
        raise ValueError(f"Backfill years must be within {LOCK_YEAR_MIN}-{LOCK_YEAR_MAX}")

    current = date(year_start, 1, 1)
    end = date(year_end, 12, 1)
    while current <= end:
        yield current.year, current.month
        current += relativedelta(months=1)


def count_periods(year_start: int = BACKFILL_YEAR_START, year_end: int = BACKFILL_YEAR_END) -> int:
    return (year_end - year_start + 1) * 12


# =============================================================================
# Validation
# =============================================================================

def validate_backfill_config() -> Tuple[bool, Optional[str]]:
    """
    Validate backfill configuration before starting.

    Returns:
        (is_valid, error_message)
    """
    if not is_backfill_enabled():
        return False, "Backfill disabled via BACKFILL_ENABLED"

    problems: List[str] = []
    if get_batch_size() < 1:
        problems.append("BACKFILL_BATCH_SIZE must be >= 1")
    if get_max_retries() < 1:
        problems.append("BACKFILL_MAX_RETRIES must be >= 1")
    if get_retry_backoff_minutes() < 0:
        problems.append("BACKFILL_RETRY_BACKOFF_MINUTES must be >= 0")
    if get_stale_minutes() < 1:
        problems.append("BACKFILL_STALE_MINUTES must be >= 1")
    if get_queue_stale_minutes() < get_stale_minutes():
        problems.append("BACKFILL_QUEUE_STALE_MINUTES must be >= BACKFILL_STALE_MINUTES")
    if problems:
        return False, '; '.join(problems)

    if not os.environ.get('DATABASE_URL'):
        return False, "DATABASE_URL environment variable not set"

    return True, None


def log_backfill_config():
    """Log current backfill configuration."""
    logger.info("=" * 60)
    logger.info("Backfill Configuration")
    logger.info("=" * 60)
    logger.info(f"  Enabled:          {is_backfill_enabled()}")
    logger.info(f"  Dry run:          {is_dry_run()}")
    logger.info(f"  Batch size:       {get_batch_size()} units")
    logger.info(f"  Max retries:      {get_max_retries()}")
    logger.info(f"  Retry backoff:    {get_retry_backoff_minutes()} min (doubling)")
    logger.info(f"  Stale after:      {get_stale_minutes()} min")
    logger.info(f"  Unpicked after:   {get_queue_stale_minutes()} min")
    logger.info(f"  Year range:       {BACKFILL_YEAR_START}-{BACKFILL_YEAR_END}")
    logger.info("=" * 60)
