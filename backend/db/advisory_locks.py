"""
PostgreSQL advisory locks for enrichment units.

Session-scoped, non-blocking locks keyed by unit identity:
- pg_try_advisory_lock never waits; False means another session owns the unit
- released explicitly via pg_advisory_unlock, or automatically when the
  owning connection closes (crashed workers cannot strand a unit)

Key space:
- period units:    year * 100 + month        (190001 .. 209912)
- ISBN batch units: 1_000_000_000 + unit id

Usage:
    from db.advisory_locks import period_lock_key, advisory_lock

    with engine.connect() as conn:
        with advisory_lock(conn, period_lock_key(2019, 5)) as acquired:
            if not acquired:
                return  # someone else is processing this month
            ...
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import text

from constants import ISBN_BATCH_LOCK_OFFSET, LOCK_YEAR_MAX, LOCK_YEAR_MIN

logger = logging.getLogger(__name__)


# =============================================================================
# Lock keys
# =============================================================================

def period_lock_key(year: int, month: int) -> int:
    """
    Lock key for a (year, month) unit.

    Raises:
        ValueError: year outside 1900-2099 or month outside 1-12
    """
    if not (LOCK_YEAR_MIN <= year <= LOCK_YEAR_MAX):
        raise ValueError(f"Invalid year {year}: must be {LOCK_YEAR_MIN}-{LOCK_YEAR_MAX}")
    if not (1 <= month <= 12):
        raise ValueError(f"Invalid month {month}: must be 1-12")
    return year * 100 + month


def isbn_batch_lock_key(unit_id: int) -> int:
    """Lock key for an ISBN batch unit (above the period key space)."""
    if unit_id <= 0:
        raise ValueError(f"Invalid unit id {unit_id}")
    return ISBN_BATCH_LOCK_OFFSET + unit_id


def unit_lock_key(unit: Dict[str, Any]) -> int:
    """Lock key for a unit row (dict with unit_type, year, month, id)."""
    if unit.get('unit_type', 'period') == 'period':
        return period_lock_key(int(unit['year']), int(unit['month']))
    return isbn_batch_lock_key(int(unit['id']))


# =============================================================================
# Acquire / release
# =============================================================================

def try_acquire_lock(conn, lock_key: int) -> bool:
    """
    Try to take the session lock without waiting.

    Returns:
        True if this session now holds the lock
    """
    acquired = conn.execute(
        text("SELECT pg_try_advisory_lock(CAST(:key AS bigint))"),
        {'key': lock_key}
    ).scalar()
    if acquired:
        logger.debug(f"Advisory lock acquired: {lock_key}")
    else:
        logger.info(f"Advisory lock busy, skipping: {lock_key}")
    return bool(acquired)


def release_lock(conn, lock_key: int) -> bool:
    """
    Release a session lock.

    Returns:
        False if this session did not hold the lock
    """
    released = conn.execute(
        text("SELECT pg_advisory_unlock(CAST(:key AS bigint))"),
        {'key': lock_key}
    ).scalar()
    if not released:
        logger.warning(f"Advisory lock {lock_key} was not held by this session")
    return bool(released)


@contextmanager
def advisory_lock(conn, lock_key: int) -> Iterator[bool]:
    """
    Hold a lock for the duration of a block.

    Yields whether the lock was acquired; releases only if it was.
    """
    acquired = try_acquire_lock(conn, lock_key)
    try:
        yield acquired
    finally:
        if acquired:
            release_lock(conn, lock_key)


# =============================================================================
# Introspection
# =============================================================================

_LOCKS_SQL = """
    SELECT
        l.pid,
        ((l.classid::bigint << 32) | l.objid::bigint) AS lock_key,
        l.granted,
        a.state,
        a.query_start
    FROM pg_locks l
    LEFT JOIN pg_stat_activity a ON a.pid = l.pid
    WHERE l.locktype = 'advisory'
      AND l.objsubid = 1
"""


def is_locked(conn, lock_key: int) -> bool:
    """True if any session currently holds the lock."""
    return bool(conn.execute(
        text(f"""
            SELECT EXISTS (
                SELECT 1 FROM ({_LOCKS_SQL}) held
                WHERE held.lock_key = :key AND held.granted
            )
        """),
        {'key': lock_key}
    ).scalar())


def list_advisory_locks(conn, lock_key: Optional[int] = None) -> List[Dict[str, Any]]:
    """All advisory locks held or awaited in the database (optionally one key)."""
    sql = _LOCKS_SQL
    params: Dict[str, Any] = {}
    if lock_key is not None:
        sql = f"SELECT * FROM ({_LOCKS_SQL}) held WHERE held.lock_key = :key"
        params['key'] = lock_key
    rows = conn.execute(text(sql), params).mappings().all()
    return [dict(row) for row in rows]
