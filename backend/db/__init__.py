# Database utilities package
from .engine import get_engine, dispose_engines
from .advisory_locks import (
    period_lock_key,
    isbn_batch_lock_key,
    unit_lock_key,
    try_acquire_lock,
    release_lock,
    advisory_lock,
    is_locked,
    list_advisory_locks,
)
