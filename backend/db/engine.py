"""
Database engine factory for workers, scheduler and scripts.

Usage:
    from db.engine import get_engine

    # Short-lived scheduler ticks / one-shot scripts (NullPool)
    engine = get_engine("job")

    # Long-lived queue consumers (QueuePool)
    engine = get_engine("worker")

NullPool for jobs:
    - Every connection is closed on release, so session-scoped advisory
      locks never survive in a pooled connection after the job ends.

Pooled workers:
    - Callers that take advisory locks must release them explicitly
      before returning the connection (db.advisory_locks does this).

Warmup with retry:
    - Exponential backoff (0.75s, 1.5s, 3s, 6s)
    - Fails after 4 attempts with the last OperationalError
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool

log = logging.getLogger(__name__)

ENGINE_KINDS = ("job", "worker")

# Per-process singletons
_ENGINES: Dict[str, Engine] = {}


def _base_options() -> Dict[str, Any]:
    from config import Config

    return dict(getattr(Config, "SQLALCHEMY_ENGINE_OPTIONS", {}) or {})


def _warmup(engine: Engine, attempts: int = 4, base_sleep: float = 0.75) -> None:
    """
    Open one connection with exponential backoff.

    Raises:
        OperationalError: If all attempts fail
    """
    last_error: Optional[Exception] = None

    for i in range(attempts):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("db_warmup_success attempt=%d", i + 1)
            return
        except OperationalError as e:
            last_error = e
            sleep_s = base_sleep * (2 ** i)
            log.warning(
                "db_warmup_retry attempt=%d/%d sleep_s=%.2f err=%s",
                i + 1, attempts, sleep_s, str(e)[:100]
            )
            time.sleep(sleep_s)

    log.error("db_warmup_failed after %d attempts", attempts)
    raise last_error  # type: ignore[misc]


def get_engine(kind: str = "job") -> Engine:
    """
    Get a cached engine for the given process kind.

    Args:
        kind: "job" (NullPool) or "worker" (QueuePool from Config)

    Raises:
        ValueError: If kind is unknown
        OperationalError: If the database stays unreachable
    """
    if kind not in ENGINE_KINDS:
        raise ValueError(f"kind must be one of {ENGINE_KINDS}")

    if kind in _ENGINES:
        return _ENGINES[kind]

    from config import get_database_url
    database_url = get_database_url()

    opts = _base_options()
    connect_args = dict(opts.pop("connect_args", {}) or {})
    connect_args.setdefault("connect_timeout", 30)

    if kind == "job":
        engine = create_engine(
            database_url,
            poolclass=NullPool,
            connect_args=connect_args,
            pool_pre_ping=opts.get("pool_pre_ping", True),
        )
        log.info("db_engine_created kind=job poolclass=NullPool")
    else:
        engine = create_engine(database_url, connect_args=connect_args, **opts)
        log.info(
            "db_engine_created kind=worker pool_size=%s max_overflow=%s",
            opts.get("pool_size", "default"),
            opts.get("max_overflow", "default")
        )

    _warmup(engine)
    _ENGINES[kind] = engine
    return engine


def dispose_engines() -> None:
    """Dispose all cached engines (tests / shutdown)."""
    for kind in list(_ENGINES):
        engine = _ENGINES.pop(kind)
        try:
            engine.dispose()
        except Exception as e:
            log.warning("db_engine_dispose_failed kind=%s err=%s", kind, e)

    log.info("db_engines_disposed")
