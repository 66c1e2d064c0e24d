#!/usr/bin/env python3
"""
Apply pending SQL migrations from backend/migrations in filename order.

Applied files are recorded in `_migrations`, so re-running only applies
new files. Concurrent runners (parallel deploys, several workers booting
at once) are serialized with a session advisory lock.

Usage:
    python scripts/run_migrations.py
    python scripts/run_migrations.py --list
"""
import argparse
import logging
import os
import sys
import time
from pathlib import Path

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

logger = logging.getLogger(__name__)

# Fixed key, outside both enrichment unit key ranges
MIGRATION_LOCK_ID = 730418221

MIGRATIONS_DIR = backend_dir / 'migrations'


def connect_with_retry(db_url: str, attempts: int = 4, base_sleep: float = 0.75):
    """
    Open a psycopg2 connection, backing off 0.75s, 1.5s, 3s between attempts.

    Raises:
        psycopg2.OperationalError: If all attempts fail
    """
    import psycopg2

    last_error = None
    for i in range(attempts):
        try:
            conn = psycopg2.connect(db_url, connect_timeout=30)
            logger.info(f"Database connected (attempt {i + 1}/{attempts})")
            return conn
        except psycopg2.OperationalError as e:
            last_error = e
            if i < attempts - 1:
                sleep_s = base_sleep * (2 ** i)
                logger.warning(f"Connection failed (attempt {i + 1}/{attempts}), retrying in {sleep_s:.2f}s: {str(e)[:100]}")
                time.sleep(sleep_s)

    logger.error(f"All {attempts} connection attempts failed")
    raise last_error


def needs_autocommit(sql_content: str) -> bool:
    """CREATE/DROP INDEX CONCURRENTLY cannot run inside a transaction block."""
    return 'CONCURRENTLY' in sql_content.upper()


def pending_migrations(applied: set, migrations_dir: Path = MIGRATIONS_DIR):
    """SQL files not yet recorded in _migrations, sorted by name."""
    return [f for f in sorted(migrations_dir.glob('*.sql')) if f.name not in applied]


def apply_migration(conn, sql_file: Path) -> None:
    """Run one file and record it; transactional unless it needs autocommit."""
    sql_content = sql_file.read_text()
    use_autocommit = needs_autocommit(sql_content)
    mode = "AUTOCOMMIT" if use_autocommit else "TRANSACTION"
    logger.info(f"Applying {sql_file.name} [{mode}]...")

    cur = conn.cursor()
    try:
        conn.autocommit = use_autocommit
        cur.execute(sql_content)
        cur.execute("INSERT INTO _migrations (name) VALUES (%s)", (sql_file.name,))
        if not use_autocommit:
            conn.commit()
    except Exception:
        if not use_autocommit:
            conn.rollback()
        raise
    finally:
        cur.close()


def run(db_url: str, list_only: bool = False) -> int:
    """
    Apply every pending migration under the migration lock.

    Returns:
        Number of migrations applied (or pending, with list_only)
    """
    if not MIGRATIONS_DIR.exists():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    conn = connect_with_retry(db_url)
    cur = conn.cursor()
    try:
        conn.autocommit = True
        logger.info("Acquiring migration lock...")
        cur.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_ID,))

        cur.execute("""
            CREATE TABLE IF NOT EXISTS _migrations (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cur.execute("SELECT name FROM _migrations")
        applied = {row[0] for row in cur.fetchall()}
        pending = pending_migrations(applied)
        logger.info(f"Already applied: {len(applied)}, pending: {len(pending)}")

        if list_only:
            for sql_file in pending:
                logger.info(f"  pending: {sql_file.name}")
            return len(pending)

        for sql_file in pending:
            apply_migration(conn, sql_file)
            logger.info(f"  OK: {sql_file.name}")

        return len(pending)
    finally:
        conn.autocommit = True
        cur.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_ID,))
        cur.close()
        conn.close()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description='Apply enrichment schema migrations')
    parser.add_argument('--list', action='store_true', help='List pending migrations only')
    args = parser.parse_args()

    db_url = os.environ.get('DATABASE_URL_MIGRATIONS')
    if not db_url:
        from config import get_database_url
        db_url = get_database_url()

    try:
        count = run(db_url, list_only=args.list)
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        sys.exit(1)

    logger.info(f"Migrations complete: {count} {'pending' if args.list else 'applied'}")


if __name__ == '__main__':
    main()
