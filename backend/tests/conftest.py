"""
Root pytest configuration for backend tests.

Provides:
- backend/ on sys.path so `from services.quota_manager import ...` works
- Shared fixtures built on the fakes in tests/fakes.py
"""

import sys
from pathlib import Path

# Add backend directory to Python path so imports like
# `from services.quota_manager import ...` and `from utils.isbn import ...` work
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

import pytest

from fakes import FakeRedis


@pytest.fixture
def fake_redis():
    """Fresh in-memory key-value store."""
    return FakeRedis()


@pytest.fixture(scope="session")
def pg_engine():
    """
    Real PostgreSQL engine with migrations applied (integration tests only).

    Requires DATABASE_URL; skips otherwise.
    """
    import os

    if not os.getenv('DATABASE_URL'):
        pytest.skip("DATABASE_URL not set")

    from config import get_database_url
    from db.engine import dispose_engines, get_engine
    from scripts.run_migrations import run

    run(get_database_url())
    engine = get_engine("job")
    yield engine
    dispose_engines()
