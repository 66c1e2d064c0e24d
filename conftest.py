import os

import pytest

# Services an integration test may need; all of them must be configured
INTEGRATION_ENV = ("DATABASE_URL",)


def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests marked as integration (requires PostgreSQL with pg_trgm).",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: tests that need a live PostgreSQL database (advisory locks, merge upserts)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        missing = [name for name in INTEGRATION_ENV if not os.getenv(name)]
        if not missing:
            return
        reason = f"integration test needs {', '.join(missing)}"
    else:
        reason = "integration test (use --run-integration to run)"

    skip_integration = pytest.mark.skip(reason=reason)
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
