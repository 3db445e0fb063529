"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
import uuid
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    password = os.environ.get("INGEST_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
    if not password:
        return False

    try:
        import pyodbc

        host = os.environ.get("INGEST_SQLSERVER_HOST", "localhost")
        port = int(os.environ.get("INGEST_SQLSERVER_PORT", "1433"))
        database = os.environ.get("INGEST_SQLSERVER_DATABASE",
                                  os.environ.get("MSSQL_DATABASE", "MarvelIndex"))
        username = os.environ.get("INGEST_SQLSERVER_USER", "sa")
        driver = os.environ.get("INGEST_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")

        conn_str = (
            f"Driver={{{driver}}};"
            f"Server={host},{port};"
            f"Database={database};"
            f"UID={username};"
            f"PWD={password};"
            f"TrustServerCertificate=yes"
        )

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def sqlserver_config() -> dict:
    """Session-scoped fixture providing SQL Server connection configuration."""
    return {
        "host": os.environ.get("INGEST_SQLSERVER_HOST", "localhost"),
        "port": int(os.environ.get("INGEST_SQLSERVER_PORT", "1433")),
        "database": os.environ.get("INGEST_SQLSERVER_DATABASE",
                                   os.environ.get("MSSQL_DATABASE", "MarvelIndex")),
        "username": os.environ.get("INGEST_SQLSERVER_USER", "sa"),
        "password": os.environ.get("INGEST_SQLSERVER_PASSWORD",
                                   os.environ.get("MSSQL_SA_PASSWORD")),
        "driver": os.environ.get("INGEST_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server"),
        "schema": os.environ.get("INGEST_SQLSERVER_SCHEMA", "test_ingest"),
    }


@pytest.fixture
def test_partition_key() -> str:
    """Unique partition key so SQL Server tests never collide."""
    return f"test#{uuid.uuid4().hex[:8]}"


@pytest.fixture
def memory_store():
    """Fresh in-memory object store."""
    from ingest.storage import InMemoryObjectStore

    return InMemoryObjectStore()


@pytest.fixture
def record_store(memory_store):
    """Record store over the in-memory object store."""
    from ingest.storage import CanonicalRecordStore

    return CanonicalRecordStore(memory_store)


@pytest.fixture
def checkpoint_store():
    """Private in-memory SQLite checkpoint ledger."""
    from ingest.state import SqliteCheckpointStore

    store = SqliteCheckpointStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def synthetic_comics():
    """25 predictable comics for character 1009685."""
    from ingest.connectors import create_synthetic_comics

    return create_synthetic_comics(count=25)


@pytest.fixture
def no_sleep_retry():
    """Retry config that never waits."""
    from ingest.utils.retry import RetryConfig

    return RetryConfig(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)
