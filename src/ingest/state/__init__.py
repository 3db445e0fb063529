"""
Checkpoint ledger implementations.

The production backend is SQL Server (SqlServerCheckpointStore); SQLite
(SqliteCheckpointStore) serves single-host runs and tests.

To select backend, set the DB_BACKEND environment variable:
    - DB_BACKEND=sqlite (default)
    - DB_BACKEND=sqlserver
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..core.checkpoint_store import CheckpointStore
from .sqlite_store import SqliteCheckpointStore


logger = logging.getLogger(__name__)


# Lazy import to avoid import errors when pyodbc is missing
def _get_sqlserver_store():
    from .sqlserver_store import SqlServerCheckpointStore
    return SqlServerCheckpointStore


def create_checkpoint_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "MarvelIndex",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "ingest",
    trust_server_certificate: bool = True,
    auto_init: bool = True,
) -> CheckpointStore:
    """
    Factory function to create the appropriate checkpoint store.

    Args:
        backend: Backend type ('sqlite' or 'sqlserver'). Defaults to DB_BACKEND env var or 'sqlite'.

        SQLite options:
            db_path: Path to SQLite database file

        SQL Server options:
            connection_string: Full ODBC connection string
            host, port, database, username, password, driver: Connection parts
            schema: Schema name for tables
            trust_server_certificate: Trust self-signed certs
            auto_init: Auto-create schema/tables

    Returns:
        CheckpointStore instance

    Raises:
        ValueError: If backend is not recognized
        ImportError: If required dependencies are missing
    """
    if backend is None:
        backend = os.environ.get("DB_BACKEND", "sqlite").lower()

    if backend == "sqlite":
        if db_path is None:
            db_path = Path("local/state/checkpoints.db")
        return SqliteCheckpointStore(db_path=db_path, auto_init=auto_init)

    elif backend == "sqlserver":
        SqlServerCheckpointStore = _get_sqlserver_store()

        if password is None:
            password = os.environ.get("INGEST_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")

        if connection_string is None:
            connection_string = os.environ.get("INGEST_SQLSERVER_STATE_CONN_STR")

        return SqlServerCheckpointStore(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
        )

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


__all__ = ["SqliteCheckpointStore", "create_checkpoint_store"]
