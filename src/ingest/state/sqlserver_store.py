"""
SQL Server-based checkpoint ledger.

This is the production backend. The conditional commit reads the current
row under UPDLOCK/HOLDLOCK inside a transaction, so concurrent runners on
different hosts serialize on the same partition row.
"""

import logging
import re
import threading
from datetime import datetime, timezone
from typing import List, Optional

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.checkpoint_store import CheckpointStore
from ..core.exceptions import StaleCheckpointError, TransientIOError
from ..core.models import CheckpointRecord
from ..core.utils import ensure_utc


logger = logging.getLogger(__name__)


class SqlServerCheckpointStore(CheckpointStore):
    """
    SQL Server-based implementation of the checkpoint ledger.

    Features:
    - Row-level locking for concurrent runners
    - ACID conditional commits
    - One row per (partition_key, sort_key), updated in place
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "MarvelIndex",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "ingest",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
    ):
        """
        Initialize the SQL Server checkpoint store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'ingest')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates (for local Docker)
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerCheckpointStore. "
                "Install with: pip install pyodbc"
            )

        if not self._is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        self.schema = schema

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        self._lock = threading.Lock()
        self.conn = None
        self._connect()

        if auto_init:
            self._init_schema()

    @staticmethod
    def _is_valid_identifier(name: str) -> bool:
        """
        Validate that a name is a safe SQL identifier.

        Must start with a letter or underscore, contain only letters, digits
        and underscores, and be at most 128 characters.
        """
        if not name or len(name) > 128:
            return False
        return re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name) is not None

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self.conn = pyodbc.connect(self.connection_string, autocommit=False)
            logger.debug(f"Connected to SQL Server checkpoint store (schema: {self.schema})")
        except pyodbc.Error as e:
            # The connection string carries the password; never log it
            logger.error(f"Failed to connect to SQL Server: {e.__class__.__name__}")
            raise TransientIOError("Failed to connect to SQL Server checkpoint store") from e

    def _init_schema(self) -> None:
        """Initialize database schema and tables."""
        with self._lock:
            cursor = self.conn.cursor()
            # Schema name is validated in __init__; CREATE SCHEMA cannot take parameters.
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
                BEGIN
                    EXEC('CREATE SCHEMA [{self.schema}]')
                END
            """, (self.schema,))

            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.tables t
                               JOIN sys.schemas s ON t.schema_id = s.schema_id
                               WHERE t.name = 'checkpoints' AND s.name = ?)
                BEGIN
                    CREATE TABLE [{self.schema}].[checkpoints] (
                        partition_key NVARCHAR(400) NOT NULL,
                        sort_key NVARCHAR(400) NOT NULL,
                        offset_value BIGINT NOT NULL DEFAULT 0,
                        last_modified DATETIME2 NULL,
                        etag NVARCHAR(400) NULL,
                        complete BIT NOT NULL DEFAULT 0,
                        updated_at DATETIME2 NOT NULL,
                        CONSTRAINT PK_checkpoints PRIMARY KEY (partition_key, sort_key)
                    )
                END
            """, (self.schema,))

            cursor.execute(f"""
                IF COL_LENGTH('[{self.schema}].[checkpoints]', 'complete') IS NULL
                BEGIN
                    ALTER TABLE [{self.schema}].[checkpoints] ADD complete BIT NOT NULL DEFAULT 0
                END
            """)
            self.conn.commit()
        logger.debug("Initialized SQL Server checkpoint schema")

    def get_checkpoint(self, partition_key: str, sort_key: str) -> Optional[CheckpointRecord]:
        """Get the committed checkpoint for a partition."""
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute(f"""
                    SELECT partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at
                    FROM [{self.schema}].[checkpoints]
                    WHERE partition_key = ? AND sort_key = ?
                """, (partition_key, sort_key))
                row = cursor.fetchone()
                self.conn.commit()
            except pyodbc.OperationalError as e:
                raise TransientIOError(f"Checkpoint read failed: {e}") from e

        return self._row_to_checkpoint(row) if row else None

    def commit_checkpoint(
        self,
        partition_key: str,
        sort_key: str,
        proposed: CheckpointRecord,
    ) -> CheckpointRecord:
        """
        Atomically advance the checkpoint for a partition.

        Raises:
            StaleCheckpointError: If the proposed watermark regresses
        """
        committed = CheckpointRecord(
            partition_key=partition_key,
            sort_key=sort_key,
            offset=proposed.offset,
            last_modified=proposed.last_modified,
            etag=proposed.etag,
            complete=proposed.complete,
            updated_at=datetime.now(timezone.utc),
        )

        with self._lock:
            cursor = self.conn.cursor()
            try:
                cursor.execute(f"""
                    SELECT partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at
                    FROM [{self.schema}].[checkpoints] WITH (UPDLOCK, HOLDLOCK)
                    WHERE partition_key = ? AND sort_key = ?
                """, (partition_key, sort_key))
                row = cursor.fetchone()

                if row is not None:
                    current = self._row_to_checkpoint(row)
                    if committed.is_behind(current):
                        raise StaleCheckpointError(
                            f"Checkpoint for {partition_key}/{sort_key} already at "
                            f"offset={current.offset}, rejecting offset={committed.offset}",
                            partition_key=partition_key,
                            sort_key=sort_key,
                        )
                    cursor.execute(f"""
                        UPDATE [{self.schema}].[checkpoints]
                        SET offset_value = ?, last_modified = ?, etag = ?, complete = ?, updated_at = ?
                        WHERE partition_key = ? AND sort_key = ?
                    """, (
                        committed.offset,
                        self._to_db_datetime(committed.last_modified),
                        committed.etag,
                        int(committed.complete),
                        self._to_db_datetime(committed.updated_at),
                        partition_key,
                        sort_key,
                    ))
                else:
                    cursor.execute(f"""
                        INSERT INTO [{self.schema}].[checkpoints]
                        (partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        partition_key,
                        sort_key,
                        committed.offset,
                        self._to_db_datetime(committed.last_modified),
                        committed.etag,
                        int(committed.complete),
                        self._to_db_datetime(committed.updated_at),
                    ))

                self.conn.commit()

            except StaleCheckpointError:
                self.conn.rollback()
                raise
            except pyodbc.IntegrityError as e:
                # Lost an insert race against another runner
                self.conn.rollback()
                raise StaleCheckpointError(
                    f"Concurrent insert for {partition_key}/{sort_key}",
                    partition_key=partition_key,
                    sort_key=sort_key,
                ) from e
            except pyodbc.Error as e:
                self.conn.rollback()
                logger.error(f"Failed to commit checkpoint: {e}")
                raise TransientIOError(f"Checkpoint commit failed: {e}") from e

        logger.debug(
            f"Committed checkpoint {partition_key}/{sort_key} offset={committed.offset}"
        )
        return committed

    def list_checkpoints(self, partition_key: Optional[str] = None) -> List[CheckpointRecord]:
        """List committed checkpoints, optionally for one partition key."""
        query = f"""
            SELECT partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at
            FROM [{self.schema}].[checkpoints]
        """
        params = []
        if partition_key is not None:
            query += " WHERE partition_key = ?"
            params.append(partition_key)
        query += " ORDER BY partition_key, sort_key"

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            self.conn.commit()
        return [self._row_to_checkpoint(row) for row in rows]

    @staticmethod
    def _to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
        """DATETIME2 columns store naive UTC."""
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def _row_to_checkpoint(self, row) -> CheckpointRecord:
        """Convert a database row to a CheckpointRecord."""
        partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at = row
        return CheckpointRecord(
            partition_key=partition_key,
            sort_key=sort_key,
            offset=int(offset_value),
            last_modified=ensure_utc(last_modified) if last_modified else None,
            etag=etag,
            complete=bool(complete),
            updated_at=ensure_utc(updated_at),
        )

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQL Server checkpoint store connection")
