"""
SQLite-based checkpoint ledger.

Suitable for single-host runs, local development and tests. Conditional
commits run inside ``BEGIN IMMEDIATE`` transactions so that concurrent
writers (threads or processes sharing the database file) serialize on the
compare-and-set.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from ..core.checkpoint_store import CheckpointStore
from ..core.exceptions import StaleCheckpointError, TransientIOError
from ..core.models import CheckpointRecord
from ..core.utils import parse_datetime


logger = logging.getLogger(__name__)


class SqliteCheckpointStore(CheckpointStore):
    """
    SQLite-based implementation of the checkpoint ledger.

    One row per (partition_key, sort_key); rows are overwritten in place and
    never deleted.
    """

    def __init__(self, db_path: Union[str, Path], auto_init: bool = True, timeout: float = 30.0):
        """
        Initialize the SQLite checkpoint store.

        Args:
            db_path: Path to the SQLite database file (":memory:" for a
                private in-memory ledger)
            auto_init: Whether to create tables automatically
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self.timeout = timeout
        self.conn = None
        self._lock = threading.RLock()
        self._connect()

        if auto_init:
            self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly
        self.conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to SQLite checkpoint store: {self.db_path}")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    partition_key TEXT NOT NULL,
                    sort_key TEXT NOT NULL,
                    offset_value INTEGER NOT NULL DEFAULT 0,
                    last_modified TEXT,
                    etag TEXT,
                    complete INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (partition_key, sort_key)
                )
            """)
            columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(checkpoints)")}
            if "complete" not in columns:
                self.conn.execute("ALTER TABLE checkpoints ADD COLUMN complete INTEGER NOT NULL DEFAULT 0")
        logger.debug("Initialized checkpoint store schema")

    def get_checkpoint(self, partition_key: str, sort_key: str) -> Optional[CheckpointRecord]:
        """
        Get the committed checkpoint for a partition.

        Args:
            partition_key: Partition key
            sort_key: Sort key within the partition

        Returns:
            CheckpointRecord if found, None otherwise
        """
        try:
            with self._lock:
                row = self.conn.execute("""
                    SELECT * FROM checkpoints
                    WHERE partition_key = ? AND sort_key = ?
                """, (partition_key, sort_key)).fetchone()
        except sqlite3.OperationalError as e:
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

        Args:
            partition_key: Partition key
            sort_key: Sort key within the partition
            proposed: Proposed new watermark

        Returns:
            The committed CheckpointRecord

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
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise TransientIOError(f"Checkpoint ledger busy: {e}") from e

            try:
                row = self.conn.execute("""
                    SELECT * FROM checkpoints
                    WHERE partition_key = ? AND sort_key = ?
                """, (partition_key, sort_key)).fetchone()

                if row is not None:
                    current = self._row_to_checkpoint(row)
                    if committed.is_behind(current):
                        raise StaleCheckpointError(
                            f"Checkpoint for {partition_key}/{sort_key} already at "
                            f"offset={current.offset}, rejecting offset={committed.offset}",
                            partition_key=partition_key,
                            sort_key=sort_key,
                        )

                self.conn.execute("""
                    INSERT INTO checkpoints (
                        partition_key, sort_key, offset_value, last_modified, etag, complete, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (partition_key, sort_key) DO UPDATE SET
                        offset_value = excluded.offset_value,
                        last_modified = excluded.last_modified,
                        etag = excluded.etag,
                        complete = excluded.complete,
                        updated_at = excluded.updated_at
                """, (
                    partition_key,
                    sort_key,
                    committed.offset,
                    committed.last_modified.isoformat() if committed.last_modified else None,
                    committed.etag,
                    int(committed.complete),
                    committed.updated_at.isoformat(),
                ))
                self.conn.execute("COMMIT")

            except StaleCheckpointError:
                self.conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                logger.error(f"Failed to commit checkpoint: {e}")
                raise TransientIOError(f"Checkpoint commit failed: {e}") from e

        logger.debug(
            f"Committed checkpoint {partition_key}/{sort_key} offset={committed.offset}"
        )
        return committed

    def list_checkpoints(self, partition_key: Optional[str] = None) -> List[CheckpointRecord]:
        """List committed checkpoints, optionally for one partition key."""
        query = "SELECT * FROM checkpoints"
        params = ()
        if partition_key is not None:
            query += " WHERE partition_key = ?"
            params = (partition_key,)
        query += " ORDER BY partition_key, sort_key"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def _row_to_checkpoint(self, row: sqlite3.Row) -> CheckpointRecord:
        """Convert a database row to a CheckpointRecord."""
        return CheckpointRecord(
            partition_key=row["partition_key"],
            sort_key=row["sort_key"],
            offset=row["offset_value"],
            last_modified=parse_datetime(row["last_modified"]),
            etag=row["etag"],
            complete=bool(row["complete"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite checkpoint store connection")
