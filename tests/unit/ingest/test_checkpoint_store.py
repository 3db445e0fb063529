"""
Unit tests for the SQLite checkpoint ledger.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from ingest.core.exceptions import StaleCheckpointError
from ingest.core.models import CheckpointRecord
from ingest.state import SqliteCheckpointStore, create_checkpoint_store


PK = "character#1009685"
SK = "endpoint#comics"


def _checkpoint(offset, last_modified=None, etag=None):
    return CheckpointRecord(
        partition_key=PK,
        sort_key=SK,
        offset=offset,
        last_modified=last_modified,
        etag=etag,
    )


class TestCheckpointRecord:
    """Tests for the watermark comparison."""

    def test_lower_offset_is_behind(self):
        assert _checkpoint(100).is_behind(_checkpoint(200))
        assert not _checkpoint(200).is_behind(_checkpoint(100))

    def test_equal_offset_is_not_behind(self):
        assert not _checkpoint(200).is_behind(_checkpoint(200))

    def test_older_last_modified_is_behind(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        older = _checkpoint(300, last_modified=now - timedelta(hours=1))
        newer = _checkpoint(300, last_modified=now)
        assert older.is_behind(newer)
        assert not newer.is_behind(older)

    def test_missing_last_modified_is_not_compared(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert not _checkpoint(300).is_behind(_checkpoint(300, last_modified=now))


class TestSqliteCheckpointStore:
    """Tests for SqliteCheckpointStore."""

    def test_missing_checkpoint_returns_none(self, checkpoint_store):
        assert checkpoint_store.get_checkpoint(PK, SK) is None

    def test_first_commit_succeeds(self, checkpoint_store):
        committed = checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(100, etag="abc"))

        assert committed.offset == 100
        stored = checkpoint_store.get_checkpoint(PK, SK)
        assert stored.offset == 100
        assert stored.etag == "abc"

    def test_commit_advances(self, checkpoint_store):
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(100))
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(300))

        assert checkpoint_store.get_checkpoint(PK, SK).offset == 300

    def test_regressing_commit_is_rejected(self, checkpoint_store):
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(300))

        with pytest.raises(StaleCheckpointError) as exc_info:
            checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(200))

        assert exc_info.value.partition_key == PK
        assert exc_info.value.sort_key == SK
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 300

    def test_last_modified_round_trips_as_utc(self, checkpoint_store):
        modified = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(10, last_modified=modified))

        stored = checkpoint_store.get_checkpoint(PK, SK)
        assert stored.last_modified == modified
        assert stored.updated_at.tzinfo is not None

    def test_completion_marker_round_trips(self, checkpoint_store):
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(10))
        assert not checkpoint_store.get_checkpoint(PK, SK).complete

        finished = _checkpoint(25)
        finished.complete = True
        checkpoint_store.commit_checkpoint(PK, SK, finished)

        assert checkpoint_store.get_checkpoint(PK, SK).complete
        assert checkpoint_store.list_checkpoints(PK)[0].complete

    def test_partitions_are_independent(self, checkpoint_store):
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(300))
        checkpoint_store.commit_checkpoint(PK, "endpoint#series", CheckpointRecord(PK, "endpoint#series", offset=5))

        assert checkpoint_store.get_checkpoint(PK, "endpoint#series").offset == 5
        listed = checkpoint_store.list_checkpoints(PK)
        assert [c.sort_key for c in listed] == ["endpoint#comics", "endpoint#series"]

    def test_list_filters_by_partition_key(self, checkpoint_store):
        checkpoint_store.commit_checkpoint(PK, SK, _checkpoint(1))
        checkpoint_store.commit_checkpoint("character#1", SK, CheckpointRecord("character#1", SK, offset=2))

        assert len(checkpoint_store.list_checkpoints()) == 2
        assert [c.partition_key for c in checkpoint_store.list_checkpoints("character#1")] == ["character#1"]

    def test_concurrent_commits_never_regress(self, tmp_path):
        """Racing writers: exactly the highest proposal survives."""
        store = SqliteCheckpointStore(tmp_path / "ledger.db")
        offsets = list(range(1, 41))
        stale = []
        barrier = threading.Barrier(len(offsets))

        def commit(offset):
            barrier.wait()
            try:
                store.commit_checkpoint(PK, SK, _checkpoint(offset))
            except StaleCheckpointError:
                stale.append(offset)

        threads = [threading.Thread(target=commit, args=(o,)) for o in offsets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_checkpoint(PK, SK).offset == 40
        assert 40 not in stale
        store.close()

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "state" / "checkpoints.db"
        store = SqliteCheckpointStore(path)
        store.commit_checkpoint(PK, SK, _checkpoint(300))
        store.close()

        reopened = SqliteCheckpointStore(path)
        assert reopened.get_checkpoint(PK, SK).offset == 300
        reopened.close()

    def test_ledger_without_completion_column_is_upgraded(self, tmp_path):
        path = tmp_path / "checkpoints.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE checkpoints (partition_key TEXT NOT NULL, sort_key TEXT NOT NULL, "
            "offset_value INTEGER NOT NULL DEFAULT 0, last_modified TEXT, etag TEXT, "
            "updated_at TEXT NOT NULL, PRIMARY KEY (partition_key, sort_key))"
        )
        conn.execute(
            "INSERT INTO checkpoints VALUES (?, ?, 300, NULL, NULL, ?)",
            (PK, SK, "2024-05-01T12:00:00+00:00"),
        )
        conn.commit()
        conn.close()

        store = SqliteCheckpointStore(path)
        stored = store.get_checkpoint(PK, SK)

        assert stored.offset == 300
        assert not stored.complete
        store.close()


class TestCreateCheckpointStore:
    """Tests for the backend factory."""

    def test_sqlite_backend(self, tmp_path):
        store = create_checkpoint_store(backend="sqlite", db_path=tmp_path / "c.db")
        assert isinstance(store, SqliteCheckpointStore)
        store.close()

    def test_backend_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_BACKEND", "SQLite")
        store = create_checkpoint_store(db_path=tmp_path / "c.db")
        assert isinstance(store, SqliteCheckpointStore)
        store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_checkpoint_store(backend="dynamo")
