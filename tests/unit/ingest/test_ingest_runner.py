"""
Unit tests for the ingest runner.

These tests drive the runner with the static fetcher, an in-memory object
store and a SQLite ledger, so no network or database server is needed.
"""

from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from unittest.mock import MagicMock

import pytest

from ingest.connectors import (
    SYNTHETIC_BASE_URI,
    HttpRecordFetcher,
    StaticRecordFetcher,
    create_synthetic_comics,
)
from ingest.core.exceptions import TransientIOError, UpstreamError
from ingest.core.models import CheckpointRecord, IngestPartition, Stage
from ingest.runner import IngestRunner, RunMetrics, RunnerConfig
from ingest.state import SqliteCheckpointStore


PK = "character#1009685"
SK = "endpoint#comics"
URI = f"{SYNTHETIC_BASE_URI}/characters/1009685/comics"


@pytest.fixture
def partition():
    return IngestPartition(partition_key=PK, sort_key=SK, request_uri=URI, entity_type="comic")


def _runner(checkpoint_store, fetcher, record_store, retry, **config):
    return IngestRunner(
        checkpoint_store=checkpoint_store,
        fetcher=fetcher,
        record_store=record_store,
        config=RunnerConfig(retry=retry, **config),
    )


class TestRunnerConfig:
    """Tests for RunnerConfig."""

    def test_default_values(self):
        config = RunnerConfig()

        assert config.page_size == 100
        assert config.max_workers == 4
        assert config.max_pages is None
        assert config.retry.max_attempts == 3

    def test_from_dict(self):
        config = RunnerConfig.from_dict({"page_size": 20, "max_pages": "3", "retry": {"max_attempts": 5}})

        assert config.page_size == 20
        assert config.max_pages == 3
        assert config.retry.max_attempts == 5

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("INGEST_PAGE_SIZE", "50")
        monkeypatch.setenv("INGEST_MAX_PAGES", "2")

        config = RunnerConfig.from_env()
        assert config.page_size == 50
        assert config.max_pages == 2


class TestIngestPartition:
    """Tests for the single-partition loop."""

    def test_full_crawl_commits_final_offset(
        self, checkpoint_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=10)

        result = runner.ingest_partition(partition, run_id="run-1")

        assert result.succeeded
        assert result.pages_fetched == 3
        assert result.items_written == 25
        assert result.end_offset == 25
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 25

        records = list(record_store.read(Stage.RAW))
        assert [r.source_id for r in records] == [str(40000 + i) for i in range(25)]
        assert all(r.entity_type == "comic" and r.run_id == "run-1" for r in records)

    def test_resumes_from_committed_offset(self, checkpoint_store, record_store, partition, no_sleep_retry):
        fetcher = StaticRecordFetcher({URI: create_synthetic_comics(count=400)})
        checkpoint_store.commit_checkpoint(PK, SK, CheckpointRecord(PK, SK, offset=300))
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=100)

        result = runner.ingest_partition(partition)

        assert fetcher.request_history[0].offset == 300
        assert result.start_offset == 300
        assert result.items_written == 100
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 400
        ids = [r.source_id for r in record_store.read(Stage.RAW)]
        assert ids[0] == "40300"
        assert ids[-1] == "40399"

    def test_replay_after_completion_writes_nothing(
        self, checkpoint_store, memory_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=10)
        runner.ingest_partition(partition)
        raw_keys = memory_store.list("raw/")

        result = runner.ingest_partition(partition)

        assert result.items_written == 0
        assert memory_store.list("raw/") == raw_keys
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 25

    def test_not_modified_stops_without_writing(
        self, checkpoint_store, memory_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics}, etags={URI: '"v1"'})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=10)
        first = runner.ingest_partition(partition)
        assert first.items_written == 25
        assert checkpoint_store.get_checkpoint(PK, SK).etag == '"v1"'

        second = runner.ingest_partition(partition)

        assert second.not_modified
        assert second.items_written == 0
        assert fetcher.request_history[-1].etag == '"v1"'
        assert len(memory_store.list("raw/")) == 3

    def test_max_pages_limits_progress(
        self, checkpoint_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=10, max_pages=1)

        result = runner.ingest_partition(partition)
        assert result.pages_fetched == 1
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 10

        runner.ingest_partition(partition)
        assert fetcher.request_history[-1].offset == 10
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 20

    def test_transient_fetch_failures_are_retried(
        self, checkpoint_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics}, fail_first=2)
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=25)

        result = runner.ingest_partition(partition)

        assert result.items_written == 25
        assert len(fetcher.request_history) == 3

    def test_exhausted_retries_raise_without_advancing(
        self, checkpoint_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        fetcher = StaticRecordFetcher({URI: synthetic_comics}, fail_first=5)
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry)

        with pytest.raises(TransientIOError):
            runner.ingest_partition(partition)
        assert checkpoint_store.get_checkpoint(PK, SK) is None

    def test_failed_write_does_not_advance_checkpoint(
        self, checkpoint_store, memory_store, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        def broken_put(key, data, overwrite=False):
            raise TransientIOError("disk unavailable")

        memory_store.put = broken_put
        fetcher = StaticRecordFetcher({URI: synthetic_comics})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry)

        with pytest.raises(TransientIOError):
            runner.ingest_partition(partition)
        assert checkpoint_store.get_checkpoint(PK, SK) is None

    def test_stale_commit_resumes_from_winner(self, record_store, partition, synthetic_comics, no_sleep_retry):
        class RacingStore(SqliteCheckpointStore):
            """Lets a phantom competitor commit offset 20 just before the first commit."""

            raced = False

            def commit_checkpoint(self, partition_key, sort_key, proposed):
                if not self.raced:
                    self.raced = True
                    super().commit_checkpoint(
                        partition_key, sort_key, CheckpointRecord(partition_key, sort_key, offset=20)
                    )
                return super().commit_checkpoint(partition_key, sort_key, proposed)

        store = RacingStore(":memory:")
        fetcher = StaticRecordFetcher({URI: synthetic_comics})
        runner = _runner(store, fetcher, record_store, no_sleep_retry, page_size=10)

        result = runner.ingest_partition(partition)

        assert result.stale_recoveries == 1
        assert [r.offset for r in fetcher.request_history] == [0, 20]
        assert store.get_checkpoint(PK, SK).offset == 25
        # The losing page stays in the raw stage; dedupe absorbs it downstream
        assert result.items_written == 15
        store.close()


MODIFIED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class ConditionalUpstream:
    """
    Session double for an upstream that honors If-Modified-Since.

    Any request whose If-Modified-Since is at or after the collection's
    Last-Modified gets a 304, whatever its offset.
    """

    def __init__(self, count=1000, modified=MODIFIED):
        self.items = create_synthetic_comics(count=count)
        self.modified = modified
        self.requests = []

    def get(self, uri, params=None, headers=None, timeout=None):
        self.requests.append((params["offset"], dict(headers)))
        response = MagicMock()
        since = headers.get("If-Modified-Since")
        if since and parsedate_to_datetime(since) >= self.modified:
            response.status_code = 304
            response.headers = {}
            return response

        offset, limit = params["offset"], params["limit"]
        page = self.items[offset:offset + limit]
        response.status_code = 200
        response.headers = {"Last-Modified": format_datetime(self.modified, usegmt=True)}
        response.json.return_value = {
            "data": {"offset": offset, "limit": limit, "total": len(self.items), "count": len(page), "results": page}
        }
        return response

    def close(self):
        pass


class TestConditionalRequests:
    """Tests for the runner against an HTTP upstream that answers 304."""

    def test_fresh_crawl_pages_to_the_end(self, checkpoint_store, record_store, partition, no_sleep_retry):
        upstream = ConditionalUpstream()
        runner = _runner(checkpoint_store, HttpRecordFetcher(session=upstream), record_store, no_sleep_retry)

        result = runner.ingest_partition(partition)

        assert not result.not_modified
        assert result.pages_fetched == 10
        assert result.items_written == 1000
        checkpoint = checkpoint_store.get_checkpoint(PK, SK)
        assert checkpoint.offset == 1000
        assert checkpoint.complete
        assert checkpoint.last_modified == MODIFIED
        assert all("If-Modified-Since" not in headers for _, headers in upstream.requests)

    def test_resume_mid_crawl_ignores_stored_watermark(
        self, checkpoint_store, record_store, partition, no_sleep_retry
    ):
        checkpoint_store.commit_checkpoint(PK, SK, CheckpointRecord(PK, SK, offset=300, last_modified=MODIFIED))
        upstream = ConditionalUpstream()
        runner = _runner(checkpoint_store, HttpRecordFetcher(session=upstream), record_store, no_sleep_retry)

        result = runner.ingest_partition(partition)

        assert not result.not_modified
        assert result.items_written == 700
        assert upstream.requests[0][0] == 300
        assert "If-Modified-Since" not in upstream.requests[0][1]
        assert checkpoint_store.get_checkpoint(PK, SK).offset == 1000

    def test_recheck_after_complete_crawl_is_conditional(
        self, checkpoint_store, memory_store, record_store, partition, no_sleep_retry
    ):
        upstream = ConditionalUpstream(count=250)
        runner = _runner(checkpoint_store, HttpRecordFetcher(session=upstream), record_store, no_sleep_retry)
        runner.ingest_partition(partition)
        raw_keys = memory_store.list("raw/")

        second = runner.ingest_partition(partition)

        assert second.not_modified
        assert second.pages_fetched == 1
        assert second.items_written == 0
        offset, headers = upstream.requests[-1]
        assert offset == 250
        assert parsedate_to_datetime(headers["If-Modified-Since"]) == MODIFIED
        assert memory_store.list("raw/") == raw_keys

    def test_recheck_picks_up_appended_items(self, checkpoint_store, record_store, partition, no_sleep_retry):
        upstream = ConditionalUpstream(count=250)
        runner = _runner(checkpoint_store, HttpRecordFetcher(session=upstream), record_store, no_sleep_retry)
        runner.ingest_partition(partition)

        upstream.items = create_synthetic_comics(count=400)
        upstream.modified = datetime(2024, 6, 1, tzinfo=timezone.utc)
        result = runner.ingest_partition(partition)

        assert not result.not_modified
        assert result.items_written == 150
        checkpoint = checkpoint_store.get_checkpoint(PK, SK)
        assert checkpoint.offset == 400
        assert checkpoint.complete
        # Only the re-check carried the old watermark
        assert ["If-Modified-Since" in headers for _, headers in upstream.requests[-2:]] == [True, False]

    def test_unsolicited_304_fails_without_advancing(
        self, checkpoint_store, record_store, partition, no_sleep_retry
    ):
        session = MagicMock()
        session.get.return_value.status_code = 304
        runner = _runner(checkpoint_store, HttpRecordFetcher(session=session), record_store, no_sleep_retry)

        with pytest.raises(UpstreamError):
            runner.ingest_partition(partition)
        assert checkpoint_store.get_checkpoint(PK, SK) is None


class TestRun:
    """Tests for multi-partition runs."""

    def test_sequential_run_metrics(self, checkpoint_store, record_store, synthetic_comics, no_sleep_retry):
        partitions = [
            IngestPartition(f"character#{n}", SK, f"{URI}/{n}", entity_type="comic")
            for n in (1, 2)
        ]
        fetcher = StaticRecordFetcher({p.request_uri: synthetic_comics for p in partitions})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=25, max_workers=1)

        metrics = runner.run(partitions, run_id="run-seq")

        assert isinstance(metrics, RunMetrics)
        assert metrics.status == "completed"
        assert metrics.partitions_total == 2
        assert metrics.partitions_succeeded == 2
        assert metrics.items_written == 50
        assert metrics.ended_at >= metrics.started_at
        assert metrics.to_dict()["partitions"][0]["end_offset"] == 25

    def test_failed_partition_does_not_stop_others(
        self, checkpoint_store, record_store, synthetic_comics, no_sleep_retry
    ):
        good = IngestPartition("character#1", SK, f"{URI}/1")
        missing = IngestPartition("character#2", SK, f"{URI}/missing")
        fetcher = StaticRecordFetcher({good.request_uri: synthetic_comics})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry, page_size=25, max_workers=1)

        metrics = runner.run([missing, good])

        assert metrics.status == "completed_with_errors"
        assert metrics.partitions_failed == 1
        assert metrics.partitions_succeeded == 1
        failed = [p for p in metrics.partitions if not p.succeeded][0]
        assert failed.partition_key == "character#2"
        assert "No dataset registered" in failed.error

    def test_concurrent_run_over_partitions(self, tmp_path, record_store, synthetic_comics, no_sleep_retry):
        store = SqliteCheckpointStore(tmp_path / "ledger.db")
        partitions = [
            IngestPartition(f"character#{n}", SK, f"{URI}/{n}", entity_type="comic")
            for n in range(6)
        ]
        fetcher = StaticRecordFetcher({p.request_uri: synthetic_comics for p in partitions})
        runner = _runner(store, fetcher, record_store, no_sleep_retry, page_size=7, max_workers=4)

        metrics = runner.run(partitions)

        assert metrics.partitions_succeeded == 6
        assert metrics.items_written == 150
        assert all(store.get_checkpoint(p.partition_key, SK).offset == 25 for p in partitions)
        store.close()

    def test_workers_racing_on_one_partition_converge(
        self, tmp_path, record_store, partition, synthetic_comics, no_sleep_retry
    ):
        store = SqliteCheckpointStore(tmp_path / "ledger.db")
        fetcher = StaticRecordFetcher({URI: synthetic_comics}, simulate_latency_ms=5)
        runner = _runner(store, fetcher, record_store, no_sleep_retry, page_size=5, max_workers=3)

        metrics = runner.run([partition, partition, partition])

        assert metrics.partitions_failed == 0
        assert store.get_checkpoint(PK, SK).offset == 25
        unique = {r.dedupe_key for r in record_store.read(Stage.RAW)}
        assert len(unique) == 25
        store.close()

    def test_close_releases_resources(self, checkpoint_store, record_store, no_sleep_retry):
        fetcher = StaticRecordFetcher({})
        runner = _runner(checkpoint_store, fetcher, record_store, no_sleep_retry)

        assert runner.get_checkpoints() == []
        runner.close()
        assert checkpoint_store.conn is None
