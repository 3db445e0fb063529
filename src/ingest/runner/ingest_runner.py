"""
Main execution runner for the ingestion pipeline.

Each (partition_key, sort_key) pair is paged through independently:

1. Read the committed checkpoint and resume from its offset/watermarks
2. Fetch the next page (transient failures retried with backoff)
3. Write the page as one immutable raw record object
4. Conditionally advance the checkpoint

A page is only acknowledged after its records are durable, so a crash
between steps 3 and 4 causes a replay of that page, which downstream
stages absorb through checksum dedupe.
"""

import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.checkpoint_store import CheckpointStore
from ..core.exceptions import StaleCheckpointError, UpstreamError
from ..core.fetcher import RecordFetcher
from ..core.logging import CorrelationContext
from ..core.models import (
    CanonicalRecord,
    CheckpointRecord,
    FetchedPage,
    IngestPartition,
    PageRequest,
    Stage,
)
from ..storage.record_store import CanonicalRecordStore
from ..utils.retry import RetryConfig, retry_with_backoff


logger = logging.getLogger(__name__)


@dataclass
class RunnerConfig:
    """
    Configuration for the ingest runner.

    Attributes:
        page_size: Items requested per page
        max_workers: Partitions processed concurrently (1 = sequential)
        max_pages: Stop each partition after this many pages (None = unlimited)
        retry: Retry settings for fetch and write boundaries
    """
    page_size: int = 100
    max_workers: int = 4
    max_pages: Optional[int] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunnerConfig":
        """Create from the ``runner`` config section."""
        max_pages = data.get("max_pages")
        return cls(
            page_size=int(data.get("page_size", 100)),
            max_workers=int(data.get("max_workers", 4)),
            max_pages=int(max_pages) if max_pages is not None else None,
            retry=RetryConfig.from_dict(data.get("retry", {})),
        )

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Create from INGEST_* environment variables."""
        max_pages = os.environ.get("INGEST_MAX_PAGES")
        return cls(
            page_size=int(os.environ.get("INGEST_PAGE_SIZE", "100")),
            max_workers=int(os.environ.get("INGEST_MAX_WORKERS", "4")),
            max_pages=int(max_pages) if max_pages else None,
        )


@dataclass
class PartitionResult:
    """Outcome of ingesting one partition."""
    partition_key: str
    sort_key: str
    start_offset: int = 0
    end_offset: int = 0
    pages_fetched: int = 0
    items_written: int = 0
    object_keys: List[str] = field(default_factory=list)
    not_modified: bool = False
    stale_recoveries: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_key": self.partition_key,
            "sort_key": self.sort_key,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "pages_fetched": self.pages_fetched,
            "items_written": self.items_written,
            "object_keys": list(self.object_keys),
            "not_modified": self.not_modified,
            "stale_recoveries": self.stale_recoveries,
            "error": self.error,
        }


@dataclass
class RunMetrics:
    """Aggregate metrics for a run."""
    run_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    partitions_total: int = 0
    partitions_succeeded: int = 0
    partitions_failed: int = 0
    pages_fetched: int = 0
    items_written: int = 0
    stale_recoveries: int = 0
    status: str = "running"
    partitions: List[PartitionResult] = field(default_factory=list)

    def record(self, result: PartitionResult) -> None:
        """Fold one partition result into the totals."""
        self.partitions.append(result)
        self.pages_fetched += result.pages_fetched
        self.items_written += result.items_written
        self.stale_recoveries += result.stale_recoveries
        if result.succeeded:
            self.partitions_succeeded += 1
        else:
            self.partitions_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "partitions_total": self.partitions_total,
            "partitions_succeeded": self.partitions_succeeded,
            "partitions_failed": self.partitions_failed,
            "pages_fetched": self.pages_fetched,
            "items_written": self.items_written,
            "stale_recoveries": self.stale_recoveries,
            "status": self.status,
            "partitions": [p.to_dict() for p in self.partitions],
        }


class IngestRunner:
    """
    Orchestrates resumable, checkpointed ingestion of upstream partitions.

    Workers coordinate only through the checkpoint ledger's conditional
    commit. A worker that loses a commit race re-reads the ledger and
    continues from the winner's watermark.
    """

    def __init__(
        self,
        checkpoint_store: CheckpointStore,
        fetcher: RecordFetcher,
        record_store: CanonicalRecordStore,
        config: Optional[RunnerConfig] = None,
    ):
        """
        Initialize the ingest runner.

        Args:
            checkpoint_store: Ledger of per-partition progress
            fetcher: Upstream page fetcher
            record_store: Destination for raw records
            config: Runner configuration
        """
        self.checkpoint_store = checkpoint_store
        self.fetcher = fetcher
        self.record_store = record_store
        self.config = config or RunnerConfig()

    def run(
        self,
        partitions: List[IngestPartition],
        run_id: Optional[str] = None,
        max_workers: Optional[int] = None,
    ) -> RunMetrics:
        """
        Ingest a set of partitions.

        Per-partition failures are logged and collected into the returned
        metrics; they do not stop the other partitions.

        Args:
            partitions: Partitions to ingest
            run_id: Optional run identifier
            max_workers: Override the configured concurrency

        Returns:
            RunMetrics for the run
        """
        if run_id is None:
            run_id = str(uuid.uuid4())
        workers = max_workers if max_workers is not None else self.config.max_workers

        metrics = RunMetrics(
            run_id=run_id,
            started_at=datetime.now(timezone.utc),
            partitions_total=len(partitions),
        )

        logger.info(f"Starting ingestion run: {run_id}")
        logger.info(f"Partitions: {len(partitions)}, Workers: {workers}, Page size: {self.config.page_size}")

        if workers <= 1 or len(partitions) <= 1:
            for partition in partitions:
                metrics.record(self._run_partition(partition, run_id))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest-worker") as executor:
                futures = [
                    executor.submit(self._run_partition, partition, run_id)
                    for partition in partitions
                ]
                for future in as_completed(futures):
                    metrics.record(future.result())

        metrics.ended_at = datetime.now(timezone.utc)
        metrics.status = "completed" if metrics.partitions_failed == 0 else "completed_with_errors"

        logger.info(f"Run complete: {run_id}")
        logger.info(f"Metrics: {json.dumps({k: v for k, v in metrics.to_dict().items() if k != 'partitions'}, indent=2)}")
        return metrics

    def _run_partition(self, partition: IngestPartition, run_id: str) -> PartitionResult:
        """Run one partition, converting failures into a failed result."""
        worker_id = threading.current_thread().name
        with CorrelationContext(run_id=run_id, partition=partition.key, worker_id=worker_id, stage="raw"):
            try:
                return self.ingest_partition(partition, run_id=run_id)
            except Exception as e:
                logger.exception(f"Partition {partition.key} failed: {e}")
                return PartitionResult(
                    partition_key=partition.partition_key,
                    sort_key=partition.sort_key,
                    error=str(e),
                )

    def ingest_partition(self, partition: IngestPartition, run_id: Optional[str] = None) -> PartitionResult:
        """
        Page through one partition from its committed checkpoint.

        Args:
            partition: Partition to ingest
            run_id: Run identifier stamped on written records

        Returns:
            PartitionResult describing the progress made

        Raises:
            PipelineError: If fetching or writing fails after retries
        """
        pk, sk = partition.partition_key, partition.sort_key
        checkpoint = self.checkpoint_store.get_checkpoint(pk, sk)

        offset = checkpoint.offset if checkpoint else 0
        etag = checkpoint.etag if checkpoint else None
        last_modified = checkpoint.last_modified if checkpoint else None
        complete = checkpoint.complete if checkpoint else False

        result = PartitionResult(partition_key=pk, sort_key=sk, start_offset=offset, end_offset=offset)
        if checkpoint:
            logger.info(f"Resuming {partition.key} from offset {offset}")
        else:
            logger.info(f"Starting {partition.key} from the beginning")

        # Only the first request after a finished crawl carries validators;
        # pages of an unfinished crawl are always fetched unconditionally.
        conditional = complete

        while self.config.max_pages is None or result.pages_fetched < self.config.max_pages:
            if conditional:
                page = self._fetch(partition, offset, etag, last_modified)
            else:
                page = self._fetch(partition, offset)
            result.pages_fetched += 1

            if page.not_modified:
                if not conditional:
                    raise UpstreamError(
                        f"Upstream answered 304 to an unconditional request for {partition.key}@{offset}",
                        status_code=page.status_code,
                    )
                logger.info(f"{partition.key} not modified since last run")
                result.not_modified = True
                break
            conditional = False

            if not page.items:
                logger.debug(f"{partition.key} returned an empty page at offset {offset}")
                if not complete:
                    self._mark_complete(partition, offset, page, etag, last_modified)
                break

            records = self._to_records(partition, page, run_id)
            written = retry_with_backoff(
                lambda: self.record_store.write(Stage.RAW, None, records),
                self.config.retry,
                operation_name=f"write {partition.key}@{offset}",
            ).unwrap()
            result.object_keys.append(written.object_key)
            result.items_written += written.record_count

            proposed = CheckpointRecord(
                partition_key=pk,
                sort_key=sk,
                offset=page.next_offset,
                last_modified=_latest(last_modified, page.last_modified),
                etag=page.etag or etag,
                complete=page.is_last,
            )
            try:
                committed = self.checkpoint_store.commit_checkpoint(pk, sk, proposed)
            except StaleCheckpointError as e:
                # Another worker advanced the ledger; continue from its watermark
                result.stale_recoveries += 1
                logger.warning(f"{e}; re-reading ledger")
                winner = self.checkpoint_store.get_checkpoint(pk, sk)
                if winner is None:
                    raise
                offset, etag, last_modified = winner.offset, winner.etag, winner.last_modified
                complete = winner.complete
                result.end_offset = offset
                continue

            offset, etag, last_modified = committed.offset, committed.etag, committed.last_modified
            complete = committed.complete
            result.end_offset = offset
            logger.info(
                f"{partition.key}: wrote {written.record_count} items to {written.object_key}, "
                f"checkpoint at {offset}" + (f"/{page.total}" if page.total is not None else "")
            )

            if page.is_last:
                break

        return result

    def _mark_complete(
        self,
        partition: IngestPartition,
        offset: int,
        page: FetchedPage,
        etag: Optional[str],
        last_modified: Optional[datetime],
    ) -> None:
        """Record that a crawl ended on an empty page without moving the offset."""
        pk, sk = partition.partition_key, partition.sort_key
        proposed = CheckpointRecord(
            partition_key=pk,
            sort_key=sk,
            offset=offset,
            last_modified=_latest(last_modified, page.last_modified),
            etag=page.etag or etag,
            complete=True,
        )
        try:
            self.checkpoint_store.commit_checkpoint(pk, sk, proposed)
        except StaleCheckpointError as e:
            logger.warning(f"{e}; leaving the newer checkpoint in place")

    def _fetch(
        self,
        partition: IngestPartition,
        offset: int,
        etag: Optional[str] = None,
        last_modified: Optional[datetime] = None,
    ) -> FetchedPage:
        request = PageRequest(
            uri=partition.request_uri,
            offset=offset,
            limit=self.config.page_size,
            etag=etag,
            last_modified=last_modified,
            params=dict(partition.params),
        )
        return retry_with_backoff(
            lambda: self.fetcher.fetch_page(request),
            self.config.retry,
            operation_name=f"fetch {partition.key}@{offset}",
        ).unwrap()

    @staticmethod
    def _to_records(
        partition: IngestPartition,
        page: FetchedPage,
        run_id: Optional[str],
    ) -> List[CanonicalRecord]:
        records = []
        for i, item in enumerate(page.items):
            item_id = item.get("id") if isinstance(item, dict) else None
            source_id = str(item_id) if item_id is not None else f"{partition.key}@{page.offset + i}"
            records.append(CanonicalRecord.create(
                entity_type=partition.entity_type,
                source_id=source_id,
                payload=item,
                run_id=run_id,
            ))
        return records

    def get_checkpoints(self, partition_key: Optional[str] = None) -> List[CheckpointRecord]:
        """List committed checkpoints."""
        return self.checkpoint_store.list_checkpoints(partition_key)

    def close(self) -> None:
        """Close all resources."""
        logger.info("Closing runner resources")
        self.fetcher.close()
        self.checkpoint_store.close()


def _latest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)
