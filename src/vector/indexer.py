"""
Indexer - Embed chunked records and build vector index shards.

Implements:
- Incremental indexing (chunks already embedded with the same model are skipped)
- Batched embedding through EmbeddingProducer
- Shard writing with automatic rotation
- Embedded-stage records and a per-run manifest

Shards are committed before the embedded records that mark their chunks as
done, so a crash between the two re-embeds those chunks on the next run
rather than losing them.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from ingest.core.models import CanonicalRecord, Stage
from ingest.storage.record_store import CanonicalRecordStore, DateRange

from .chunker import CHUNK_ENTITY_TYPE
from .contracts.models import EmbeddingVector
from .embedding import EmbeddingInput, EmbeddingProducer
from .shards import ShardManager, ShardWriter


logger = logging.getLogger(__name__)

EMBEDDING_ENTITY_TYPE = "embedding"
RUN_MANIFEST_PREFIX = "runs/index"

# (chunk_id, chunk_checksum, model_id, dims)
EmbeddedKey = Tuple[str, str, str, int]


@dataclass
class IndexRunSummary:
    """Statistics for one indexing run."""
    run_id: str
    model_id: str
    dims: int
    chunks_read: int = 0
    chunks_skipped: int = 0
    chunks_empty: int = 0
    embeddings_created: int = 0
    shards_written: int = 0
    shard_keys: List[str] = field(default_factory=list)
    embedded_keys: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "model": {"id": self.model_id, "dims": self.dims},
            "chunks_read": self.chunks_read,
            "chunks_skipped": self.chunks_skipped,
            "chunks_empty": self.chunks_empty,
            "embeddings_created": self.embeddings_created,
            "shards_written": self.shards_written,
            "shard_keys": list(self.shard_keys),
            "embedded_keys": list(self.embedded_keys),
            "duration_ms": self.duration_ms,
        }


def _metadata_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


class Indexer:
    """
    Turns chunked records into committed vector shards.

    Example:
        >>> indexer = Indexer(record_store, producer, shard_manager)
        >>> summary = indexer.run(date_range=(date(2024, 5, 1), None))
        >>> summary.shards_written
        1
    """

    def __init__(
        self,
        record_store: CanonicalRecordStore,
        producer: EmbeddingProducer,
        shard_manager: ShardManager,
        batch_size: int = 32,
        snippet_chars: int = 200,
    ):
        """
        Initialize the indexer.

        Args:
            record_store: Record store holding the chunked and embedded stages
            producer: Embedding producer for the configured model
            shard_manager: Shard manager for the index
            batch_size: Chunks embedded per producer call
            snippet_chars: Characters of chunk text kept as the result snippet
        """
        self.record_store = record_store
        self.producer = producer
        self.shard_manager = shard_manager
        self.batch_size = max(1, batch_size)
        self.snippet_chars = snippet_chars

    def embedded_keys(self) -> Set[EmbeddedKey]:
        """Collect (chunk, checksum, model, dims) tuples already embedded."""
        keys: Set[EmbeddedKey] = set()
        for record in self.record_store.read(Stage.EMBEDDED):
            payload = record.payload
            try:
                keys.add((
                    payload["chunk_id"],
                    payload["chunk_checksum"],
                    payload["model_id"],
                    int(payload["dims"]),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Embedded record {record.source_id} has no usable key")
        return keys

    def _to_input(self, chunk: CanonicalRecord) -> EmbeddingInput:
        payload = chunk.payload
        text = payload.get("text") or ""
        metadata = {
            "entity_type": _metadata_str(payload.get("entity_type")) or "unknown",
            "source_id": _metadata_str(payload.get("source_id")) or chunk.source_id,
            "title": _metadata_str(payload.get("title")),
            "snippet": text[:self.snippet_chars],
            "modified": _metadata_str(payload.get("modified")),
            "chunk_index": int(payload.get("chunk_index", 0)),
            "content_hash": _metadata_str(payload.get("content_hash")) or chunk.checksum,
        }
        return EmbeddingInput(id=chunk.source_id, text=text, metadata=metadata)

    def _to_record(self, chunk: CanonicalRecord, vector: EmbeddingVector, run_id: str) -> CanonicalRecord:
        payload = {
            "chunk_id": chunk.source_id,
            "chunk_checksum": chunk.checksum,
            "model_id": vector.model_id,
            "dims": vector.dims,
            "vector": list(vector.vector),
            "metadata": dict(vector.metadata),
        }
        return CanonicalRecord.create(
            entity_type=EMBEDDING_ENTITY_TYPE,
            source_id=chunk.source_id,
            payload=payload,
            run_id=run_id,
        )

    def run(
        self,
        date_range: Optional[DateRange] = None,
        run_id: Optional[str] = None,
        partition_date: Optional[date] = None,
    ) -> IndexRunSummary:
        """
        Index every chunk in range that is not yet embedded with this model.

        Args:
            date_range: Chunked partition dates to read
            run_id: Run identifier (generated if omitted)
            partition_date: Partition date for shards and embedded records

        Returns:
            IndexRunSummary with counts and written keys
        """
        started = time.monotonic()
        run_id = run_id or uuid.uuid4().hex[:12]
        model_id, dims = self.producer.model_id, self.producer.dims
        summary = IndexRunSummary(run_id=run_id, model_id=model_id, dims=dims)

        logger.info(f"Starting index run {run_id} for {model_id} ({dims} dims)")
        done = self.embedded_keys()

        pending: List[CanonicalRecord] = []
        embedded: List[CanonicalRecord] = []
        writer = ShardWriter(self.shard_manager, model_id, dims, partition_date)

        def flush() -> None:
            if not pending:
                return
            vectors = self.producer.embed([self._to_input(c) for c in pending], model_id, dims)
            for chunk, vector in zip(pending, vectors):
                writer.append(vector)
                embedded.append(self._to_record(chunk, vector, run_id))
            summary.embeddings_created += len(vectors)
            pending.clear()

        for chunk in self.record_store.read(Stage.CHUNKED, date_range):
            if chunk.entity_type != CHUNK_ENTITY_TYPE:
                continue
            summary.chunks_read += 1
            key = (chunk.source_id, chunk.checksum, model_id, dims)
            if key in done:
                summary.chunks_skipped += 1
                continue
            if not (chunk.payload.get("text") or "").strip():
                summary.chunks_empty += 1
                continue
            done.add(key)
            pending.append(chunk)
            if len(pending) >= self.batch_size:
                flush()

        flush()
        manifests = writer.close()
        summary.shards_written = len(manifests)
        summary.shard_keys = [m.object_key for m in manifests]

        for start in range(0, len(embedded), 500):
            written = self.record_store.write(Stage.EMBEDDED, partition_date, embedded[start:start + 500])
            summary.embedded_keys.append(written.object_key)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self._write_run_manifest(summary)

        logger.info(
            f"Index run {run_id} complete: "
            f"{summary.chunks_read} chunks read, "
            f"{summary.chunks_skipped} already embedded, "
            f"{summary.embeddings_created} embeddings, "
            f"{summary.shards_written} shards"
        )
        return summary

    def _write_run_manifest(self, summary: IndexRunSummary) -> str:
        """
        Write the indexing run manifest next to the index.

        Args:
            summary: Completed run summary

        Returns:
            Object key of the run manifest
        """
        run_manifest = {
            "run_id": summary.run_id,
            "created_utc": datetime.now(timezone.utc).isoformat(),
            "stats": summary.to_dict(),
        }
        key = f"{RUN_MANIFEST_PREFIX}/{summary.run_id}.json"
        data = json.dumps(run_manifest, indent=2, sort_keys=True).encode("utf-8")
        self.shard_manager.object_store.put(key, data, overwrite=False)

        logger.debug(f"Wrote run manifest to {key}")
        return key
