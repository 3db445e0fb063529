"""
Chunker - Split derived records into embeddable units.

Implements configurable chunking with:
- Chunk size and overlap
- Word-boundary breaks
- Deterministic chunk IDs
- Maximum chunks per source
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from ingest.core.models import CanonicalRecord, Stage
from ingest.core.utils import compute_content_hash
from ingest.storage.record_store import CanonicalRecordStore, DateRange

logger = logging.getLogger(__name__)

CHUNK_ENTITY_TYPE = "chunk"


@dataclass
class ChunkingPolicy:
    """
    Policy for splitting text into chunks.

    Attributes:
        chunk_size: Target size of each chunk in characters
        overlap: Characters shared by consecutive chunks
        max_chunks_per_source: Chunks kept per source record
        version: Policy version, recorded on every chunk
    """
    chunk_size: int = 1200
    overlap: int = 150
    max_chunks_per_source: int = 100
    version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "overlap": self.overlap,
            "max_chunks_per_source": self.max_chunks_per_source,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkingPolicy":
        """Create from the ``chunking`` config section."""
        return cls(
            chunk_size=int(data.get("chunk_size", 1200)),
            overlap=int(data.get("overlap", 150)),
            max_chunks_per_source=int(data.get("max_chunks_per_source", 100)),
            version=str(data.get("version", "1.0")),
        )


@dataclass
class ChunkResult:
    """Outcome of one chunking run."""
    records_read: int = 0
    chunks_written: int = 0
    skipped_existing: int = 0
    object_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_read": self.records_read,
            "chunks_written": self.chunks_written,
            "skipped_existing": self.skipped_existing,
            "object_keys": list(self.object_keys),
        }


def make_chunk_id(source_id: str, chunk_index: int) -> str:
    """``comic#40001`` chunk 2 -> ``comic#40001#0002``."""
    return f"{source_id}#{chunk_index:04d}"


def chunk_text(
    text: str,
    chunk_size: int = 1200,
    overlap: int = 150,
) -> List[Tuple[str, int, int]]:
    """
    Split text into overlapping chunks.

    Returns chunks with their character offsets for reproducibility.

    Args:
        text: Text content to chunk
        chunk_size: Target size of each chunk in characters
        overlap: Overlap between chunks in characters

    Returns:
        List of tuples: (chunk_content, start_offset, end_offset)

    Raises:
        ValueError: If chunk_size or overlap is out of range
    """
    if not text:
        return []

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    if overlap < 0:
        raise ValueError("overlap must be non-negative")

    if overlap >= chunk_size:
        raise ValueError("overlap must be less than chunk_size")

    chunks = []
    text_len = len(text)

    start = 0
    while start < text_len:
        end = min(start + chunk_size, text_len)

        # Break at the last space in the back half of a full chunk
        if end < text_len:
            last_space = text.rfind(" ", start, end)
            if last_space - start > chunk_size // 2:
                end = last_space

        chunks.append((text[start:end], start, end))

        if end >= text_len:
            break

        # Overlap is measured from the actual end so a boundary break never leaves a gap
        start = max(end - overlap, start + 1)

    return chunks


class Chunker:
    """
    Chunks derived records into searchable units.

    Produces deterministic chunks with stable IDs for reproducible indexing.

    Example:
        >>> chunker = Chunker(ChunkingPolicy(chunk_size=1000, overlap=100))
        >>> chunks = chunker.chunk_record(derived_record)
        >>> chunks[0].source_id
        'comic#40001#0000'
    """

    def __init__(self, policy: Optional[ChunkingPolicy] = None):
        """
        Initialize the chunker.

        Args:
            policy: Chunking policy (uses default if not provided)
        """
        self.policy = policy or ChunkingPolicy()

    def chunk_record(self, record: CanonicalRecord, run_id: Optional[str] = None) -> List[CanonicalRecord]:
        """
        Split one derived record into chunk records.

        Args:
            record: Derived record with a ``text`` payload field
            run_id: Run identifier stamped on the chunks

        Returns:
            List of chunk records (empty if the record has no text)
        """
        payload = record.payload if isinstance(record.payload, dict) else {}
        text = payload.get("text") or ""
        raw_chunks = chunk_text(text, chunk_size=self.policy.chunk_size, overlap=self.policy.overlap)

        if len(raw_chunks) > self.policy.max_chunks_per_source:
            logger.warning(
                f"Source {record.source_id} has {len(raw_chunks)} chunks, "
                f"limiting to {self.policy.max_chunks_per_source}"
            )
            raw_chunks = raw_chunks[:self.policy.max_chunks_per_source]

        chunks = []
        for i, (content, start_offset, end_offset) in enumerate(raw_chunks):
            chunk_id = make_chunk_id(record.source_id, i)
            chunk_payload = {
                "chunk_id": chunk_id,
                "source_id": record.source_id,
                "entity_type": payload.get("entity_type") or record.entity_type,
                "chunk_index": i,
                "text": content,
                "start_offset": start_offset,
                "end_offset": end_offset,
                "title": payload.get("title"),
                "modified": payload.get("modified"),
                "content_hash": compute_content_hash(content),
                "policy_version": self.policy.version,
            }
            chunks.append(
                CanonicalRecord.create(
                    entity_type=CHUNK_ENTITY_TYPE,
                    source_id=chunk_id,
                    payload=chunk_payload,
                    run_id=run_id,
                )
            )

        logger.debug(f"Created {len(chunks)} chunks from source {record.source_id}")
        return chunks


def chunk_records(
    record_store: CanonicalRecordStore,
    date_range: Optional[DateRange] = None,
    policy: Optional[ChunkingPolicy] = None,
    partition_date: Optional[date] = None,
    run_id: Optional[str] = None,
    batch_size: int = 500,
) -> ChunkResult:
    """
    Chunk derived records into the chunked stage, skipping existing chunks.

    Args:
        record_store: Record store holding both stages
        date_range: Derived partition dates to read
        policy: Chunking policy
        partition_date: Partition date for chunk objects (defaults to today)
        run_id: Run identifier stamped on written records
        batch_size: Chunks per written object

    Returns:
        ChunkResult with counts and written object keys
    """
    chunker = Chunker(policy)
    result = ChunkResult()
    seen = record_store.processed_keys(Stage.CHUNKED)
    batch: List[CanonicalRecord] = []

    def flush() -> None:
        if not batch:
            return
        written = record_store.write(Stage.CHUNKED, partition_date, batch)
        result.object_keys.append(written.object_key)
        result.chunks_written += written.record_count
        batch.clear()

    for record in record_store.read(Stage.DERIVED, date_range):
        result.records_read += 1
        for chunk in chunker.chunk_record(record, run_id=run_id):
            if chunk.dedupe_key in seen:
                result.skipped_existing += 1
                continue
            seen.add(chunk.dedupe_key)
            batch.append(chunk)
            if len(batch) >= batch_size:
                flush()

    flush()
    logger.info(
        f"Chunked {result.records_read} derived records into {result.chunks_written} new chunks "
        f"({result.skipped_existing} already chunked)"
    )
    return result
