"""
Core data models for the ingestion framework.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .utils import compute_payload_checksum, parse_datetime


class Stage(str, Enum):
    """Pipeline stages whose output lands in the canonical record store."""
    RAW = "raw"
    DERIVED = "derived"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    INDEXED = "indexed"


@dataclass
class CheckpointRecord:
    """
    Progress watermark for one ingestion partition.

    Identified by (partition_key, sort_key), e.g.
    ("character#1009685", "endpoint#comics").

    Attributes:
        partition_key: Source entity partition
        sort_key: Endpoint or sub-resource within the partition
        offset: Number of upstream items durably written so far
        last_modified: Upstream Last-Modified watermark, if any
        etag: Upstream ETag of the last committed page, if any
        complete: True once the crawl reached the last page; only then are
            etag and last_modified sent as conditional request headers
        updated_at: When the checkpoint was last committed
    """
    partition_key: str
    sort_key: str
    offset: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    complete: bool = False
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_behind(self, other: "CheckpointRecord") -> bool:
        """
        Return True if this checkpoint regresses relative to ``other``.

        Offsets must not decrease. Last-modified watermarks must not decrease
        when both sides carry one.
        """
        if self.offset < other.offset:
            return True
        if self.last_modified and other.last_modified:
            return self.last_modified < other.last_modified
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "partition_key": self.partition_key,
            "sort_key": self.sort_key,
            "offset": self.offset,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "etag": self.etag,
            "complete": self.complete,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class CanonicalRecord:
    """
    One immutable unit of pipeline output (raw item, derived entity, chunk,
    embedding).

    Content is a pure function of upstream input plus code version, so
    identical (entity_type, source_id, schema_version, checksum) implies an
    identical payload.

    Attributes:
        entity_type: Kind of entity (e.g., 'comic', 'character', 'chunk')
        source_id: Stable upstream or derived identifier
        schema_version: Version of the payload schema
        checksum: SHA256 of the payload's canonical JSON
        payload: Record body
        run_id: Run that produced the record
        created_at: When the record was produced
    """
    entity_type: str
    source_id: str
    schema_version: str
    checksum: str
    payload: Dict[str, Any]
    run_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        entity_type: str,
        source_id: str,
        payload: Dict[str, Any],
        schema_version: str = "1",
        run_id: Optional[str] = None,
    ) -> "CanonicalRecord":
        """Create a record, computing its checksum from the payload."""
        return cls(
            entity_type=entity_type,
            source_id=str(source_id),
            schema_version=schema_version,
            checksum=compute_payload_checksum(payload),
            payload=payload,
            run_id=run_id,
            created_at=datetime.now(timezone.utc),
        )

    @property
    def dedupe_key(self) -> Tuple[str, str, str, str]:
        """Key under which re-processing can be skipped."""
        return (self.entity_type, self.source_id, self.schema_version, self.checksum)

    def verify_checksum(self) -> bool:
        """Return True if the stored checksum matches the payload."""
        return compute_payload_checksum(self.payload) == self.checksum

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "schema_version": self.schema_version,
            "checksum": self.checksum,
            "run_id": self.run_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalRecord":
        """Create from dictionary."""
        return cls(
            entity_type=data["entity_type"],
            source_id=data["source_id"],
            schema_version=data["schema_version"],
            checksum=data["checksum"],
            payload=data["payload"],
            run_id=data.get("run_id"),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class IngestPartition:
    """
    One resumable unit of upstream crawling.

    Attributes:
        partition_key: Source entity (e.g., 'character#1009685')
        sort_key: Endpoint within the entity (e.g., 'endpoint#comics')
        request_uri: Endpoint URI to page through
        entity_type: Entity type of the fetched items
        params: Extra static query parameters
    """
    partition_key: str
    sort_key: str
    request_uri: str
    entity_type: str = "item"
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.partition_key}/{self.sort_key}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestPartition":
        """Create from a source entry in the pipeline config."""
        return cls(
            partition_key=data["partition_key"],
            sort_key=data["sort_key"],
            request_uri=data["request_uri"],
            entity_type=data.get("entity_type", "item"),
            params=dict(data.get("params") or {}),
        )


@dataclass
class PageRequest:
    """
    Request for one page of upstream items.

    Attributes:
        uri: Endpoint to fetch
        offset: Position to resume from
        limit: Page size
        etag: Cached ETag for conditional requests
        last_modified: Cached Last-Modified for conditional requests
        params: Extra query parameters
    """
    uri: str
    offset: int = 0
    limit: int = 100
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchedPage:
    """
    One page of upstream items paired with its resumable position marker.

    Attributes:
        items: Upstream JSON objects
        offset: Offset the page starts at
        next_offset: Offset to resume from after committing this page
        total: Total items reported by the upstream, if known
        etag: ETag of the response
        last_modified: Last-Modified of the response
        not_modified: True when the upstream reported no change (HTTP 304)
        status_code: Upstream status code
        duration_ms: Time taken to fetch
    """
    items: List[Dict[str, Any]]
    offset: int
    next_offset: int
    total: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    not_modified: bool = False
    status_code: int = 200
    duration_ms: Optional[int] = None

    @property
    def is_last(self) -> bool:
        """True if no further pages follow this one."""
        if self.not_modified or not self.items:
            return True
        return self.total is not None and self.next_offset >= self.total
