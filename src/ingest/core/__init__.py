"""
Core abstractions and interfaces for the ingestion framework.
"""

from .models import (
    CheckpointRecord, CanonicalRecord, IngestPartition,
    PageRequest, FetchedPage, Stage,
)
from .checkpoint_store import CheckpointStore
from .object_store import ObjectStore
from .fetcher import RecordFetcher
from .exceptions import (
    PipelineError,
    ValidationError,
    QueryTooLargeError,
    NotFoundError,
    DimensionMismatchError,
    ModelMismatchError,
    StaleCheckpointError,
    TransientIOError,
    CorruptionError,
    ObjectExistsError,
    ShardFullError,
    ShardOwnershipError,
    QueryCancelledError,
    UpstreamError,
    error_response,
)

__all__ = [
    # Models
    "CheckpointRecord",
    "CanonicalRecord",
    "IngestPartition",
    "PageRequest",
    "FetchedPage",
    "Stage",
    # Interfaces
    "CheckpointStore",
    "ObjectStore",
    "RecordFetcher",
    # Exceptions
    "PipelineError",
    "ValidationError",
    "QueryTooLargeError",
    "NotFoundError",
    "DimensionMismatchError",
    "ModelMismatchError",
    "StaleCheckpointError",
    "TransientIOError",
    "CorruptionError",
    "ObjectExistsError",
    "ShardFullError",
    "ShardOwnershipError",
    "QueryCancelledError",
    "UpstreamError",
    "error_response",
]
