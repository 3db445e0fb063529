"""
Vector Index Contracts

Data models for vectors, shard manifests, and the query request/response
contract.
"""

from .models import (
    EmbeddingVector,
    ShardManifest,
    QueryFilters,
    QueryRequest,
    QueryHit,
    QueryResponse,
    METADATA_SCHEMA,
    QUERY_MODES,
    validate_metadata,
)

__all__ = [
    "EmbeddingVector",
    "ShardManifest",
    "QueryFilters",
    "QueryRequest",
    "QueryHit",
    "QueryResponse",
    "METADATA_SCHEMA",
    "QUERY_MODES",
    "validate_metadata",
]
