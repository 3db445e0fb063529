"""
Vector Index Data Models

Data models for the sharded vector index and its query contract:

- EmbeddingVector: one unit-normalized vector with passthrough metadata
- ShardManifest: summary of a closed shard, used to prune queries
- QueryFilters / QueryRequest: validated query input
- QueryHit / QueryResponse: ranked query output
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ingest.core.exceptions import QueryTooLargeError, ValidationError
from ingest.core.utils import parse_datetime


SCALAR_TYPES = (str, int, float, bool, type(None))

# Declared metadata keys and the types they must carry. Keys outside this
# set pass through as long as they hold scalars or lists of scalars.
METADATA_SCHEMA: Dict[str, tuple] = {
    "entity_type": (str,),
    "source_id": (str,),
    "title": (str, type(None)),
    "snippet": (str,),
    "modified": (str, type(None)),
    "chunk_index": (int,),
    "content_hash": (str,),
}

QUERY_MODES = ("dense", "hybrid")


def _is_scalar(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, SCALAR_TYPES)


def _matches_type(value: Any, expected: tuple) -> bool:
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def validate_metadata(metadata: Any) -> Dict[str, Any]:
    """
    Validate passthrough metadata at write time.

    Values must be scalars (str, int, float, bool, None) or flat lists of
    scalars, and declared keys must carry their declared types.

    Args:
        metadata: Candidate metadata mapping

    Returns:
        A shallow copy of the validated metadata

    Raises:
        ValidationError: If the metadata violates the schema
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise ValidationError(f"Metadata must be a mapping, got {type(metadata).__name__}")

    validated = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key:
            raise ValidationError(f"Metadata keys must be non-empty strings: {key!r}")

        if isinstance(value, list):
            if not all(_is_scalar(v) for v in value):
                raise ValidationError(f"Metadata '{key}' must be a flat list of scalars")
            value = list(value)
        elif not _is_scalar(value):
            raise ValidationError(
                f"Metadata '{key}' has unsupported type {type(value).__name__}"
            )

        expected = METADATA_SCHEMA.get(key)
        if expected and not _matches_type(value, expected):
            raise ValidationError(
                f"Metadata '{key}' must be {'/'.join(t.__name__ for t in expected)}, "
                f"got {type(value).__name__}"
            )
        validated[key] = value
    return validated


@dataclass
class EmbeddingVector:
    """
    One vector in the index.

    Attributes:
        id: Stable reference to the source chunk
        vector: Unit-normalized floats, length == dims
        model_id: Embedding model that produced the vector
        dims: Declared dimensionality
        metadata: Passthrough scalar/array fields
    """
    id: str
    vector: List[float]
    model_id: str
    dims: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def norm(self) -> float:
        return math.sqrt(math.fsum(x * x for x in self.vector))

    @property
    def modified(self) -> Optional[datetime]:
        """Upstream modification time carried in metadata, if parseable."""
        value = self.metadata.get("modified")
        if not value:
            return None
        try:
            return parse_datetime(value)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "model_id": self.model_id,
            "dims": self.dims,
            "vector": list(self.vector),
            "metadata": dict(self.metadata),
        }

    def to_json_line(self) -> str:
        """Serialize as one compact JSON line (no trailing newline)."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingVector":
        """
        Create from dictionary.

        Raises:
            ValueError: If the record is structurally malformed
        """
        if not isinstance(data, dict):
            raise ValueError("vector record must be an object")
        vector = data["vector"]
        if not isinstance(vector, list) or not all(
            isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector
        ):
            raise ValueError("vector must be a list of numbers")
        if not all(math.isfinite(x) for x in vector):
            raise ValueError("vector contains non-finite values")
        dims = data["dims"]
        if not isinstance(dims, int) or len(vector) != dims:
            raise ValueError(f"vector length {len(vector)} does not match dims {dims!r}")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        return cls(
            id=str(data["id"]),
            vector=[float(x) for x in vector],
            model_id=str(data["model_id"]),
            dims=dims,
            metadata=metadata,
        )


@dataclass
class ShardManifest:
    """
    Summary of a closed, immutable shard.

    Written only after the shard object is committed, so any shard a reader
    can find through a manifest is fully visible.

    Attributes:
        shard_id: Unique shard identifier
        object_key: Key of the shard's JSON-lines object
        model_id: Embedding model shared by every vector in the shard
        dims: Dimensionality shared by every vector in the shard
        vector_count: Number of vectors
        size_bytes: Serialized size of the shard object
        max_bytes: Size bound the shard was written under
        id_min / id_max: Lexicographic id range
        time_min / time_max: Range of metadata 'modified' values, if any
        checksum: SHA256 of the shard object bytes
        created_at: When the shard was opened
        closed_at: When the shard was closed
        manifest_key: Key the manifest itself is stored under
    """
    shard_id: str
    object_key: str
    model_id: str
    dims: int
    vector_count: int
    size_bytes: int
    max_bytes: int
    checksum: str
    id_min: Optional[str] = None
    id_max: Optional[str] = None
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: Optional[datetime] = None
    manifest_key: Optional[str] = None

    def matches_model(self, model_id: str, dims: int) -> bool:
        return self.model_id == model_id and self.dims == dims

    def may_contain_id(self, id: str) -> bool:
        """False only if ``id`` is provably outside the shard's id range."""
        if self.id_min is None or self.id_max is None:
            return True
        return self.id_min <= id <= self.id_max

    def overlaps(self, since: Optional[datetime], until: Optional[datetime]) -> bool:
        """
        True if the shard's time range intersects [since, until].

        A shard without any timestamped vectors cannot satisfy a time bound.
        """
        if since is None and until is None:
            return True
        if self.time_min is None or self.time_max is None:
            return False
        if since is not None and self.time_max < since:
            return False
        if until is not None and self.time_min > until:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "shard_id": self.shard_id,
            "object_key": self.object_key,
            "model_id": self.model_id,
            "dims": self.dims,
            "vector_count": self.vector_count,
            "size_bytes": self.size_bytes,
            "max_bytes": self.max_bytes,
            "checksum": self.checksum,
            "id_range": {"min": self.id_min, "max": self.id_max},
            "time_range": {
                "min": self.time_min.isoformat() if self.time_min else None,
                "max": self.time_max.isoformat() if self.time_max else None,
            },
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "manifest_key": self.manifest_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShardManifest":
        """Create from dictionary."""
        id_range = data.get("id_range") or {}
        time_range = data.get("time_range") or {}
        return cls(
            shard_id=data["shard_id"],
            object_key=data["object_key"],
            model_id=data["model_id"],
            dims=int(data["dims"]),
            vector_count=int(data["vector_count"]),
            size_bytes=int(data["size_bytes"]),
            max_bytes=int(data["max_bytes"]),
            checksum=data["checksum"],
            id_min=id_range.get("min"),
            id_max=id_range.get("max"),
            time_min=parse_datetime(time_range.get("min")),
            time_max=parse_datetime(time_range.get("max")),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
            closed_at=parse_datetime(data.get("closed_at")),
            manifest_key=data.get("manifest_key"),
        )


def _filter_param(params: Mapping[str, Any], name: str) -> Any:
    """Read ``filter.<name>`` from flat or nested query params."""
    flat = params.get(f"filter.{name}")
    if flat is not None:
        return flat
    nested = params.get("filter")
    if isinstance(nested, Mapping):
        return nested.get(name)
    return None


@dataclass
class QueryFilters:
    """Metadata predicates applied before scoring."""
    entity: Optional[str] = None
    id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "QueryFilters":
        """
        Parse filters from request params.

        Raises:
            ValidationError: If a filter value is malformed
        """
        values = {}
        for name in ("entity", "id"):
            value = _filter_param(params, name)
            if value is not None:
                if not isinstance(value, (str, int)) or isinstance(value, bool) or str(value) == "":
                    raise ValidationError(f"filter.{name} must be a non-empty string")
                values[name] = str(value)

        for name in ("since", "until"):
            value = _filter_param(params, name)
            if value is None or value == "":
                continue
            try:
                values[name] = parse_datetime(value)
            except ValueError:
                raise ValidationError(f"filter.{name} is not a valid ISO-8601 timestamp: {value!r}") from None

        filters = cls(**values)
        if filters.since and filters.until and filters.since > filters.until:
            raise ValidationError("filter.since must not be after filter.until")
        return filters

    @property
    def is_empty(self) -> bool:
        return not (self.entity or self.id or self.since or self.until)

    def matches(self, vector: EmbeddingVector) -> bool:
        """True if the vector passes every set predicate."""
        if self.entity is not None and vector.metadata.get("entity_type") != self.entity:
            return False
        if self.id is not None and vector.id != self.id:
            return False
        if self.since is not None or self.until is not None:
            modified = vector.modified
            if modified is None:
                return False
            if self.since is not None and modified < self.since:
                return False
            if self.until is not None and modified > self.until:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "id": self.id,
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
        }


@dataclass
class QueryRequest:
    """
    A similarity query.

    Attributes:
        q: Query text
        k: Number of results wanted
        threshold: Drop results scoring below this (None or 0 keeps all)
        filters: Metadata predicates
        mode: 'dense' or 'hybrid'
    """
    q: str
    k: int = 5
    threshold: Optional[float] = None
    filters: QueryFilters = field(default_factory=QueryFilters)
    mode: str = "dense"

    @classmethod
    def from_params(cls, params: Mapping[str, Any], default_k: int = 5) -> "QueryRequest":
        """
        Build a request from raw query parameters.

        Accepts ``q``, ``k``, ``threshold``, ``mode`` and ``filter.*`` keys
        (flat, or nested under ``filter``).

        Raises:
            ValidationError: If a parameter cannot be parsed
        """
        q = params.get("q")
        if q is not None and not isinstance(q, str):
            raise ValidationError("q must be a string")

        raw_k = params.get("k")
        if raw_k is None or raw_k == "":
            k = default_k
        else:
            try:
                if isinstance(raw_k, bool) or float(raw_k) != int(float(raw_k)):
                    raise ValueError
                k = int(float(raw_k))
            except (TypeError, ValueError):
                raise ValidationError(f"k must be an integer, got {raw_k!r}") from None

        raw_threshold = params.get("threshold")
        threshold = None
        if raw_threshold is not None and raw_threshold != "":
            try:
                if isinstance(raw_threshold, bool):
                    raise ValueError
                threshold = float(raw_threshold)
            except (TypeError, ValueError):
                raise ValidationError(f"threshold must be a number, got {raw_threshold!r}") from None

        mode = params.get("mode") or "dense"

        return cls(
            q=q or "",
            k=k,
            threshold=threshold,
            filters=QueryFilters.from_params(params),
            mode=str(mode),
        )

    def validate(self, max_k: int, max_query_chars: int) -> None:
        """
        Check ranges.

        Raises:
            QueryTooLargeError: If the query text is too long
            ValidationError: For any other out-of-range parameter
        """
        if not self.q or not self.q.strip():
            raise ValidationError("q is required")
        if len(self.q) > max_query_chars:
            raise QueryTooLargeError(
                f"Query is {len(self.q)} characters; maximum is {max_query_chars}",
                {"max_query_chars": max_query_chars},
            )
        if not 1 <= self.k <= max_k:
            raise ValidationError(f"k must be between 1 and {max_k}, got {self.k}")
        if self.threshold is not None and not (
            math.isfinite(self.threshold) and 0.0 <= self.threshold <= 1.0
        ):
            raise ValidationError(f"threshold must be between 0.0 and 1.0, got {self.threshold}")
        if self.mode not in QUERY_MODES:
            raise ValidationError(f"mode must be one of {', '.join(QUERY_MODES)}, got {self.mode!r}")


@dataclass
class QueryHit:
    """One ranked result."""
    id: str
    score: float
    snippet: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "snippet": self.snippet,
            "meta": dict(self.meta),
        }


@dataclass
class QueryResponse:
    """Ranked results plus the model used, per-phase timings and warnings."""
    query: str
    k: int
    filters: QueryFilters
    results: List[QueryHit]
    model_id: str
    dims: int
    timing_ms: Dict[str, float] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    query_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the response envelope."""
        return {
            "query": self.query,
            "k": self.k,
            "filters": self.filters.to_dict(),
            "results": [hit.to_dict() for hit in self.results],
            "model": {"id": self.model_id, "dims": self.dims},
            "timing_ms": dict(self.timing_ms),
            "warnings": list(self.warnings),
            "query_id": self.query_id,
        }
