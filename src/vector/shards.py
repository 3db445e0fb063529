"""
Vector index shard manager.

A shard is a size-bounded JSON-lines object holding vectors that share one
(model_id, dims) pair. Shards are built in memory through a ShardHandle,
committed once on close, and never modified afterwards. Each committed
shard gets a manifest (id range, time range, count, size, checksum) written
*after* the shard object, so readers that discover shards through manifests
never see a partial shard.

Object layout::

    indexed/YYYY/MM/DD/shard-NNNNN.jsonl     shard vectors, one per line
    manifests/YYYY/MM/DD/shard-NNNNN.json    manifest for that shard
"""

import json
import logging
import math
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from ingest.core.exceptions import (
    CorruptionError,
    ModelMismatchError,
    ObjectExistsError,
    ShardFullError,
    ShardOwnershipError,
    ValidationError,
)
from ingest.core.models import Stage
from ingest.core.object_store import ObjectStore
from ingest.core.utils import compute_bytes_checksum
from ingest.storage.record_store import parse_object_key, partition_prefix
from ingest.utils.retry import RetryConfig, retry_with_backoff

from .contracts.models import EmbeddingVector, ShardManifest, validate_metadata
from .scoring import is_unit


logger = logging.getLogger(__name__)


MANIFEST_PREFIX = "manifests"
DEFAULT_MAX_SHARD_BYTES = 8 * 1024 * 1024


@dataclass
class IndexConfig:
    """
    Configuration for shard writing.

    Attributes:
        max_shard_bytes: Upper bound on a shard object's serialized size
        max_sequence_attempts: Shard numbers tried when writers race for a key
        max_cached_manifests: Manifests kept in memory per manager; further
            manifests are re-read from the object store on each listing
    """
    max_shard_bytes: int = DEFAULT_MAX_SHARD_BYTES
    max_sequence_attempts: int = 20
    max_cached_manifests: int = 10_000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexConfig":
        """Create from the ``index`` config section."""
        return cls(
            max_shard_bytes=int(data.get("max_shard_bytes", DEFAULT_MAX_SHARD_BYTES)),
            max_sequence_attempts=int(data.get("max_sequence_attempts", 20)),
            max_cached_manifests=int(data.get("max_cached_manifests", 10_000)),
        )

    @classmethod
    def from_env(cls) -> "IndexConfig":
        return cls(
            max_shard_bytes=int(os.environ.get("PIPELINE_MAX_SHARD_BYTES", str(DEFAULT_MAX_SHARD_BYTES))),
            max_cached_manifests=int(os.environ.get("PIPELINE_MAX_CACHED_MANIFESTS", "10000")),
        )


class ShardHandle:
    """
    An open, in-progress shard.

    Bound to the thread that opened it; only that thread may append to or
    close it.
    """

    def __init__(self, model_id: str, dims: int, max_bytes: int, partition_date: date):
        self.shard_id = uuid.uuid4().hex
        self.model_id = model_id
        self.dims = dims
        self.max_bytes = max_bytes
        self.partition_date = partition_date
        self.owner_thread = threading.get_ident()
        self.created_at = datetime.now(timezone.utc)

        self.lines: List[str] = []
        self.size_bytes = 0
        self.id_min: Optional[str] = None
        self.id_max: Optional[str] = None
        self.time_min: Optional[datetime] = None
        self.time_max: Optional[datetime] = None
        self.closed = False

    @property
    def vector_count(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def _track(self, vector: EmbeddingVector) -> None:
        if self.id_min is None or vector.id < self.id_min:
            self.id_min = vector.id
        if self.id_max is None or vector.id > self.id_max:
            self.id_max = vector.id
        modified = vector.modified
        if modified is not None:
            if self.time_min is None or modified < self.time_min:
                self.time_min = modified
            if self.time_max is None or modified > self.time_max:
                self.time_max = modified

    def __repr__(self) -> str:
        return (
            f"ShardHandle(shard_id={self.shard_id!r}, model_id={self.model_id!r}, "
            f"dims={self.dims}, vectors={self.vector_count}, size={self.size_bytes})"
        )


@dataclass
class LoadedShard:
    """A shard read back from storage."""
    manifest: ShardManifest
    vectors: List[EmbeddingVector] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    corrupt_records: int = 0


class ShardCache:
    """
    Process-wide cache of loaded shards keyed by shard id.

    Shards are immutable, so an entry never goes stale. Population happens
    under a lock; lookups do not lock.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: Dict[str, LoadedShard] = {}
        self._lock = threading.Lock()

    def get(self, shard_id: str) -> Optional[LoadedShard]:
        return self._entries.get(shard_id)

    def put(self, shard: LoadedShard) -> LoadedShard:
        """Insert if absent; return the cached entry (first writer wins)."""
        with self._lock:
            existing = self._entries.get(shard.manifest.shard_id)
            if existing is not None:
                return existing
            if len(self._entries) < self.max_entries:
                self._entries[shard.manifest.shard_id] = shard
            return shard

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, shard_id: str) -> bool:
        return shard_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


_DEFAULT_SHARD_CACHE = ShardCache()


def get_default_shard_cache() -> ShardCache:
    """The process-wide shard cache."""
    return _DEFAULT_SHARD_CACHE


def manifest_key_for(object_key: str) -> str:
    """``indexed/2024/05/01/shard-00003.jsonl`` -> ``manifests/2024/05/01/shard-00003.json``."""
    parsed = parse_object_key(object_key)
    if parsed is None:
        raise ValidationError(f"Not a shard object key: {object_key}")
    _, partition_date, sequence = parsed
    return f"{MANIFEST_PREFIX}/{partition_date:%Y/%m/%d}/shard-{sequence:05d}.json"


class ShardManager:
    """
    Opens, fills, closes and reads vector index shards.

    Example:
        >>> manager = ShardManager(InMemoryObjectStore(), IndexConfig(max_shard_bytes=64_000))
        >>> handle = manager.open_shard("hashing-v1", 384)
        >>> manager.append_vector(handle, vector)
        >>> manifest = manager.close_shard(handle)
        >>> shard = manager.load_shard(manifest)
    """

    def __init__(
        self,
        object_store: ObjectStore,
        config: Optional[IndexConfig] = None,
        shard_cache: Optional[ShardCache] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize the shard manager.

        Args:
            object_store: Backing object store
            config: Index configuration
            shard_cache: Loaded-shard cache (defaults to the process-wide cache)
            retry_config: Retry settings for object writes
        """
        self.object_store = object_store
        self.config = config or IndexConfig()
        self.shard_cache = shard_cache if shard_cache is not None else get_default_shard_cache()
        self.retry_config = retry_config or RetryConfig()

        self._manifest_cache: Dict[str, ShardManifest] = {}
        self._manifest_lock = threading.Lock()

    # ------------------------------------------------------------------ write

    def open_shard(self, model_id: str, dims: int, partition_date: Optional[date] = None) -> ShardHandle:
        """
        Open a new shard for one (model_id, dims) pair.

        Args:
            model_id: Embedding model for every vector in the shard
            dims: Dimensionality for every vector in the shard
            partition_date: Date partition for the shard object (defaults to today)

        Returns:
            ShardHandle owned by the calling thread
        """
        if not model_id:
            raise ValidationError("model_id is required")
        if not isinstance(dims, int) or dims < 1:
            raise ValidationError(f"dims must be a positive integer, got {dims!r}")

        handle = ShardHandle(
            model_id=model_id,
            dims=dims,
            max_bytes=self.config.max_shard_bytes,
            partition_date=partition_date or datetime.now(timezone.utc).date(),
        )
        logger.debug(f"Opened shard {handle.shard_id} for {model_id} ({dims} dims)")
        return handle

    def _check_owner(self, handle: ShardHandle) -> None:
        if handle.owner_thread != threading.get_ident():
            raise ShardOwnershipError(
                f"Shard {handle.shard_id} is owned by another thread",
                {"shard_id": handle.shard_id},
            )
        if handle.closed:
            raise ValidationError(f"Shard {handle.shard_id} is already closed")

    def append_vector(self, handle: ShardHandle, vector: EmbeddingVector) -> None:
        """
        Append one vector to an open shard.

        Raises:
            ShardOwnershipError: If called from a thread that does not own the handle
            ModelMismatchError: If the vector's (model_id, dims) differs from the shard's
            ShardFullError: If the vector would push the shard past its size bound
            ValidationError: For a non-finite or non-unit vector, bad metadata,
                or a vector larger than the bound on its own
        """
        self._check_owner(handle)

        if vector.model_id != handle.model_id or vector.dims != handle.dims or len(vector.vector) != handle.dims:
            raise ModelMismatchError(
                f"Vector {vector.id} is {vector.model_id} ({len(vector.vector)} dims); "
                f"shard {handle.shard_id} holds {handle.model_id} ({handle.dims} dims)",
                {"expected_dims": handle.dims, "actual_dims": len(vector.vector)},
            )

        if not all(math.isfinite(x) for x in vector.vector):
            raise ValidationError(f"Vector {vector.id} contains non-finite values")
        if not is_unit(vector.vector):
            raise ValidationError(f"Vector {vector.id} is not unit-normalized (norm={vector.norm:.6f})")

        stored = replace(vector, metadata=validate_metadata(vector.metadata))
        line = stored.to_json_line() + "\n"
        line_bytes = len(line.encode("utf-8"))

        if handle.size_bytes + line_bytes > handle.max_bytes:
            if handle.is_empty:
                raise ValidationError(
                    f"Vector {vector.id} serializes to {line_bytes} bytes, larger than "
                    f"the shard bound of {handle.max_bytes}"
                )
            raise ShardFullError(
                f"Shard {handle.shard_id} is full ({handle.size_bytes}/{handle.max_bytes} bytes)",
                {"shard_id": handle.shard_id},
            )

        handle.lines.append(line)
        handle.size_bytes += line_bytes
        handle._track(stored)

    def close_shard(self, handle: ShardHandle) -> Optional[ShardManifest]:
        """
        Commit the shard object, then its manifest.

        Empty shards are discarded and return None.

        Returns:
            The committed ShardManifest, or None for an empty shard
        """
        self._check_owner(handle)

        if handle.is_empty:
            handle.closed = True
            logger.debug(f"Discarding empty shard {handle.shard_id}")
            return None

        data = "".join(handle.lines).encode("utf-8")
        checksum = compute_bytes_checksum(data)
        object_key = self._put_shard_object(handle, data)

        manifest = ShardManifest(
            shard_id=handle.shard_id,
            object_key=object_key,
            model_id=handle.model_id,
            dims=handle.dims,
            vector_count=handle.vector_count,
            size_bytes=len(data),
            max_bytes=handle.max_bytes,
            checksum=checksum,
            id_min=handle.id_min,
            id_max=handle.id_max,
            time_min=handle.time_min,
            time_max=handle.time_max,
            created_at=handle.created_at,
            closed_at=datetime.now(timezone.utc),
            manifest_key=manifest_key_for(object_key),
        )
        manifest_bytes = json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        retry_with_backoff(
            lambda: self.object_store.put(manifest.manifest_key, manifest_bytes, overwrite=False),
            self.retry_config,
            operation_name=f"write manifest {manifest.manifest_key}",
        ).unwrap()

        self._cache_manifest(manifest.manifest_key, manifest)

        handle.closed = True
        handle.lines = []
        logger.info(
            f"Closed shard {handle.shard_id}: {manifest.vector_count} vectors, "
            f"{manifest.size_bytes} bytes -> {object_key}"
        )
        return manifest

    def _put_shard_object(self, handle: ShardHandle, data: bytes) -> str:
        prefix = partition_prefix(Stage.INDEXED, handle.partition_date)
        sequence = self._next_sequence(prefix)
        for _ in range(self.config.max_sequence_attempts):
            key = f"{prefix}shard-{sequence:05d}.jsonl"
            try:
                retry_with_backoff(
                    lambda: self.object_store.put(key, data, overwrite=False),
                    self.retry_config,
                    operation_name=f"write shard {key}",
                ).unwrap()
            except ObjectExistsError:
                sequence += 1
                continue
            return key
        raise ObjectExistsError(
            f"Could not allocate a shard key under {prefix} after "
            f"{self.config.max_sequence_attempts} attempts"
        )

    def _next_sequence(self, prefix: str) -> int:
        highest = 0
        for key in self.object_store.list(prefix):
            parsed = parse_object_key(key)
            if parsed:
                highest = max(highest, parsed[2])
        return highest + 1

    # ------------------------------------------------------------------- read

    def list_manifests(
        self,
        model_id: Optional[str] = None,
        dims: Optional[int] = None,
        warnings: Optional[List[str]] = None,
    ) -> List[ShardManifest]:
        """
        List committed shard manifests.

        Unreadable manifests are skipped with a warning (appended to
        ``warnings`` when given).

        Args:
            model_id: Only manifests for this model
            dims: Only manifests with this dimensionality
            warnings: Optional list collecting corruption warnings

        Returns:
            Manifests in (date, sequence) order
        """
        manifests = []
        for key in self.object_store.list(f"{MANIFEST_PREFIX}/"):
            if not key.endswith(".json"):
                continue
            manifest = self._manifest_cache.get(key)
            if manifest is None:
                try:
                    manifest = ShardManifest.from_dict(json.loads(self.object_store.get(key).decode("utf-8")))
                except (ValueError, KeyError, TypeError) as e:
                    message = f"Skipped unreadable manifest {key}: {e}"
                    logger.warning(message)
                    if warnings is not None:
                        warnings.append(message)
                    continue
                self._cache_manifest(key, manifest)

            if model_id is not None and manifest.model_id != model_id:
                continue
            if dims is not None and manifest.dims != dims:
                continue
            manifests.append(manifest)
        return manifests

    def _cache_manifest(self, key: str, manifest: ShardManifest) -> None:
        with self._manifest_lock:
            if key in self._manifest_cache or len(self._manifest_cache) < self.config.max_cached_manifests:
                self._manifest_cache[key] = manifest

    def index_pairs(self, warnings: Optional[List[str]] = None) -> Set[Tuple[str, int]]:
        """The distinct (model_id, dims) pairs that have at least one shard."""
        return {(m.model_id, m.dims) for m in self.list_manifests(warnings=warnings)}

    def load_shard(self, manifest: ShardManifest, strict: bool = False) -> LoadedShard:
        """
        Read a committed shard, using the shard cache.

        Records that fail to parse, do not match the manifest's
        (model_id, dims), or are not unit vectors are skipped and reported
        in the result's warnings.

        Args:
            manifest: Manifest of the shard to read
            strict: Raise CorruptionError on the first problem instead of skipping

        Returns:
            LoadedShard with the valid vectors and any warnings

        Raises:
            NotFoundError: If the shard object is missing
            CorruptionError: In strict mode, on any corruption
        """
        cached = self.shard_cache.get(manifest.shard_id)
        if cached is not None:
            return cached

        data = self.object_store.get(manifest.object_key)
        shard = LoadedShard(manifest=manifest)

        checksum_ok = compute_bytes_checksum(data) == manifest.checksum
        if not checksum_ok:
            message = f"Shard {manifest.shard_id} checksum mismatch at {manifest.object_key}"
            if strict:
                raise CorruptionError(message)
            logger.warning(message)
            shard.warnings.append(message)

        text = data.decode("utf-8", errors="replace")
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                vector = EmbeddingVector.from_dict(json.loads(line))
                if vector.model_id != manifest.model_id or vector.dims != manifest.dims:
                    raise ValueError(
                        f"record is {vector.model_id} ({vector.dims} dims), "
                        f"shard is {manifest.model_id} ({manifest.dims} dims)"
                    )
                if not is_unit(vector.vector):
                    raise ValueError(f"vector norm {vector.norm:.6f} is not unit")
            except (ValueError, KeyError, TypeError) as e:
                message = f"Skipped corrupt record at {manifest.object_key}:{line_no}: {e}"
                if strict:
                    raise CorruptionError(message) from e
                logger.warning(message)
                shard.warnings.append(message)
                shard.corrupt_records += 1
                continue
            shard.vectors.append(vector)

        logger.debug(
            f"Loaded shard {manifest.shard_id}: {len(shard.vectors)} vectors, "
            f"{shard.corrupt_records} corrupt"
        )
        if checksum_ok:
            return self.shard_cache.put(shard)
        return shard


class ShardWriter:
    """
    Batch helper that rotates shards automatically.

    Opens a shard lazily on first append and, when the current shard reports
    ShardFullError, closes it and continues in a fresh one.

    Example:
        >>> with ShardWriter(manager, "hashing-v1", 384) as writer:
        ...     for vector in vectors:
        ...         writer.append(vector)
        >>> writer.manifests
    """

    def __init__(
        self,
        manager: ShardManager,
        model_id: str,
        dims: int,
        partition_date: Optional[date] = None,
    ):
        self.manager = manager
        self.model_id = model_id
        self.dims = dims
        self.partition_date = partition_date
        self.manifests: List[ShardManifest] = []
        self._handle: Optional[ShardHandle] = None

    def append(self, vector: EmbeddingVector) -> None:
        """Append a vector, rotating to a new shard when the current one is full."""
        if self._handle is None:
            self._handle = self.manager.open_shard(self.model_id, self.dims, self.partition_date)
        try:
            self.manager.append_vector(self._handle, vector)
        except ShardFullError:
            self._rotate()
            self.manager.append_vector(self._handle, vector)

    def _rotate(self) -> None:
        manifest = self.manager.close_shard(self._handle)
        if manifest is not None:
            self.manifests.append(manifest)
        logger.debug(f"Rotating shard for {self.model_id} ({self.dims} dims)")
        self._handle = self.manager.open_shard(self.model_id, self.dims, self.partition_date)

    def close(self) -> List[ShardManifest]:
        """Close the current shard, if any, and return every manifest written."""
        if self._handle is not None:
            manifest = self.manager.close_shard(self._handle)
            if manifest is not None:
                self.manifests.append(manifest)
            self._handle = None
        return self.manifests

    def __enter__(self) -> "ShardWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
