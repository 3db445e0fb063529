"""
Exception taxonomy shared by the ingestion and vector layers.

Every error carries a machine-readable ``code`` and an HTTP-style ``status``
so that callers at the outer surface (CLI, API adapters) can serialize it
without inspecting the class hierarchy.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code = "internal_error"
    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the error response envelope."""
        error = {
            "code": self.code,
            "status": self.status,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ValidationError(PipelineError):
    """
    Bad caller input.

    Raised when:
    - Query parameters are out of range or malformed
    - A record or vector violates a write-time schema rule
    - Configuration values are invalid

    Never retried.
    """

    code = "invalid_params"
    status = 400


class QueryTooLargeError(ValidationError):
    """Query text exceeds the configured maximum length."""

    code = "query_too_large"
    status = 413


class NotFoundError(PipelineError):
    """Missing checkpoint, object, shard, or index."""

    code = "not_found"
    status = 404


class DimensionMismatchError(PipelineError):
    """
    Model/index inconsistency.

    Raised when a vector's length differs from the declared dimensionality,
    or when a query model does not match any existing index. Fatal to the
    request and never coerced.
    """

    code = "dimension_mismatch"
    status = 409


class ModelMismatchError(DimensionMismatchError):
    """A vector's (model_id, dims) differs from the shard it is written into."""

    code = "model_mismatch"


class StaleCheckpointError(PipelineError):
    """
    Optimistic-concurrency conflict in the checkpoint ledger.

    Another writer already advanced the watermark past the proposed value.
    Recover by re-reading the ledger and resuming from the stored position.
    """

    code = "stale_checkpoint"
    status = 409

    def __init__(
        self,
        message: str,
        partition_key: Optional[str] = None,
        sort_key: Optional[str] = None,
    ):
        super().__init__(message, {"partition_key": partition_key, "sort_key": sort_key})
        self.partition_key = partition_key
        self.sort_key = sort_key


class TransientIOError(PipelineError):
    """
    Storage or network hiccup.

    Retried with bounded exponential backoff by the stage performing the I/O,
    never inside the query scoring loop.
    """

    code = "transient_io"
    status = 503


class CorruptionError(PipelineError):
    """
    Malformed stored record, shard, or manifest.

    Normally quarantined and reported as a warning; only surfaced as an error
    when every candidate of an operation is corrupt.
    """

    code = "corrupt_data"
    status = 500


class ObjectExistsError(PipelineError):
    """Create-only put targeted a key that is already committed."""

    code = "object_exists"
    status = 409


class ShardFullError(PipelineError):
    """Appending would push the shard past its size bound; rotate to a new shard."""

    code = "shard_full"
    status = 409


class ShardOwnershipError(PipelineError):
    """A shard handle was used by a producer other than the one that opened it."""

    code = "shard_ownership"
    status = 409


class QueryCancelledError(PipelineError):
    """Query was cancelled between shard loads; partial results are discarded."""

    code = "cancelled"
    status = 499


class UpstreamError(PipelineError):
    """Non-retryable error response from the upstream source."""

    code = "upstream_error"
    status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, {"upstream_status": status_code} if status_code else None)
        self.status_code = status_code


def error_response(exc: BaseException) -> Dict[str, Any]:
    """
    Build an error response for any exception.

    Pipeline errors serialize themselves; anything else becomes a generic 500
    without leaking the original message.
    """
    if isinstance(exc, PipelineError):
        return exc.to_dict()
    return {
        "error": {
            "code": PipelineError.code,
            "status": PipelineError.status,
            "message": "Internal error",
        }
    }
