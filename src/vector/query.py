"""
Similarity query engine.

Each request runs through fixed phases:

    validate -> embed -> select -> load/filter/score -> rank -> respond

Validation and model/dimension checks fail before any shard is opened.
Shards are read-only and immutable, so queries need no locks. Transient
storage errors are not retried here; that is the caller's concern.
"""

import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from ingest.core.exceptions import (
    CorruptionError,
    DimensionMismatchError,
    NotFoundError,
    QueryCancelledError,
    ValidationError,
)
from ingest.core.logging import CorrelationContext

from .contracts.models import EmbeddingVector, QueryHit, QueryRequest, QueryResponse
from .embedding import EmbeddingProducer
from .scoring import TopK, dot_product
from .shards import ShardManager


logger = logging.getLogger(__name__)


@dataclass
class QueryConfig:
    """
    Configuration for the query engine.

    Attributes:
        default_k: k used when the request omits it
        max_k: Largest k accepted
        max_query_chars: Longest query text accepted
    """
    default_k: int = 5
    max_k: int = 50
    max_query_chars: int = 2048

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryConfig":
        """Create from the ``query`` config section."""
        return cls(
            default_k=int(data.get("default_k", 5)),
            max_k=int(data.get("max_k", 50)),
            max_query_chars=int(data.get("max_query_chars", 2048)),
        )

    @classmethod
    def from_env(cls) -> "QueryConfig":
        return cls(
            default_k=int(os.environ.get("PIPELINE_QUERY_DEFAULT_K", "5")),
            max_k=int(os.environ.get("PIPELINE_QUERY_MAX_K", "50")),
            max_query_chars=int(os.environ.get("PIPELINE_QUERY_MAX_CHARS", "2048")),
        )


class ScoringStrategy(ABC):
    """
    Pluggable scorer for non-dense query modes.

    The engine always computes the dense score first and hands it to the
    strategy along with the candidate, so a strategy can blend it with any
    other signal it likes.
    """

    @abstractmethod
    def score(
        self,
        request: QueryRequest,
        candidate: EmbeddingVector,
        dense_score: float,
    ) -> float:
        """
        Score one candidate.

        Args:
            request: The query being answered
            candidate: A vector that passed the filters
            dense_score: Dot product of query and candidate vectors

        Returns:
            Final score used for ranking
        """
        pass


class _PhaseTimer:
    """Accumulates wall time per phase in milliseconds."""

    def __init__(self):
        self.timings: Dict[str, float] = {}
        self._started = time.perf_counter()

    def add(self, phase: str, started: float) -> float:
        now = time.perf_counter()
        self.timings[phase] = self.timings.get(phase, 0.0) + (now - started) * 1000.0
        return now

    def finish(self) -> Dict[str, float]:
        timings = {phase: round(ms, 3) for phase, ms in self.timings.items()}
        timings["total"] = round((time.perf_counter() - self._started) * 1000.0, 3)
        return timings


class QueryEngine:
    """
    Answers top-K similarity queries over committed shards.

    Example:
        >>> engine = QueryEngine(shard_manager, producer)
        >>> response = engine.query(QueryRequest(q="web-slinging hero", k=3))
        >>> [hit.id for hit in response.results]
    """

    def __init__(
        self,
        shard_manager: ShardManager,
        producer: EmbeddingProducer,
        config: Optional[QueryConfig] = None,
        strategies: Optional[Dict[str, ScoringStrategy]] = None,
    ):
        """
        Initialize the query engine.

        Args:
            shard_manager: Read access to shards and manifests
            producer: Embeds query text with the configured model
            config: Query limits
            strategies: Scoring strategies by mode (e.g. {'hybrid': ...})
        """
        self.shard_manager = shard_manager
        self.producer = producer
        self.config = config or QueryConfig()
        self.strategies: Dict[str, ScoringStrategy] = dict(strategies or {})

    def register_strategy(self, mode: str, strategy: ScoringStrategy) -> None:
        """Register the scorer for a non-dense mode."""
        if mode == "dense":
            raise ValidationError("The dense mode scorer is built in")
        self.strategies[mode] = strategy

    def query_params(
        self,
        params: Mapping[str, Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResponse:
        """Parse raw request parameters and run the query."""
        request = QueryRequest.from_params(params, default_k=self.config.default_k)
        return self.query(request, cancel_event=cancel_event)

    def query(
        self,
        request: Union[QueryRequest, Mapping[str, Any]],
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResponse:
        """
        Run a similarity query.

        Args:
            request: Query request (or raw params)
            cancel_event: Checked between shard loads; when set the query
                stops and partial results are discarded

        Returns:
            QueryResponse with ranked results, timings, and warnings

        Raises:
            ValidationError: Bad parameters (QueryTooLargeError for long text)
            NotFoundError: No index, or no shard matches the filters
            DimensionMismatchError: Configured model matches no index
            CorruptionError: Every candidate record was corrupt
            QueryCancelledError: The cancel event was set
        """
        if not isinstance(request, QueryRequest):
            request = QueryRequest.from_params(request, default_k=self.config.default_k)

        query_id = uuid.uuid4().hex
        with CorrelationContext(query_id=query_id):
            return self._run(request, query_id, cancel_event)

    def _run(
        self,
        request: QueryRequest,
        query_id: str,
        cancel_event: Optional[threading.Event],
    ) -> QueryResponse:
        timer = _PhaseTimer()
        warnings: List[str] = []
        model_id, dims = self.producer.model_id, self.producer.dims

        # Validate
        started = time.perf_counter()
        request.validate(self.config.max_k, self.config.max_query_chars)
        strategy = None
        if request.mode != "dense":
            strategy = self.strategies.get(request.mode)
            if strategy is None:
                raise ValidationError(f"No scoring strategy registered for mode '{request.mode}'")
        started = timer.add("validate", started)

        # Embed query, after checking the configured model against the index
        manifests = self.shard_manager.list_manifests(warnings=warnings)
        if not manifests:
            raise NotFoundError("No vector index exists")
        pairs = sorted({(m.model_id, m.dims) for m in manifests})
        if (model_id, dims) not in pairs:
            raise DimensionMismatchError(
                f"Query model {model_id} ({dims} dims) matches no index; "
                f"available: {', '.join(f'{m} ({d} dims)' for m, d in pairs)}",
                {"expected_dims": dims, "available": [{"model_id": m, "dims": d} for m, d in pairs]},
            )
        query_vector = self.producer.embed_query(request.q, model_id, dims)
        started = timer.add("embed", started)

        # Select shards
        filters = request.filters
        selected = [
            m for m in manifests
            if m.matches_model(model_id, dims)
            and m.overlaps(filters.since, filters.until)
            and (filters.id is None or m.may_contain_id(filters.id))
        ]
        if not selected:
            raise NotFoundError("No shard matches the query filters")
        started = timer.add("select", started)

        # Load, filter and score shard by shard
        top = TopK(request.k)
        valid_records = 0
        corrupt_records = 0
        corrupt_shards = 0
        scored = 0
        for manifest in selected:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Query {query_id} cancelled after {scored} candidates")
                raise QueryCancelledError("Query was cancelled")

            try:
                shard = self.shard_manager.load_shard(manifest)
            except (NotFoundError, CorruptionError) as e:
                message = f"Skipped shard {manifest.shard_id}: {e}"
                logger.warning(message)
                warnings.append(message)
                corrupt_shards += 1
                continue
            started = timer.add("load", started)

            warnings.extend(shard.warnings)
            corrupt_records += shard.corrupt_records
            valid_records += len(shard.vectors)

            candidates = [v for v in shard.vectors if filters.matches(v)]
            started = timer.add("filter", started)

            for candidate in candidates:
                score = dot_product(query_vector, candidate.vector)
                if strategy is not None:
                    score = strategy.score(request, candidate, score)
                top.push(score, candidate.id, candidate)
            scored += len(candidates)
            started = timer.add("score", started)

        if valid_records == 0 and (corrupt_records or corrupt_shards):
            raise CorruptionError(
                f"All candidates were corrupt ({corrupt_records} records, {corrupt_shards} shards)",
                {"warnings": warnings[:20]},
            )

        # Rank; a threshold of 0 keeps every candidate
        threshold = request.threshold if request.threshold else None
        ranked = top.results(threshold=threshold)
        started = timer.add("rank", started)

        hits = []
        for id, score, vector in ranked:
            meta = {k: v for k, v in vector.metadata.items() if k != "snippet"}
            hits.append(QueryHit(id=id, score=score, snippet=vector.metadata.get("snippet"), meta=meta))
        timer.add("respond", started)

        logger.info(
            f"Query {query_id}: {len(hits)} results from {scored} candidates in "
            f"{len(selected)} shards ({len(warnings)} warnings)"
        )
        return QueryResponse(
            query=request.q,
            k=request.k,
            filters=filters,
            results=hits,
            model_id=model_id,
            dims=dims,
            timing_ms=timer.finish(),
            warnings=warnings,
            query_id=query_id,
        )
