"""
Unit tests for the query engine.

Tests for:
- Ranking, k and threshold handling
- Model/dimension mismatch detected before any shard is read
- Filters and shard pruning
- Corruption tolerance, cancellation and scoring strategies
"""

import math
import threading

import pytest

from ingest.core.exceptions import (
    CorruptionError,
    DimensionMismatchError,
    NotFoundError,
    QueryCancelledError,
    QueryTooLargeError,
    ValidationError,
)
from vector.query import QueryConfig, QueryEngine, ScoringStrategy


A = [0.9, math.sqrt(0.19)]
B = [0.95, math.sqrt(0.0975)]
C = [0.8, 0.6]


def commit(manager, vectors, model_id="stub-v1"):
    handle = manager.open_shard(model_id, len(vectors[0].vector))
    for vector in vectors:
        manager.append_vector(handle, vector)
    return manager.close_shard(handle)


@pytest.fixture
def engine(shard_manager, make_producer):
    producer = make_producer(vectors={"web-slinging hero": [1.0, 0.0]})
    return QueryEngine(shard_manager, producer)


@pytest.fixture
def abc_index(shard_manager, make_vector):
    return commit(shard_manager, [
        make_vector("comic#A#0000", A, modified="2024-01-10T00:00:00+00:00"),
        make_vector("comic#B#0000", B, entity_type="character", modified="2024-02-10T00:00:00+00:00"),
        make_vector("comic#C#0000", C, modified="2024-03-10T00:00:00+00:00"),
    ])


class TestRanking:
    """Tests for scoring and ranking."""

    def test_top_k_in_score_order(self, engine, abc_index):
        response = engine.query({"q": "web-slinging hero", "k": 2})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#A#0000"]
        assert response.results[0].score == pytest.approx(0.95)
        assert response.results[1].score == pytest.approx(0.9)
        assert response.results[0].snippet == "Snippet for comic#B#0000"
        assert "snippet" not in response.results[0].meta
        assert response.model_id == "stub-v1" and response.dims == 2

    def test_threshold_drops_low_scores(self, engine, abc_index):
        response = engine.query({"q": "web-slinging hero", "k": 5, "threshold": 0.85})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#A#0000"]

    @pytest.mark.parametrize("threshold", [0, None])
    def test_zero_threshold_keeps_everything(self, engine, abc_index, threshold):
        response = engine.query({"q": "web-slinging hero", "k": 5, "threshold": threshold})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#A#0000", "comic#C#0000"]

    def test_ties_break_by_id(self, engine, shard_manager, make_vector):
        commit(shard_manager, [
            make_vector("comic#2#0000", [1.0, 0.0]),
            make_vector("comic#1#0000", [1.0, 0.0]),
        ])

        response = engine.query({"q": "web-slinging hero", "k": 2})

        assert [hit.id for hit in response.results] == ["comic#1#0000", "comic#2#0000"]

    def test_results_across_shards(self, engine, shard_manager, make_vector):
        commit(shard_manager, [make_vector("comic#A#0000", A)])
        commit(shard_manager, [make_vector("comic#B#0000", B), make_vector("comic#C#0000", C)])

        response = engine.query({"q": "web-slinging hero", "k": 3})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#A#0000", "comic#C#0000"]

    def test_response_envelope(self, engine, abc_index):
        body = engine.query_params({"q": "web-slinging hero", "k": "1"}).to_dict()

        assert body["model"] == {"id": "stub-v1", "dims": 2}
        assert body["k"] == 1
        assert body["query_id"]
        assert "total" in body["timing_ms"]
        assert body["results"][0]["id"] == "comic#B#0000"


class TestModelChecks:
    """Tests for model and dimension mismatches."""

    def test_dimension_mismatch_reads_no_shard(self, shard_manager, memory_store, make_vector, make_producer):
        commit(shard_manager, [make_vector("comic#1#0000", [1.0] + [0.0] * 383)])
        producer = make_producer(dims=768)
        engine = QueryEngine(shard_manager, producer)
        memory_store.get_log = []

        with pytest.raises(DimensionMismatchError) as exc_info:
            engine.query({"q": "web-slinging hero"})

        assert exc_info.value.status == 409
        assert not any(key.startswith("indexed/") for key in memory_store.get_log)
        assert producer.provider.calls == []

    def test_no_index(self, engine):
        with pytest.raises(NotFoundError):
            engine.query({"q": "web-slinging hero"})


class TestFilters:
    """Tests for metadata filters and shard pruning."""

    def test_entity_filter(self, engine, abc_index):
        response = engine.query({"q": "web-slinging hero", "filter.entity": "character"})

        assert [hit.id for hit in response.results] == ["comic#B#0000"]

    def test_id_filter(self, engine, abc_index):
        response = engine.query({"q": "web-slinging hero", "filter": {"id": "comic#C#0000"}})

        assert [hit.id for hit in response.results] == ["comic#C#0000"]

    def test_time_filters(self, engine, abc_index):
        response = engine.query({
            "q": "web-slinging hero",
            "filter.since": "2024-02-01T00:00:00Z",
            "filter.until": "2024-02-28T00:00:00Z",
        })

        assert [hit.id for hit in response.results] == ["comic#B#0000"]

    def test_vectors_without_modified_fail_time_filter(self, engine, shard_manager, make_vector):
        commit(shard_manager, [
            make_vector("comic#1#0000", [1.0, 0.0], modified=None),
            make_vector("comic#2#0000", [0.0, 1.0], modified="2024-06-01T00:00:00+00:00"),
        ])

        response = engine.query({"q": "web-slinging hero", "filter.since": "2024-01-01"})

        assert [hit.id for hit in response.results] == ["comic#2#0000"]

    def test_no_shard_in_time_range(self, engine, abc_index, memory_store):
        memory_store.get_log = []

        with pytest.raises(NotFoundError):
            engine.query({"q": "web-slinging hero", "filter.since": "2025-01-01"})
        assert not any(key.startswith("indexed/") for key in memory_store.get_log)

    def test_id_outside_shard_range(self, engine, abc_index):
        with pytest.raises(NotFoundError):
            engine.query({"q": "web-slinging hero", "filter.id": "zzz"})

    def test_filter_matching_nothing_returns_empty(self, engine, abc_index):
        response = engine.query({"q": "web-slinging hero", "filter.entity": "creator"})

        assert response.results == []


class TestValidation:
    """Tests for request validation."""

    @pytest.mark.parametrize("params", [
        {"q": ""},
        {"q": "hero", "k": 0},
        {"q": "hero", "k": 51},
        {"q": "hero", "k": "abc"},
        {"q": "hero", "threshold": 1.5},
        {"q": "hero", "threshold": "high"},
        {"q": "hero", "mode": "sparse"},
        {"q": "hero", "filter.since": "yesterday"},
        {"q": "hero", "filter.since": "2024-02-01", "filter.until": "2024-01-01"},
    ])
    def test_invalid_params(self, engine, abc_index, params):
        with pytest.raises(ValidationError):
            engine.query(params)

    def test_query_too_large(self, shard_manager, producer, abc_index):
        engine = QueryEngine(shard_manager, producer, QueryConfig(max_query_chars=10))

        with pytest.raises(QueryTooLargeError) as exc_info:
            engine.query({"q": "x" * 11})

        assert exc_info.value.status == 413

    def test_default_k(self, shard_manager, producer, abc_index):
        engine = QueryEngine(shard_manager, producer, QueryConfig(default_k=1))

        assert len(engine.query({"q": "hero"}).results) == 1


class TestCorruption:
    """Tests for corrupt shards and records."""

    def test_corrupt_record_is_skipped_with_warning(self, engine, abc_index, memory_store):
        lines = memory_store.get(abc_index.object_key).decode("utf-8").splitlines()
        lines[0] = "{broken"
        memory_store.put(abc_index.object_key, ("\n".join(lines) + "\n").encode("utf-8"), overwrite=True)

        response = engine.query({"q": "web-slinging hero", "k": 5})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#C#0000"]
        assert response.warnings

    def test_non_finite_record_never_scores(self, engine, abc_index, memory_store, make_vector):
        stray = make_vector("comic#Z#0000", [1.0, 0.0])
        stray.vector = [float("nan"), float("nan")]
        data = memory_store.get(abc_index.object_key) + (stray.to_json_line() + "\n").encode("utf-8")
        memory_store.put(abc_index.object_key, data, overwrite=True)

        response = engine.query({"q": "web-slinging hero", "k": 5})

        assert [hit.id for hit in response.results] == ["comic#B#0000", "comic#A#0000", "comic#C#0000"]
        assert all(math.isfinite(hit.score) for hit in response.results)
        assert any("non-finite" in w for w in response.warnings)

    def test_all_corrupt_raises(self, engine, abc_index, memory_store):
        memory_store.put(abc_index.object_key, b"nope\nstill nope\n", overwrite=True)

        with pytest.raises(CorruptionError):
            engine.query({"q": "web-slinging hero"})

    def test_missing_shard_object_is_skipped(self, engine, shard_manager, memory_store, make_vector):
        lost = commit(shard_manager, [make_vector("comic#A#0000", A)])
        commit(shard_manager, [make_vector("comic#B#0000", B)])
        del memory_store._objects[lost.object_key]

        response = engine.query({"q": "web-slinging hero"})

        assert [hit.id for hit in response.results] == ["comic#B#0000"]
        assert any(lost.shard_id in w for w in response.warnings)


class TestCancellationAndStrategies:
    """Tests for cancellation and pluggable scoring."""

    def test_cancelled_query(self, engine, abc_index):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(QueryCancelledError):
            engine.query({"q": "web-slinging hero"}, cancel_event=cancel)

    def test_hybrid_without_strategy(self, engine, abc_index):
        with pytest.raises(ValidationError):
            engine.query({"q": "web-slinging hero", "mode": "hybrid"})

    def test_hybrid_with_strategy(self, engine, abc_index):
        class PreferComics(ScoringStrategy):
            def score(self, request, candidate, dense_score):
                bonus = 0.5 if candidate.metadata.get("entity_type") == "comic" else 0.0
                return dense_score + bonus

        engine.register_strategy("hybrid", PreferComics())
        response = engine.query({"q": "web-slinging hero", "mode": "hybrid", "k": 3})

        assert [hit.id for hit in response.results] == ["comic#A#0000", "comic#C#0000", "comic#B#0000"]

    def test_dense_strategy_is_builtin(self, engine):
        with pytest.raises(ValidationError):
            engine.register_strategy("dense", None)
