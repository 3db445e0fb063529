"""
Fixtures for the vector index tests.
"""

from typing import Dict, List, Optional, Sequence

import pytest

from vector.contracts import EmbeddingVector
from vector.embedding import EmbeddingCache, EmbeddingProducer, EmbeddingProvider
from vector.scoring import normalize
from vector.shards import IndexConfig, ShardCache, ShardManager


class StubProvider(EmbeddingProvider):
    """Returns fixed vectors by text, falling back to a one-hot on the first axis."""

    def __init__(self, model_id: str = "stub-v1", dims: int = 2, vectors: Optional[Dict[str, Sequence[float]]] = None):
        self.model_id = model_id
        self.dims = dims
        self.vectors = dict(vectors or {})
        self.calls: List[List[str]] = []

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        default = [1.0] + [0.0] * (self.dims - 1)
        return [list(self.vectors.get(text, default)) for text in texts]


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def producer(stub_provider):
    return EmbeddingProducer(stub_provider, batch_size=8, cache=EmbeddingCache())


@pytest.fixture
def make_producer():
    """Factory for producers over a StubProvider with fixed vectors."""

    def _make(model_id="stub-v1", dims=2, vectors=None):
        return EmbeddingProducer(StubProvider(model_id, dims, vectors), batch_size=8, cache=EmbeddingCache())

    return _make


@pytest.fixture
def shard_manager(memory_store):
    return ShardManager(memory_store, IndexConfig(max_shard_bytes=64_000), shard_cache=ShardCache())


@pytest.fixture
def make_vector():
    """Factory for unit vectors with standard metadata."""

    def _make(id, values, model_id="stub-v1", entity_type="comic", modified="2024-01-01T00:00:00+00:00", **meta):
        values = normalize(values)
        metadata = {
            "entity_type": entity_type,
            "source_id": id.split("#")[0],
            "title": f"Title {id}",
            "snippet": f"Snippet for {id}",
            "modified": modified,
            "chunk_index": 0,
        }
        metadata.update(meta)
        return EmbeddingVector(id=id, vector=values, model_id=model_id, dims=len(values), metadata=metadata)

    return _make

