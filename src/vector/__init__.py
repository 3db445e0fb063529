"""
Vector Index Module

This module turns chunked records into a sharded, immutable vector index and
answers top-K similarity queries over it.

Key components:
- contracts/: Data models for vectors, manifests, queries and responses
- embedding.py: EmbeddingProducer and its providers
- shards.py: ShardManager and ShardWriter for size-bounded shards
- query.py: QueryEngine
- chunker.py / indexer.py: chunked and embedded pipeline stages

Key concepts:
- Model pair: every vector carries (model_id, dims). Vectors from different
  pairs are never compared.
- Shard: a closed, checksummed object of vectors for one model pair, found
  through its manifest.
"""

__version__ = "0.1.0"
