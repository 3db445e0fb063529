"""
Embedding production.

Turns text chunks into unit-normalized EmbeddingVectors with a fixed
(model_id, dims) pair. A batch either succeeds as a whole or fails as a
whole; no member is silently dropped.

Providers:
- OllamaEmbeddingProvider: Ollama's /api/embed endpoint over HTTP
- HashingEmbeddingProvider: deterministic feature hashing, no network

Both the provider instances and computed vectors are cached process-wide.
"""

import hashlib
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

try:
    import requests
except ImportError:
    requests = None

from ingest.core.exceptions import (
    DimensionMismatchError,
    ModelMismatchError,
    NotFoundError,
    TransientIOError,
    UpstreamError,
    ValidationError,
)
from ingest.core.utils import compute_content_hash

from .contracts.models import EmbeddingVector, validate_metadata
from .scoring import normalize


logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """
    Configuration for embedding production.

    Attributes:
        provider: 'hashing' or 'ollama'
        model_id: Embedding model identifier
        dims: Expected vector dimensionality
        batch_size: Texts sent to the provider per call
        base_url: Ollama base URL
        timeout: Provider request timeout in seconds
        snippet_chars: Characters of chunk text kept as the result snippet
        revision: Model revision folded into the content cache key
    """
    provider: str = "hashing"
    model_id: str = "hashing-v1"
    dims: int = 384
    batch_size: int = 32
    base_url: str = "http://localhost:11434"
    timeout: int = 60
    snippet_chars: int = 200
    revision: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingConfig":
        """Create from the ``embedding`` config section."""
        return cls(
            provider=data.get("provider", "hashing"),
            model_id=data.get("model_id", "hashing-v1"),
            dims=int(data.get("dims", 384)),
            batch_size=int(data.get("batch_size", 32)),
            base_url=data.get("base_url", "http://localhost:11434"),
            timeout=int(data.get("timeout", 60)),
            snippet_chars=int(data.get("snippet_chars", 200)),
            revision=str(data.get("revision", "")),
        )

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        """Create from PIPELINE_EMBED_* / OLLAMA_BASE_URL environment variables."""
        return cls(
            provider=os.environ.get("PIPELINE_EMBED_PROVIDER", "hashing"),
            model_id=os.environ.get("PIPELINE_EMBED_MODEL", "hashing-v1"),
            dims=int(os.environ.get("PIPELINE_EMBED_DIMS", "384")),
            base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
        )


@dataclass
class EmbeddingInput:
    """A chunk of text to embed, with the metadata carried onto its vector."""
    id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class EmbeddingProvider(ABC):
    """
    Abstract embedding model.

    Providers return raw vectors; validation and normalization happen in
    EmbeddingProducer.
    """

    model_id: str
    dims: int
    revision: str = ""

    @abstractmethod
    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a list of texts.

        Args:
            texts: Texts to embed

        Returns:
            One raw vector per input text, in order
        """
        pass

    @property
    def model_key(self) -> str:
        """``model_id@revision`` identity used for content caching."""
        return f"{self.model_id}@{self.revision}" if self.revision else self.model_id

    def get_name(self) -> str:
        return self.__class__.__name__

    def close(self) -> None:
        """Release resources. Optional."""
        pass


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic feature-hashing embedder.

    Each lowercase word and adjacent word pair is hashed into one of ``dims``
    buckets with a hash-derived sign. The same text always yields the same
    vector, so it is suitable for tests and offline indexing.
    """

    def __init__(self, model_id: str = "hashing-v1", dims: int = 384, revision: str = "1"):
        if dims < 1:
            raise ValidationError(f"dims must be >= 1, got {dims}")
        self.model_id = model_id
        self.dims = dims
        self.revision = revision

    def _features(self, text: str) -> List[str]:
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            stripped = text.strip()
            return [stripped] if stripped else []
        bigrams = [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        return tokens + bigrams

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        for text in texts:
            vector = [0.0] * self.dims
            for feature in self._features(text):
                digest = hashlib.sha256(f"{self.model_key}:{feature}".encode("utf-8")).digest()
                bucket = int.from_bytes(digest[:8], "big") % self.dims
                sign = 1.0 if digest[8] & 1 else -1.0
                vector[bucket] += sign
            vectors.append(vector)
        return vectors


class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings from an Ollama server's /api/embed endpoint.

    Example:
        >>> provider = OllamaEmbeddingProvider("nomic-embed-text", dims=768)
        >>> vectors = provider.embed_texts(["Hello world"])
    """

    def __init__(
        self,
        model_id: str,
        dims: int,
        base_url: str = "http://localhost:11434",
        timeout: int = 60,
        revision: str = "",
        session=None,
    ):
        """
        Initialize the Ollama provider.

        Args:
            model_id: Ollama embedding model name
            dims: Dimensionality the model is expected to produce
            base_url: Ollama base URL
            timeout: Request timeout in seconds
            revision: Model revision or digest, if pinned
            session: Optional pre-configured requests.Session
        """
        if requests is None:
            raise ImportError(
                "requests library is required for OllamaEmbeddingProvider. "
                "Install with: pip install requests"
            )
        self.model_id = model_id
        self.dims = dims
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.revision = revision
        self.session = session or requests.Session()

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        url = f"{self.base_url}/api/embed"
        logger.debug(f"Embedding {len(texts)} texts via {url} with model {self.model_id}")

        try:
            response = self.session.post(
                url,
                json={"model": self.model_id, "input": texts},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientIOError(f"Failed to reach Ollama at {self.base_url}: {e.__class__.__name__}") from None

        if response.status_code == 404:
            raise NotFoundError(f"Embedding model not found on Ollama: {self.model_id}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"Ollama embed returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamError(f"Ollama embed returned HTTP {response.status_code}", status_code=response.status_code)

        try:
            embeddings = response.json().get("embeddings")
        except (ValueError, AttributeError) as e:
            raise UpstreamError("Invalid JSON response from Ollama embed") from e

        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise UpstreamError(
                f"Ollama returned {len(embeddings) if isinstance(embeddings, list) else 'no'} "
                f"embeddings for {len(texts)} inputs"
            )
        return embeddings

    def close(self) -> None:
        self.session.close()


# Process-wide provider instances keyed by (model_id, dims)
_PROVIDERS: Dict[Tuple[str, int], EmbeddingProvider] = {}
_PROVIDERS_LOCK = threading.Lock()


def get_provider(
    model_id: str,
    dims: int,
    factory: Callable[[], EmbeddingProvider],
) -> EmbeddingProvider:
    """
    Return the cached provider for (model_id, dims), creating it once.

    Concurrent first callers block on the lock; exactly one runs ``factory``.
    """
    key = (model_id, dims)
    provider = _PROVIDERS.get(key)
    if provider is not None:
        return provider
    with _PROVIDERS_LOCK:
        provider = _PROVIDERS.get(key)
        if provider is None:
            logger.info(f"Initializing embedding provider for {model_id} ({dims} dims)")
            provider = factory()
            _PROVIDERS[key] = provider
    return provider


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """
    Build (or reuse) the provider described by ``config``.

    Raises:
        ValidationError: If the provider type is unknown
    """
    if config.provider == "hashing":
        factory = lambda: HashingEmbeddingProvider(config.model_id, config.dims, revision=config.revision or "1")
    elif config.provider == "ollama":
        factory = lambda: OllamaEmbeddingProvider(
            config.model_id,
            config.dims,
            base_url=config.base_url,
            timeout=config.timeout,
            revision=config.revision,
        )
    else:
        raise ValidationError(f"Unknown embedding provider: {config.provider}")
    return get_provider(config.model_id, config.dims, factory)


def clear_provider_cache() -> None:
    """Drop all cached providers (tests only)."""
    with _PROVIDERS_LOCK:
        for provider in _PROVIDERS.values():
            provider.close()
        _PROVIDERS.clear()


class EmbeddingCache:
    """
    Content-addressed vector cache.

    Keyed on (model_id@revision, dims, sha256(text)). Entries are written
    once under a lock and never changed; once ``max_entries`` is reached new
    vectors are simply not cached.
    """

    def __init__(self, max_entries: int = 100_000):
        self.max_entries = max_entries
        self._entries: Dict[Tuple[str, int, str], Tuple[float, ...]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, model_key: str, dims: int, text: str) -> Optional[Tuple[float, ...]]:
        vector = self._entries.get((model_key, dims, compute_content_hash(text)))
        if vector is None:
            self.misses += 1
        else:
            self.hits += 1
        return vector

    def put(self, model_key: str, dims: int, text: str, vector: Sequence[float]) -> None:
        key = (model_key, dims, compute_content_hash(text))
        with self._lock:
            if key in self._entries or len(self._entries) >= self.max_entries:
                return
            self._entries[key] = tuple(vector)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


_DEFAULT_CACHE = EmbeddingCache()


def get_default_cache() -> EmbeddingCache:
    """The process-wide embedding cache."""
    return _DEFAULT_CACHE


class EmbeddingProducer:
    """
    Validating, normalizing front end to an EmbeddingProvider.

    Example:
        >>> producer = EmbeddingProducer(HashingEmbeddingProvider(dims=384))
        >>> vectors = producer.embed([EmbeddingInput("c1", "Spider-Man swings")], "hashing-v1", 384)
        >>> round(vectors[0].norm, 6)
        1.0
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = 32,
        cache: Optional[EmbeddingCache] = None,
    ):
        """
        Initialize the producer.

        Args:
            provider: Embedding model
            batch_size: Texts per provider call
            cache: Vector cache (defaults to the process-wide cache)
        """
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.cache = cache if cache is not None else get_default_cache()

    @property
    def model_id(self) -> str:
        return self.provider.model_id

    @property
    def dims(self) -> int:
        return self.provider.dims

    def _check_model(self, model_id: str, dims: int) -> None:
        if model_id != self.provider.model_id or dims != self.provider.dims:
            raise ModelMismatchError(
                f"Requested {model_id} ({dims} dims) but provider serves "
                f"{self.provider.model_id} ({self.provider.dims} dims)",
                {"expected_dims": self.provider.dims, "actual_dims": dims},
            )

    def _embed_texts(self, texts: List[str], dims: int) -> List[List[float]]:
        """Embed texts through the cache; all-or-nothing."""
        model_key = self.provider.model_key
        results: List[Optional[List[float]]] = []
        missing: List[int] = []
        for i, text in enumerate(texts):
            cached = self.cache.get(model_key, dims, text)
            results.append(list(cached) if cached is not None else None)
            if cached is None:
                missing.append(i)

        raw: List[List[float]] = []
        for start in range(0, len(missing), self.batch_size):
            batch = [texts[i] for i in missing[start:start + self.batch_size]]
            produced = self.provider.embed_texts(batch)
            if len(produced) != len(batch):
                raise DimensionMismatchError(
                    f"Provider returned {len(produced)} vectors for {len(batch)} inputs"
                )
            raw.extend(produced)

        # Validate the whole batch before caching or returning anything
        for position, vector in enumerate(raw):
            if len(vector) != dims:
                raise DimensionMismatchError(
                    f"Embedding for input {missing[position]} has {len(vector)} dims; expected {dims}",
                    {"expected_dims": dims, "actual_dims": len(vector)},
                )
        normalized = [normalize(vector) for vector in raw]

        for position, vector in zip(missing, normalized):
            results[position] = vector
            self.cache.put(model_key, dims, texts[position], vector)

        if missing:
            logger.debug(f"Embedded {len(missing)} texts ({len(texts) - len(missing)} from cache)")
        return results

    def embed(self, chunks: Sequence[EmbeddingInput], model_id: str, dims: int) -> List[EmbeddingVector]:
        """
        Embed a batch of chunks.

        Args:
            chunks: Chunks to embed
            model_id: Model the caller expects
            dims: Dimensionality the caller expects

        Returns:
            One unit-normalized EmbeddingVector per chunk, in order

        Raises:
            ModelMismatchError: If (model_id, dims) is not what the provider serves
            DimensionMismatchError: If any produced vector has the wrong length
            ValidationError: For empty text, bad metadata, or zero/non-finite vectors
        """
        self._check_model(model_id, dims)
        if not chunks:
            return []

        for chunk in chunks:
            if not chunk.text or not chunk.text.strip():
                raise ValidationError(f"Chunk {chunk.id} has no text to embed")
        metadata = [validate_metadata(chunk.metadata) for chunk in chunks]

        vectors = self._embed_texts([chunk.text for chunk in chunks], dims)
        return [
            EmbeddingVector(id=chunk.id, vector=vector, model_id=model_id, dims=dims, metadata=meta)
            for chunk, vector, meta in zip(chunks, vectors, metadata)
        ]

    def embed_query(self, text: str, model_id: str, dims: int) -> List[float]:
        """
        Embed query text.

        Returns:
            Unit-normalized query vector
        """
        self._check_model(model_id, dims)
        if not text or not text.strip():
            raise ValidationError("Query text is empty")
        return self._embed_texts([text], dims)[0]
