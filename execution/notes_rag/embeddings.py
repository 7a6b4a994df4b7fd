"""
Embedding Service for Notes RAG

Provides embeddings via OpenAI (text-embedding-3-small, 1536 dimensions)
with memory and file-based caching.

Every call validates the returned vector: an empty response or a vector of
the wrong dimension raises EmbeddingError rather than being stored or
searched with.

Architecture:
    BaseEmbeddingService    -- shared caching, dimension checks, embed / embed_query
        OpenAIEmbeddingService  -- OpenAI embeddings provider
    cosine_similarity       -- out-of-band scoring helper
"""

import os
import json
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding provider returns no usable vector."""


class DimensionMismatchError(EmbeddingError, ValueError):
    """Raised when two vectors (or a vector and the model) disagree on dimension."""


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    model: str = field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"))
    dimensions: int = field(default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536")))
    cache_dir: Optional[str] = None
    use_cache: bool = True
    timeout: float = 30.0


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    Cosine similarity of two vectors.

    Raises DimensionMismatchError when lengths differ; returns 0.0 when either
    vector has zero magnitude.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"Cannot compare vectors of different dimensions: {len(a)} vs {len(b)}"
        )
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Provides shared functionality:
    - Memory and file-based caching
    - Cache key generation
    - Dimension validation on every call

    Subclasses only need to implement:
    - _init_client(): Initialize the provider-specific API client
    - _request_embedding(text): Return the raw list of vectors for one text
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _request_embedding(self, text: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _request_embedding()")

    def embed(self, text: str, input_type: str = "document") -> list[float]:
        """
        Generate the embedding for one text.

        Args:
            text: Text to embed
            input_type: Cache namespace ("document" or "query")

        Returns:
            Embedding vector of exactly ``config.dimensions`` floats

        Raises:
            EmbeddingError: provider failure, empty response, or wrong dimension
        """
        if not self._client:
            raise EmbeddingError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        cache_key = self._get_cache_key(text, input_type)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            vectors = self._request_embedding(text)
        except EmbeddingError:
            raise
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e

        if not vectors or not vectors[0]:
            raise EmbeddingError("Failed to generate embedding")

        embedding = list(vectors[0])
        if len(embedding) != self.config.dimensions:
            raise DimensionMismatchError(
                f"Expected {self.config.dimensions}-dimensional embedding, got {len(embedding)}"
            )

        self._set_cached(cache_key, embedding)
        return embedding

    def embed_query(self, query: str) -> list[float]:
        """Generate embedding for a search query."""
        return self.embed(query, input_type="query")

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                        self._cache[key] = embedding
                        return embedding
                except Exception as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except Exception as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using OpenAI's text-embedding-3 models.

    text-embedding-3-small provides:
    - 1536-dimensional embeddings
    - Same model for documents and queries
    """

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        """Initialize the OpenAI client."""
        api_key = os.getenv("OPENAI_API_KEY")

        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Embeddings will fail. "
                "Set the environment variable in .env."
            )
            return

        from openai import OpenAI
        self._client = OpenAI(
            api_key=api_key,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            timeout=self.config.timeout,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _request_embedding(self, text: str) -> list[list[float]]:
        response = self._client.embeddings.create(
            model=self.config.model,
            input=text,
        )
        return [item.embedding for item in response.data]


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> OpenAIEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        config: Optional configuration; model and dimensions default from
            EMBEDDING_MODEL / EMBEDDING_DIMENSIONS.

    Returns:
        Configured embedding service
    """
    return OpenAIEmbeddingService(config or EmbeddingConfig())


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "What did I write about the quarterly planning meeting?"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
