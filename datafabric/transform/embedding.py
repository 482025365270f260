"""
Embedding functions

Pluggable ``(text) -> vector`` functions used by the transform stage and the
vector sub-query. Every provider must be deterministic for a given input so
that redelivered events produce the same artifact.
"""
import hashlib
from abc import ABC, abstractmethod
from typing import List

import numpy as np

from ..core.exceptions import ConfigurationError, TransformError
from ..utils.config import ConfigDefaults, VectorSinkConfig
from ..utils.logger import setup_logger
from ..utils.text import tokenize

logger = setup_logger(__name__)


class EmbeddingProvider(ABC):
    """Abstract interface for embedding generation."""

    @abstractmethod
    def encode(self, text: str) -> List[float]:
        """Encode a single text into an embedding vector."""
        pass

    def encode_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.encode(t) for t in texts]

    def encode_query(self, text: str) -> List[float]:
        """Encode a query text (same as document encoding unless overridden)."""
        return self.encode(text)

    @abstractmethod
    def get_dimension(self) -> int:
        pass


class HashingEmbedder(EmbeddingProvider):
    """
    Feature-hashing embedder

    Each token is hashed to a bucket and a sign; the bag of signed counts is
    L2-normalized. Texts sharing vocabulary get high cosine similarity.
    No model download, fully deterministic.
    """

    def __init__(self, dimension: int = ConfigDefaults.VECTOR_DIMENSION_DEFAULT):
        if dimension <= 0:
            raise ConfigurationError("Embedding dimension must be positive")
        self.dimension = dimension

    def get_dimension(self) -> int:
        return self.dimension

    def encode(self, text: str) -> List[float]:
        if text is None:
            raise TransformError("Cannot embed a null text")
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in tokenize(text):
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


class SentenceTransformerEmbedder(EmbeddingProvider):
    """
    Sentence Transformers embedding provider.

    Requires the ``embeddings`` extra. The configured dimension must match
    the model's output.
    """

    def __init__(self, model_name: str = ConfigDefaults.EMBEDDING_MODEL_DEFAULT):
        try:
            from sentence_transformers import SentenceTransformer
            self.model = SentenceTransformer(model_name)
        except ImportError:
            raise ImportError("sentence-transformers package is required")

        test_embedding = self.model.encode("test")
        self._dimension = len(test_embedding)
        logger.info(f"Initialized SentenceTransformer '{model_name}' with dimension {self._dimension}")

    def get_dimension(self) -> int:
        return self._dimension

    def encode(self, text: str) -> List[float]:
        embedding = self.model.encode(text, normalize_embeddings=True)
        if hasattr(embedding, 'tolist'):
            return embedding.tolist()
        return list(embedding)

    def encode_batch(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.model.encode(texts, normalize_embeddings=True)
        if hasattr(embeddings, 'tolist'):
            return embeddings.tolist()
        return [list(e) for e in embeddings]


def create_embedding_provider(config: VectorSinkConfig) -> EmbeddingProvider:
    """Build the configured embedder and check it matches the sink dimension"""
    provider_name = config.embedding_provider.lower()
    if provider_name == ConfigDefaults.EMBEDDING_PROVIDER_HASHING:
        return HashingEmbedder(config.dimension)
    if provider_name == ConfigDefaults.EMBEDDING_PROVIDER_SENTENCE_TRANSFORMERS:
        provider = SentenceTransformerEmbedder(config.embedding_model)
        if provider.get_dimension() != config.dimension:
            raise ConfigurationError(
                f"Model {config.embedding_model} produces dimension {provider.get_dimension()}, "
                f"vector sink is configured for {config.dimension}"
            )
        return provider
    raise ConfigurationError(f"Unsupported embedding provider: {config.embedding_provider}")
