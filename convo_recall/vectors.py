"""
Vector Embeddings - encoding, similarity and the embedding provider.

This module provides:
- The float32 byte contract used to persist vectors in SQLite
- Cosine similarity that degrades to 0.0 instead of raising
- The Embedder protocol and the default sentence-transformers implementation
"""

import logging
import struct
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .config import settings

logger = logging.getLogger(__name__)

# 4 bytes per little-endian IEEE-754 float32
FLOAT32_SIZE = 4


class EmbeddingUnavailableError(RuntimeError):
    """Raised by an embedder that cannot produce vectors right now."""


def encode_vector(vector: Sequence[float]) -> bytes:
    """
    Pack a vector as little-endian float32 bytes for SQLite storage.

    Works for lists, tuples and numpy arrays alike.
    """
    values = [float(v) for v in vector]
    return struct.pack(f'<{len(values)}f', *values)


def decode_vector(data: Optional[bytes]) -> List[float]:
    """
    Unpack little-endian float32 bytes back to a list of floats.

    A buffer whose length is not a multiple of 4 is malformed; it decodes
    to an empty vector and is logged rather than raised.
    """
    if not data:
        return []

    if len(data) % FLOAT32_SIZE != 0:
        logger.warning(
            f"Invalid embedding buffer size: {len(data)} bytes (not divisible by {FLOAT32_SIZE})"
        )
        return []

    num_floats = len(data) // FLOAT32_SIZE
    return list(struct.unpack(f'<{num_floats}f', data))


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors. Never raises."""
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    if a.shape != b.shape:
        logger.debug(f"Cosine similarity: dimension mismatch ({a.size} vs {b.size})")
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


@runtime_checkable
class Embedder(Protocol):
    """Contract for embedding providers used by the search pipeline."""

    def is_available(self) -> bool:
        ...

    def embed(self, text: str) -> List[float]:
        ...

    def embed_batch(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        ...

    def model_info(self) -> Dict[str, Any]:
        ...


# Loaded models shared across embedder instances (lazy loaded)
_models: Dict[str, Any] = {}
_model_lock = threading.Lock()


class SentenceTransformerEmbedder:
    """
    Embedder backed by a sentence-transformers model.

    The model is loaded on first use. If loading fails the embedder reports
    itself unavailable for the rest of its lifetime and callers fall back to
    lexical search.
    """

    def __init__(self, model_name: Optional[str] = None, dimensions: Optional[int] = None):
        self.model_name = model_name or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self._load_failed = False

    def _get_model(self):
        """Get or create the embedding model (lazy loading, shared across instances)."""
        if self._load_failed:
            return None

        with _model_lock:
            model = _models.get(self.model_name)
            if model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                    logger.info(f"Loading embedding model ({self.model_name})...")
                    model = SentenceTransformer(self.model_name)
                    _models[self.model_name] = model
                    logger.info("Embedding model loaded.")
                except Exception as e:
                    logger.warning(f"Embedding model unavailable, using lexical search only: {e}")
                    self._load_failed = True
                    return None
        return model

    def is_available(self) -> bool:
        return self._get_model() is not None

    def embed(self, text: str) -> List[float]:
        model = self._get_model()
        if model is None:
            raise EmbeddingUnavailableError(f"Model {self.model_name} is not loaded")
        embedding = model.encode(text, convert_to_numpy=True)
        return embedding.astype(np.float32).tolist()

    def embed_batch(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        if not texts:
            return []
        model = self._get_model()
        if model is None:
            raise EmbeddingUnavailableError(f"Model {self.model_name} is not loaded")
        embeddings = model.encode(texts, batch_size=batch_size, convert_to_numpy=True)
        return [row.astype(np.float32).tolist() for row in embeddings]

    def model_info(self) -> Dict[str, Any]:
        return {
            "provider": "sentence-transformers",
            "model": self.model_name,
            "dimensions": self.dimensions,
            "available": not self._load_failed and self.model_name in _models,
        }
