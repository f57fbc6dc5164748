"""
Qdrant Index - optional accelerated nearest-neighbor index for ConvoRecall.

This module provides:
- Capability detection for the accelerated index (probe once, never again)
- Mirrored storage of embeddings keyed by their type-prefixed owner key
- Ordered nearest-neighbor queries returning cosine distances

The SQLite embeddings table stays authoritative; everything stored here is a
mirror that can be rebuilt from it.
"""

import errno
import logging
import uuid
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PointStruct,
    VectorParams,
)

logger = logging.getLogger(__name__)


class AccelerationState(str, Enum):
    """Capability of the accelerated index. UNKNOWN moves once to a terminal state."""
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


def _is_read_only_error(exc: BaseException) -> bool:
    """True when the failure means the storage is read-only rather than broken."""
    if isinstance(exc, PermissionError):
        return True
    if isinstance(exc, OSError) and exc.errno == errno.EROFS:
        return True
    message = str(exc).lower()
    return "read-only" in message or "readonly" in message


def point_id_for(key: str, model_name: str = "") -> str:
    """Qdrant only accepts integer or UUID point ids, so derive a stable UUID from model and key."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{model_name}:{key}"))


def _match_all(filters: Optional[Dict[str, str]]) -> Optional[Filter]:
    """Filter requiring every payload field to equal its value, or None for no filter."""
    if not filters:
        return None
    return Filter(must=[
        FieldCondition(key=field, match=MatchValue(value=value))
        for field, value in filters.items()
    ])


class QdrantIndex:
    """
    Accelerated vector index using Qdrant.

    Uses local file-based mode (no server needed) or an in-memory client in tests.
    Collections are created lazily with the dimensionality of the first vector
    written to them.
    """

    COLLECTION_EMBEDDINGS = "cr_embeddings"
    COLLECTION_CHUNKS = "cr_chunk_embeddings"
    PROBE_COLLECTION = "cr_capability_probe"
    SCROLL_PAGE_SIZE = 256

    def __init__(self, client: QdrantClient):
        self.client = client
        self._dimensions: Dict[str, int] = {}

    @classmethod
    def open(cls, path: Optional[str] = None) -> Optional["QdrantIndex"]:
        """
        Open a local Qdrant index, or None if the storage cannot be opened.

        Args:
            path: Directory for local storage. None opens an in-memory index.
        """
        try:
            client = QdrantClient(path=path) if path else QdrantClient(location=":memory:")
        except RuntimeError as e:
            if "already accessed by another instance" in str(e):
                # Common case: another process holds the local storage lock
                logger.info("Qdrant locked by another process (using brute-force search)")
            else:
                logger.warning(f"Could not open Qdrant (using brute-force search): {e}")
            return None
        except Exception as e:
            logger.warning(f"Could not open Qdrant (using brute-force search): {e}")
            return None

        logger.info(f"Opened Qdrant index at: {path or ':memory:'}")
        return cls(client)

    def detect(self) -> AccelerationState:
        """
        Probe whether the index can be used.

        Existing collections mean it was usable before. Otherwise a throwaway
        collection is created and dropped. Read-only storage cannot be probed
        safely, so it is optimistically treated as available.
        """
        try:
            existing = {c.name for c in self.client.get_collections().collections}
            if existing & {self.COLLECTION_EMBEDDINGS, self.COLLECTION_CHUNKS}:
                logger.info("Qdrant index detected (existing collections)")
                return AccelerationState.AVAILABLE

            self.client.create_collection(
                collection_name=self.PROBE_COLLECTION,
                vectors_config=VectorParams(size=1, distance=Distance.COSINE)
            )
            self.client.delete_collection(self.PROBE_COLLECTION)
            logger.info("Qdrant index available")
            return AccelerationState.AVAILABLE
        except Exception as e:
            if _is_read_only_error(e):
                logger.info(f"Qdrant storage is read-only, assuming index is available: {e}")
                return AccelerationState.AVAILABLE
            logger.warning(f"Qdrant index unavailable, using brute-force search: {e}")
            return AccelerationState.UNAVAILABLE

    def _ensure_collection(self, name: str, dimensions: int) -> None:
        """Create the collection if needed; recreate it if the vector size changed."""
        if self._dimensions.get(name) == dimensions:
            return

        if self.client.collection_exists(name):
            info = self.client.get_collection(name)
            current = info.config.params.vectors.size
            if current == dimensions:
                self._dimensions[name] = dimensions
                return
            logger.warning(
                f"Recreating {name}: vector size changed from {current} to {dimensions}"
            )
            self.client.delete_collection(name)

        logger.info(f"Creating collection: {name} ({dimensions} dimensions)")
        self.client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=dimensions, distance=Distance.COSINE)
        )
        self._dimensions[name] = dimensions

    def upsert(self, collection: str, key: str, vector: List[float], payload: dict) -> None:
        """
        Store or replace the point for a key.

        Points are unique per (model_name, key), so vectors of different
        models for the same record live side by side.
        """
        self._ensure_collection(collection, len(vector))
        self.client.upsert(
            collection_name=collection,
            points=[PointStruct(
                id=point_id_for(key, payload.get("model_name", "")),
                vector=list(vector),
                payload={"key": key, **payload}
            )]
        )

    def delete_where(self, collection: str, field: str, value: str) -> None:
        """Remove every point whose payload field equals value."""
        if not self.client.collection_exists(collection):
            return
        self.client.delete(
            collection_name=collection,
            points_selector=FilterSelector(filter=_match_all({field: value}))
        )

    def query(
        self,
        collection: str,
        vector: List[float],
        limit: int,
        filters: Optional[Dict[str, str]] = None
    ) -> List[Tuple[str, float]]:
        """
        Nearest-neighbor query.

        Returns:
            List of (key, cosine distance) tuples, nearest first. Empty if
            nothing has been written to the collection yet.
        """
        if not self.client.collection_exists(collection):
            return []

        response = self.client.query_points(
            collection_name=collection,
            query=list(vector),
            query_filter=_match_all(filters),
            limit=limit,
            with_payload=True
        )
        # Qdrant reports cosine similarity as the score; expose it as a distance
        return [(point.payload["key"], 1.0 - point.score) for point in response.points]

    def keys(self, collection: str, filters: Optional[Dict[str, str]] = None) -> Set[str]:
        """Keys stored in a collection, optionally restricted by payload values."""
        if not self.client.collection_exists(collection):
            return set()

        keys: Set[str] = set()
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=collection,
                scroll_filter=_match_all(filters),
                limit=self.SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=False
            )
            keys.update(p.payload["key"] for p in points if p.payload and "key" in p.payload)
            if offset is None:
                break
        return keys

    def count(self, collection: str) -> int:
        if not self.client.collection_exists(collection):
            return 0
        return self.client.count(collection_name=collection).count

    def drop_all(self) -> None:
        """Drop both collections. Missing collections are not an error."""
        for name in (self.COLLECTION_EMBEDDINGS, self.COLLECTION_CHUNKS):
            if self.client.collection_exists(name):
                self.client.delete_collection(name)
        self._dimensions.clear()

    def close(self) -> None:
        """Close the Qdrant client connection."""
        self.client.close()
