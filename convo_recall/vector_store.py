"""
Embedding Store - durable vector persistence with optional acceleration.

The SQLite embeddings table is always written first and is authoritative.
When the Qdrant index is usable, writes are mirrored into it and searches
go through it; otherwise searches compute cosine similarity by brute force
over the SQLite rows. Which path is used is decided once per store.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import select, delete, func

from .chunking import TextChunk
from .config import settings
from .database import DatabaseManager
from .models import Embedding, ChunkEmbedding
from .qdrant_store import AccelerationState, QdrantIndex
from .vectors import encode_vector, decode_vector, cosine_similarity

logger = logging.getLogger(__name__)

# Owner kinds sharing the embeddings table
OWNER_MESSAGE = "msg"
OWNER_DECISION = "dec"
OWNER_TYPES = frozenset({OWNER_MESSAGE, OWNER_DECISION})


def make_owner_key(owner_type: str, owner_id: str) -> str:
    """Type-prefixed key, e.g. msg_42."""
    return f"{owner_type}_{owner_id}"


def strip_owner_key(key: str, owner_type: str) -> Optional[str]:
    """Owner id for a key of the given type, or None if the key has another type."""
    prefix = f"{owner_type}_"
    if key.startswith(prefix):
        return key[len(prefix):]
    return None


def make_chunk_key(parent_id: str, chunk_index: int) -> str:
    return f"chunk_{parent_id}_{chunk_index}"


@dataclass
class VectorSearchResult:
    """A record-level vector hit."""
    id: str
    content: str
    similarity: float
    owner_type: str = OWNER_MESSAGE


@dataclass
class ChunkMatch:
    """A chunk-level vector hit, reassembled by parent id during aggregation."""
    chunk_id: str
    parent_id: str
    chunk_index: int
    total_chunks: int
    content: str
    start_offset: int
    end_offset: int
    similarity: float


def _chunk_match(row: ChunkEmbedding, similarity: float) -> ChunkMatch:
    return ChunkMatch(
        chunk_id=row.id,
        parent_id=row.parent_id,
        chunk_index=row.chunk_index,
        total_chunks=row.total_chunks,
        content=row.content,
        start_offset=row.start_offset,
        end_offset=row.end_offset,
        similarity=similarity,
    )


class SearchBackend(ABC):
    """How searches are answered and whether writes are mirrored anywhere."""

    accelerated = False

    @abstractmethod
    async def search(self, query_vector: Sequence[float], k: int, owner_type: str) -> List[VectorSearchResult]:
        """Nearest records of one owner type."""

    @abstractmethod
    async def search_chunks(self, query_vector: Sequence[float], k: int) -> List[ChunkMatch]:
        """Nearest chunks."""

    def mirror_embedding(self, key: str, owner_id: str, owner_type: str, vector: Sequence[float]) -> None:
        """Copy a committed embedding into the accelerated index. No-op by default."""

    def mirror_chunks(self, parent_id: str, chunks: List[TextChunk], vectors: List[Sequence[float]]) -> None:
        """Replace a parent's chunks in the accelerated index. No-op by default."""

    def mirror_delete(self, key: str, parent_id: Optional[str] = None) -> None:
        """Remove a record (and its chunks) from the accelerated index. No-op by default."""

    def indexed_keys(self) -> Set[str]:
        """Keys present in the accelerated index for this store's model."""
        return set()

    def indexed_count(self) -> int:
        """Number of record points in the accelerated index."""
        return 0

    def clear(self) -> None:
        """Drop accelerated data. No-op by default."""


class BruteForceBackend(SearchBackend):
    """Exact cosine similarity over every stored row."""

    def __init__(self, db: DatabaseManager, model_name: str):
        self.db = db
        self.model_name = model_name

    async def search(self, query_vector: Sequence[float], k: int, owner_type: str) -> List[VectorSearchResult]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Embedding).where(
                    Embedding.owner_type == owner_type,
                    Embedding.model_name == self.model_name
                )
            )
            rows = result.scalars().all()

        results = [
            VectorSearchResult(
                id=row.owner_id,
                content=row.content or "",
                similarity=cosine_similarity(query_vector, decode_vector(row.embedding)),
                owner_type=owner_type,
            )
            for row in rows
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:k]

    async def search_chunks(self, query_vector: Sequence[float], k: int) -> List[ChunkMatch]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ChunkEmbedding).where(ChunkEmbedding.model_name == self.model_name)
            )
            rows = result.scalars().all()

        matches = [
            _chunk_match(row, cosine_similarity(query_vector, decode_vector(row.embedding)))
            for row in rows
        ]
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:k]


class AcceleratedBackend(SearchBackend):
    """
    Searches through the Qdrant index.

    A failing query falls back to brute force for that call only; the
    store keeps using this backend afterwards. Mirror writes are best-effort:
    failures are logged, never raised.
    """

    accelerated = True

    def __init__(self, db: DatabaseManager, model_name: str, index: QdrantIndex, fallback: BruteForceBackend):
        self.db = db
        self.model_name = model_name
        self.index = index
        self.fallback = fallback

    async def search(self, query_vector: Sequence[float], k: int, owner_type: str) -> List[VectorSearchResult]:
        try:
            hits = self.index.query(
                QdrantIndex.COLLECTION_EMBEDDINGS,
                list(query_vector),
                k,
                filters={"owner_type": owner_type, "model_name": self.model_name}
            )
            if not hits:
                return []

            async with self.db.get_session() as session:
                result = await session.execute(
                    select(Embedding).where(
                        Embedding.id.in_([key for key, _ in hits]),
                        Embedding.model_name == self.model_name
                    )
                )
                rows = {row.id: row for row in result.scalars().all()}
        except Exception as e:
            logger.warning(f"Accelerated search failed, falling back to brute-force: {e}")
            return await self.fallback.search(query_vector, k, owner_type)

        results = []
        for key, distance in hits:
            row = rows.get(key)
            if row is None:
                # Mirror point without an authoritative row
                continue
            results.append(VectorSearchResult(
                id=row.owner_id,
                content=row.content or "",
                similarity=1.0 - distance,
                owner_type=owner_type,
            ))
        return results

    async def search_chunks(self, query_vector: Sequence[float], k: int) -> List[ChunkMatch]:
        try:
            hits = self.index.query(
                QdrantIndex.COLLECTION_CHUNKS,
                list(query_vector),
                k,
                filters={"model_name": self.model_name}
            )
            if not hits:
                return []

            async with self.db.get_session() as session:
                result = await session.execute(
                    select(ChunkEmbedding).where(
                        ChunkEmbedding.id.in_([key for key, _ in hits]),
                        ChunkEmbedding.model_name == self.model_name
                    )
                )
                rows = {row.id: row for row in result.scalars().all()}
        except Exception as e:
            logger.warning(f"Accelerated chunk search failed, falling back to brute-force: {e}")
            return await self.fallback.search_chunks(query_vector, k)

        return [
            _chunk_match(rows[key], 1.0 - distance)
            for key, distance in hits
            if key in rows
        ]

    def mirror_embedding(self, key: str, owner_id: str, owner_type: str, vector: Sequence[float]) -> None:
        try:
            self.index.upsert(
                QdrantIndex.COLLECTION_EMBEDDINGS,
                key,
                list(vector),
                {"owner_id": owner_id, "owner_type": owner_type, "model_name": self.model_name}
            )
        except Exception as e:
            logger.warning(f"Could not mirror embedding {key} to Qdrant: {e}")

    def mirror_chunks(self, parent_id: str, chunks: List[TextChunk], vectors: List[Sequence[float]]) -> None:
        try:
            self.index.delete_where(QdrantIndex.COLLECTION_CHUNKS, "parent_id", parent_id)
            for chunk, vector in zip(chunks, vectors):
                self.index.upsert(
                    QdrantIndex.COLLECTION_CHUNKS,
                    make_chunk_key(parent_id, chunk.index),
                    list(vector),
                    {"parent_id": parent_id, "model_name": self.model_name}
                )
        except Exception as e:
            logger.warning(f"Could not mirror chunks of {parent_id} to Qdrant: {e}")

    def mirror_delete(self, key: str, parent_id: Optional[str] = None) -> None:
        try:
            # Every model's point for the key, matching the SQLite delete
            self.index.delete_where(QdrantIndex.COLLECTION_EMBEDDINGS, "key", key)
            if parent_id is not None:
                self.index.delete_where(QdrantIndex.COLLECTION_CHUNKS, "parent_id", parent_id)
        except Exception as e:
            logger.warning(f"Could not delete {key} from Qdrant: {e}")

    def indexed_keys(self) -> Set[str]:
        try:
            return self.index.keys(
                QdrantIndex.COLLECTION_EMBEDDINGS, filters={"model_name": self.model_name}
            )
        except Exception as e:
            logger.warning(f"Could not list Qdrant keys: {e}")
            return set()

    def indexed_count(self) -> int:
        try:
            return self.index.count(QdrantIndex.COLLECTION_EMBEDDINGS)
        except Exception as e:
            logger.warning(f"Could not count Qdrant points: {e}")
            return 0

    def clear(self) -> None:
        try:
            self.index.drop_all()
        except Exception as e:
            logger.debug(f"Qdrant collections not cleared: {e}")


class EmbeddingStore:
    """
    Persists per-record vectors and answers nearest-neighbor queries.

    Acceleration is detected once, at construction, and the matching
    backend is kept for the lifetime of the store.
    """

    def __init__(
        self,
        db: DatabaseManager,
        index: Optional[QdrantIndex] = None,
        model_name: Optional[str] = None
    ):
        self.db = db
        self.model_name = model_name or settings.embedding_model
        self._index = index

        # UNKNOWN only until this line; never re-probed
        self.acceleration = AccelerationState.UNKNOWN
        if index is not None:
            self.acceleration = index.detect()
        else:
            self.acceleration = AccelerationState.UNAVAILABLE

        brute_force = BruteForceBackend(db, self.model_name)
        if self.acceleration == AccelerationState.AVAILABLE:
            self._backend: SearchBackend = AcceleratedBackend(db, self.model_name, index, brute_force)
        else:
            self._backend = brute_force

    def is_accelerated(self) -> bool:
        return self._backend.accelerated

    async def store_embedding(
        self,
        owner_id: str,
        vector: Sequence[float],
        content: Optional[str] = None,
        owner_type: str = OWNER_MESSAGE
    ) -> None:
        """
        Store or replace the embedding for a record.

        The SQLite write happens first and its errors propagate. The Qdrant
        mirror write only happens after the commit and never raises.
        """
        if owner_type not in OWNER_TYPES:
            raise ValueError(f"Unknown owner type: {owner_type!r}")

        owner_id = str(owner_id)
        key = make_owner_key(owner_type, owner_id)

        async with self.db.get_session() as session:
            await session.merge(Embedding(
                id=key,
                model_name=self.model_name,
                owner_id=owner_id,
                owner_type=owner_type,
                content=content,
                embedding=encode_vector(vector),
            ))

        self._backend.mirror_embedding(key, owner_id, owner_type, vector)

    async def store_chunk_embeddings(
        self,
        parent_id: str,
        chunks: List[TextChunk],
        vectors: List[Sequence[float]]
    ) -> None:
        """Replace all chunk vectors of a parent record."""
        if len(chunks) != len(vectors):
            raise ValueError(f"Got {len(vectors)} vectors for {len(chunks)} chunks")

        parent_id = str(parent_id)
        async with self.db.get_session() as session:
            await session.execute(
                delete(ChunkEmbedding).where(
                    ChunkEmbedding.parent_id == parent_id,
                    ChunkEmbedding.model_name == self.model_name
                )
            )
            for chunk, vector in zip(chunks, vectors):
                session.add(ChunkEmbedding(
                    id=make_chunk_key(parent_id, chunk.index),
                    model_name=self.model_name,
                    parent_id=parent_id,
                    chunk_index=chunk.index,
                    total_chunks=chunk.total_chunks,
                    content=chunk.content,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    embedding=encode_vector(vector),
                ))

        self._backend.mirror_chunks(parent_id, chunks, vectors)

    async def search(
        self,
        query_vector: Sequence[float],
        k: int = 10,
        owner_type: str = OWNER_MESSAGE
    ) -> List[VectorSearchResult]:
        """Most similar records of one owner type, best first."""
        return await self._backend.search(query_vector, k, owner_type)

    async def search_chunks(self, query_vector: Sequence[float], k: int = 10) -> List[ChunkMatch]:
        """Most similar chunks, best first."""
        return await self._backend.search_chunks(query_vector, k)

    async def get_existing_owner_ids(self, owner_type: str = OWNER_MESSAGE) -> Set[str]:
        """
        Ids of records that already have an embedding from this store's model.

        Union of the SQLite rows and the keys in the accelerated index, so
        incremental indexing skips records embedded by either path.
        """
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Embedding.owner_id).where(
                    Embedding.owner_type == owner_type,
                    Embedding.model_name == self.model_name
                )
            )
            ids = {row[0] for row in result.all()}

        for key in self._backend.indexed_keys():
            owner_id = strip_owner_key(key, owner_type)
            if owner_id is not None:
                ids.add(owner_id)
        return ids

    async def delete_embedding(self, owner_id: str, owner_type: str = OWNER_MESSAGE) -> None:
        """Remove a record's embedding (all models) and, for messages, its chunks."""
        owner_id = str(owner_id)
        key = make_owner_key(owner_type, owner_id)

        async with self.db.get_session() as session:
            await session.execute(delete(Embedding).where(Embedding.id == key))
            if owner_type == OWNER_MESSAGE:
                await session.execute(delete(ChunkEmbedding).where(ChunkEmbedding.parent_id == owner_id))

        self._backend.mirror_delete(key, parent_id=owner_id if owner_type == OWNER_MESSAGE else None)

    async def count(self, owner_type: Optional[str] = None) -> int:
        """Number of stored record embeddings."""
        async with self.db.get_session() as session:
            query = select(func.count()).select_from(Embedding)
            if owner_type:
                query = query.where(Embedding.owner_type == owner_type)
            result = await session.execute(query)
            return result.scalar() or 0

    async def stats(self) -> Dict[str, object]:
        return {
            "total_embeddings": await self.count(),
            "message_embeddings": await self.count(OWNER_MESSAGE),
            "decision_embeddings": await self.count(OWNER_DECISION),
            "indexed_embeddings": self._backend.indexed_count(),
            "acceleration": self.acceleration.value,
            "model": self.model_name,
        }

    async def clear_all(self) -> None:
        """Delete every stored vector, including the accelerated copies."""
        async with self.db.get_session() as session:
            await session.execute(delete(Embedding))
            await session.execute(delete(ChunkEmbedding))

        self._backend.clear()

    def close(self) -> None:
        if self._index is not None:
            self._index.close()


def create_embedding_store(
    db: DatabaseManager,
    model_name: Optional[str] = None,
    use_qdrant: Optional[bool] = None
) -> EmbeddingStore:
    """
    Build a store next to the database, opening the local Qdrant index when enabled.

    A Qdrant index that cannot be opened (missing, locked by another process)
    simply leaves the store on brute-force search.
    """
    if use_qdrant is None:
        use_qdrant = settings.qdrant_enabled

    index = None
    if use_qdrant:
        index = QdrantIndex.open(settings.get_qdrant_path(str(db.storage_path)))

    return EmbeddingStore(db, index=index, model_name=model_name)
