"""
Semantic Search - the retrieval pipeline over indexed conversations.

query -> variants -> embeddings -> vector search per variant (concurrent)
      -> aggregation of chunk and record hits -> RRF re-ranking -> enrichment
      -> snippets

When the embedder is unavailable or fails, searches degrade to the
TF-IDF lexical index instead of raising.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .aggregator import AggregatedResult, AggregationConfig, ResultAggregator, ScoredRecord, record_match
from .chunking import TextChunker
from .config import settings
from .logging_config import with_request_id
from .query_expander import QueryExpander
from .reranker import HybridReranker
from .similarity import LexicalIndex
from .snippets import SnippetGenerator
from .storage import ConversationStorage, Record
from .vector_store import ChunkMatch, EmbeddingStore, OWNER_DECISION, OWNER_MESSAGE, VectorSearchResult
from .vectors import Embedder, SentenceTransformerEmbedder

logger = logging.getLogger(__name__)

# Vector candidates fetched per requested result, leaving room for filtering
CANDIDATE_MULTIPLIER = 2


@dataclass
class SearchFilter:
    """Restricts conversation search results. Unset fields match everything."""
    date_range: Optional[Tuple[int, int]] = None  # inclusive epoch ms
    message_type: Optional[List[str]] = None
    conversation_id: Optional[str] = None

    def matches(self, message: Record) -> bool:
        if self.date_range is not None:
            start, end = self.date_range
            if not start <= message["timestamp"] <= end:
                return False
        if self.message_type and message.get("message_type") not in self.message_type:
            return False
        if self.conversation_id and message.get("conversation_id") != self.conversation_id:
            return False
        return True


@dataclass
class SearchResult:
    message: Record
    conversation: Record
    similarity: float
    snippet: str
    matched_chunks: List[ChunkMatch] = field(default_factory=list)


@dataclass
class DecisionSearchResult:
    decision: Record
    conversation: Record
    similarity: float


def decision_text(decision: Record) -> str:
    """Text embedded for a decision: the decision with its rationale and context."""
    parts = [decision.get("decision_text") or ""]
    for extra in ("rationale", "context"):
        if decision.get(extra):
            parts.append(decision[extra])
    return " ".join(parts)


class SemanticSearch:
    """
    Indexes messages and decisions and answers natural-language queries.

    Collaborators default to instances configured from settings; tests pass
    their own (typically a deterministic embedder).
    """

    def __init__(
        self,
        storage: ConversationStorage,
        store: EmbeddingStore,
        embedder: Optional[Embedder] = None,
        expander: Optional[QueryExpander] = None,
        aggregation: Optional[AggregationConfig] = None,
        snippets: Optional[SnippetGenerator] = None,
        reranker: Optional[HybridReranker] = None,
        chunker: Optional[TextChunker] = None
    ):
        self.storage = storage
        self.store = store
        self.embedder = embedder or SentenceTransformerEmbedder()
        self.expander = expander or QueryExpander()
        self.aggregation = aggregation or AggregationConfig.from_settings()
        self.snippets = snippets or SnippetGenerator()
        self.reranker = reranker or HybridReranker()
        self.chunker = chunker or TextChunker()
        self.chunking_enabled = settings.chunking_enabled

        self._message_index: Optional[LexicalIndex] = None
        self._decision_index: Optional[LexicalIndex] = None
        self._embedder_warned = False

    # ==================== Embedder access ====================

    async def _embedder_ready(self) -> bool:
        try:
            available = await asyncio.to_thread(self.embedder.is_available)
        except Exception as e:
            self._warn_embedder(e)
            return False
        if not available:
            self._warn_embedder("embedder reports unavailable")
        return available

    def _warn_embedder(self, reason: Any) -> None:
        if not self._embedder_warned:
            logger.warning(f"Embeddings unavailable, using lexical search: {reason}")
            self._embedder_warned = True

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        """Embed in a worker thread, bounded by the configured timeout."""
        call = asyncio.to_thread(self.embedder.embed_batch, texts, settings.embedding_batch_size)
        timeout = settings.embedding_timeout_seconds
        if timeout:
            return await asyncio.wait_for(call, timeout)
        return await call

    # ==================== Indexing ====================

    async def index_messages(self, messages: List[Record], incremental: bool = True) -> int:
        """
        Embed messages (and chunks of long messages) for search.

        Args:
            messages: Message records; messages without content are ignored
            incremental: Skip messages that already have an embedding

        Returns:
            Number of messages embedded
        """
        with_content = [m for m in messages if m.get("content") and m["content"].strip()]

        if self._message_index is not None:
            self._message_index.add_documents((m["id"], m["content"]) for m in with_content)

        to_index = with_content
        if incremental:
            existing = await self.store.get_existing_owner_ids(OWNER_MESSAGE)
            to_index = [m for m in with_content if m["id"] not in existing]
            if not to_index:
                logger.info(f"All {len(with_content)} messages already have embeddings")
                return 0
            if existing:
                logger.info(f"Skipping {len(with_content) - len(to_index)} already-embedded messages")

        if not await self._embedder_ready():
            logger.info("Embeddings not available - skipping message indexing")
            return 0

        logger.info(f"Generating embeddings for {len(to_index)} messages...")
        vectors = await self._embed([m["content"] for m in to_index])
        for message, vector in zip(to_index, vectors):
            await self.store.store_embedding(message["id"], vector, message["content"], OWNER_MESSAGE)

        if self.chunking_enabled:
            await self._index_chunks(to_index)

        logger.info(f"Indexed {len(to_index)} messages")
        return len(to_index)

    async def _index_chunks(self, messages: List[Record]) -> None:
        for message in messages:
            chunks = self.chunker.chunk(message["content"])
            if len(chunks) < 2:
                continue
            vectors = await self._embed([c.content for c in chunks])
            await self.store.store_chunk_embeddings(message["id"], chunks, vectors)
            logger.debug(f"Message {message['id']} indexed as {len(chunks)} chunks")

    async def index_decisions(self, decisions: List[Record], incremental: bool = True) -> int:
        """Embed decisions (decision text + rationale + context). Returns the number embedded."""
        if self._decision_index is not None:
            self._decision_index.add_documents((d["id"], decision_text(d)) for d in decisions)

        to_index = decisions
        if incremental:
            existing = await self.store.get_existing_owner_ids(OWNER_DECISION)
            to_index = [d for d in decisions if d["id"] not in existing]
            if not to_index:
                logger.info(f"All {len(decisions)} decisions already have embeddings")
                return 0

        if not await self._embedder_ready():
            logger.info("Embeddings not available - skipping decision indexing")
            return 0

        texts = [decision_text(d) for d in to_index]
        vectors = await self._embed(texts)
        for decision, vector, text in zip(to_index, vectors, texts):
            await self.store.store_embedding(decision["id"], vector, text, OWNER_DECISION)

        logger.info(f"Indexed {len(to_index)} decisions")
        return len(to_index)

    # ==================== Conversation search ====================

    async def _search_variant(
        self,
        vector: Sequence[float],
        k: int
    ) -> Tuple[List[VectorSearchResult], List[ChunkMatch]]:
        records = await self.store.search(vector, k, OWNER_MESSAGE)
        chunks = await self.store.search_chunks(vector, k) if self.chunking_enabled else []
        return records, chunks

    def _combine(
        self,
        per_variant: List[Tuple[List[VectorSearchResult], List[ChunkMatch]]],
        k: int
    ) -> List[AggregatedResult]:
        """
        Aggregate chunk and record hits from all variants in one pass.

        Record hits enter as whole-record chunks, so grouping, the similarity
        floor and deduplication all see the complete set.
        """
        aggregator = ResultAggregator(replace(self.aggregation, limit=k))

        hits = [hit for _, chunks in per_variant for hit in chunks]
        hits.extend(
            record_match(ScoredRecord(parent_id=r.id, content=r.content, similarity=r.similarity))
            for records, _ in per_variant
            for r in records
        )
        return aggregator.aggregate(hits)

    async def _message_lexical_index(self) -> LexicalIndex:
        if self._message_index is None:
            index = LexicalIndex()
            messages = await self.storage.get_messages()
            index.add_documents((m["id"], m["content"]) for m in messages if m.get("content"))
            self._message_index = index
        return self._message_index

    async def _rerank(self, query: str, results: List[AggregatedResult], k: int) -> List[AggregatedResult]:
        """Re-order vector results with Reciprocal Rank Fusion against the lexical ranking."""
        if not self.reranker.config.enabled or len(results) < 2:
            return results

        by_id = {r.parent_id: r for r in results}
        index = await self._message_lexical_index()
        lexical = index.search(query, top_k=k, candidates=by_id.keys())
        fused = self.reranker.rerank_with_overlap_boost(
            [(r.parent_id, r.similarity) for r in results],
            lexical,
            limit=k
        )
        return [by_id[f.id] for f in fused]

    @with_request_id
    async def search_conversations(
        self,
        query: str,
        limit: int = 10,
        filter: Optional[SearchFilter] = None
    ) -> List[SearchResult]:
        """
        Search messages by meaning.

        Falls back to lexical search when embeddings are unavailable, when
        embedding the query fails, or when vector search finds nothing.
        """
        if not await self._embedder_ready():
            return await self._lexical_search(query, limit, filter)

        variants = self.expander.expand(query)
        try:
            vectors = await self._embed(variants)
        except Exception as e:
            self._warn_embedder(e)
            return await self._lexical_search(query, limit, filter)

        k = limit * CANDIDATE_MULTIPLIER
        per_variant = await asyncio.gather(*(self._search_variant(v, k) for v in vectors))
        if len(variants) > 1:
            logger.debug(f"Searched {len(variants)} query variants")

        ranked = await self._rerank(query, self._combine(per_variant, k), k)

        results = []
        for result in ranked:
            enriched = await self._enrich(
                result.parent_id, result.similarity, result.best_snippet_source, query, filter
            )
            if enriched is None:
                continue
            enriched.matched_chunks = result.matched_chunks
            results.append(enriched)
            if len(results) >= limit:
                break

        if not results:
            logger.info("Vector search returned no results - falling back to lexical search")
            return await self._lexical_search(query, limit, filter)

        return results

    async def _enrich(
        self,
        message_id: str,
        similarity: float,
        content: Optional[str],
        query: str,
        filter: Optional[SearchFilter]
    ) -> Optional[SearchResult]:
        message = await self.storage.get_message(message_id)
        if message is None:
            return None
        if filter is not None and not filter.matches(message):
            return None
        conversation = await self.storage.get_conversation(message["conversation_id"])
        if conversation is None:
            return None
        return SearchResult(
            message=message,
            conversation=conversation,
            similarity=similarity,
            snippet=self.snippets.generate(content or message.get("content") or "", query),
        )

    async def _lexical_search(
        self,
        query: str,
        limit: int,
        filter: Optional[SearchFilter]
    ) -> List[SearchResult]:
        index = await self._message_lexical_index()
        results = []
        for message_id, score in index.search(query, top_k=len(index)):
            enriched = await self._enrich(message_id, score, None, query, filter)
            if enriched is None:
                continue
            results.append(enriched)
            if len(results) >= limit:
                break
        return results

    # ==================== Decision search ====================

    async def _decision_lexical_index(self) -> LexicalIndex:
        if self._decision_index is None:
            index = LexicalIndex()
            decisions = await self.storage.get_decisions()
            index.add_documents((d["id"], decision_text(d)) for d in decisions)
            self._decision_index = index
        return self._decision_index

    async def _enrich_decision(self, decision_id: str, similarity: float) -> Optional[DecisionSearchResult]:
        decision = await self.storage.get_decision(decision_id)
        if decision is None:
            return None
        conversation = await self.storage.get_conversation(decision["conversation_id"])
        if conversation is None:
            return None
        return DecisionSearchResult(decision=decision, conversation=conversation, similarity=similarity)

    @with_request_id
    async def search_decisions(self, query: str, limit: int = 10) -> List[DecisionSearchResult]:
        """Search decisions by meaning, or lexically when embeddings are unavailable."""
        hits: List[Tuple[str, float]] = []
        if await self._embedder_ready():
            try:
                vector = (await self._embed([query]))[0]
                found = await self.store.search(vector, limit * CANDIDATE_MULTIPLIER, OWNER_DECISION)
                hits = [(r.id, r.similarity) for r in found]
            except Exception as e:
                self._warn_embedder(e)

        if not hits:
            index = await self._decision_lexical_index()
            hits = index.search(query, top_k=len(index))

        results = []
        for decision_id, similarity in hits:
            enriched = await self._enrich_decision(decision_id, similarity)
            if enriched is not None:
                results.append(enriched)
            if len(results) >= limit:
                break
        return results

    # ==================== Stats ====================

    async def get_stats(self) -> Dict[str, Any]:
        store_stats = await self.store.stats()
        cache_stats = self.storage.get_cache_stats()
        return {
            "total_embeddings": store_stats["total_embeddings"],
            "acceleration": store_stats["acceleration"],
            "accelerated": self.store.is_accelerated(),
            "model_info": self.embedder.model_info(),
            "cache": asdict(cache_stats) if cache_stats is not None else None,
        }
