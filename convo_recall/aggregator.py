"""
Result Aggregator - collapses chunk-level hits into one result per record.

Long messages are indexed as several chunks; a query can match more than
one of them. Aggregation keeps the best chunk per parent record, drops
near-duplicate records, and orders what is left by similarity.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .config import settings
from .vector_store import ChunkMatch

logger = logging.getLogger(__name__)


def _word_set(text: str) -> Set[str]:
    return {w for w in text.lower().split() if len(w) > 2}


def jaccard_similarity(a: str, b: str) -> float:
    """
    Word-level Jaccard similarity.

    Only lowercase words longer than two characters count. Two texts with no
    such words are identical (1.0); if only one has none they share nothing (0.0).
    """
    words_a = _word_set(a)
    words_b = _word_set(b)

    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0

    return len(words_a & words_b) / len(words_a | words_b)


@dataclass
class AggregationConfig:
    min_similarity: float = 0.30
    limit: int = 10
    deduplicate: bool = True
    dedup_threshold: float = 0.7

    @classmethod
    def from_settings(cls) -> "AggregationConfig":
        return cls(
            min_similarity=settings.min_similarity,
            limit=settings.result_limit,
            deduplicate=settings.deduplicate,
            dedup_threshold=settings.dedup_threshold,
        )


@dataclass
class AggregatedResult:
    """One ranked result per parent record."""
    parent_id: str
    similarity: float
    matched_chunks: List[ChunkMatch] = field(default_factory=list)
    best_snippet_source: str = ""
    total_chunks: int = 1


@dataclass
class ScoredRecord:
    """A record-level hit from a search that does not go through chunks."""
    parent_id: str
    content: str
    similarity: float


def record_match(record: ScoredRecord) -> ChunkMatch:
    """A record-level hit as a single chunk spanning the whole record."""
    return ChunkMatch(
        chunk_id=record.parent_id,
        parent_id=record.parent_id,
        chunk_index=0,
        total_chunks=1,
        content=record.content,
        start_offset=0,
        end_offset=len(record.content),
        similarity=record.similarity,
    )


class ResultAggregator:
    """
    Groups chunk hits by parent, keeps the best chunk, removes near-duplicates.

    Usage:
        aggregator = ResultAggregator(AggregationConfig(limit=5))
        results = aggregator.aggregate(chunk_hits)
    """

    def __init__(self, config: Optional[AggregationConfig] = None):
        self.config = config or AggregationConfig.from_settings()

    def aggregate(self, chunk_hits: Iterable[ChunkMatch]) -> List[AggregatedResult]:
        groups: Dict[str, List[ChunkMatch]] = {}
        for hit in chunk_hits:
            if hit.similarity < self.config.min_similarity:
                continue
            groups.setdefault(hit.parent_id, []).append(hit)

        results = []
        for parent_id, chunks in groups.items():
            chunks.sort(key=lambda c: c.similarity, reverse=True)
            best = chunks[0]
            results.append(AggregatedResult(
                parent_id=parent_id,
                similarity=best.similarity,
                matched_chunks=chunks,
                best_snippet_source=best.content,
                total_chunks=max(c.total_chunks for c in chunks),
            ))

        results.sort(key=lambda r: r.similarity, reverse=True)

        if self.config.deduplicate:
            results = self._deduplicate(results)

        return results[:self.config.limit]

    def _deduplicate(self, results: List[AggregatedResult]) -> List[AggregatedResult]:
        """Greedy pass in score order; a result is dropped if it repeats any accepted one."""
        accepted: List[AggregatedResult] = []
        for result in results:
            duplicate_of = next(
                (
                    kept for kept in accepted
                    if jaccard_similarity(result.best_snippet_source, kept.best_snippet_source)
                    >= self.config.dedup_threshold
                ),
                None
            )
            if duplicate_of is not None:
                logger.debug(f"Dropping {result.parent_id} as near-duplicate of {duplicate_of.parent_id}")
                continue
            accepted.append(result)
        return accepted

    def merge_results(
        self,
        aggregated: List[AggregatedResult],
        scored: Iterable[ScoredRecord]
    ) -> List[AggregatedResult]:
        """
        Fuse aggregated chunk results with record-level hits.

        For a parent present in both, the higher similarity wins along with
        its snippet source. Records only found by the record-level search
        become single-chunk results.
        """
        merged: Dict[str, AggregatedResult] = {r.parent_id: r for r in aggregated}

        for record in scored:
            existing = merged.get(record.parent_id)
            if existing is None:
                merged[record.parent_id] = AggregatedResult(
                    parent_id=record.parent_id,
                    similarity=record.similarity,
                    matched_chunks=[],
                    best_snippet_source=record.content,
                    total_chunks=1,
                )
            elif record.similarity > existing.similarity:
                existing.similarity = record.similarity
                existing.best_snippet_source = record.content
                if existing.matched_chunks:
                    # Whole-record match keeps similarity == max(matched chunks)
                    existing.matched_chunks.insert(0, record_match(record))

        results = sorted(merged.values(), key=lambda r: r.similarity, reverse=True)
        return results[:self.config.limit]
