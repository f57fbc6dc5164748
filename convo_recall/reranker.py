"""
Hybrid re-ranking with Reciprocal Rank Fusion (RRF).

Combines the vector ranking with the lexical ranking:
    score(d) = w_v / (k + rank_v(d)) + w_l / (k + rank_l(d))
Ranks are 1-based; a document missing from one list gets nothing from it.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from .config import settings


@dataclass
class RerankConfig:
    rrf_k: int = 60
    vector_weight: float = 0.7
    lexical_weight: float = 0.3
    enabled: bool = True

    @classmethod
    def from_settings(cls) -> "RerankConfig":
        return cls(
            rrf_k=settings.rrf_k,
            vector_weight=settings.rerank_vector_weight,
            lexical_weight=1.0 - settings.rerank_vector_weight,
            enabled=settings.rerank_enabled,
        )


@dataclass
class RerankResult:
    id: Hashable
    combined_score: float
    vector_rank: Optional[int] = None
    lexical_rank: Optional[int] = None
    vector_score: Optional[float] = None
    lexical_score: Optional[float] = None

    @property
    def in_both(self) -> bool:
        return self.vector_rank is not None and self.lexical_rank is not None


def _ranks(results: Sequence[Tuple[Hashable, float]]) -> Dict[Hashable, Tuple[int, float]]:
    ranks: Dict[Hashable, Tuple[int, float]] = {}
    for position, (item_id, score) in enumerate(results, start=1):
        # First occurrence wins if an id repeats
        ranks.setdefault(item_id, (position, score))
    return ranks


class HybridReranker:
    """Fuses a vector ranking and a lexical ranking, each given as (id, score) best first."""

    def __init__(self, config: Optional[RerankConfig] = None):
        self.config = config or RerankConfig.from_settings()

    def _rrf(self, rank: int) -> float:
        return 1.0 / (self.config.rrf_k + rank)

    def rerank(
        self,
        vector_results: Sequence[Tuple[Hashable, float]],
        lexical_results: Sequence[Tuple[Hashable, float]],
        limit: int
    ) -> List[RerankResult]:
        if not self.config.enabled:
            return [
                RerankResult(id=item_id, combined_score=score, vector_rank=rank, vector_score=score)
                for rank, (item_id, score) in enumerate(vector_results[:limit], start=1)
            ]

        vector_ranks = _ranks(vector_results)
        lexical_ranks = _ranks(lexical_results)

        results = []
        for item_id in dict.fromkeys([*vector_ranks, *lexical_ranks]):
            result = RerankResult(id=item_id, combined_score=0.0)
            if item_id in vector_ranks:
                result.vector_rank, result.vector_score = vector_ranks[item_id]
                result.combined_score += self.config.vector_weight * self._rrf(result.vector_rank)
            if item_id in lexical_ranks:
                result.lexical_rank, result.lexical_score = lexical_ranks[item_id]
                result.combined_score += self.config.lexical_weight * self._rrf(result.lexical_rank)
            results.append(result)

        results.sort(key=lambda r: r.combined_score, reverse=True)
        return results[:limit]

    def rerank_with_overlap_boost(
        self,
        vector_results: Sequence[Tuple[Hashable, float]],
        lexical_results: Sequence[Tuple[Hashable, float]],
        limit: int,
        overlap_boost: float = 1.2
    ) -> List[RerankResult]:
        """Like rerank, but items found by both searches are multiplied by overlap_boost."""
        results = self.rerank(vector_results, lexical_results, limit)
        for result in results:
            if result.in_both:
                result.combined_score *= overlap_boost
        results.sort(key=lambda r: r.combined_score, reverse=True)
        return results
