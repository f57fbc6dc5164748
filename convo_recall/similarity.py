"""
Lexical Index - TF-IDF matching used when vectors are unavailable and as
the lexical side of hybrid re-ranking.
"""

import re
import math
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from .snippets import STOP_WORDS as SNIPPET_STOP_WORDS

logger = logging.getLogger(__name__)

STOP_WORDS = SNIPPET_STOP_WORDS | {
    'being', 'must', 'from', 'into', 'then', 'there', 'here', 'when', 'where',
    'why', 'how', 'all', 'each', 'some', 'such', 'not', 'only', 'so', 'than',
    'too', 'very', 'just', 'if', 'its', 'them', 'what', 'which', 'who', 'also',
}

# Two-letter words worth keeping in a developer vocabulary
SHORT_TERMS = {'db', 'ui', 'id', 'io', 'os', 'ip', 'vm', 'ai', 'ml', 'js', 'ts', 'py', 'ci'}

WORD_PATTERN = re.compile(r'[a-zA-Z0-9]+')
CAMEL_BOUNDARY = re.compile(r'([a-z])([A-Z])')
IDENTIFIER_PATTERN = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")


def tokenize(text: str) -> List[str]:
    """
    Lowercase terms of a text.

    camelCase and snake_case identifiers are split into their words and
    also kept whole, so both "getUserById" and "user" match.
    """
    if not text:
        return []

    identifiers = [
        m.lower() for m in IDENTIFIER_PATTERN.findall(text)
        if len(m) >= 3 and ("_" in m.strip("_") or CAMEL_BOUNDARY.search(m))
    ]

    split = CAMEL_BOUNDARY.sub(r'\1 \2', text).replace('_', ' ')
    tokens = []
    for word in WORD_PATTERN.findall(split.lower()):
        if word in STOP_WORDS or len(word) < 2:
            continue
        if len(word) == 2 and word not in SHORT_TERMS:
            continue
        tokens.append(word)

    tokens.extend(identifiers)
    return tokens


class LexicalIndex:
    """
    In-memory TF-IDF index over string document ids.

    IDF values and document vectors are computed lazily and dropped
    whenever the document set changes.
    """

    def __init__(self):
        self.documents: Dict[str, List[str]] = {}
        self._idf: Dict[str, float] = {}
        self._vectors: Dict[str, Dict[str, float]] = {}

    def __len__(self) -> int:
        return len(self.documents)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self.documents

    def add_document(self, doc_id: str, text: str) -> None:
        self.documents[doc_id] = tokenize(text)
        self._reset()

    def add_documents(self, docs: Iterable[Tuple[str, str]]) -> None:
        for doc_id, text in docs:
            self.documents[doc_id] = tokenize(text)
        self._reset()

    def remove_document(self, doc_id: str) -> None:
        if self.documents.pop(doc_id, None) is not None:
            self._reset()

    def clear(self) -> None:
        self.documents.clear()
        self._reset()

    def _reset(self) -> None:
        self._idf.clear()
        self._vectors.clear()

    def _idf_of(self, term: str) -> float:
        idf = self._idf.get(term)
        if idf is None:
            doc_freq = sum(1 for tokens in self.documents.values() if term in tokens)
            # Smoothed IDF; unseen terms carry no weight
            idf = math.log((len(self.documents) + 1) / (doc_freq + 1)) + 1 if doc_freq else 0.0
            self._idf[term] = idf
        return idf

    def _weigh(self, tokens: List[str]) -> Dict[str, float]:
        """Augmented term frequency times IDF."""
        if not tokens:
            return {}
        counts = Counter(tokens)
        max_tf = max(counts.values())
        return {
            term: (0.5 + 0.5 * count / max_tf) * self._idf_of(term)
            for term, count in counts.items()
        }

    def _vector(self, doc_id: str) -> Dict[str, float]:
        if doc_id not in self._vectors:
            self._vectors[doc_id] = self._weigh(self.documents.get(doc_id, []))
        return self._vectors[doc_id]

    @staticmethod
    def _cosine(a: Dict[str, float], b: Dict[str, float]) -> float:
        common = a.keys() & b.keys()
        if not common:
            return 0.0
        dot = sum(a[t] * b[t] for t in common)
        norm = math.sqrt(sum(v * v for v in a.values())) * math.sqrt(sum(v * v for v in b.values()))
        return dot / norm if norm else 0.0

    def search(
        self,
        query: str,
        top_k: int = 10,
        threshold: float = 0.05,
        candidates: Optional[Iterable[str]] = None
    ) -> List[Tuple[str, float]]:
        """
        Documents most similar to the query.

        Args:
            query: Free text
            top_k: Maximum number of hits
            threshold: Minimum score to keep
            candidates: Restrict scoring to these document ids

        Returns:
            (doc_id, score) tuples, best first
        """
        query_vector = self._weigh(tokenize(query))
        if not query_vector:
            return []

        doc_ids = self.documents.keys() if candidates is None else [
            d for d in candidates if d in self.documents
        ]

        results = []
        for doc_id in doc_ids:
            score = self._cosine(query_vector, self._vector(doc_id))
            if score >= threshold:
                results.append((doc_id, score))

        results.sort(key=lambda r: r[1], reverse=True)
        return results[:top_k]
