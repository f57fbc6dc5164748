"""
Snippet Generator - short, highlighted excerpts centered on query matches.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import settings

# Words too common to be worth matching in a snippet
STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "it", "as", "be", "was", "are", "were", "been", "has",
    "have", "had", "do", "does", "did", "will", "would", "could", "should",
    "may", "might", "can", "this", "that", "these", "those", "i", "you", "we",
    "they", "he", "she",
}

WINDOW_STEP = 10
SENTENCE_END = re.compile(r'[.!?]\s*$')


@dataclass
class SnippetConfig:
    target_length: int = 200
    highlight: bool = True
    highlight_start: str = "**"
    highlight_end: str = "**"
    ellipsis: str = "..."
    prefer_sentence_boundaries: bool = True

    @classmethod
    def from_settings(cls) -> "SnippetConfig":
        return cls(target_length=settings.snippet_length, highlight=settings.snippet_highlight)


def query_terms(query: str) -> List[str]:
    """Lowercase query words of two or more characters, minus stop words."""
    return [
        w for w in query.lower().split()
        if len(w) >= 2 and w not in STOP_WORDS
    ]


def _term_pattern(terms: List[str]) -> Optional["re.Pattern[str]"]:
    """One case-insensitive alternation of the escaped terms, longest first."""
    unique = sorted(set(terms), key=len, reverse=True)
    if not unique:
        return None
    return re.compile("|".join(re.escape(t) for t in unique), re.IGNORECASE)


class SnippetGenerator:
    """
    Picks the window of content with the densest query-term matches.

    Window edges never split a word, and an ellipsis marks each side where
    the excerpt does not reach the end of the content.
    """

    def __init__(self, config: Optional[SnippetConfig] = None):
        self.config = config or SnippetConfig.from_settings()

    def generate(self, content: str, query: str) -> str:
        if not content:
            return ""

        terms = query_terms(query)

        if len(content) <= self.config.target_length:
            return self.highlight(content, terms) if self.config.highlight else content

        matches = self._find_matches(content, terms)
        if not matches:
            return self._truncate(content)

        start, end = self._best_window(content, matches)
        snippet = self._extract(content, start, end)

        if self.config.highlight:
            snippet = self.highlight(snippet, terms)
        return snippet

    def _find_matches(self, content: str, terms: List[str]) -> List[Tuple[int, int]]:
        """Spans of every case-insensitive term occurrence, as offsets into content."""
        pattern = _term_pattern(terms)
        if pattern is None:
            return []
        return [m.span() for m in pattern.finditer(content)]

    def _best_window(self, content: str, matches: List[Tuple[int, int]]) -> Tuple[int, int]:
        size = self.config.target_length
        best_start = 0
        best_score = 0.0

        for start in range(0, len(content) - size + 1, WINDOW_STEP):
            end = start + size
            score = 0.0
            for m_start, m_end in matches:
                if m_start >= start and m_end <= end:
                    score += 2
                elif start <= m_start < end or start < m_end <= end:
                    score += 1

            if self.config.prefer_sentence_boundaries:
                if start == 0 or SENTENCE_END.search(content[max(0, start - 5):start]):
                    score += 0.5

            if score > best_score:
                best_score = score
                best_start = start

        return best_start, min(best_start + size, len(content))

    def _extract(self, content: str, start: int, end: int) -> str:
        """Cut [start, end) widened to whole words, with ellipses where truncated."""
        if start > 0:
            while start > 0 and not content[start - 1].isspace():
                start -= 1
            while start > 0 and start < len(content) and content[start].isspace():
                start += 1

        while end < len(content) and not content[end].isspace():
            end += 1

        snippet = content[start:end].strip()
        if start > 0:
            snippet = self.config.ellipsis + snippet
        if end < len(content):
            snippet = snippet + self.config.ellipsis
        return snippet

    def _truncate(self, content: str) -> str:
        """Leading excerpt cut back to the last whole word."""
        limit = self.config.target_length
        if len(content) <= limit:
            return content

        end = limit
        while end > 0 and not content[end].isspace():
            end -= 1
        if end == 0:
            end = limit

        return content[:end].strip() + self.config.ellipsis

    def highlight(self, text: str, terms: List[str]) -> str:
        """
        Wrap every case-insensitive term occurrence in the highlight markers.

        All terms go into one alternation, longest first, so a term that is
        part of another (e.g. "err" in "error") is never wrapped twice.
        """
        pattern = _term_pattern(terms)
        if pattern is None:
            return text

        start, end = self.config.highlight_start, self.config.highlight_end
        return pattern.sub(lambda m: f"{start}{m.group(0)}{end}", text)
