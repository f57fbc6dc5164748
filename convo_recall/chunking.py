"""
Text chunking for long messages.

Embedding models truncate long inputs, so long messages are split into
overlapping windows that are embedded and searched independently, then
reassembled by parent id in the result aggregator.
"""

import math
import re
from dataclasses import dataclass
from typing import List, Optional

from .config import settings

CODE_BLOCK_PATTERN = re.compile(r'```[\s\S]*?```|`[^`\n]+`')

# Characters per token estimates
CHARS_PER_TOKEN_PROSE = 4.0
CHARS_PER_TOKEN_CODE = 3.5


@dataclass
class TextChunk:
    """A window of a longer text, with offsets into the original."""
    content: str
    index: int
    total_chunks: int
    start_offset: int
    end_offset: int
    estimated_tokens: int


def _code_ratio(text: str) -> float:
    if not text:
        return 0.0
    code_length = sum(len(m) for m in CODE_BLOCK_PATTERN.findall(text))
    return code_length / len(text)


def estimate_tokens(text: str) -> int:
    """Rough token count, weighting code and prose differently."""
    if not text:
        return 0
    ratio = _code_ratio(text)
    chars_per_token = CHARS_PER_TOKEN_CODE * ratio + CHARS_PER_TOKEN_PROSE * (1 - ratio)
    return math.ceil(len(text) / chars_per_token)


def _find_word_boundary(text: str, position: int, backward: bool = True) -> int:
    """Nearest word boundary at or before (or after) a position."""
    if position >= len(text):
        return len(text)
    if position <= 0:
        return 0
    if text[position].isspace():
        return position

    if backward:
        for i in range(position, -1, -1):
            if text[i].isspace():
                return i + 1
        return 0

    for i in range(position, len(text)):
        if text[i].isspace():
            return i
    return len(text)


class TextChunker:
    """
    Sliding-window chunker.

    Texts whose estimated size fits in one chunk are returned as a single
    chunk. Window edges are snapped to whitespace so no word is split.
    """

    def __init__(self, chunk_size: Optional[int] = None, overlap: Optional[float] = None):
        self.chunk_size = chunk_size or settings.chunk_size
        self.overlap = settings.chunk_overlap if overlap is None else overlap

    def chunk(self, text: str) -> List[TextChunk]:
        total_tokens = estimate_tokens(text)
        if total_tokens <= self.chunk_size:
            return [TextChunk(
                content=text,
                index=0,
                total_chunks=1,
                start_offset=0,
                end_offset=len(text),
                estimated_tokens=total_tokens,
            )]

        ratio = _code_ratio(text)
        chars_per_token = CHARS_PER_TOKEN_CODE * ratio + CHARS_PER_TOKEN_PROSE * (1 - ratio)
        window = max(1, int(self.chunk_size * chars_per_token))
        step = max(1, window - int(window * self.overlap))

        chunks: List[TextChunk] = []
        position = 0
        while position < len(text):
            end = min(position + window, len(text))
            if end < len(text):
                end = _find_word_boundary(text, end, backward=True)
                if end <= position:
                    end = _find_word_boundary(text, position + window, backward=False)

            content = text[position:end].strip()
            if content:
                chunks.append(TextChunk(
                    content=content,
                    index=len(chunks),
                    total_chunks=0,
                    start_offset=position,
                    end_offset=end,
                    estimated_tokens=estimate_tokens(content),
                ))

            if end >= len(text):
                break

            next_position = _find_word_boundary(text, position + step, backward=True)
            if next_position <= position:
                next_position = position + 1
            position = next_position

        for chunk in chunks:
            chunk.total_chunks = len(chunks)
        return chunks
