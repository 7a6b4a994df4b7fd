"""
Boundary-Aware Text Chunker

Splits note text into overlapping chunks for embedding. Chunks never start
or end inside a word: split points are chosen in priority order

    1. sentence end (". ") in the second half of the window
    2. newline in the second half of the window
    3. any whitespace in the window
    4. the next whitespace after the window (chunk runs long)

and the overlap start is snapped to a whitespace boundary.
"""

import re
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WHITESPACE = " \t\n\r"

# Leading YAML-style front-matter: a "---" line at the very start through the next "---" line
_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n.*?^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters."""
    chunk_size: int = 1000  # characters per window
    overlap: int = 200      # characters carried into the next window
    strip_front_matter: bool = True


def strip_front_matter(text: str) -> str:
    """Remove a leading ``---`` delimited front-matter block, if present."""
    return _FRONT_MATTER.sub("", text, count=1)


def _last_whitespace(text: str, lo: int, hi: int) -> int:
    """Index of the last whitespace char in text[lo:hi], or -1."""
    for i in range(hi - 1, lo - 1, -1):
        if text[i] in WHITESPACE:
            return i
    return -1


def _next_whitespace(text: str, pos: int) -> int:
    """Index of the first whitespace char at or after pos, or -1."""
    for i in range(pos, len(text)):
        if text[i] in WHITESPACE:
            return i
    return -1


def _find_split_point(text: str, start: int, end: int, chunk_size: int) -> int:
    """
    Find the exclusive end of the chunk starting at ``start``.

    Returns -1 when the window [start, end) contains no usable boundary.
    """
    midpoint = start + chunk_size // 2

    # Sentence terminator followed by whitespace; the chunk keeps the period
    pos = text.rfind(".", midpoint, end)
    while pos != -1:
        if pos + 1 < len(text) and text[pos + 1] in WHITESPACE:
            return pos + 1
        pos = text.rfind(".", midpoint, pos)

    pos = text.rfind("\n", midpoint, end)
    if pos > start:
        return pos

    return _last_whitespace(text, start + 1, end)


def _next_start(text: str, start: int, split: int, overlap: int) -> int:
    """Start of the next window: ``split - overlap`` snapped to a word boundary."""
    naive = max(start, split - overlap)

    back = _last_whitespace(text, start, naive + 1)
    if back != -1:
        return back + 1

    forward = _next_whitespace(text, naive)
    if forward != -1:
        return forward + 1
    return split


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[str]:
    """
    Split text into overlapping, whitespace-bounded chunks.

    Args:
        text: Raw text (front-matter is NOT stripped here)
        chunk_size: Target window size in characters
        overlap: Characters of context repeated at the start of the next chunk

    Returns:
        Trimmed, non-empty chunks in document order
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")
    if not text:
        return []

    chunks: list[str] = []
    n = len(text)
    start = 0

    while start < n:
        end = start + chunk_size
        if end >= n:
            _append_trimmed(chunks, text[start:])
            break

        split = _find_split_point(text, start, end, chunk_size)
        if split == -1:
            # No whitespace in the window: run long to the next word boundary
            split = _next_whitespace(text, end)
            if split == -1:
                _append_trimmed(chunks, text[start:])
                break

        _append_trimmed(chunks, text[start:split])
        start = _next_start(text, start, split, overlap)

    return chunks


def _append_trimmed(chunks: list[str], piece: str) -> None:
    piece = piece.strip()
    if piece:
        chunks.append(piece)


class TextChunker:
    """
    Chunks markdown notes for ingestion.

    Strips front-matter (when configured) and delegates to :func:`chunk_text`.
    Stateless; safe to share across threads.
    """

    def __init__(self, config: ChunkConfig = None):
        self.config = config or ChunkConfig()

    def chunk(self, raw_text: str) -> list[str]:
        text = strip_front_matter(raw_text) if self.config.strip_front_matter else raw_text
        chunks = chunk_text(text, self.config.chunk_size, self.config.overlap)
        logger.debug(f"Split {len(text)} chars into {len(chunks)} chunks")
        return chunks
