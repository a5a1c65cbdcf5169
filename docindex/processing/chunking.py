"""
Deterministic Overlapping Chunker
═════════════════════════════════

Splits extracted text into windows of at most `max_chunk_chars` characters.
Consecutive windows overlap by exactly `overlap_chars` so a sentence cut at
one boundary still appears whole in one of the two neighbours.

Window end selection
────────────────────
  hard_end = start + max_chunk_chars
  If the text continues past hard_end, look back at most `boundary_radius`
  characters for a natural cut, in order of preference:

      1. paragraph break     "\n\n"
      2. line break          "\n"
      3. sentence end        ". " / "! " / "? "   (closing quotes allowed)
      4. any whitespace

  The last match of the best available kind wins; with no match the window
  is hard-cut at hard_end.

Every chunk satisfies  chunk.text == text[chunk.start_offset:chunk.end_offset].
Windows consisting only of whitespace are dropped and ordinals stay
contiguous from 0. The same input and parameters always give the same
output.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_CHARS = 1000
DEFAULT_OVERLAP_CHARS   = 100
DEFAULT_BOUNDARY_RADIUS = 200

_BOUNDARY_PATTERNS = (
    re.compile(r"\n[^\S\n]*\n"),
    re.compile(r"\n"),
    re.compile(r"[.!?][\"')\]]*\s"),
    re.compile(r"\s"),
)


@dataclass(frozen=True)
class TextChunk:
    ordinal:      int
    text:         str
    start_offset: int
    end_offset:   int

    @property
    def char_count(self) -> int:
        return len(self.text)


def find_cut(text: str, lo: int, hi: int) -> int:
    """
    Best cut position in (lo, hi]; `hi` when the range holds no boundary.
    """
    window = text[lo:hi]
    for pattern in _BOUNDARY_PATTERNS:
        last = None
        for last in pattern.finditer(window):
            pass
        if last is not None:
            return lo + last.end()
    return hi


class Chunker:
    """
    Stateless; one instance can be shared by every worker thread.
    """

    def __init__(
        self,
        max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
        overlap_chars: int = DEFAULT_OVERLAP_CHARS,
        boundary_radius: int = DEFAULT_BOUNDARY_RADIUS,
    ) -> None:
        if max_chunk_chars <= 0:
            raise ValueError("max_chunk_chars must be positive")
        if overlap_chars < 0 or overlap_chars >= max_chunk_chars:
            raise ValueError("overlap_chars must be in [0, max_chunk_chars)")
        if boundary_radius < 0:
            raise ValueError("boundary_radius must be >= 0")
        self.max_chunk_chars = max_chunk_chars
        self.overlap_chars = overlap_chars
        self.boundary_radius = boundary_radius

    def chunk(self, text: str) -> list[TextChunk]:
        if not text or text.isspace():
            return []

        n = len(text)
        chunks: list[TextChunk] = []
        start = 0

        while True:
            hard_end = min(start + self.max_chunk_chars, n)
            if hard_end < n:
                # Cutting at or before start+overlap would stall the next window
                lo = max(start + self.overlap_chars + 1, hard_end - self.boundary_radius)
                end = find_cut(text, lo, hard_end) if lo < hard_end else hard_end
            else:
                end = n

            piece = text[start:end]
            if piece.strip():
                chunks.append(
                    TextChunk(
                        ordinal=len(chunks),
                        text=piece,
                        start_offset=start,
                        end_offset=end,
                    )
                )

            if end >= n:
                break
            start = max(end - self.overlap_chars, start + 1)

        logger.debug(
            "Chunked | chars=%d chunks=%d max=%d overlap=%d",
            n, len(chunks), self.max_chunk_chars, self.overlap_chars,
        )
        return chunks


def chunk_text(
    text: str,
    max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
    boundary_radius: int = DEFAULT_BOUNDARY_RADIUS,
) -> list[TextChunk]:
    return Chunker(max_chunk_chars, overlap_chars, boundary_radius).chunk(text)
