"""
BM25 keyword ranking over chunk candidates.

The relational index narrows candidates with SQL (INDEXED documents, optional
project scope, at least one query term present); this module scores them.

Dependencies:
  pip install rank-bm25>=0.2.2
"""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from rank_bm25 import BM25Plus

_STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "as", "be", "was", "are",
    "that", "this", "which", "have", "has", "had", "not", "no", "can",
    "will", "would", "could", "should", "may", "might", "do", "does",
    "did", "its", "their", "our", "your", "my", "his", "her",
})

_PUNCT_TABLE = str.maketrans("", "", string.punctuation.replace("-", ""))


def tokenize(text: str) -> list[str]:
    """
    lowercase → strip punctuation (hyphens kept) → drop stopwords.
    """
    text = text.lower().translate(_PUNCT_TABLE)
    return [t for t in text.split() if t and t not in _STOPWORDS]


@dataclass(frozen=True)
class Candidate:
    document_id: UUID
    ordinal:     int
    text:        str


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score:     float


class ChunkBM25Index:
    """
    In-memory BM25+ index over one candidate set. Read-only after
    construction.
    """

    __slots__ = ("_corpus", "_tokens", "_bm25")

    def __init__(self, corpus: Sequence[Candidate]) -> None:
        if not corpus:
            raise ValueError("ChunkBM25Index requires a non-empty corpus")
        self._corpus = list(corpus)
        # Every entry must be non-empty for the length normalisation
        self._tokens = [tokenize(c.text) or ["<empty>"] for c in self._corpus]
        self._bm25 = BM25Plus(self._tokens)

    def search(self, query: str, top_k: int = 10) -> list[ScoredCandidate]:
        query_tokens = tokenize(query)
        if not query_tokens:
            return []
        wanted = set(query_tokens)
        scores = self._bm25.get_scores(query_tokens)

        # BM25+ gives every document a floor score; rank only true term matches
        matched = [
            (idx, float(score))
            for idx, score in enumerate(scores)
            if wanted.intersection(self._tokens[idx])
        ]
        # Stable tie-break keeps results deterministic
        matched.sort(key=lambda pair: (
            -pair[1],
            str(self._corpus[pair[0]].document_id),
            self._corpus[pair[0]].ordinal,
        ))
        return [
            ScoredCandidate(candidate=self._corpus[idx], score=score)
            for idx, score in matched[:top_k]
        ]

    def __len__(self) -> int:
        return len(self._corpus)
