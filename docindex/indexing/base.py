"""
Indexer — Abstract Base

The pipeline talks to the chunk index only through this interface, so the
relational index can be swapped for an external search engine without
touching the worker.

Replacement contract:
  replace_chunks() is all-or-nothing. After it returns, the document has
  exactly the new chunk set; if it raises, the previous set is untouched.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from docindex.models.documents import Chunk
from docindex.processing.chunking import TextChunk

# Runs inside the replacement transaction before any write; raises to abort
WriteGuard = Callable[[Session], None]


@dataclass
class SearchHit:
    document_id: UUID
    ordinal:     int
    text:        str
    score:       float


class Indexer(ABC):

    @abstractmethod
    def replace_chunks(
        self,
        document_id: UUID,
        chunks: Sequence[TextChunk],
        *,
        guard: WriteGuard | None = None,
    ) -> int:
        """Atomically swap the document's chunk set; returns the new count."""

    @abstractmethod
    def delete_chunks(self, document_id: UUID, *, session: Session | None = None) -> int:
        """
        Remove every chunk of the document (idempotent); returns rows removed.
        With `session`, the delete joins the caller's transaction.
        """

    @abstractmethod
    def get_chunks(self, document_id: UUID) -> list[Chunk]:
        ...

    @abstractmethod
    def count_chunks(self, document_id: UUID) -> int:
        ...

    @abstractmethod
    def search(
        self,
        query: str,
        *,
        project_id: str | None = None,
        top_k: int = 10,
    ) -> list[SearchHit]:
        ...
