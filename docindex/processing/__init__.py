"""
Document Processing Package
════════════════════════════

  extractor.py  MIME type → text extractor registry (plain text, PDF, DOCX)
  chunking.py   deterministic overlapping character windows

Both are stateless and shared by every worker thread.
"""

from docindex.processing.chunking import Chunker, TextChunk, chunk_text
from docindex.processing.extractor import ExtractorRegistry, default_registry

__all__ = [
    "Chunker",
    "TextChunk",
    "chunk_text",
    "ExtractorRegistry",
    "default_registry",
]
