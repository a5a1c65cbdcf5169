"""
docindex — document ingestion and indexing pipeline.

  submit → blob store → PENDING + job
  worker pool: lease → extract → chunk → index → INDEXED | FAILED
  query layer: filtered listings and aggregate statistics
"""

__version__ = "1.0.0"
