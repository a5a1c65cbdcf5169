"""
Composed FastAPI Dependencies

Route handlers receive services from here, never by building them. The
components are created once in the application lifespan and stored on
app.state, so tests can swap in their own (SQLite file, temp blob dir).
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from docindex.services.container import Components
from docindex.services.ingestion import DocumentService
from docindex.services.query import QueryService


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_document_service(
    components: Annotated[Components, Depends(get_components)],
) -> DocumentService:
    return components.documents


def get_query_service(
    components: Annotated[Components, Depends(get_components)],
) -> QueryService:
    return components.queries


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Documents = Annotated[DocumentService, Depends(get_document_service)]
Queries   = Annotated[QueryService, Depends(get_query_service)]
