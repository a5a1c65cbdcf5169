"""
Documents API Router — /api/v1/documents

Thin HTTP surface over DocumentService / QueryService. Authentication and
project-level authorization are enforced upstream (gateway); project_id and
uploader_id arrive already verified.

  POST   /                   submit (multipart) → 202 + document (PENDING)
  GET    /                   filtered, paginated listing
  GET    /stats              totals per category / status
  GET    /search             BM25 search over indexed chunks
  GET    /{id}               one document with its indexing fields
  GET    /{id}/chunks        the document's chunks in ordinal order
  POST   /{id}/reindex       INDEXED | FAILED → PENDING (409 otherwise)
  DELETE /{id}               remove document, chunks, job and blob

Errors are mapped to ErrorResponse bodies by the handlers in docindex.main.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from docindex.api.dependencies import Documents, Queries
from docindex.schemas.documents import (
    MAX_PAGE_SIZE,
    ChunkView,
    DocumentCategory,
    DocumentFilters,
    DocumentPage,
    DocumentStats,
    DocumentView,
    ErrorResponse,
    FileType,
    IndexStatus,
    SearchHitView,
    UploadDateBucket,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    404: {"model": ErrorResponse, "description": "Document not found"},
    409: {"model": ErrorResponse, "description": "Document is not in a state that allows this action"},
}


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentView,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a document for indexing",
    responses={
        **_ERRORS,
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        503: {"model": ErrorResponse, "description": "Blob storage unavailable"},
    },
)
async def submit_document(
    service:     Documents,
    file:        UploadFile          = File(..., description="Document file"),
    project_id:  str                 = Form(..., min_length=1, max_length=64),
    uploader_id: str                 = Form(..., min_length=1, max_length=64),
    category:    DocumentCategory    = Form(...),
    description: Optional[str]       = Form(None),
) -> DocumentView:
    data = await file.read()
    return await run_in_threadpool(
        service.submit_document,
        project_id,
        uploader_id,
        file.filename or "upload",
        data,
        file.content_type,
        category,
        description,
    )


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

@router.get("", response_model=DocumentPage, summary="List documents", responses=_ERRORS)
def list_documents(
    queries:      Queries,
    status_:      Optional[IndexStatus]      = Query(None, alias="status"),
    category:     Optional[DocumentCategory] = Query(None),
    project_id:   Optional[list[str]]        = Query(None),
    uploader_id:  Optional[list[str]]        = Query(None),
    file_type:    Optional[FileType]         = Query(None),
    created_from: Optional[datetime]         = Query(None),
    created_to:   Optional[datetime]         = Query(None),
    upload_date:  Optional[UploadDateBucket] = Query(None),
    search:       Optional[str]              = Query(None, max_length=200),
    page:         int                        = Query(1, ge=1),
    page_size:    int                        = Query(20, ge=1, le=MAX_PAGE_SIZE),
) -> DocumentPage:
    filters = DocumentFilters(
        status=status_,
        category=category,
        project_ids=project_id or [],
        uploader_ids=uploader_id or [],
        file_type=file_type,
        created_from=created_from,
        created_to=created_to,
        upload_date=upload_date,
        search=search,
    )
    return queries.list_documents(filters, page=page, page_size=page_size)


@router.get("/stats", response_model=DocumentStats, summary="Document counts")
def document_stats(
    queries:    Queries,
    project_id: Optional[str] = Query(None),
) -> DocumentStats:
    return queries.stats(project_id)


@router.get("/search", response_model=list[SearchHitView], summary="Keyword search over indexed chunks")
def search_chunks(
    service:    Documents,
    q:          str           = Query(..., min_length=1, max_length=500),
    project_id: Optional[str] = Query(None),
    top_k:      int           = Query(10, ge=1, le=100),
) -> list[SearchHitView]:
    return service.search_chunks(q, project_id=project_id, top_k=top_k)


@router.get("/{document_id}", response_model=DocumentView, responses=_ERRORS)
def get_document(document_id: UUID, service: Documents) -> DocumentView:
    return service.get_document(document_id)


@router.get("/{document_id}/chunks", response_model=list[ChunkView], responses=_ERRORS)
def get_document_chunks(document_id: UUID, service: Documents) -> list[ChunkView]:
    return service.get_chunks(document_id)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reindex",
    response_model=DocumentView,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a document for re-indexing",
    responses=_ERRORS,
)
def reindex_document(document_id: UUID, service: Documents) -> DocumentView:
    return service.request_reindex(document_id)


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document, its chunks and its pending job",
    responses=_ERRORS,
)
def delete_document(document_id: UUID, service: Documents) -> None:
    service.delete_document(document_id)
