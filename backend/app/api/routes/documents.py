"""Document endpoints - upload, list, detail, status, reprocess, delete, search, evaluate."""

import uuid
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from backend.app.api.auth import get_current_context
from backend.app.api.dependencies import get_repositories, get_services
from backend.app.db.context import RequestContext
from backend.app.db.repositories import Repositories
from backend.app.docs.errors import AlreadyProcessingError, DocumentNotFoundError, StorageError
from backend.app.docs.ingest import delete_document, upload_and_process
from backend.app.models.docs import (
    ChunkMatch,
    Document,
    DocumentStatus,
    DocumentUpload,
    ProcessingResult,
    ProcessingStatus,
    QueryEvaluation,
)
from backend.app.services import PipelineServices

router = APIRouter(prefix="/documents", tags=["documents"])

SearchMode = Literal["vector", "expanded", "hybrid"]


class UploadDocumentRequest(BaseModel):
    """Request body for POST /documents."""

    title: str = Field(..., min_length=1, max_length=255, description="Document title")
    file_name: str = Field(..., min_length=1)
    file_type: str = Field("text/plain", min_length=1)
    content: str = Field(..., min_length=1, description="Extracted document text")
    metadata: dict[str, Any] = Field(default_factory=dict)


class UploadDocumentResponse(BaseModel):
    """Response for POST /documents and POST /documents/{id}/reprocess."""

    document: Document
    result: ProcessingResult | None = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class DocumentListResponse(BaseModel):
    """Response for GET /documents."""

    documents: list[Document]
    pagination: Pagination


class ChunkSummary(BaseModel):
    """Chunk without its embedding vector."""

    chunk_id: uuid.UUID
    chunk_index: int
    content: str
    token_count: int
    metadata: dict[str, Any]


class DocumentDetailResponse(BaseModel):
    """Response for GET /documents/{id}."""

    document: Document
    chunks: list[ChunkSummary] | None = None


class DocumentSearchResponse(BaseModel):
    """Response for GET /documents/search."""

    matches: list[ChunkMatch]
    query: str
    mode: SearchMode


@router.post("", response_model=UploadDocumentResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_document(
    request: UploadDocumentRequest,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    wait: Annotated[bool, Query(description="Wait for processing to finish")] = False,
) -> UploadDocumentResponse:
    """Upload a document and start processing it in the background.

    Args:
        request: Document upload request
        ctx: Request context (user_id)
        services: Pipeline services
        repos: Repositories for this request
        wait: Block until the processing job has finished

    Returns:
        Created document (pending unless wait=true) and, with wait, the job result
    """
    # Server-generated so no two documents share a stored object
    storage_path = f"{ctx.user_id}/{uuid.uuid4()}/{request.file_name}"
    upload = DocumentUpload(
        title=request.title,
        file_name=request.file_name,
        file_size=len(request.content.encode("utf-8")),
        file_type=request.file_type,
        storage_path=storage_path,
        metadata=request.metadata,
    )

    try:
        document, job = await upload_and_process(
            upload,
            request.content,
            user_id=ctx.user_id,
            documents=repos.documents,
            storage=services.storage,
            runner=services.runner,
        )
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to store document"
        ) from e

    if not wait:
        return UploadDocumentResponse(document=document)

    result = await job.wait()
    refreshed = await repos.documents.get_for_user(document.document_id, ctx.user_id)
    return UploadDocumentResponse(document=refreshed or document, result=result)


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    status_filter: Annotated[DocumentStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DocumentListResponse:
    """List the current user's documents, newest first."""
    documents, total = await repos.documents.list_for_user(
        ctx.user_id, status=status_filter, limit=limit, offset=offset
    )
    return DocumentListResponse(
        documents=documents,
        pagination=Pagination(total=total, limit=limit, offset=offset),
    )


@router.get("/search", response_model=DocumentSearchResponse)
async def search_documents(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    query: Annotated[str, Query(min_length=1, max_length=1000)],
    limit: Annotated[int, Query(ge=1, le=10)] = 5,
    mode: Annotated[SearchMode, Query()] = "vector",
) -> DocumentSearchResponse:
    """Semantic search over the current user's chunks.

    ``expanded`` also searches query variants; ``hybrid`` mixes in literal
    keyword matches.

    Returns:
        Ranked list of matching chunks with similarity scores
    """
    retriever = services.build_retriever(repos)
    if mode == "expanded":
        matches = await retriever.search_with_expansion(query, ctx.user_id, limit)
    elif mode == "hybrid":
        matches = await retriever.hybrid_search(query, ctx.user_id, limit)
    else:
        matches = await retriever.search(query, ctx.user_id, limit)
    return DocumentSearchResponse(matches=matches, query=query, mode=mode)


@router.get("/evaluate", response_model=QueryEvaluation)
async def evaluate_query(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    query: Annotated[str, Query(min_length=1, max_length=1000)],
) -> QueryEvaluation:
    """Whether the current user's documents look able to answer ``query``."""
    return await services.build_retriever(repos).evaluate_query(query, ctx.user_id)


@router.get("/{document_id}", response_model=DocumentDetailResponse)
async def get_document(
    document_id: uuid.UUID,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    include_chunks: Annotated[bool, Query()] = False,
) -> DocumentDetailResponse:
    """Get a document, optionally with its chunks."""
    document = await repos.documents.get_for_user(document_id, ctx.user_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    chunks = None
    if include_chunks:
        chunks = [
            ChunkSummary(
                chunk_id=c.chunk_id,
                chunk_index=c.chunk_index,
                content=c.content,
                token_count=c.token_count,
                metadata=c.metadata,
            )
            for c in await repos.chunks.list_for_document(document_id)
        ]

    return DocumentDetailResponse(document=document, chunks=chunks)


@router.get("/{document_id}/status", response_model=ProcessingStatus)
async def get_document_status(
    document_id: uuid.UUID,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> ProcessingStatus:
    """Processing status of a document."""
    if await repos.documents.get_for_user(document_id, ctx.user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    try:
        return await services.build_processor(repos).get_status(document_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.post(
    "/{document_id}/reprocess",
    response_model=UploadDocumentResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reprocess_document(
    document_id: uuid.UUID,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
    wait: Annotated[bool, Query(description="Wait for reprocessing to finish")] = False,
) -> UploadDocumentResponse:
    """Delete a document's chunks and process its stored content again.

    Raises:
        HTTPException: 404 if missing, 409 if already processing, 502 on storage failure
    """
    document = await repos.documents.get_for_user(document_id, ctx.user_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    if document.status == DocumentStatus.processing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Document is already being processed"
        )

    try:
        job = services.runner.submit_reprocess(document_id)
    except AlreadyProcessingError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    if not wait:
        return UploadDocumentResponse(document=document)

    try:
        result = await job.wait()
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except AlreadyProcessingError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    refreshed = await repos.documents.get_for_user(document_id, ctx.user_id)
    return UploadDocumentResponse(document=refreshed or document, result=result)


@router.delete("/{document_id}")
async def remove_document(
    document_id: uuid.UUID,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    services: Annotated[PipelineServices, Depends(get_services)],
    repos: Annotated[Repositories, Depends(get_repositories)],
) -> dict[str, bool]:
    """Delete a document and all of its chunks."""
    deleted = await delete_document(
        document_id, ctx.user_id, documents=repos.documents, storage=services.storage
    )
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return {"success": True}
