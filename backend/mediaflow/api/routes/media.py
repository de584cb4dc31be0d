"""
Media API endpoints.

Submit media for processing, poll its status, soft-delete it and search
the resulting transcript chunks.

Domain errors (quota, duplicates, unknown tenant or item) are translated
to HTTP status codes by the exception handlers registered in main.py.
"""

import logging

from fastapi import APIRouter, Depends, status

from mediaflow.api.deps import get_event_dispatcher, get_query_embedder
from mediaflow.db.deps import DBSession
from mediaflow.schemas.media import (
    MediaDeleteResponse,
    MediaSearchRequest,
    MediaSearchResponse,
    MediaStatusResponse,
    MediaSubmitRequest,
    MediaSubmitResponse,
    SearchResult,
)
from mediaflow.services.ingestion import soft_delete_media, submit_media
from mediaflow.services.pipeline.events import EventDispatcher
from mediaflow.services.pipeline.status import get_media_status
from mediaflow.services.providers.base import EmbeddingProvider
from mediaflow.services.quota_ledger import get_tenant
from mediaflow.services.search import search_similar_chunks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["Media"])


@router.post(
    "",
    response_model=MediaSubmitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit media for processing",
)
async def submit(
    request: MediaSubmitRequest,
    db: DBSession,
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> MediaSubmitResponse:
    """
    Admit an upload, external video or embed and start the pipeline.

    Responses:
    - 201: item created in `pending`
    - 400: unsupported or incomplete source
    - 403: tenant quota exceeded
    - 404: unknown tenant
    - 409: same tenant/platform/external id already submitted
    """
    result = await submit_media(db, request, dispatcher=dispatcher)

    logger.info(f"Media item {result.item_id} submitted for tenant {request.tenant_id}")

    return MediaSubmitResponse(
        item_id=result.item_id,
        status=str(result.status),
        next_event=result.next_event,
        warnings=result.warnings,
    )


@router.get(
    "/{item_id}/status",
    response_model=MediaStatusResponse,
    summary="Get processing status",
)
async def media_status(item_id: str, db: DBSession) -> MediaStatusResponse:
    """Fixed per-status progress, stage description and next steps."""
    return MediaStatusResponse(**await get_media_status(db, item_id))


@router.delete(
    "/{item_id}",
    response_model=MediaDeleteResponse,
    summary="Soft-delete a media item",
)
async def delete_media(item_id: str, db: DBSession) -> MediaDeleteResponse:
    item = await soft_delete_media(db, item_id)
    return MediaDeleteResponse(
        item_id=item.id,
        is_deleted=item.is_deleted,
        deleted_at=item.deleted_at,
    )


@router.post(
    "/search",
    response_model=MediaSearchResponse,
    summary="Semantic search over a tenant's transcripts",
)
async def search(
    request: MediaSearchRequest,
    db: DBSession,
    embedder: EmbeddingProvider = Depends(get_query_embedder),
) -> MediaSearchResponse:
    await get_tenant(db, request.tenant_id)

    vectors = await embedder.embed([request.query])
    results = await search_similar_chunks(
        db,
        tenant_id=request.tenant_id,
        query_embedding=list(vectors[0]),
        limit=request.limit,
        media_item_id=request.media_item_id,
    )

    return MediaSearchResponse(
        query=request.query,
        results=[SearchResult(**row) for row in results],
        count=len(results),
    )
