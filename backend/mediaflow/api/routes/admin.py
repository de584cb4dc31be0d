"""
Recovery admin API endpoints.

Operator view of the pipeline: which items are stuck, what the recovery
engine would do about them, and triggers to do it now. Every route needs
the ADMIN_API_KEY bearer token.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from mediaflow.api.deps import get_event_dispatcher
from mediaflow.core.auth import require_admin_key
from mediaflow.db.base import utcnow
from mediaflow.db.deps import DBSession
from mediaflow.schemas.admin import (
    ProcessingStatsResponse,
    RecoverRequest,
    RecoverResponse,
    RestartResponse,
    StuckItem,
    StuckItemsResponse,
)
from mediaflow.services.pipeline.events import EventDispatcher
from mediaflow.services.pipeline.state_machine import get_processing_stats
from mediaflow.services.recovery import diagnose_item, list_stuck, recover, restart_processing

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin_key)],
)


@router.get(
    "/stuck",
    response_model=StuckItemsResponse,
    summary="List stuck media items",
)
async def stuck_items(
    db: DBSession,
    tenant_id: Optional[str] = Query(None, description="Only this tenant"),
) -> StuckItemsResponse:
    """Non-terminal items older than the stuck threshold, longest-stalled first."""
    now = utcnow()
    rows = await list_stuck(db, tenant_id=tenant_id, now=now)
    return StuckItemsResponse(
        items=[StuckItem(**row) for row in rows],
        count=len(rows),
        timestamp=now,
    )


@router.post(
    "/recover",
    response_model=RecoverResponse,
    summary="Recover stuck media items",
)
async def recover_items(
    request: RecoverRequest,
    db: DBSession,
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> RecoverResponse:
    """
    Apply (or with dry_run, only propose) recovery actions.

    Items past their attempt budget are reported as skipped here; pass
    force=true to override the attempt cap and the rate limit.
    """
    logger.info(
        f"Admin recovery requested: ids={request.item_ids or 'all'} "
        f"tenant={request.tenant_id} dry_run={request.dry_run} force={request.force}"
    )

    summary = await recover(
        db,
        item_ids=request.item_ids or None,
        tenant_id=request.tenant_id,
        dry_run=request.dry_run,
        force=request.force,
        dispatcher=dispatcher,
    )
    return RecoverResponse(**summary.to_dict())


@router.post(
    "/media/{item_id}/restart",
    response_model=RestartResponse,
    summary="Restart processing from scratch",
)
async def restart_item(
    item_id: str,
    db: DBSession,
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> RestartResponse:
    """Delete the item's chunks and re-run chunking (or transcription)."""
    result = await restart_processing(db, item_id, dispatcher=dispatcher)
    return RestartResponse(**result)


@router.get(
    "/media/{item_id}/diagnostics",
    summary="Artifacts, proposed action and recovery state of one item",
)
async def item_diagnostics(item_id: str, db: DBSession) -> dict:
    return await diagnose_item(db, item_id)


@router.get(
    "/stats",
    response_model=ProcessingStatsResponse,
    summary="Media item counts per status",
)
async def processing_stats(
    db: DBSession,
    tenant_id: Optional[str] = Query(None),
) -> ProcessingStatsResponse:
    stats = await get_processing_stats(db, tenant_id=tenant_id)
    return ProcessingStatsResponse(stats=stats, tenant_id=tenant_id, timestamp=utcnow())
