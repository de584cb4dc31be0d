"""
Caller-facing processing status.

Progress is a fixed figure per status (no per-chunk accounting), and the
remaining-time estimate is the stage timeout minus the time already spent.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.db.base import ensure_utc, utcnow
from mediaflow.models.media import MediaItem, MediaStatus
from mediaflow.services.pipeline.stages import count_chunks
from mediaflow.services.pipeline.state_machine import STAGE_METADATA, is_terminal


class MediaNotFoundError(LookupError):
    pass


PROGRESS_BY_STATUS = {
    MediaStatus.PENDING: 0,
    MediaStatus.UPLOADING: 10,
    MediaStatus.TRANSCRIBING: 30,
    MediaStatus.PROCESSING: 50,
    MediaStatus.EMBEDDING: 80,
    MediaStatus.COMPLETED: 100,
    MediaStatus.FAILED: 0,
}

STATUS_DESCRIPTIONS = {
    MediaStatus.PENDING: "Queued for processing",
    MediaStatus.COMPLETED: "Processing complete; content is searchable",
    MediaStatus.FAILED: "Processing failed",
}

NEXT_STEPS = {
    MediaStatus.PENDING: ["Wait for processing to start"],
    MediaStatus.UPLOADING: ["Wait for the upload to finish"],
    MediaStatus.TRANSCRIBING: ["Wait for transcription to complete"],
    MediaStatus.PROCESSING: ["Wait for chunking to complete"],
    MediaStatus.EMBEDDING: ["Wait for embeddings to be generated"],
    MediaStatus.COMPLETED: ["Search the transcript", "View chunks"],
    MediaStatus.FAILED: ["Retry processing", "Check error logs", "Contact support"],
}


def stage_description(status: MediaStatus) -> str:
    metadata = STAGE_METADATA.get(status)
    if metadata is not None:
        return metadata.description
    return STATUS_DESCRIPTIONS[status]


def estimate_remaining_minutes(item: MediaItem, now: Optional[datetime] = None) -> Optional[int]:
    """Stage timeout minus minutes elapsed since processing started, floored at 0."""
    metadata = STAGE_METADATA.get(item.status)
    started = ensure_utc(item.processing_started_at)
    if metadata is None or started is None:
        return None

    elapsed = ((now or utcnow()) - started).total_seconds() / 60
    return max(0, int(metadata.timeout_minutes - elapsed))


def next_steps(status: MediaStatus) -> List[str]:
    return list(NEXT_STEPS[status])


async def get_media_status(
    db: AsyncSession,
    item_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Snapshot of an item's progress.

    Raises:
        MediaNotFoundError: unknown or soft-deleted item
    """
    item = await db.get(MediaItem, item_id, populate_existing=True)
    if item is None or item.is_deleted:
        raise MediaNotFoundError(f"Media item {item_id} not found")

    return {
        "item_id": item.id,
        "tenant_id": item.tenant_id,
        "title": item.title,
        "status": str(item.status),
        "progress_percent": PROGRESS_BY_STATUS[item.status],
        "stage_description": stage_description(item.status),
        "error_message": item.error_message,
        "error_category": str(item.error_category) if item.error_category else None,
        "estimated_remaining_minutes": estimate_remaining_minutes(item, now),
        "chunk_count": await count_chunks(db, item.id),
        "is_terminal": is_terminal(item.status),
        "next_steps": next_steps(item.status),
        "recovery_attempts": item.recovery.attempts,
        "created_at": ensure_utc(item.created_at),
        "processing_started_at": ensure_utc(item.processing_started_at),
        "processing_completed_at": ensure_utc(item.processing_completed_at),
    }
