"""
Pipeline State Machine

The authoritative transition table for MediaItem.status.

Normal flow (stage handlers):
    pending → uploading → transcribing → processing → embedding → completed
    pending → transcribing            (uploads, no upload step)
    pending → processing              (captions supplied at ingestion)
    any non-terminal → failed

Recovery flow (Recovery Engine / operator only, recovery=True):
    failed or any non-terminal → transcribing | processing | embedding
    any non-terminal → completed            (fix-status)
    any non-terminal → failed

Nothing ever leaves COMPLETED.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.logging import get_logger
from mediaflow.db.base import utcnow
from mediaflow.models.media import ErrorCategory, MediaItem, MediaStatus

logger = get_logger(__name__)


class StateTransitionError(Exception):
    """Raised when a status change is not in the transition table."""

    def __init__(self, item_id: str, from_status: MediaStatus, to_status: MediaStatus):
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition for media item {item_id}: "
            f"{from_status} -> {to_status}"
        )


# ================================
# Transition Tables
# ================================

TERMINAL_STATUSES = frozenset({MediaStatus.COMPLETED, MediaStatus.FAILED})

NON_TERMINAL_STATUSES = frozenset(set(MediaStatus) - TERMINAL_STATUSES)

IN_FLIGHT_STATUSES = frozenset({
    MediaStatus.UPLOADING,
    MediaStatus.TRANSCRIBING,
    MediaStatus.PROCESSING,
    MediaStatus.EMBEDDING,
})

VALID_TRANSITIONS: dict[MediaStatus, frozenset[MediaStatus]] = {
    MediaStatus.PENDING: frozenset({
        MediaStatus.UPLOADING,
        MediaStatus.TRANSCRIBING,
        MediaStatus.PROCESSING,
        MediaStatus.FAILED,
    }),
    MediaStatus.UPLOADING: frozenset({MediaStatus.TRANSCRIBING, MediaStatus.FAILED}),
    MediaStatus.TRANSCRIBING: frozenset({MediaStatus.PROCESSING, MediaStatus.FAILED}),
    MediaStatus.PROCESSING: frozenset({MediaStatus.EMBEDDING, MediaStatus.FAILED}),
    MediaStatus.EMBEDDING: frozenset({MediaStatus.COMPLETED, MediaStatus.FAILED}),
    MediaStatus.COMPLETED: frozenset(),
    MediaStatus.FAILED: frozenset(),
}

# Stages recovery may re-enter
RECOVERY_REENTRY_STATUSES = frozenset({
    MediaStatus.TRANSCRIBING,
    MediaStatus.PROCESSING,
    MediaStatus.EMBEDDING,
})


@dataclass(frozen=True)
class StageMetadata:
    name: str
    description: str
    retryable: bool
    max_retries: int
    timeout_minutes: int


STAGE_METADATA: dict[MediaStatus, StageMetadata] = {
    MediaStatus.UPLOADING: StageMetadata(
        name="Upload",
        description="Uploading media file to storage",
        retryable=True,
        max_retries=3,
        timeout_minutes=30,
    ),
    MediaStatus.TRANSCRIBING: StageMetadata(
        name="Transcription",
        description="Converting audio to text",
        retryable=True,
        max_retries=3,
        timeout_minutes=60,
    ),
    MediaStatus.PROCESSING: StageMetadata(
        name="Chunking",
        description="Splitting the transcript into searchable chunks",
        retryable=True,
        max_retries=3,
        timeout_minutes=15,
    ),
    MediaStatus.EMBEDDING: StageMetadata(
        name="Embedding",
        description="Generating embeddings for semantic search",
        retryable=True,
        max_retries=3,
        timeout_minutes=30,
    ),
}


def is_terminal(status: MediaStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_transition(
    from_status: MediaStatus,
    to_status: MediaStatus,
    recovery: bool = False,
) -> bool:
    """
    Check a status change against the transition tables.

    Args:
        from_status: Current status
        to_status: Requested status
        recovery: True when the Recovery Engine (or an operator) asks;
            unlocks re-entry into in-flight stages and fix-status

    Returns:
        True if the move is legal
    """
    if from_status == to_status:
        return False

    if to_status in VALID_TRANSITIONS[from_status]:
        return True

    if not recovery or from_status == MediaStatus.COMPLETED:
        return False

    if to_status in RECOVERY_REENTRY_STATUSES:
        return True

    # fix-status and termination, from non-terminal states only
    return from_status in NON_TERMINAL_STATUSES and to_status in TERMINAL_STATUSES


def transition(
    item: MediaItem,
    to_status: MediaStatus,
    *,
    recovery: bool = False,
    error: str | None = None,
    category: ErrorCategory | None = None,
    now: datetime | None = None,
) -> MediaStatus:
    """
    Move `item` to `to_status` in memory; the caller commits.

    Side effects on the item:
    - processing_started_at is set on the first entry into an in-flight stage
    - processing_completed_at is set on COMPLETED / FAILED
    - error fields are set on FAILED and cleared when a stage is re-entered

    Returns:
        The previous status

    Raises:
        StateTransitionError: if the move is not legal
    """
    now = now or utcnow()
    previous = item.status

    if not is_valid_transition(previous, to_status, recovery=recovery):
        raise StateTransitionError(item.id, previous, to_status)

    item.status = to_status

    if to_status in IN_FLIGHT_STATUSES:
        if item.processing_started_at is None:
            item.processing_started_at = now
        item.error_message = None
        item.error_category = None
        item.processing_completed_at = None

    elif to_status == MediaStatus.FAILED:
        item.error_message = error or "Processing failed"
        item.error_category = category or ErrorCategory.PROVIDER_ERROR
        item.processing_completed_at = now

    elif to_status == MediaStatus.COMPLETED:
        item.error_message = None
        item.error_category = None
        item.processing_completed_at = now

    logger.info(
        "status_transition",
        item_id=item.id,
        from_status=str(previous),
        to_status=str(to_status),
        recovery=recovery,
    )
    return previous


async def get_processing_stats(
    db: AsyncSession,
    tenant_id: str | None = None,
) -> dict[str, int]:
    """
    Count non-deleted media items per status.

    Returns:
        {"pending": 3, "transcribing": 1, ..., "total": 12}
    """
    stmt = (
        select(MediaItem.status, func.count(MediaItem.id))
        .where(MediaItem.is_deleted.is_(False))
        .group_by(MediaItem.status)
    )
    if tenant_id is not None:
        stmt = stmt.where(MediaItem.tenant_id == tenant_id)

    result = await db.execute(stmt)

    stats = {status.value: 0 for status in MediaStatus}
    for status, count in result.all():
        stats[MediaStatus(status).value] = count
    stats["total"] = sum(stats.values())
    return stats
