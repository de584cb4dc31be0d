"""
Stuck-Job Detection & Recovery

Finds media items that stopped moving through the pipeline and puts them
back on track by re-emitting the right event, completing them outright, or
failing them when nothing can be salvaged.

What to do is decided from the artifacts the item already has, never from
its status (the status is exactly what is suspect):

    transcript | chunks | embeddings | action
    -----------+--------+------------+----------------------------
    no         | any    | any        | terminate
    yes        | no     | any        | retry-embeddings
    yes        | yes    | no         | retry-embedding-generation
    yes        | yes    | yes        | fix-status

Each item gets at most RECOVERY_MAX_ATTEMPTS recovery actions in its
lifetime and at most one per RECOVERY_MIN_INTERVAL_MINUTES, unless the
operator forces it. Attempts are claimed with a conditional UPDATE on the
attempt counter, so two scanners racing on the same item cannot both act.

Callers:
- tasks.recovery_tasks.recover_stuck_media (Celery beat, every 5 minutes)
- api.routes.admin (list / dry-run / recover / restart on demand)
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.config import settings
from mediaflow.core.logging import get_logger
from mediaflow.db.base import ensure_utc, utcnow
from mediaflow.models.media import ErrorCategory, MediaChunk, MediaItem, MediaStatus
from mediaflow.services.pipeline.events import (
    CHUNKS_CREATED,
    TRANSCRIPTION_COMPLETED,
    TRANSCRIPTION_REQUESTED,
    EventDispatcher,
    get_dispatcher,
)
from mediaflow.services.pipeline.stages import load_item
from mediaflow.services.pipeline.state_machine import NON_TERMINAL_STATUSES, transition
from mediaflow.services.pipeline.status import MediaNotFoundError

logger = get_logger(__name__)

TERMINATE_MESSAGE = "No viable recovery action (missing transcript)"
CONCURRENT_RECOVERY_MESSAGE = "concurrent recovery in progress"

# Statuses the transcription task may hold back on the tenant concurrency cap
AWAITING_TRANSCRIPTION = frozenset({MediaStatus.PENDING, MediaStatus.UPLOADING})


class RecoveryAction(str, Enum):
    TERMINATE = "terminate"
    RETRY_EMBEDDINGS = "retry-embeddings"
    RETRY_EMBEDDING_GENERATION = "retry-embedding-generation"
    FIX_STATUS = "fix-status"

    def __str__(self) -> str:
        return self.value


class RecoveryOutcome(str, Enum):
    RECOVERED = "recovered"
    FAILED = "failed"
    SKIPPED = "skipped"
    PROPOSED = "proposed"

    def __str__(self) -> str:
        return self.value


# ========================================
# Decision Matrix
# ========================================

def decide_action(has_transcript: bool, has_chunks: bool, has_embeddings: bool) -> RecoveryAction:
    """
    Pick the recovery action from the artifacts an item already has.

    >>> decide_action(True, True, False)
    <RecoveryAction.RETRY_EMBEDDING_GENERATION: 'retry-embedding-generation'>
    """
    if not has_transcript:
        return RecoveryAction.TERMINATE
    if not has_chunks:
        return RecoveryAction.RETRY_EMBEDDINGS
    if not has_embeddings:
        return RecoveryAction.RETRY_EMBEDDING_GENERATION
    return RecoveryAction.FIX_STATUS


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None
    exhausted: bool = False


def is_eligible(
    now: datetime,
    last_attempt: Optional[datetime],
    attempts: int,
    force: bool,
    *,
    max_attempts: Optional[int] = None,
    min_interval: Optional[timedelta] = None,
) -> Eligibility:
    """
    Rate-limit check for one recovery action.

    Pure: same inputs, same answer. `force` bypasses both the lifetime
    attempt cap and the minimum interval.
    """
    if max_attempts is None:
        max_attempts = settings.RECOVERY_MAX_ATTEMPTS
    if min_interval is None:
        min_interval = timedelta(minutes=settings.RECOVERY_MIN_INTERVAL_MINUTES)

    if force:
        return Eligibility(True, "forced")

    if attempts >= max_attempts:
        return Eligibility(
            False,
            f"Max recovery attempts ({max_attempts}) reached. Use force=true to override.",
            exhausted=True,
        )

    last_attempt = ensure_utc(last_attempt)
    if last_attempt is not None:
        elapsed = now - last_attempt
        if elapsed < min_interval:
            remaining = int((min_interval - elapsed).total_seconds() // 60) + 1
            return Eligibility(
                False,
                f"Rate limited: retry in {remaining} minutes. Use force=true to override.",
            )

    return Eligibility(True)


# ========================================
# Artifacts
# ========================================

@dataclass(frozen=True)
class ArtifactReport:
    has_transcript: bool
    chunk_count: int
    embedded_count: int

    @property
    def has_chunks(self) -> bool:
        return self.chunk_count > 0

    def has_embeddings(self, require_full: bool = False) -> bool:
        if self.chunk_count == 0 or self.embedded_count == 0:
            return False
        return self.embedded_count >= self.chunk_count if require_full else True

    def action(self, require_full: Optional[bool] = None) -> RecoveryAction:
        if require_full is None:
            require_full = settings.RECOVERY_REQUIRE_FULL_EMBEDDING
        return decide_action(self.has_transcript, self.has_chunks, self.has_embeddings(require_full))


async def inspect_artifacts(db: AsyncSession, item: MediaItem) -> ArtifactReport:
    result = await db.execute(
        select(
            func.count(MediaChunk.id),
            func.count(MediaChunk.embedding),
        ).where(MediaChunk.media_item_id == item.id)
    )
    chunk_count, embedded_count = result.one()
    return ArtifactReport(
        has_transcript=item.has_transcript,
        chunk_count=int(chunk_count or 0),
        embedded_count=int(embedded_count or 0),
    )


# ========================================
# Selection
# ========================================

def stuck_cutoff(now: datetime, threshold_minutes: Optional[int] = None) -> datetime:
    return now - timedelta(minutes=threshold_minutes or settings.STUCK_THRESHOLD_MINUTES)


async def find_stuck_items(
    db: AsyncSession,
    now: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
    item_ids: Optional[Sequence[str]] = None,
    threshold_minutes: Optional[int] = None,
) -> List[MediaItem]:
    """
    Select recovery candidates, oldest first.

    Without `item_ids`: non-terminal, not deleted, created before the stuck
    threshold. Items still waiting for transcription (pending, uploading)
    must also be untouched for the threshold: the transcription task touches
    them each time it defers on the tenant concurrency cap.

    With `item_ids`: exactly those items, in any status except COMPLETED,
    regardless of age.
    """
    now = now or utcnow()

    stmt = select(MediaItem).where(MediaItem.is_deleted.is_(False))
    if item_ids:
        stmt = stmt.where(
            MediaItem.id.in_(list(item_ids)),
            MediaItem.status != MediaStatus.COMPLETED,
        )
    else:
        cutoff = stuck_cutoff(now, threshold_minutes)
        stmt = stmt.where(
            MediaItem.status.in_(list(NON_TERMINAL_STATUSES)),
            MediaItem.created_at < cutoff,
            or_(
                MediaItem.status.not_in(list(AWAITING_TRANSCRIPTION)),
                MediaItem.updated_at < cutoff,
            ),
        )
    if tenant_id is not None:
        stmt = stmt.where(MediaItem.tenant_id == tenant_id)

    result = await db.execute(stmt.order_by(MediaItem.created_at, MediaItem.id))
    return list(result.unique().scalars().all())


def proposed_action(item: MediaItem, artifacts: ArtifactReport) -> RecoveryAction:
    action = artifacts.action()
    if action == RecoveryAction.FIX_STATUS and item.status == MediaStatus.FAILED:
        # FAILED -> COMPLETED is not a legal move; the embed stage completes
        # the item without a provider call when nothing is left to embed
        return RecoveryAction.RETRY_EMBEDDING_GENERATION
    return action


def stalled_minutes(item: MediaItem, now: datetime) -> int:
    return max(0, int((now - ensure_utc(item.created_at)).total_seconds() // 60))


async def list_stuck(
    db: AsyncSession,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Stuck items with their proposed action, longest-stalled first."""
    now = now or utcnow()
    items = await find_stuck_items(db, now=now, tenant_id=tenant_id)

    rows = []
    for item in items:
        artifacts = await inspect_artifacts(db, item)
        recovery = item.recovery
        rows.append({
            "item_id": item.id,
            "tenant_id": item.tenant_id,
            "title": item.title,
            "status": str(item.status),
            "stalled_minutes": stalled_minutes(item, now),
            "proposed_action": str(artifacts.action()),
            "recovery_attempts": recovery.attempts,
            "last_recovery_at": recovery.last_attempt_at,
            "has_transcript": artifacts.has_transcript,
            "chunk_count": artifacts.chunk_count,
            "embedded_count": artifacts.embedded_count,
        })

    rows.sort(key=lambda row: row["stalled_minutes"], reverse=True)
    return rows


# ========================================
# Results
# ========================================

@dataclass
class RecoveryItemResult:
    item_id: str
    outcome: RecoveryOutcome
    action: Optional[RecoveryAction] = None
    reason: Optional[str] = None
    attempts: int = 0
    previous_status: Optional[str] = None
    would_recover: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = str(self.outcome)
        data["action"] = str(self.action) if self.action else None
        return data


@dataclass
class RecoverySummary:
    recovered: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    dry_run: bool = False
    results: List[RecoveryItemResult] = field(default_factory=list)

    def add(self, result: RecoveryItemResult) -> None:
        self.results.append(result)
        self.total += 1
        if result.outcome == RecoveryOutcome.RECOVERED:
            self.recovered += 1
        elif result.outcome == RecoveryOutcome.FAILED:
            self.failed += 1
        elif result.outcome == RecoveryOutcome.SKIPPED:
            self.skipped += 1

    @property
    def would_recover(self) -> int:
        return sum(1 for r in self.results if r.would_recover)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "recovered": self.recovered,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "dry_run": self.dry_run,
            "results": [r.to_dict() for r in self.results],
        }
        if self.dry_run:
            data["would_recover"] = self.would_recover
        return data


# ========================================
# Recovery
# ========================================

async def claim_recovery(
    db: AsyncSession,
    item_id: str,
    expected_attempts: int,
    action: RecoveryAction,
    now: datetime,
) -> bool:
    """
    Record an attempt iff nobody else recorded one since we read the item.

    Committed before the action runs, so a crash mid-action still counts
    against the attempt budget.
    """
    result = await db.execute(
        update(MediaItem)
        .where(
            MediaItem.id == item_id,
            MediaItem.recovery_attempts == expected_attempts,
        )
        .values(
            recovery_attempts=expected_attempts + 1,
            recovery_last_attempt_at=now,
            recovery_last_action=action.value,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _apply_action(
    db: AsyncSession,
    item: MediaItem,
    action: RecoveryAction,
    artifacts: ArtifactReport,
    dispatcher: EventDispatcher,
    now: datetime,
) -> tuple[RecoveryOutcome, str]:
    if action == RecoveryAction.TERMINATE:
        if item.status != MediaStatus.FAILED:
            transition(
                item,
                MediaStatus.FAILED,
                recovery=True,
                error=TERMINATE_MESSAGE,
                category=ErrorCategory.RECOVERY_TERMINATED,
                now=now,
            )
        await db.commit()
        return RecoveryOutcome.FAILED, TERMINATE_MESSAGE

    if action == RecoveryAction.FIX_STATUS:
        item.embedding_stats = item.embedding_stats or {
            "chunk_count": artifacts.chunk_count,
            "embedded_count": artifacts.embedded_count,
            "fixed_by_recovery": True,
        }
        transition(item, MediaStatus.COMPLETED, recovery=True, now=now)
        await db.commit()
        return RecoveryOutcome.RECOVERED, "Recovery action triggered"

    if action == RecoveryAction.RETRY_EMBEDDINGS:
        target, event = MediaStatus.PROCESSING, TRANSCRIPTION_COMPLETED
    else:
        target, event = MediaStatus.EMBEDDING, CHUNKS_CREATED

    if item.status != target:
        transition(item, target, recovery=True, now=now)
    else:
        item.error_message = None
        item.error_category = None
    await db.commit()

    dispatcher.emit(event, item.id)
    return RecoveryOutcome.RECOVERED, "Recovery action triggered"


async def _recover_one(
    db: AsyncSession,
    item_id: str,
    *,
    dry_run: bool,
    force: bool,
    terminate_exhausted: bool,
    dispatcher: EventDispatcher,
    now: datetime,
) -> RecoveryItemResult:
    item = await load_item(db, item_id)
    if item is None or item.is_deleted:
        return RecoveryItemResult(item_id, RecoveryOutcome.SKIPPED, reason="Item not found")

    previous_status = str(item.status)
    state = item.recovery

    if item.status == MediaStatus.COMPLETED or (item.status == MediaStatus.FAILED and not force):
        return RecoveryItemResult(
            item_id,
            RecoveryOutcome.SKIPPED,
            reason=f"Item is in terminal status {item.status}",
            attempts=state.attempts,
            previous_status=previous_status,
        )

    artifacts = await inspect_artifacts(db, item)
    action = proposed_action(item, artifacts)
    eligibility = is_eligible(now, state.last_attempt_at, state.attempts, force)

    if dry_run:
        return RecoveryItemResult(
            item_id,
            RecoveryOutcome.PROPOSED,
            action=action,
            reason=eligibility.reason if not eligibility.eligible else f"Would trigger: {action}",
            attempts=state.attempts,
            previous_status=previous_status,
            would_recover=eligibility.eligible and action != RecoveryAction.TERMINATE,
        )

    if not eligibility.eligible:
        if eligibility.exhausted and terminate_exhausted:
            message = f"Auto-recovery failed after {state.attempts} attempts"
            transition(
                item,
                MediaStatus.FAILED,
                recovery=True,
                error=message,
                category=ErrorCategory.RECOVERY_TERMINATED,
                now=now,
            )
            await db.commit()
            logger.warning("recovery_exhausted", item_id=item_id, attempts=state.attempts)
            return RecoveryItemResult(
                item_id,
                RecoveryOutcome.FAILED,
                reason=message,
                attempts=state.attempts,
                previous_status=previous_status,
            )

        return RecoveryItemResult(
            item_id,
            RecoveryOutcome.SKIPPED,
            action=action,
            reason=eligibility.reason,
            attempts=state.attempts,
            previous_status=previous_status,
        )

    if not await claim_recovery(db, item_id, state.attempts, action, now):
        return RecoveryItemResult(
            item_id,
            RecoveryOutcome.SKIPPED,
            action=action,
            reason=CONCURRENT_RECOVERY_MESSAGE,
            attempts=state.attempts,
            previous_status=previous_status,
        )

    item = await load_item(db, item_id)
    outcome, reason = await _apply_action(db, item, action, artifacts, dispatcher, now)

    logger.info(
        "recovery_action_applied",
        item_id=item_id,
        action=str(action),
        outcome=str(outcome),
        attempt=state.attempts + 1,
        forced=force,
    )
    return RecoveryItemResult(
        item_id,
        outcome,
        action=action,
        reason=reason,
        attempts=state.attempts + 1,
        previous_status=previous_status,
    )


async def recover(
    db: AsyncSession,
    item_ids: Optional[Sequence[str]] = None,
    tenant_id: Optional[str] = None,
    dry_run: bool = False,
    force: bool = False,
    terminate_exhausted: bool = False,
    dispatcher: Optional[EventDispatcher] = None,
    now: Optional[datetime] = None,
) -> RecoverySummary:
    """
    Recover stuck items (or the explicit `item_ids`).

    Args:
        item_ids: Explicit ids; None means "everything stuck"
        tenant_id: Restrict to one tenant
        dry_run: Report proposed actions without mutating anything
        force: Ignore the attempt cap and the minimum interval
        terminate_exhausted: Fail items that ran out of attempts instead of
            skipping them (the periodic scanner sets this)

    Returns:
        RecoverySummary with one result per candidate item. A failure on one
        item is reported for that item and the batch continues; only errors
        of the selection query itself propagate.
    """
    now = now or utcnow()
    dispatcher = dispatcher or get_dispatcher()

    candidates = await find_stuck_items(db, now=now, tenant_id=tenant_id, item_ids=item_ids)
    candidate_ids = [item.id for item in candidates]

    summary = RecoverySummary(dry_run=dry_run)

    if item_ids:
        for missing in [i for i in dict.fromkeys(item_ids) if i not in set(candidate_ids)]:
            summary.add(RecoveryItemResult(
                missing,
                RecoveryOutcome.SKIPPED,
                reason="Item not found or already completed",
            ))

    for item_id in candidate_ids:
        try:
            result = await _recover_one(
                db,
                item_id,
                dry_run=dry_run,
                force=force,
                terminate_exhausted=terminate_exhausted,
                dispatcher=dispatcher,
                now=now,
            )
        except Exception as e:
            logger.exception("recovery_item_error", item_id=item_id, error=str(e))
            await db.rollback()
            result = RecoveryItemResult(item_id, RecoveryOutcome.FAILED, reason=str(e))
        summary.add(result)

    logger.info(
        "recovery_run_completed",
        dry_run=dry_run,
        forced=force,
        total=summary.total,
        recovered=summary.recovered,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary


# ========================================
# Operator Tools
# ========================================

async def restart_processing(
    db: AsyncSession,
    item_id: str,
    dispatcher: Optional[EventDispatcher] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Throw away an item's chunks and run it through the pipeline again.

    Items with a transcript restart at chunking, others at transcription.
    Does not touch the recovery attempt counter.

    Raises:
        MediaNotFoundError: unknown or deleted item
        StateTransitionError: the item is COMPLETED
    """
    now = now or utcnow()
    dispatcher = dispatcher or get_dispatcher()

    item = await load_item(db, item_id)
    if item is None or item.is_deleted:
        raise MediaNotFoundError(f"Media item {item_id} not found")

    previous_status = item.status
    if item.has_transcript:
        target, event = MediaStatus.PROCESSING, TRANSCRIPTION_COMPLETED
    else:
        target, event = MediaStatus.TRANSCRIBING, TRANSCRIPTION_REQUESTED

    if item.status != target:
        transition(item, target, recovery=True, now=now)
    else:
        item.error_message = None
        item.error_category = None
    item.embedding_stats = None

    deleted = await db.execute(delete(MediaChunk).where(MediaChunk.media_item_id == item_id))
    await db.commit()

    dispatcher.emit(event, item_id)

    logger.info(
        "processing_restarted",
        item_id=item_id,
        from_status=str(previous_status),
        to_status=str(target),
        chunks_deleted=deleted.rowcount,
    )
    return {
        "item_id": item_id,
        "previous_status": str(previous_status),
        "status": str(target),
        "event": event,
        "chunks_deleted": deleted.rowcount or 0,
    }


async def diagnose_item(
    db: AsyncSession,
    item_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Everything an operator needs to decide what to do with one item."""
    now = now or utcnow()

    item = await load_item(db, item_id)
    if item is None:
        raise MediaNotFoundError(f"Media item {item_id} not found")

    artifacts = await inspect_artifacts(db, item)
    state = item.recovery
    eligibility = is_eligible(now, state.last_attempt_at, state.attempts, force=False)

    preview = None
    if item.transcript:
        preview = item.transcript[:200] + ("..." if len(item.transcript) > 200 else "")

    return {
        "item_id": item.id,
        "tenant_id": item.tenant_id,
        "title": item.title,
        "status": str(item.status),
        "source_kind": str(item.source_kind),
        "platform": str(item.platform) if item.platform else None,
        "is_deleted": item.is_deleted,
        "error_message": item.error_message,
        "error_category": str(item.error_category) if item.error_category else None,
        "stalled_minutes": stalled_minutes(item, now),
        "is_stuck": (
            item.status in NON_TERMINAL_STATUSES
            and ensure_utc(item.created_at) < stuck_cutoff(now)
            and (
                item.status not in AWAITING_TRANSCRIPTION
                or ensure_utc(item.updated_at) < stuck_cutoff(now)
            )
        ),
        "has_transcript": artifacts.has_transcript,
        "transcript_preview": preview,
        "chunk_count": artifacts.chunk_count,
        "embedded_count": artifacts.embedded_count,
        "proposed_action": str(proposed_action(item, artifacts)),
        "recovery_attempts": state.attempts,
        "last_recovery_at": state.last_attempt_at,
        "last_recovery_action": state.last_action,
        "eligible": eligibility.eligible,
        "eligibility_reason": eligibility.reason,
    }
