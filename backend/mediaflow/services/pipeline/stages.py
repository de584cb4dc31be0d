"""
Pipeline Stages

The work behind the three pipeline events. Each stage is a plain async
function taking a session, the item id, its provider and the event
dispatcher, so it runs the same under Celery and under tests.

Every stage:
1. Guard     - load the item; missing, soft-deleted or in an unexpected
               status means a no-op (redeliveries land here)
2. Work      - call the provider under a timeout
3. Persist   - write the artifacts
4. Transition- move the status forward
5. Emit      - commit, then publish the next event

Failure channels:
- Terminal (TerminalStageError, provider errors with retryable=False):
  caught here, item moves to FAILED, result has success=False
- Retryable (RetryableStageError, provider errors with retryable=True,
  timeouts): propagate to the Celery task, which retries with backoff;
  PipelineTask.on_failure calls mark_stage_failed() when retries run out
- TenantConcurrencyLimitReached: propagates; the task re-enqueues itself
  with a countdown without spending a retry
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.config import settings
from mediaflow.core.logging import get_logger
from mediaflow.db.base import utcnow
from mediaflow.models.media import ErrorCategory, MediaChunk, MediaItem, MediaStatus, SourceKind
from mediaflow.services.pipeline.events import CHUNKS_CREATED, TRANSCRIPTION_COMPLETED, EventDispatcher
from mediaflow.services.pipeline.state_machine import StateTransitionError, transition
from mediaflow.services.processors.chunker import TranscriptChunker
from mediaflow.services.providers.base import (
    EmbeddingProvider,
    ProviderError,
    TranscriptionProvider,
    TranscriptionSource,
)
from mediaflow.services.quota_ledger import (
    CostCategory,
    UsageDeltas,
    estimate_cost,
    record_usage,
)

logger = get_logger(__name__)


# ========================================
# Errors
# ========================================

class StageError(Exception):
    pass


class RetryableStageError(StageError):
    """Transient failure; the task should retry with backoff."""


class TerminalStageError(StageError):
    """Permanent failure; the item goes to FAILED."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.PROVIDER_ERROR):
        self.category = category
        super().__init__(message)


class TenantConcurrencyLimitReached(StageError):
    def __init__(self, tenant_id: str, limit: int):
        self.tenant_id = tenant_id
        self.limit = limit
        super().__init__(f"Tenant {tenant_id} already has {limit} transcriptions in flight")


# Statuses each stage accepts; anything else is a redelivery or a race
TRANSCRIBE_PRE_STATES = frozenset({MediaStatus.PENDING, MediaStatus.UPLOADING, MediaStatus.TRANSCRIBING})
CHUNK_PRE_STATES = frozenset({MediaStatus.PENDING, MediaStatus.PROCESSING})
EMBED_PRE_STATES = frozenset({MediaStatus.EMBEDDING})


# ========================================
# Helpers
# ========================================

async def load_item(db: AsyncSession, item_id: str) -> Optional[MediaItem]:
    """Fresh read of an item (never a stale identity-map copy)."""
    return await db.get(MediaItem, item_id, populate_existing=True)


async def count_chunks(db: AsyncSession, item_id: str, embedded_only: bool = False) -> int:
    stmt = select(func.count(MediaChunk.id)).where(MediaChunk.media_item_id == item_id)
    if embedded_only:
        stmt = stmt.where(MediaChunk.embedding.is_not(None))
    return (await db.scalar(stmt)) or 0


def _skipped(stage: str, item_id: str, reason: str) -> Dict[str, Any]:
    logger.info("stage_skipped", stage=stage, item_id=item_id, reason=reason)
    return {
        'success': True,
        'skipped': True,
        'stage': stage,
        'item_id': item_id,
        'reason': reason,
    }


def _guard(stage: str, item: Optional[MediaItem], item_id: str, accepted: frozenset) -> Optional[Dict[str, Any]]:
    if item is None:
        return _skipped(stage, item_id, "item not found")
    if item.is_deleted:
        return _skipped(stage, item_id, "item deleted")
    if item.status not in accepted:
        return _skipped(stage, item_id, f"status is {item.status}")
    return None


async def _fail_item(
    db: AsyncSession,
    item_id: str,
    stage: str,
    message: str,
    category: ErrorCategory,
    now: datetime,
) -> Dict[str, Any]:
    """Move `item` to FAILED and commit; used for terminal stage errors."""
    await db.rollback()
    item = await load_item(db, item_id)

    if item is not None and not item.is_terminal:
        transition(item, MediaStatus.FAILED, error=message, category=category, now=now)
        await db.commit()

    logger.warning("stage_failed", stage=stage, item_id=item_id,
                   category=str(category), error=message)
    return {
        'success': False,
        'stage': stage,
        'item_id': item_id,
        'error': message,
        'category': str(category),
    }


async def _invalid_state(db: AsyncSession, stage: str, item_id: str, error: StateTransitionError) -> Dict[str, Any]:
    # Another worker moved the item first; leave it where it is
    await db.rollback()
    logger.warning("stage_invalid_state", stage=stage, item_id=item_id, error=str(error))
    return {
        'success': False,
        'stage': stage,
        'item_id': item_id,
        'error': str(error),
        'category': str(ErrorCategory.INVALID_STATE),
    }


async def mark_stage_failed(
    db: AsyncSession,
    item_id: str,
    stage: str,
    error_message: str,
    category: ErrorCategory = ErrorCategory.RETRIES_EXHAUSTED,
    now: Optional[datetime] = None,
) -> bool:
    """
    Failure channel for exhausted retries.

    Returns:
        True if the item was moved to FAILED, False if it was already
        terminal, deleted or missing
    """
    item = await load_item(db, item_id)
    if item is None or item.is_deleted or item.is_terminal:
        return False

    transition(item, MediaStatus.FAILED, error=error_message, category=category, now=now or utcnow())
    await db.commit()

    logger.error("stage_retries_exhausted", stage=stage, item_id=item_id, error=error_message)
    return True


# ========================================
# Transcribe
# ========================================

async def _ensure_tenant_capacity(db: AsyncSession, item: MediaItem, now: Optional[datetime] = None) -> None:
    """
    Raise TenantConcurrencyLimitReached when the tenant is at its cap.

    A deferred item is touched (updated_at) so the stuck scan can tell a
    queued item from an abandoned one.
    """
    limit = settings.TRANSCRIPTION_CONCURRENCY_PER_TENANT
    in_flight = await db.scalar(
        select(func.count(MediaItem.id)).where(
            MediaItem.tenant_id == item.tenant_id,
            MediaItem.status == MediaStatus.TRANSCRIBING,
            MediaItem.is_deleted.is_(False),
            MediaItem.id != item.id,
        )
    )
    if (in_flight or 0) >= limit:
        item.updated_at = now or utcnow()
        await db.commit()
        raise TenantConcurrencyLimitReached(item.tenant_id, limit)


def build_transcription_source(item: MediaItem) -> TranscriptionSource:
    if item.source_kind == SourceKind.UPLOAD:
        return TranscriptionSource(item_id=item.id, storage_path=item.storage_path)

    if item.source_kind == SourceKind.EXTERNAL:
        return TranscriptionSource(
            item_id=item.id,
            media_url=item.source_url,
            platform=item.platform.value if item.platform else None,
            video_id=item.external_id,
        )

    if not item.source_url:
        raise TerminalStageError(
            f"Embedded {item.platform} media has no captions and no media URL",
            ErrorCategory.UNSUPPORTED_INPUT,
        )
    return TranscriptionSource(
        item_id=item.id,
        media_url=item.source_url,
        platform=item.platform.value if item.platform else None,
    )


async def run_transcription_stage(
    db: AsyncSession,
    item_id: str,
    provider: TranscriptionProvider,
    dispatcher: EventDispatcher,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Handle media/transcription.requested.

    Returns:
        {'success': True, 'item_id': ..., 'status': 'processing',
         'transcript_length': int, 'duration_minutes': float}
    """
    stage = "transcribe"
    now = now or utcnow()
    timeout = timeout or settings.TRANSCRIPTION_TIMEOUT_SECONDS

    item = await load_item(db, item_id)
    skipped = _guard(stage, item, item_id, TRANSCRIBE_PRE_STATES)
    if skipped:
        return skipped

    tenant_id = item.tenant_id

    try:
        if item.has_transcript:
            # Redelivery after the transcript was stored: no second provider call
            if item.status == MediaStatus.UPLOADING:
                transition(item, MediaStatus.TRANSCRIBING, now=now)
            transition(item, MediaStatus.PROCESSING, now=now)
            await db.commit()
            dispatcher.emit(TRANSCRIPTION_COMPLETED, item_id)
            return {
                'success': True,
                'item_id': item_id,
                'stage': stage,
                'status': str(MediaStatus.PROCESSING),
                'reused_transcript': True,
            }

        await _ensure_tenant_capacity(db, item, now)

        if item.status != MediaStatus.TRANSCRIBING:
            transition(item, MediaStatus.TRANSCRIBING, now=now)
            await db.commit()

        source = build_transcription_source(item)
        logger.info("transcription_started", item_id=item_id, source_kind=str(item.source_kind))

        try:
            result = await asyncio.wait_for(
                provider.transcribe(source, language_hint=item.language),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RetryableStageError(f"Transcription timed out after {timeout}s") from e

        if not result.text or not result.text.strip():
            raise TerminalStageError("Provider returned an empty transcript", ErrorCategory.NO_TRANSCRIPT)

        item = await load_item(db, item_id)
        if item is None or item.status != MediaStatus.TRANSCRIBING:
            return _skipped(stage, item_id, "status changed during transcription")

        item.transcript = result.text.strip()
        item.transcript_segments = [segment.to_dict() for segment in result.segments] or None
        item.language = result.language or item.language
        if result.duration_seconds:
            item.duration_seconds = result.duration_seconds

        transition(item, MediaStatus.PROCESSING, now=now)
        await db.commit()

    except TerminalStageError as e:
        return await _fail_item(db, item_id, stage, str(e), e.category, now)
    except ProviderError as e:
        if e.retryable:
            logger.warning("transcription_retryable_error", item_id=item_id, error=str(e))
            raise
        return await _fail_item(
            db, item_id, stage, str(e), e.category or ErrorCategory.PROVIDER_ERROR, now
        )
    except StateTransitionError as e:
        return await _invalid_state(db, stage, item_id, e)

    minutes = result.duration_minutes
    if minutes > 0:
        await record_usage(db, tenant_id, UsageDeltas.for_transcription(minutes))

    dispatcher.emit(TRANSCRIPTION_COMPLETED, item_id)

    logger.info("stage_completed", stage=stage, item_id=item_id, duration_minutes=minutes)
    return {
        'success': True,
        'item_id': item_id,
        'stage': stage,
        'status': str(MediaStatus.PROCESSING),
        'transcript_length': len(result.text),
        'duration_minutes': minutes,
    }


# ========================================
# Chunk
# ========================================

async def run_chunking_stage(
    db: AsyncSession,
    item_id: str,
    dispatcher: EventDispatcher,
    chunker: Optional[TranscriptChunker] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Handle media/transcription.completed.

    Existing chunks are reused, so a redelivered event never duplicates
    rows; a concurrent duplicate insert trips uq_media_item_chunk_index
    and the loser re-reads what the winner wrote.
    """
    stage = "chunk"
    now = now or utcnow()

    item = await load_item(db, item_id)
    skipped = _guard(stage, item, item_id, CHUNK_PRE_STATES)
    if skipped:
        return skipped

    created = 0
    try:
        if not item.has_transcript:
            raise TerminalStageError("No transcript available for chunking", ErrorCategory.NO_TRANSCRIPT)

        if item.status == MediaStatus.PENDING:
            # Captions supplied at ingestion
            transition(item, MediaStatus.PROCESSING, now=now)
            await db.commit()

        chunk_count = await count_chunks(db, item_id)

        if chunk_count == 0:
            chunk_dicts = (chunker or TranscriptChunker()).chunk(item.transcript, item.transcript_segments)

            for chunk_data in chunk_dicts:
                db.add(MediaChunk(
                    media_item_id=item_id,
                    chunk_index=chunk_data["index"],
                    text=chunk_data["text"],
                    word_count=chunk_data["word_count"],
                    token_count=chunk_data["token_count"],
                    start_seconds=chunk_data["start_seconds"],
                    end_seconds=chunk_data["end_seconds"],
                    chunk_metadata=chunk_data["metadata"],
                ))

            try:
                await db.commit()
                created = len(chunk_dicts)
            except IntegrityError:
                await db.rollback()
                logger.info("chunks_created_concurrently", item_id=item_id)

            chunk_count = await count_chunks(db, item_id)

        if chunk_count == 0:
            raise TerminalStageError("Transcript produced no chunks", ErrorCategory.NO_TRANSCRIPT)

        item = await load_item(db, item_id)
        if item is None or item.status != MediaStatus.PROCESSING:
            return _skipped(stage, item_id, "status changed during chunking")

        transition(item, MediaStatus.EMBEDDING, now=now)
        await db.commit()

    except TerminalStageError as e:
        return await _fail_item(db, item_id, stage, str(e), e.category, now)
    except StateTransitionError as e:
        return await _invalid_state(db, stage, item_id, e)

    dispatcher.emit(CHUNKS_CREATED, item_id)

    logger.info("stage_completed", stage=stage, item_id=item_id, chunks=chunk_count, created=created)
    return {
        'success': True,
        'item_id': item_id,
        'stage': stage,
        'status': str(MediaStatus.EMBEDDING),
        'chunk_count': chunk_count,
        'chunks_created': created,
    }


# ========================================
# Embed
# ========================================

async def run_embedding_stage(
    db: AsyncSession,
    item_id: str,
    provider: EmbeddingProvider,
    dispatcher: Optional[EventDispatcher] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Handle media/chunks.created.

    Only chunks with a NULL embedding are sent to the provider, one batch
    per commit, and usage is recorded per committed batch. A retry after a
    partial run therefore picks up exactly where the last commit left off
    and never pays twice for the same chunk.
    """
    stage = "embed"
    now = now or utcnow()
    batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
    timeout = timeout or settings.EMBEDDING_TIMEOUT_SECONDS
    expected_dimension = settings.EMBEDDING_DIMENSION

    item = await load_item(db, item_id)
    skipped = _guard(stage, item, item_id, EMBED_PRE_STATES)
    if skipped:
        return skipped

    tenant_id = item.tenant_id
    embedded_now = 0

    try:
        if await count_chunks(db, item_id) == 0:
            raise TerminalStageError("No chunks to embed", ErrorCategory.INVALID_STATE)

        while True:
            result = await db.execute(
                select(MediaChunk)
                .where(
                    MediaChunk.media_item_id == item_id,
                    MediaChunk.embedding.is_(None),
                )
                .order_by(MediaChunk.chunk_index)
                .limit(batch_size)
            )
            batch = list(result.scalars().all())
            if not batch:
                break

            try:
                vectors = await asyncio.wait_for(
                    provider.embed([chunk.text for chunk in batch]),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise RetryableStageError(f"Embedding batch timed out after {timeout}s") from e

            if len(vectors) != len(batch):
                raise TerminalStageError(
                    f"Provider returned {len(vectors)} vectors for {len(batch)} chunks",
                    ErrorCategory.PROVIDER_ERROR,
                )
            for vector in vectors:
                if len(vector) != expected_dimension:
                    raise TerminalStageError(
                        f"Embedding dimension mismatch: got {len(vector)}, expected {expected_dimension}",
                        ErrorCategory.PROVIDER_ERROR,
                    )

            for chunk, vector in zip(batch, vectors):
                chunk.embedding = list(vector)
            batch_tokens = sum(chunk.token_count or 0 for chunk in batch)
            await db.commit()

            await record_usage(db, tenant_id, UsageDeltas.for_embedding(batch_tokens))
            embedded_now += len(batch)
            logger.info("embedding_batch_committed", item_id=item_id, size=len(batch))

        totals = await db.execute(
            select(func.count(MediaChunk.id), func.coalesce(func.sum(MediaChunk.token_count), 0))
            .where(MediaChunk.media_item_id == item_id)
        )
        chunk_count, total_tokens = totals.one()

        item = await load_item(db, item_id)
        if item is None or item.status != MediaStatus.EMBEDDING:
            return _skipped(stage, item_id, "status changed during embedding")

        item.embedding_stats = {
            "chunk_count": int(chunk_count),
            "embedded_count": int(chunk_count),
            "total_tokens": int(total_tokens),
            "dimension": expected_dimension,
            "estimated_cost": str(estimate_cost(CostCategory.EMBEDDING, int(total_tokens))),
            "completed_at": now.isoformat(),
        }
        transition(item, MediaStatus.COMPLETED, now=now)
        await db.commit()

    except TerminalStageError as e:
        return await _fail_item(db, item_id, stage, str(e), e.category, now)
    except ProviderError as e:
        if e.retryable:
            logger.warning("embedding_retryable_error", item_id=item_id, error=str(e))
            raise
        return await _fail_item(
            db, item_id, stage, str(e), e.category or ErrorCategory.PROVIDER_ERROR, now
        )
    except StateTransitionError as e:
        return await _invalid_state(db, stage, item_id, e)

    logger.info("stage_completed", stage=stage, item_id=item_id, embedded=embedded_now)
    return {
        'success': True,
        'item_id': item_id,
        'stage': stage,
        'status': str(MediaStatus.COMPLETED),
        'chunks_embedded': embedded_now,
        'chunk_count': int(chunk_count),
    }
