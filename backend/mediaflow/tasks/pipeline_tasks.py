"""
Celery tasks for the media processing pipeline.

One task per pipeline event:
- pipeline.transcribe_media  ← media/transcription.requested
- pipeline.chunk_media       ← media/transcription.completed
- pipeline.embed_media       ← media/chunks.created

The stage logic lives in services.pipeline.stages; these tasks only open a
session, pick the production providers and translate stage outcomes into
Celery retry / failure semantics.
"""

import asyncio
import concurrent.futures
import logging
from typing import Optional

from celery import Task
from sqlalchemy.exc import OperationalError

from mediaflow.core.config import settings
from mediaflow.db.session import AsyncSessionLocal, engine
from mediaflow.models.media import ErrorCategory
from mediaflow.services.pipeline.events import get_dispatcher
from mediaflow.services.pipeline.stages import (
    RetryableStageError,
    TenantConcurrencyLimitReached,
    mark_stage_failed,
    run_chunking_stage,
    run_embedding_stage,
    run_transcription_stage,
)
from mediaflow.services.pipeline.state_machine import get_processing_stats as count_by_status
from mediaflow.services.processors.embedder import get_embedding_service
from mediaflow.services.providers import ProviderError, get_transcription_router
from mediaflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ========================================
# Async Helper
# ========================================

async def _run_and_release(coro):
    try:
        return await coro
    finally:
        # Pooled connections are bound to this run's event loop
        await engine.dispose()


def run_async(coro):
    """
    Run async coroutine, handling both event loop and no event loop scenarios.

    - Celery worker (no running loop): asyncio.run()
    - Tests / eager mode (loop already running): run in a worker thread
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_run_and_release(coro))

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(asyncio.run, _run_and_release(coro))
        return future.result()


STAGE_BY_TASK = {
    'pipeline.transcribe_media': 'transcribe',
    'pipeline.chunk_media': 'chunk',
    'pipeline.embed_media': 'embed',
}


# ========================================
# Base Task Class
# ========================================

class PipelineTask(Task):
    """
    Base task class with retry logic and the failure channel.

    Retryable errors escape the stage and are retried with exponential
    backoff; anything still failing after STAGE_MAX_RETRIES lands in
    on_failure(), which moves the item to FAILED.
    """

    autoretry_for = (RetryableStageError, ProviderError, OperationalError)
    retry_kwargs = {'max_retries': settings.STAGE_MAX_RETRIES}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True

    # At-least-once: a task lost with its worker is redelivered
    acks_late = True
    reject_on_worker_lost = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        item_id = args[0] if args else kwargs.get('item_id')
        stage = STAGE_BY_TASK.get(self.name, self.name)
        logger.error(f"Task {self.name}[{task_id}] failed for media item {item_id}: {exc}")

        if not item_id:
            return

        if isinstance(exc, self.autoretry_for):
            message = f"{stage.capitalize()} failed after {settings.STAGE_MAX_RETRIES} retries: {exc}"
            category = ErrorCategory.RETRIES_EXHAUSTED
        else:
            message = f"{stage.capitalize()} failed: {exc}"
            category = ErrorCategory.PROVIDER_ERROR

        async def _mark():
            async with AsyncSessionLocal() as db:
                return await mark_stage_failed(db, item_id, stage, message, category=category)

        try:
            run_async(_mark())
        except Exception as e:
            logger.error(f"Could not mark media item {item_id} as failed: {e}", exc_info=True)


# ========================================
# Stage Tasks
# ========================================

@celery_app.task(
    base=PipelineTask,
    name='pipeline.transcribe_media',
    bind=True,
)
def transcribe_media(self, item_id: str) -> dict:
    """
    Transcribe a media item (captions for YouTube, Whisper otherwise).

    Deferred with a countdown, without spending a retry, while the tenant
    is at its transcription concurrency cap.
    """
    logger.info(f"Transcribing media item {item_id} (attempt {self.request.retries + 1})")

    async def _transcribe():
        async with AsyncSessionLocal() as db:
            return await run_transcription_stage(
                db,
                item_id,
                provider=get_transcription_router(),
                dispatcher=get_dispatcher(),
            )

    try:
        return run_async(_transcribe())
    except TenantConcurrencyLimitReached as e:
        countdown = settings.CONCURRENCY_RETRY_COUNTDOWN_SECONDS
        logger.info(f"{e}; deferring media item {item_id} by {countdown}s")
        self.apply_async(args=[item_id], countdown=countdown)
        return {
            'success': True,
            'item_id': item_id,
            'deferred': True,
            'countdown': countdown,
        }


@celery_app.task(
    base=PipelineTask,
    name='pipeline.chunk_media',
    bind=True,
)
def chunk_media(self, item_id: str) -> dict:
    """Split the transcript into chunks and hand over to embedding."""
    logger.info(f"Chunking media item {item_id}")

    async def _chunk():
        async with AsyncSessionLocal() as db:
            return await run_chunking_stage(db, item_id, dispatcher=get_dispatcher())

    return run_async(_chunk())


@celery_app.task(
    base=PipelineTask,
    name='pipeline.embed_media',
    bind=True,
)
def embed_media(self, item_id: str) -> dict:
    """Embed all chunks that still lack a vector, then complete the item."""
    logger.info(f"Embedding media item {item_id}")

    async def _embed():
        embedder = await get_embedding_service()
        async with AsyncSessionLocal() as db:
            return await run_embedding_stage(db, item_id, provider=embedder)

    result = run_async(_embed())
    if result.get('success') and not result.get('skipped'):
        logger.info(f"Media item {item_id} completed: {result.get('chunk_count')} chunks embedded")
    return result


# ========================================
# Task Monitoring
# ========================================

@celery_app.task(name='pipeline.get_processing_stats')
def get_processing_stats(tenant_id: Optional[str] = None) -> dict:
    """
    Get statistics about media processing.

    Returns counts of media items by status.
    """
    async def _get_stats():
        async with AsyncSessionLocal() as db:
            return await count_by_status(db, tenant_id=tenant_id)

    stats = run_async(_get_stats())
    logger.info(f"Processing stats: {stats}")
    return stats
