"""
Tests for the pipeline stage functions.

This module tests:
- The happy path upload → transcribe → chunk → embed → completed
- Redelivered events (idempotent re-runs)
- Terminal failures vs retryable errors
- Partial embedding resumes without re-embedding
- Tenant transcription concurrency
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from mediaflow.db.base import ensure_utc
from mediaflow.models.media import ErrorCategory, MediaChunk, MediaItem, MediaStatus, Platform, SourceKind
from mediaflow.models.tenant import UsageRecord
from mediaflow.services.pipeline.events import CHUNKS_CREATED, TRANSCRIPTION_COMPLETED
from mediaflow.services.pipeline.stages import (
    RetryableStageError,
    TenantConcurrencyLimitReached,
    TerminalStageError,
    build_transcription_source,
    count_chunks,
    load_item,
    mark_stage_failed,
    run_chunking_stage,
    run_embedding_stage,
    run_transcription_stage,
)
from mediaflow.services.pipeline.status import get_media_status
from mediaflow.services.processors.chunker import TranscriptChunker
from mediaflow.services.providers.base import (
    EmbeddingProviderError,
    TranscriptionProviderError,
    TranscriptionResult,
)
from mediaflow.services.providers.whisper import WhisperTranscriptionProvider
from tests.conftest import NOW, FakeEmbeddingProvider, FakeTranscriptionProvider, sentence_transcript


def one_sentence_chunker() -> TranscriptChunker:
    return TranscriptChunker(min_words=10, max_words=10, overlap_words=0)


async def _usage_row(db_session, tenant_id):
    row = (await db_session.execute(
        select(UsageRecord).where(UsageRecord.tenant_id == tenant_id)
    )).scalars().first()
    if row is not None:
        await db_session.refresh(row)
    return row


@pytest.mark.asyncio
class TestFullPipeline:

    async def test_upload_reaches_completed_with_twelve_chunks(
        self, db_session, tenant, make_media_item, dispatcher, embedding_provider
    ):
        item = await make_media_item()
        provider = FakeTranscriptionProvider(TranscriptionResult(
            text=sentence_transcript(12),
            language="en",
            duration_seconds=600.0,
        ))

        status = await get_media_status(db_session, item.id, now=NOW)
        assert status["status"] == "pending"

        result = await run_transcription_stage(db_session, item.id, provider, dispatcher, now=NOW)
        assert result["success"] is True
        assert (await load_item(db_session, item.id)).status == MediaStatus.PROCESSING
        assert dispatcher.events_for(item.id) == [TRANSCRIPTION_COMPLETED]

        result = await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker(), now=NOW)
        assert result["chunk_count"] == 12
        assert (await load_item(db_session, item.id)).status == MediaStatus.EMBEDDING
        assert dispatcher.events_for(item.id)[-1] == CHUNKS_CREATED

        result = await run_embedding_stage(db_session, item.id, embedding_provider, now=NOW, batch_size=5)
        assert result["chunks_embedded"] == 12
        assert len(embedding_provider.calls) == 3

        status = await get_media_status(db_session, item.id, now=NOW)
        assert status["status"] == "completed"
        assert status["progress_percent"] == 100
        assert status["chunk_count"] == 12
        assert status["is_terminal"] is True

        refreshed = await load_item(db_session, item.id)
        assert refreshed.embedding_stats["embedded_count"] == 12
        assert refreshed.processing_completed_at is not None

        usage = await _usage_row(db_session, tenant.id)
        assert usage.processing_minutes == pytest.approx(10.0)
        assert usage.embedding_tokens == sum(
            c.token_count for c in (await db_session.execute(
                select(MediaChunk).where(MediaChunk.media_item_id == item.id)
            )).scalars()
        )


@pytest.mark.asyncio
class TestTranscriptionStage:

    async def test_persists_transcript_and_segments(self, db_session, make_media_item, dispatcher, transcription_provider):
        item = await make_media_item(language="en")

        await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher, now=NOW)

        refreshed = await load_item(db_session, item.id)
        assert refreshed.transcript.startswith("Welcome to the course.")
        assert refreshed.transcript_segments[1] == {"start": 3.0, "end": 7.5, "text": "Today we cover async Python."}
        assert refreshed.duration_seconds == 120.0
        assert refreshed.processing_started_at is not None
        assert transcription_provider.calls[0].storage_path == "tenants/acme/lecture-1.mp4"

    async def test_existing_transcript_is_reused(self, db_session, make_media_item, dispatcher, transcription_provider):
        item = await make_media_item(status=MediaStatus.TRANSCRIBING, transcript="Already done.")

        result = await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher, now=NOW)

        assert result["reused_transcript"] is True
        assert transcription_provider.calls == []
        assert (await load_item(db_session, item.id)).status == MediaStatus.PROCESSING
        assert dispatcher.events_for(item.id) == [TRANSCRIPTION_COMPLETED]

    async def test_redelivery_after_completion_is_a_no_op(
        self, db_session, make_media_item, dispatcher, transcription_provider
    ):
        item = await make_media_item()
        await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher, now=NOW)

        result = await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher, now=NOW)

        assert result["skipped"] is True
        assert len(transcription_provider.calls) == 1
        assert dispatcher.events_for(item.id) == [TRANSCRIPTION_COMPLETED]

    async def test_missing_item_is_skipped(self, db_session, dispatcher, transcription_provider):
        result = await run_transcription_stage(db_session, "no-such-item", transcription_provider, dispatcher)

        assert result == {
            'success': True,
            'skipped': True,
            'stage': 'transcribe',
            'item_id': 'no-such-item',
            'reason': 'item not found',
        }

    async def test_deleted_item_is_skipped(self, db_session, make_media_item, dispatcher, transcription_provider):
        item = await make_media_item(is_deleted=True)

        result = await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher)

        assert result["skipped"] is True
        assert transcription_provider.calls == []

    async def test_terminal_provider_error_fails_item(self, db_session, make_media_item, dispatcher):
        item = await make_media_item()
        provider = FakeTranscriptionProvider(error=TranscriptionProviderError("Vendor rejected the request", retryable=False))

        result = await run_transcription_stage(db_session, item.id, provider, dispatcher, now=NOW)

        assert result["success"] is False
        refreshed = await load_item(db_session, item.id)
        assert refreshed.status == MediaStatus.FAILED
        assert refreshed.error_message == "Vendor rejected the request"
        assert refreshed.error_category == ErrorCategory.PROVIDER_ERROR
        assert dispatcher.events == []

    async def test_input_errors_are_filed_as_unsupported_input(self, db_session, make_media_item, dispatcher, tmp_path):
        (tmp_path / "long-lecture.wav").write_bytes(b"\x00" * 100)
        item = await make_media_item(storage_path="long-lecture.wav")
        provider = WhisperTranscriptionProvider(storage_root=str(tmp_path), max_file_size=10, client=MagicMock())

        result = await run_transcription_stage(db_session, item.id, provider, dispatcher, now=NOW)

        assert result["success"] is False
        assert result["category"] == "unsupported_input"
        refreshed = await load_item(db_session, item.id)
        assert refreshed.status == MediaStatus.FAILED
        assert refreshed.error_category == ErrorCategory.UNSUPPORTED_INPUT
        assert "too large" in refreshed.error_message

    async def test_retryable_provider_error_propagates(self, db_session, make_media_item, dispatcher):
        item = await make_media_item()
        provider = FakeTranscriptionProvider(error=TranscriptionProviderError("429", retryable=True))

        with pytest.raises(TranscriptionProviderError):
            await run_transcription_stage(db_session, item.id, provider, dispatcher, now=NOW)

        # Left in TRANSCRIBING for the retry to pick up
        assert (await load_item(db_session, item.id)).status == MediaStatus.TRANSCRIBING

    async def test_timeout_is_retryable(self, db_session, make_media_item, dispatcher):
        item = await make_media_item()

        class SlowProvider:
            async def transcribe(self, source, language_hint=None):
                await asyncio.sleep(5)

        with pytest.raises(RetryableStageError):
            await run_transcription_stage(db_session, item.id, SlowProvider(), dispatcher, timeout=0.01)

    async def test_empty_transcript_is_terminal(self, db_session, make_media_item, dispatcher):
        item = await make_media_item()
        provider = FakeTranscriptionProvider(TranscriptionResult(text="   "))

        result = await run_transcription_stage(db_session, item.id, provider, dispatcher, now=NOW)

        assert result["category"] == "no_transcript"
        assert (await load_item(db_session, item.id)).status == MediaStatus.FAILED

    async def test_tenant_concurrency_limit(self, db_session, make_media_item, dispatcher, transcription_provider, monkeypatch):
        from mediaflow.core.config import settings
        monkeypatch.setattr(settings, "TRANSCRIPTION_CONCURRENCY_PER_TENANT", 1)

        await make_media_item(status=MediaStatus.TRANSCRIBING, storage_path="busy.mp4")
        item = await make_media_item()

        deferred_at = NOW + timedelta(minutes=5)
        with pytest.raises(TenantConcurrencyLimitReached):
            await run_transcription_stage(db_session, item.id, transcription_provider, dispatcher, now=deferred_at)

        held = await load_item(db_session, item.id)
        assert held.status == MediaStatus.PENDING
        assert ensure_utc(held.updated_at) == deferred_at
        assert transcription_provider.calls == []


class TestTranscriptionSource:

    def test_upload(self):
        item = MediaItem(id="i", source_kind=SourceKind.UPLOAD, storage_path="a/b.mp4")
        source = build_transcription_source(item)
        assert source.storage_path == "a/b.mp4"
        assert source.video_id is None

    def test_external_video(self):
        item = MediaItem(id="i", source_kind=SourceKind.EXTERNAL, platform=Platform.YOUTUBE, external_id="dQw4w9WgXcQ")
        source = build_transcription_source(item)
        assert source.platform == "youtube"
        assert source.video_id == "dQw4w9WgXcQ"

    def test_embed_without_media_url_is_unsupported(self):
        item = MediaItem(id="i", source_kind=SourceKind.EMBED, platform=Platform.LOOM, external_id="abc")
        with pytest.raises(TerminalStageError) as exc_info:
            build_transcription_source(item)
        assert exc_info.value.category == ErrorCategory.UNSUPPORTED_INPUT


@pytest.mark.asyncio
class TestChunkingStage:

    async def test_captioned_item_goes_from_pending_to_embedding(self, db_session, make_media_item, dispatcher):
        item = await make_media_item(transcript=sentence_transcript(3))

        result = await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker())

        assert result["chunks_created"] == 3
        assert (await load_item(db_session, item.id)).status == MediaStatus.EMBEDDING
        assert dispatcher.events_for(item.id) == [CHUNKS_CREATED]

    async def test_existing_chunks_are_reused(self, db_session, make_media_item, add_chunks, dispatcher):
        item = await make_media_item(status=MediaStatus.PROCESSING, transcript=sentence_transcript(5))
        await add_chunks(item.id, 2)

        result = await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker())

        assert result["chunk_count"] == 2
        assert result["chunks_created"] == 0
        assert await count_chunks(db_session, item.id) == 2

    async def test_redelivery_does_not_duplicate_chunks(self, db_session, make_media_item, dispatcher):
        item = await make_media_item(status=MediaStatus.PROCESSING, transcript=sentence_transcript(4))

        await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker())
        second = await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker())

        assert second["skipped"] is True
        assert await count_chunks(db_session, item.id) == 4
        assert dispatcher.events_for(item.id) == [CHUNKS_CREATED]

    async def test_missing_transcript_is_terminal(self, db_session, make_media_item, dispatcher):
        item = await make_media_item(status=MediaStatus.PROCESSING)

        result = await run_chunking_stage(db_session, item.id, dispatcher)

        assert result["success"] is False
        refreshed = await load_item(db_session, item.id)
        assert refreshed.status == MediaStatus.FAILED
        assert refreshed.error_category == ErrorCategory.NO_TRANSCRIPT

    async def test_wrong_status_is_skipped(self, db_session, make_media_item, dispatcher):
        item = await make_media_item(status=MediaStatus.TRANSCRIBING, transcript="Some text.")

        result = await run_chunking_stage(db_session, item.id, dispatcher)

        assert result["skipped"] is True
        assert await count_chunks(db_session, item.id) == 0


@pytest.mark.asyncio
class TestEmbeddingStage:

    async def test_only_missing_embeddings_are_sent(self, db_session, tenant, make_media_item, add_chunks, embedding_provider):
        item = await make_media_item(status=MediaStatus.EMBEDDING, transcript="x.")
        await add_chunks(item.id, 5, embedded=3)

        result = await run_embedding_stage(db_session, item.id, embedding_provider, now=NOW)

        assert result["chunks_embedded"] == 2
        assert embedding_provider.texts_embedded == 2
        assert await count_chunks(db_session, item.id, embedded_only=True) == 5
        assert (await load_item(db_session, item.id)).status == MediaStatus.COMPLETED

        usage = await _usage_row(db_session, tenant.id)
        assert usage.embedding_tokens == 20

    async def test_partial_failure_resumes_where_it_stopped(self, db_session, make_media_item, add_chunks):
        item = await make_media_item(status=MediaStatus.EMBEDDING, transcript="x.")
        await add_chunks(item.id, 6)

        flaky = FakeEmbeddingProvider(
            error=EmbeddingProviderError("model busy", retryable=True),
            fail_on_call=2,
        )
        with pytest.raises(EmbeddingProviderError):
            await run_embedding_stage(db_session, item.id, flaky, batch_size=3)

        # First batch committed before the failure
        assert await count_chunks(db_session, item.id, embedded_only=True) == 3
        assert (await load_item(db_session, item.id)).status == MediaStatus.EMBEDDING

        retry = FakeEmbeddingProvider()
        result = await run_embedding_stage(db_session, item.id, retry, batch_size=3)

        assert result["chunks_embedded"] == 3
        assert retry.texts_embedded == 3
        assert (await load_item(db_session, item.id)).status == MediaStatus.COMPLETED

    async def test_dimension_mismatch_is_terminal(self, db_session, make_media_item, add_chunks):
        item = await make_media_item(status=MediaStatus.EMBEDDING, transcript="x.")
        await add_chunks(item.id, 2)

        result = await run_embedding_stage(db_session, item.id, FakeEmbeddingProvider(dimension=8))

        assert result["success"] is False
        refreshed = await load_item(db_session, item.id)
        assert refreshed.status == MediaStatus.FAILED
        assert "dimension mismatch" in refreshed.error_message
        assert await count_chunks(db_session, item.id, embedded_only=True) == 0

    async def test_no_chunks_is_terminal(self, db_session, make_media_item, embedding_provider):
        item = await make_media_item(status=MediaStatus.EMBEDDING, transcript="x.")

        result = await run_embedding_stage(db_session, item.id, embedding_provider)

        assert result["category"] == "invalid_state"
        assert (await load_item(db_session, item.id)).status == MediaStatus.FAILED

    async def test_completed_item_is_not_re_embedded(self, db_session, make_media_item, add_chunks, embedding_provider):
        item = await make_media_item(status=MediaStatus.COMPLETED, transcript="x.")
        await add_chunks(item.id, 2, embedded=2)

        result = await run_embedding_stage(db_session, item.id, embedding_provider)

        assert result["skipped"] is True
        assert embedding_provider.calls == []


@pytest.mark.asyncio
class TestMarkStageFailed:

    async def test_marks_in_flight_item(self, db_session, make_media_item):
        item = await make_media_item(status=MediaStatus.EMBEDDING)

        marked = await mark_stage_failed(db_session, item.id, "embed", "Embed failed after 3 retries: boom")

        assert marked is True
        refreshed = await load_item(db_session, item.id)
        assert refreshed.status == MediaStatus.FAILED
        assert refreshed.error_category == ErrorCategory.RETRIES_EXHAUSTED

    async def test_terminal_item_is_left_alone(self, db_session, make_media_item):
        item = await make_media_item(status=MediaStatus.COMPLETED)

        assert await mark_stage_failed(db_session, item.id, "embed", "late failure") is False
        assert (await load_item(db_session, item.id)).status == MediaStatus.COMPLETED

    async def test_unknown_item(self, db_session):
        assert await mark_stage_failed(db_session, "missing", "chunk", "boom") is False


@pytest.mark.asyncio
async def test_chunk_rows_match_chunker_output(db_session, make_media_item, dispatcher):
    item = await make_media_item(status=MediaStatus.PROCESSING, transcript=sentence_transcript(2))

    await run_chunking_stage(db_session, item.id, dispatcher, chunker=one_sentence_chunker())

    rows = (await db_session.execute(
        select(MediaChunk.chunk_index, MediaChunk.word_count)
        .where(MediaChunk.media_item_id == item.id)
        .order_by(MediaChunk.chunk_index)
    )).all()
    assert [tuple(r) for r in rows] == [(0, 10), (1, 10)]
    assert await db_session.scalar(select(func.count(MediaChunk.id))) == 2
