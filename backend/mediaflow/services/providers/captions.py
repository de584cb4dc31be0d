"""
YouTube caption transcription provider.

Pulls existing captions instead of running speech-to-text, with the
fallback order:
1. Manual captions in a preferred language
2. Auto-generated captions in a preferred language
3. Manual captions in any language
4. Auto-generated captions in any language

youtube_transcript_api is synchronous (requests under the hood), so the
lookups run in a worker thread.
"""

import asyncio
import logging
import re
from typing import List, Optional

from youtube_transcript_api import (
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeTranscriptApi,
)

from mediaflow.core.config import settings
from mediaflow.models.media import ErrorCategory
from mediaflow.services.providers.base import (
    TranscriptionProviderError,
    TranscriptionResult,
    TranscriptionSource,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)


class YouTubeCaptionProvider:
    """
    TranscriptionProvider backed by YouTube captions.

    Example:
        >>> provider = YouTubeCaptionProvider()
        >>> result = await provider.transcribe(TranscriptionSource(item_id="x", video_id="dQw4w9WgXcQ"))
        >>> result.language
        'en'
    """

    def __init__(self, preferred_languages: Optional[List[str]] = None, api: Optional[YouTubeTranscriptApi] = None):
        self.preferred_languages = preferred_languages or settings.TRANSCRIPT_LANGUAGES
        self.api = api or YouTubeTranscriptApi()

    async def transcribe(
        self,
        source: TranscriptionSource,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        if not source.video_id:
            raise TranscriptionProviderError(
                f"Media item {source.item_id} has no video id for caption lookup",
                retryable=False,
            )

        languages = list(self.preferred_languages)
        if language_hint and language_hint not in languages:
            languages.insert(0, language_hint)

        try:
            return await asyncio.to_thread(self._fetch, source.video_id, languages)

        except RequestBlocked as e:
            logger.warning(f"YouTube blocked caption request for {source.video_id}")
            raise TranscriptionProviderError(f"YouTube rate limit: {e}", retryable=True) from e
        except TranscriptsDisabled as e:
            raise TranscriptionProviderError(
                f"Captions are disabled for video {source.video_id}",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            ) from e
        except VideoUnavailable as e:
            raise TranscriptionProviderError(
                f"Video {source.video_id} is unavailable",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            ) from e
        except NoTranscriptFound as e:
            raise TranscriptionProviderError(
                f"No captions available for video {source.video_id}",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            ) from e
        except CouldNotRetrieveTranscript as e:
            logger.error(f"Caption lookup failed for {source.video_id}: {e}")
            raise TranscriptionProviderError(f"Failed to get captions: {e}", retryable=True) from e

    def _fetch(self, video_id: str, languages: List[str]) -> TranscriptionResult:
        transcript_list = self.api.list(video_id)

        transcript = (
            self._find(transcript_list.find_manually_created_transcript, languages)
            or self._find(transcript_list.find_generated_transcript, languages)
            or next((t for t in transcript_list if not t.is_generated), None)
            or next((t for t in transcript_list if t.is_generated), None)
        )
        if transcript is None:
            raise TranscriptionProviderError(
                f"No captions available for video {video_id}",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            )

        fetched = transcript.fetch()
        segments = []
        for snippet in fetched:
            text = clean_caption_text(snippet.text)
            if not text:
                continue
            segments.append(TranscriptSegment(
                start=float(snippet.start),
                end=float(snippet.start) + float(snippet.duration),
                text=text,
            ))

        logger.info(
            f"Fetched {'auto' if transcript.is_generated else 'manual'} captions "
            f"({transcript.language_code}) for {video_id}: {len(segments)} segments"
        )

        return TranscriptionResult(
            text=" ".join(segment.text for segment in segments),
            segments=segments,
            language=transcript.language_code,
            duration_seconds=segments[-1].end if segments else None,
        )

    @staticmethod
    def _find(finder, languages: List[str]):
        for lang in languages:
            try:
                return finder([lang])
            except NoTranscriptFound:
                continue
        return None


def clean_caption_text(text: str) -> str:
    """
    Normalize one caption line.

    Drops [Music]/[Applause]-style tags and inline timestamps, collapses
    whitespace and decodes the HTML entities auto-captions leave behind.
    """
    if not text:
        return ""

    text = re.sub(r'\[.*?\]', '', text)
    text = re.sub(r'\d{1,2}:\d{2}(?::\d{2})?', '', text)
    text = text.replace('&nbsp;', ' ')
    text = text.replace('&amp;', '&')
    text = text.replace('&lt;', '<')
    text = text.replace('&gt;', '>')
    text = re.sub(r'([.!?])\1+', r'\1', text)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()
