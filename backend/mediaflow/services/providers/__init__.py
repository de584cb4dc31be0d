"""
Transcription and embedding providers.

`TranscriptionRouter` picks a provider per source:
- YouTube videos       → YouTubeCaptionProvider (existing captions)
- uploads / media URLs → WhisperTranscriptionProvider

Providers are created on first use so importing this package (API process,
tests) never requires vendor credentials.
"""

from functools import lru_cache
from typing import Optional

from mediaflow.models.media import Platform
from mediaflow.services.providers.base import (
    EmbeddingProvider,
    EmbeddingProviderError,
    ProviderError,
    TranscriptionProvider,
    TranscriptionProviderError,
    TranscriptionResult,
    TranscriptionSource,
    TranscriptSegment,
)


class TranscriptionRouter:
    """TranscriptionProvider that delegates by source kind."""

    def __init__(
        self,
        captions: Optional[TranscriptionProvider] = None,
        speech_to_text: Optional[TranscriptionProvider] = None,
    ):
        self._captions = captions
        self._speech_to_text = speech_to_text

    @property
    def captions(self) -> TranscriptionProvider:
        if self._captions is None:
            from mediaflow.services.providers.captions import YouTubeCaptionProvider
            self._captions = YouTubeCaptionProvider()
        return self._captions

    @property
    def speech_to_text(self) -> TranscriptionProvider:
        if self._speech_to_text is None:
            from mediaflow.services.providers.whisper import WhisperTranscriptionProvider
            self._speech_to_text = WhisperTranscriptionProvider()
        return self._speech_to_text

    def provider_for(self, source: TranscriptionSource) -> TranscriptionProvider:
        if source.video_id and source.platform == Platform.YOUTUBE.value:
            return self.captions
        return self.speech_to_text

    async def transcribe(
        self,
        source: TranscriptionSource,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        return await self.provider_for(source).transcribe(source, language_hint)


@lru_cache(maxsize=1)
def get_transcription_router() -> TranscriptionRouter:
    """Process-wide router (one per Celery worker)."""
    return TranscriptionRouter()


__all__ = [
    "EmbeddingProvider",
    "EmbeddingProviderError",
    "ProviderError",
    "TranscriptionProvider",
    "TranscriptionProviderError",
    "TranscriptionResult",
    "TranscriptionRouter",
    "TranscriptionSource",
    "TranscriptSegment",
    "get_transcription_router",
]
