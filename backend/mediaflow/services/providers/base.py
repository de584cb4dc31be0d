"""
Provider capability interfaces.

The pipeline never talks to a vendor SDK directly; stage functions receive
objects satisfying these protocols. Production wiring lives in
`providers.get_transcription_router()` and
`processors.embedder.get_embedding_service()`; tests pass fakes.

Every provider failure is raised as a *ProviderError carrying `retryable`:
- retryable=True  → rate limits, timeouts, transient outages; the stage
  re-raises and Celery retries with backoff
- retryable=False → file too large, unsupported format, no captions; the
  stage marks the item FAILED immediately

Terminal errors caused by the input itself (format, size, missing file,
disabled or absent captions) also carry `category=UNSUPPORTED_INPUT`;
without a category the failure is filed as PROVIDER_ERROR.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable

from mediaflow.models.media import ErrorCategory


# ========================================
# Errors
# ========================================

class ProviderError(Exception):
    """Base class for capability failures."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        category: Optional[ErrorCategory] = None,
    ):
        self.retryable = retryable
        self.category = category
        super().__init__(message)


class TranscriptionProviderError(ProviderError):
    pass


class EmbeddingProviderError(ProviderError):
    pass


# ========================================
# Transcription
# ========================================

@dataclass
class TranscriptSegment:
    start: float
    end: float
    text: str

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "text": self.text}


@dataclass
class TranscriptionResult:
    text: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    language: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def duration_minutes(self) -> float:
        """Billable minutes; falls back to the last segment end."""
        seconds = self.duration_seconds
        if not seconds and self.segments:
            seconds = self.segments[-1].end
        return round((seconds or 0.0) / 60, 4)


@dataclass
class TranscriptionSource:
    """
    What to transcribe. Exactly one of the fields is used by a provider:

    - storage_path: local/uploaded file (Whisper)
    - media_url: fetchable media file (Whisper, downloaded first)
    - video_id: external platform video (captions)
    """

    item_id: str
    storage_path: Optional[str] = None
    media_url: Optional[str] = None
    platform: Optional[str] = None
    video_id: Optional[str] = None


@runtime_checkable
class TranscriptionProvider(Protocol):
    async def transcribe(
        self,
        source: TranscriptionSource,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        ...


# ========================================
# Embeddings
# ========================================

@runtime_checkable
class EmbeddingProvider(Protocol):
    dimension: int

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...
