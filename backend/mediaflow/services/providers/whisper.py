"""
OpenAI Whisper transcription provider.

Transcribes uploaded files (resolved against MEDIA_STORAGE_ROOT) or media
files reachable by URL (downloaded to a temp file with httpx first).
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional, cast

import httpx
import openai
from openai import AsyncOpenAI

from mediaflow.core.config import settings
from mediaflow.models.media import ErrorCategory
from mediaflow.services.providers.base import (
    TranscriptionProviderError,
    TranscriptionResult,
    TranscriptionSource,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)

# Formats accepted by the Whisper API
SUPPORTED_EXTENSIONS = {
    ".flac", ".m4a", ".mp3", ".mp4", ".mpeg", ".mpga", ".oga", ".ogg", ".wav", ".webm",
}

# Transient API failures worth a retry with backoff
RETRYABLE_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class WhisperTranscriptionProvider:
    """TranscriptionProvider backed by the OpenAI audio transcription API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        storage_root: Optional[str] = None,
        max_file_size: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.WHISPER_MODEL
        self.storage_root = Path(storage_root or settings.MEDIA_STORAGE_ROOT)
        self.max_file_size = max_file_size or settings.WHISPER_MAX_FILE_SIZE_BYTES
        self._client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY,
            timeout=settings.TRANSCRIPTION_TIMEOUT_SECONDS,
            max_retries=0,  # retries belong to the Celery task
        )

    async def transcribe(
        self,
        source: TranscriptionSource,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        if source.storage_path:
            return await self._transcribe_file(self.resolve_path(source.storage_path), language_hint)

        if source.media_url:
            path = await self._download(source.media_url)
            try:
                return await self._transcribe_file(path, language_hint)
            finally:
                path.unlink(missing_ok=True)

        raise TranscriptionProviderError(
            f"Media item {source.item_id} has neither a storage path nor a media URL",
            retryable=False,
        )

    def resolve_path(self, storage_path: str) -> Path:
        path = Path(storage_path)
        if not path.is_absolute():
            path = self.storage_root / path
        return path

    def validate_file(self, path: Path) -> None:
        """Reject inputs the API would refuse anyway (terminal errors)."""
        if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise TranscriptionProviderError(
                f"Unsupported audio format '{path.suffix}'",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            )
        if not path.exists():
            raise TranscriptionProviderError(
                f"Media file not found: {path}",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            )

        size = path.stat().st_size
        if size > self.max_file_size:
            raise TranscriptionProviderError(
                f"File too large for transcription: {size} bytes "
                f"(limit {self.max_file_size})",
                retryable=False,
                category=ErrorCategory.UNSUPPORTED_INPUT,
            )

    async def _transcribe_file(self, path: Path, language_hint: Optional[str]) -> TranscriptionResult:
        self.validate_file(path)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities": ["segment"],
        }
        if language_hint:
            kwargs["language"] = language_hint

        try:
            with path.open("rb") as audio_file:
                create_fn = cast(Any, self._client.audio.transcriptions.create)
                response = await create_fn(file=audio_file, **kwargs)
        except RETRYABLE_ERRORS as e:
            logger.warning(f"Whisper transient failure for {path.name}: {e}")
            raise TranscriptionProviderError(f"Transcription provider unavailable: {e}", retryable=True) from e
        except openai.BadRequestError as e:
            raise TranscriptionProviderError(f"Transcription rejected: {e}", retryable=False) from e
        except openai.APIStatusError as e:
            raise TranscriptionProviderError(
                f"Transcription failed with status {e.status_code}: {e}",
                retryable=e.status_code >= 500,
            ) from e

        segments: List[TranscriptSegment] = []
        for seg in getattr(response, "segments", None) or []:
            # SDK objects or plain dicts depending on version
            get = seg.get if isinstance(seg, dict) else lambda key, default=None: getattr(seg, key, default)
            text = (get("text", "") or "").strip()
            if text:
                segments.append(TranscriptSegment(
                    start=float(get("start", 0.0)),
                    end=float(get("end", 0.0)),
                    text=text,
                ))

        duration = getattr(response, "duration", None)
        if duration is None and segments:
            duration = segments[-1].end

        return TranscriptionResult(
            text=(getattr(response, "text", "") or "").strip(),
            segments=segments,
            language=getattr(response, "language", None) or language_hint,
            duration_seconds=float(duration) if duration is not None else None,
        )

    async def _download(self, url: str) -> Path:
        suffix = Path(httpx.URL(url).path).suffix or ".mp4"
        fd, name = tempfile.mkstemp(suffix=suffix, prefix="mediaflow-")
        path = Path(name)

        try:
            with os.fdopen(fd, "wb") as out:
                async with httpx.AsyncClient(timeout=settings.TRANSCRIPTION_TIMEOUT_SECONDS, follow_redirects=True) as client:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        async for chunk in response.aiter_bytes():
                            out.write(chunk)
        except httpx.HTTPStatusError as e:
            path.unlink(missing_ok=True)
            raise TranscriptionProviderError(
                f"Media download failed with status {e.response.status_code}",
                retryable=e.response.status_code >= 500 or e.response.status_code == 429,
            ) from e
        except httpx.HTTPError as e:
            path.unlink(missing_ok=True)
            raise TranscriptionProviderError(f"Media download failed: {e}", retryable=True) from e

        return path
