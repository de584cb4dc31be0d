"""
Pydantic schemas for media ingestion, status and search.

Source descriptors are a discriminated union on `kind`; the ingestion
service turns whichever one arrives into the canonical MediaItem columns.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ========================================
# Source Descriptors
# ========================================

class CaptionSegment(BaseModel):
    start: float = Field(..., ge=0)
    end: float = Field(..., ge=0)
    text: str

    @model_validator(mode="after")
    def check_order(self) -> "CaptionSegment":
        if self.end < self.start:
            raise ValueError("Segment end must not precede its start")
        return self


class Captions(BaseModel):
    """Captions supplied with the source; transcription is skipped."""

    text: str = Field(..., min_length=1, description="Full caption text")
    segments: Optional[List[CaptionSegment]] = Field(
        None,
        description="Timestamped caption segments"
    )
    language: Optional[str] = Field(None, max_length=16, examples=["en"])

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Caption text cannot be blank")
        return v


class UploadSource(BaseModel):
    """A file already placed in media storage."""

    kind: Literal["upload"] = "upload"

    storage_path: str = Field(
        ...,
        min_length=1,
        max_length=1000,
        description="Storage reference of the uploaded file",
        examples=["tenants/acme/2025/lecture-01.mp4"]
    )

    filename: str = Field(
        ...,
        min_length=1,
        max_length=255,
        examples=["lecture-01.mp4"]
    )

    file_size_bytes: int = Field(..., gt=0, description="Size of the stored file")

    content_type: Optional[str] = Field(None, max_length=100, examples=["video/mp4"])

    duration_seconds: Optional[float] = Field(None, ge=0)


class ExternalVideoSource(BaseModel):
    """A video hosted on an external platform, referenced by id."""

    kind: Literal["external"] = "external"

    platform: Literal["youtube"] = "youtube"

    video_id: str = Field(
        ...,
        pattern=r"^[A-Za-z0-9_-]{11}$",
        description="YouTube video id (11 characters)",
        examples=["dQw4w9WgXcQ"]
    )

    url: Optional[str] = Field(None, max_length=1000)

    captions: Optional[Captions] = None


class EmbedSource(BaseModel):
    """An embedded-player video (Loom, Mux, Vimeo)."""

    kind: Literal["embed"] = "embed"

    platform: Literal["loom", "mux", "vimeo"]

    embed_id: str = Field(..., min_length=1, max_length=255)

    media_url: Optional[str] = Field(
        None,
        max_length=1000,
        description="Fetchable media file; required when no captions are supplied"
    )

    captions: Optional[Captions] = None


SourceDescriptor = Annotated[
    Union[UploadSource, ExternalVideoSource, EmbedSource],
    Field(discriminator="kind"),
]


# ========================================
# Request Schemas
# ========================================

class MediaSubmitRequest(BaseModel):
    """Request schema for submitting media for processing."""

    tenant_id: str = Field(..., min_length=1, max_length=36)

    title: Optional[str] = Field(
        None,
        max_length=255,
        description="Display title; derived from the source when omitted"
    )

    description: Optional[str] = Field(None, max_length=5000)

    source: SourceDescriptor


class MediaSearchRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=36)
    query: str = Field(..., min_length=1, max_length=1000)
    limit: int = Field(5, ge=1, le=50)
    media_item_id: Optional[str] = Field(None, description="Restrict to one item")


# ========================================
# Response Schemas
# ========================================

class MediaSubmitResponse(BaseModel):
    item_id: str
    status: str
    next_event: str
    warnings: List[str] = Field(default_factory=list)


class MediaStatusResponse(BaseModel):
    """Polling view of an item's progress."""

    item_id: str
    tenant_id: str
    title: str
    status: str
    progress_percent: int = Field(..., ge=0, le=100)
    stage_description: str
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    estimated_remaining_minutes: Optional[int] = None
    chunk_count: int = 0
    is_terminal: bool
    next_steps: List[str] = Field(default_factory=list)
    recovery_attempts: int = 0
    created_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None


class MediaDeleteResponse(BaseModel):
    item_id: str
    is_deleted: bool
    deleted_at: Optional[datetime] = None


class SearchResult(BaseModel):
    chunk_id: int
    media_item_id: str
    title: str
    chunk_index: int
    text: str
    start_seconds: Optional[float] = None
    end_seconds: Optional[float] = None
    similarity: float


class MediaSearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    count: int
