"""
Media Models

This module contains the models the processing pipeline operates on.

Models Included:
----------------
1. MediaItem - the unit of work (an uploaded file or an external video)
2. MediaChunk - a transcript span with its embedding vector
3. RecoveryState - value object with the recovery bookkeeping of an item
4. MediaStatus / SourceKind / Platform / ErrorCategory (Enums)

Database Tables:
----------------
- media_items
- media_chunks

Relationships:
--------------
- Tenant (1) ←→ (Many) MediaItem
- MediaItem (1) ←→ (Many) MediaChunk

Chunks are always queried explicitly (select(MediaChunk).where(...)).
The `chunks` relationship raises on lazy load so an accidental implicit
load inside async code fails loudly instead of with MissingGreenlet.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from pgvector.sqlalchemy import Vector
from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mediaflow.core.config import settings
from mediaflow.db.base import (
    BaseModel,
    JSONType,
    String36,
    String50,
    String255,
    String1000,
    ensure_utc,
    new_uuid,
)

if TYPE_CHECKING:
    from mediaflow.models.tenant import Tenant


# ================================
# Enums
# ================================

class MediaStatus(str, enum.Enum):
    """
    Pipeline status of a media item.

    Status Flow:
    ------------
    PENDING → UPLOADING → TRANSCRIBING → PROCESSING → EMBEDDING → COMPLETED
        ↓          ↓            ↓             ↓            ↓
                              FAILED

    PROCESSING is the chunking stage. COMPLETED and FAILED are terminal.
    The legal-transition table lives in services.pipeline.state_machine.
    """

    PENDING = "pending"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class SourceKind(str, enum.Enum):
    """Where the media came from."""

    UPLOAD = "upload"  # file already placed in our storage
    EXTERNAL = "external"  # external-platform video by id (YouTube)
    EMBED = "embed"  # embedded player by platform + id (Loom, Mux, Vimeo)

    def __str__(self) -> str:
        return self.value


class Platform(str, enum.Enum):
    YOUTUBE = "youtube"
    LOOM = "loom"
    MUX = "mux"
    VIMEO = "vimeo"

    def __str__(self) -> str:
        return self.value


class ErrorCategory(str, enum.Enum):
    """
    Why an item ended up in FAILED.

    Stored next to the human-readable error_message so operators can filter
    without parsing text.
    """

    UNSUPPORTED_INPUT = "unsupported_input"
    PROVIDER_ERROR = "provider_error"
    NO_TRANSCRIPT = "no_transcript"
    RETRIES_EXHAUSTED = "retries_exhausted"
    RECOVERY_TERMINATED = "recovery_terminated"
    INVALID_STATE = "invalid_state"

    def __str__(self) -> str:
        return self.value


# ================================
# Value Objects
# ================================

@dataclass(frozen=True)
class RecoveryState:
    """
    Recovery bookkeeping of one media item.

    Only the Recovery Engine writes the underlying columns, and it does so
    with a conditional UPDATE keyed on `attempts` (see services.recovery).
    """

    attempts: int = 0
    last_attempt_at: datetime | None = None
    last_action: str | None = None


# ================================
# MediaItem Model
# ================================

class MediaItem(BaseModel):
    """
    A media item moving through the processing pipeline.

    Table: media_items
    ------------------
    Created by the Ingestion Normalizer in PENDING, mutated only by the
    stage functions and the Recovery Engine, never physically deleted
    (soft delete keeps status and cost history auditable).

    Source Columns:
    ---------------
    Exactly one identifier set is populated, matching source_kind:

    - UPLOAD:   storage_path (+ file_size_bytes); platform/external_id NULL
    - EXTERNAL: platform + external_id (YouTube video id); storage_path NULL
    - EMBED:    platform + external_id (Loom/Mux/Vimeo id); storage_path NULL

    source_url is an optional fetchable URL for the media file, used by the
    Whisper provider when no storage_path exists.

    Transcript Columns:
    -------------------
    transcript_segments holds [{"start": 0.0, "end": 4.2, "text": "..."}]
    when the provider returns timestamps; chunk boundaries reuse them.
    """

    __tablename__ = "media_items"

    id: Mapped[str] = mapped_column(
        String36,
        primary_key=True,
        default=new_uuid,
        comment="Opaque media item identifier (UUID4)"
    )

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning tenant"
    )

    title: Mapped[str] = mapped_column(
        String255,
        nullable=False,
        comment="Display title"
    )

    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # ================================
    # Source Descriptor
    # ================================

    source_kind: Mapped[SourceKind] = mapped_column(
        nullable=False,
        index=True,
        comment="upload / external / embed"
    )

    platform: Mapped[Platform | None] = mapped_column(
        nullable=True,
        comment="Hosting platform for external and embed sources"
    )

    external_id: Mapped[str | None] = mapped_column(
        String255,
        nullable=True,
        comment="Platform video / embed id"
    )

    storage_path: Mapped[str | None] = mapped_column(
        String1000,
        nullable=True,
        comment="Storage reference for uploaded files"
    )

    source_url: Mapped[str | None] = mapped_column(
        String1000,
        nullable=True,
        comment="Fetchable media URL, if any"
    )

    # ================================
    # Pipeline State
    # ================================

    status: Mapped[MediaStatus] = mapped_column(
        nullable=False,
        default=MediaStatus.PENDING,
        index=True,
        comment="Pipeline status"
    )

    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Human-readable error if processing failed"
    )

    error_category: Mapped[ErrorCategory | None] = mapped_column(
        nullable=True,
        comment="Machine-readable failure category"
    )

    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="First entry into an in-flight stage"
    )

    processing_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Entry into COMPLETED or FAILED"
    )

    # Recovery bookkeeping, exposed as the `recovery` value object
    recovery_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Recovery attempts made so far"
    )
    recovery_last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    recovery_last_action: Mapped[str | None] = mapped_column(
        String50,
        nullable=True,
    )

    # ================================
    # Metrics & Artifacts
    # ================================

    file_size_bytes: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Size of the stored file (uploads)"
    )

    duration_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="Media duration"
    )

    transcript: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Full transcript text"
    )

    transcript_segments: Mapped[list | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Timestamped transcript segments"
    )

    language: Mapped[str | None] = mapped_column(
        String(16),
        nullable=True,
        comment="Detected or declared transcript language"
    )

    embedding_stats: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Chunk/token/cost totals written on completion"
    )

    # ================================
    # Soft Delete
    # ================================

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
        index=True,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ================================
    # Relationships
    # ================================

    tenant: Mapped["Tenant"] = relationship("Tenant", lazy="joined")

    chunks: Mapped[list["MediaChunk"]] = relationship(
        "MediaChunk",
        back_populates="media_item",
        order_by="MediaChunk.chunk_index",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_media_items_stuck_scan", "status", "created_at"),
        Index("ix_media_items_tenant_external", "tenant_id", "platform", "external_id"),
    )

    def __repr__(self) -> str:
        return (
            f"MediaItem(id={self.id}, tenant_id={self.tenant_id}, "
            f"kind={self.source_kind}, status={self.status})"
        )

    @property
    def recovery(self) -> RecoveryState:
        return RecoveryState(
            attempts=self.recovery_attempts or 0,
            last_attempt_at=ensure_utc(self.recovery_last_attempt_at),
            last_action=self.recovery_last_action,
        )

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())

    @property
    def is_terminal(self) -> bool:
        return self.status in (MediaStatus.COMPLETED, MediaStatus.FAILED)

    @property
    def has_consistent_source(self) -> bool:
        """Exactly one identifier set is populated, matching source_kind."""
        if self.source_kind == SourceKind.UPLOAD:
            return bool(self.storage_path) and self.platform is None and self.external_id is None
        return bool(self.external_id) and self.platform is not None and self.storage_path is None


# ================================
# MediaChunk Model
# ================================

class MediaChunk(BaseModel):
    """
    A transcript span with its embedding vector.

    Table: media_chunks
    -------------------
    Created in bulk by the chunk stage; `embedding` stays NULL until the
    embed stage back-fills it. A non-NULL embedding is never recomputed.

    chunk_index is contiguous from 0 and unique per item
    (uq_media_item_chunk_index), which also turns a concurrent duplicate
    chunking run into an IntegrityError instead of duplicate rows.
    """

    __tablename__ = "media_chunks"

    media_item_id: Mapped[str] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Parent media item"
    )

    chunk_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Ordinal of this chunk within the item (0-indexed)"
    )

    text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Chunk text"
    )

    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    start_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    chunk_metadata: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Sentence count, segment range, chunking method"
    )

    embedding = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=True,
        comment="Embedding vector for semantic search"
    )

    media_item: Mapped["MediaItem"] = relationship(
        "MediaItem",
        back_populates="chunks",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint(
            'media_item_id',
            'chunk_index',
            name='uq_media_item_chunk_index'
        ),
    )

    def __repr__(self) -> str:
        preview = self.text[:50] + "..." if self.text else ""
        return (
            f"MediaChunk(id={self.id}, media_item_id={self.media_item_id}, "
            f"index={self.chunk_index}, text='{preview}')"
        )

    @property
    def is_embedded(self) -> bool:
        return self.embedding is not None
