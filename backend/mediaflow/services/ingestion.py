"""
Ingestion Normalizer

Turns a heterogeneous source descriptor (upload, external video, embedded
player) into one canonical MediaItem in PENDING and emits the first
pipeline event.

Order matters:
1. validate the descriptor and the tenant
2. reject duplicates of (tenant, platform, external id)
3. check quota; a refusal creates nothing
4. create the item and commit
5. record admission usage (only after the item exists)
6. emit media/transcription.requested, or media/transcription.completed
   when captions came with the source
"""

import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.logging import get_logger
from mediaflow.db.base import utcnow
from mediaflow.models.media import MediaItem, MediaStatus, Platform, SourceKind
from mediaflow.schemas.media import (
    EmbedSource,
    ExternalVideoSource,
    MediaSubmitRequest,
    SourceDescriptor,
    UploadSource,
)
from mediaflow.services.pipeline.events import (
    TRANSCRIPTION_COMPLETED,
    TRANSCRIPTION_REQUESTED,
    EventDispatcher,
    get_dispatcher,
)
from mediaflow.services.pipeline.status import MediaNotFoundError
from mediaflow.services.quota_ledger import (
    QuotaExceededError,
    TenantNotFoundError,
    UsageDeltas,
    check_quota,
    get_tenant,
    record_usage,
)
from mediaflow.services.providers.whisper import SUPPORTED_EXTENSIONS as WHISPER_EXTENSIONS

logger = get_logger(__name__)


# Uploads are only ever transcribed by Whisper
ALLOWED_UPLOAD_EXTENSIONS = frozenset(ext.lstrip(".") for ext in WHISPER_EXTENSIONS)

_source_adapter = TypeAdapter(SourceDescriptor)


class IngestionValidationError(ValueError):
    """The descriptor is well-formed but cannot be processed."""


class DuplicateMediaError(Exception):
    def __init__(self, existing_item_id: str, platform: str, external_id: str):
        self.existing_item_id = existing_item_id
        super().__init__(
            f"{platform} media '{external_id}' was already submitted as item {existing_item_id}"
        )


@dataclass
class SubmitResult:
    item_id: str
    status: MediaStatus
    next_event: str
    warnings: List[str] = field(default_factory=list)


# ========================================
# Normalization
# ========================================

def parse_source(raw: Union[Dict[str, Any], UploadSource, ExternalVideoSource, EmbedSource]):
    """Validate a raw descriptor; shape errors become IngestionValidationError."""
    if isinstance(raw, (UploadSource, ExternalVideoSource, EmbedSource)):
        return raw
    try:
        return _source_adapter.validate_python(raw)
    except ValidationError as e:
        raise IngestionValidationError(f"Invalid source descriptor: {e}") from e


def upload_extension(filename: str) -> str:
    _, ext = posixpath.splitext(filename.lower())
    return ext.lstrip(".")


def validate_source(source) -> None:
    """Rules a schema cannot express on its own."""
    if isinstance(source, UploadSource):
        if not source.storage_path.strip():
            raise IngestionValidationError("storage_path cannot be blank")

        # The stored object is what gets transcribed; its suffix decides
        stored_ext = upload_extension(source.storage_path.strip())
        if not stored_ext:
            raise IngestionValidationError(
                f"storage_path '{source.storage_path}' has no file extension"
            )
        for ext in (upload_extension(source.filename), stored_ext):
            if ext and ext not in ALLOWED_UPLOAD_EXTENSIONS:
                allowed = ", ".join(sorted(ALLOWED_UPLOAD_EXTENSIONS))
                raise IngestionValidationError(
                    f"Unsupported file type '.{ext}'. Allowed: {allowed}"
                )

    elif isinstance(source, EmbedSource):
        if source.captions is None and not source.media_url:
            raise IngestionValidationError(
                f"{source.platform} embeds need captions or a media_url to be transcribed"
            )


def canonical_columns(source) -> Dict[str, Any]:
    """
    MediaItem source columns for a descriptor.

    Exactly one identifier set is populated: storage_path for uploads,
    platform + external_id for everything else.
    """
    if isinstance(source, UploadSource):
        return {
            "source_kind": SourceKind.UPLOAD,
            "platform": None,
            "external_id": None,
            "storage_path": source.storage_path.strip(),
            "source_url": None,
            "file_size_bytes": source.file_size_bytes,
            "duration_seconds": source.duration_seconds,
        }

    if isinstance(source, ExternalVideoSource):
        return {
            "source_kind": SourceKind.EXTERNAL,
            "platform": Platform(source.platform),
            "external_id": source.video_id,
            "storage_path": None,
            "source_url": source.url,
            "file_size_bytes": None,
            "duration_seconds": None,
        }

    return {
        "source_kind": SourceKind.EMBED,
        "platform": Platform(source.platform),
        "external_id": source.embed_id,
        "storage_path": None,
        "source_url": source.media_url,
        "file_size_bytes": None,
        "duration_seconds": None,
    }


def default_title(source) -> str:
    if isinstance(source, UploadSource):
        return source.filename
    if isinstance(source, ExternalVideoSource):
        return f"YouTube video {source.video_id}"
    return f"{source.platform.capitalize()} video {source.embed_id}"


async def find_duplicate(
    db: AsyncSession,
    tenant_id: str,
    platform: Optional[Platform],
    external_id: Optional[str],
) -> Optional[MediaItem]:
    if platform is None or external_id is None:
        return None

    result = await db.execute(
        select(MediaItem).where(
            MediaItem.tenant_id == tenant_id,
            MediaItem.platform == platform,
            MediaItem.external_id == external_id,
            MediaItem.is_deleted.is_(False),
        ).limit(1)
    )
    return result.scalars().first()


# ========================================
# Submit
# ========================================

async def submit_media(
    db: AsyncSession,
    request: MediaSubmitRequest,
    dispatcher: Optional[EventDispatcher] = None,
    now: Optional[datetime] = None,
) -> SubmitResult:
    """
    Admit a media item.

    Raises:
        IngestionValidationError: unsupported or incomplete source
        TenantNotFoundError: unknown or inactive tenant
        DuplicateMediaError: same tenant + platform + external id exists
        QuotaExceededError: tier limits would be exceeded
    """
    dispatcher = dispatcher or get_dispatcher()
    now = now or utcnow()

    source = parse_source(request.source)
    validate_source(source)

    tenant = await get_tenant(db, request.tenant_id)
    if not tenant.is_active:
        raise TenantNotFoundError(f"Tenant {request.tenant_id} is not active")

    columns = canonical_columns(source)

    duplicate = await find_duplicate(db, tenant.id, columns["platform"], columns["external_id"])
    if duplicate is not None:
        raise DuplicateMediaError(duplicate.id, str(columns["platform"]), columns["external_id"])

    proposed_bytes = columns["file_size_bytes"] or 0
    quota = await check_quota(db, tenant.id, proposed_bytes=proposed_bytes, now=now)
    if not quota.allowed:
        raise QuotaExceededError(quota.reasons)

    captions = getattr(source, "captions", None)

    item = MediaItem(
        tenant_id=tenant.id,
        title=(request.title or "").strip() or default_title(source),
        description=request.description,
        status=MediaStatus.PENDING,
        created_at=now,
        updated_at=now,
        **columns,
    )
    if captions is not None:
        item.transcript = captions.text
        item.transcript_segments = (
            [segment.model_dump() for segment in captions.segments]
            if captions.segments else None
        )
        item.language = captions.language

    db.add(item)
    await db.commit()

    await record_usage(db, tenant.id, UsageDeltas.for_admission(proposed_bytes), period=now.date())

    next_event = TRANSCRIPTION_COMPLETED if captions is not None else TRANSCRIPTION_REQUESTED
    dispatcher.emit(next_event, item.id)

    logger.info(
        "media_submitted",
        item_id=item.id,
        tenant_id=tenant.id,
        source_kind=str(item.source_kind),
        next_event=next_event,
    )
    return SubmitResult(
        item_id=item.id,
        status=MediaStatus.PENDING,
        next_event=next_event,
        warnings=quota.warnings,
    )


async def soft_delete_media(
    db: AsyncSession,
    item_id: str,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MediaItem:
    """
    Hide an item from the pipeline, quota and search. Chunks are kept.

    Idempotent: deleting a deleted item returns it unchanged.

    Raises:
        MediaNotFoundError: unknown item (or owned by another tenant)
    """
    item = await db.get(MediaItem, item_id, populate_existing=True)
    if item is None or (tenant_id is not None and item.tenant_id != tenant_id):
        raise MediaNotFoundError(f"Media item {item_id} not found")

    if not item.is_deleted:
        item.is_deleted = True
        item.deleted_at = now or utcnow()
        await db.commit()
        logger.info("media_soft_deleted", item_id=item_id, tenant_id=item.tenant_id)

    return item
