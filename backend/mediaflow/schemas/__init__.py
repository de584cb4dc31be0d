"""
Pydantic schemas for request/response validation.

Import all schemas here for easy access.
"""

from mediaflow.schemas.admin import (
    ProcessingStatsResponse,
    QuotaResponse,
    RecoverRequest,
    RecoverResponse,
    RestartResponse,
    StuckItemsResponse,
)
from mediaflow.schemas.media import (
    EmbedSource,
    ExternalVideoSource,
    MediaSearchRequest,
    MediaStatusResponse,
    MediaSubmitRequest,
    MediaSubmitResponse,
    SourceDescriptor,
    UploadSource,
)

__all__ = [
    # Media
    "UploadSource",
    "ExternalVideoSource",
    "EmbedSource",
    "SourceDescriptor",
    "MediaSubmitRequest",
    "MediaSubmitResponse",
    "MediaStatusResponse",
    "MediaSearchRequest",
    # Admin
    "StuckItemsResponse",
    "RecoverRequest",
    "RecoverResponse",
    "RestartResponse",
    "ProcessingStatsResponse",
    "QuotaResponse",
]
