"""
Database Models

Import models from this module so they are registered with SQLAlchemy
(Alembic autogenerate and relationship resolution depend on it):

    from mediaflow.models import MediaItem, MediaChunk, Tenant, UsageRecord
"""

from mediaflow.models.media import (
    ErrorCategory,
    MediaChunk,
    MediaItem,
    MediaStatus,
    Platform,
    RecoveryState,
    SourceKind,
)
from mediaflow.models.tenant import SubscriptionTier, Tenant, UsageRecord

__all__ = [
    # Tenant models
    "Tenant",
    "UsageRecord",
    # Media models
    "MediaItem",
    "MediaChunk",
    "RecoveryState",
    # Enums
    "ErrorCategory",
    "MediaStatus",
    "Platform",
    "SourceKind",
    "SubscriptionTier",
]
