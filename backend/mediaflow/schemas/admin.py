"""
Pydantic schemas for the recovery admin surface and tenant quota views.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ========================================
# Recovery
# ========================================

class StuckItem(BaseModel):
    item_id: str
    tenant_id: str
    title: str
    status: str
    stalled_minutes: int
    proposed_action: str
    recovery_attempts: int
    last_recovery_at: Optional[datetime] = None
    has_transcript: bool
    chunk_count: int
    embedded_count: int


class StuckItemsResponse(BaseModel):
    items: List[StuckItem]
    count: int
    timestamp: datetime


class RecoverRequest(BaseModel):
    """
    Recover stuck items.

    Leave `item_ids` empty to recover everything currently stuck.
    """

    item_ids: Optional[List[str]] = Field(
        None,
        max_length=500,
        description="Explicit item ids; omit for all stuck items"
    )
    tenant_id: Optional[str] = Field(None, max_length=36)
    dry_run: bool = Field(False, description="Report proposed actions only")
    force: bool = Field(False, description="Ignore attempt cap and rate limit")


class RecoveryItemResultSchema(BaseModel):
    item_id: str
    outcome: str
    action: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    previous_status: Optional[str] = None
    would_recover: Optional[bool] = None


class RecoverResponse(BaseModel):
    recovered: int
    failed: int
    skipped: int
    total: int
    dry_run: bool
    would_recover: Optional[int] = None
    results: List[RecoveryItemResultSchema]


class RestartResponse(BaseModel):
    item_id: str
    previous_status: str
    status: str
    event: str
    chunks_deleted: int


class ProcessingStatsResponse(BaseModel):
    stats: Dict[str, int]
    tenant_id: Optional[str] = None
    timestamp: datetime


# ========================================
# Tenant Quota
# ========================================

class QuotaResponse(BaseModel):
    tenant_id: str
    tier: str
    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    quota: Dict[str, Any]
    usage: Dict[str, Any]
