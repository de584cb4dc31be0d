"""
Tenant and Usage Ledger Models

Models Included:
----------------
1. Tenant - an account owning media items, with a subscription tier
2. UsageRecord - per-tenant, per-day usage and cost ledger row
3. SubscriptionTier (Enum) - basic / pro / enterprise

Database Tables:
----------------
- tenants
- usage_records: one row per (tenant_id, period); deltas only ever grow

The ledger is append-by-addition: the Quota Ledger issues
`UPDATE ... SET x = x + :delta` and never overwrites a column, so the
rows double as an audit trail. Rows are never deleted.
"""

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Date, Float, ForeignKey, Integer, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mediaflow.db.base import BaseModel, String36, String255, new_uuid


# ================================
# Enums
# ================================

class SubscriptionTier(str, enum.Enum):
    """
    Subscription level of a tenant.

    Determines the numeric quota ceilings (see services.quota_ledger.TIER_LIMITS).
    ENTERPRISE encodes "unlimited" item counts with a sentinel, not a big number.
    """

    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    def __str__(self) -> str:
        return self.value


# ================================
# Tenant Model
# ================================

class Tenant(BaseModel):
    """
    A tenant (creator account) that owns media items.

    Table: tenants
    --------------
    The pipeline only reads tenants: ingestion checks that the tenant exists
    and is active, and the quota ledger reads its tier.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(
        String36,
        primary_key=True,
        default=new_uuid,
        comment="Opaque tenant identifier (UUID4)"
    )

    name: Mapped[str] = mapped_column(
        String255,
        nullable=False,
        comment="Display name"
    )

    tier: Mapped[SubscriptionTier] = mapped_column(
        nullable=False,
        default=SubscriptionTier.BASIC,
        comment="Subscription tier driving quota limits"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive tenants cannot submit new media"
    )

    def __repr__(self) -> str:
        return f"Tenant(id={self.id}, name='{self.name}', tier={self.tier})"


# ================================
# UsageRecord Model
# ================================

class UsageRecord(BaseModel):
    """
    Per-tenant, per-day usage ledger row.

    Table: usage_records
    --------------------
    Created lazily on the first usage event of a day, then updated
    additively. Monthly figures are summed on read.

    Columns:
    --------
    - storage_bytes / items_count: admission deltas (uploads)
    - processing_minutes: transcribed audio minutes
    - embedding_tokens: tokens sent to the embedding provider
    - *_cost: currency deltas per cost category
    """

    __tablename__ = "usage_records"

    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning tenant"
    )

    period: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Ledger day (UTC)"
    )

    storage_bytes: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0",
        comment="Bytes admitted to storage"
    )
    items_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
        comment="Media items admitted"
    )
    processing_minutes: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, server_default="0",
        comment="Transcribed minutes"
    )
    embedding_tokens: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default="0",
        comment="Tokens embedded"
    )

    transcription_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0"), server_default="0",
        comment="Transcription cost (USD)"
    )
    embedding_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0"), server_default="0",
        comment="Embedding cost (USD)"
    )
    storage_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0"), server_default="0",
        comment="Storage cost (USD)"
    )

    __table_args__ = (
        UniqueConstraint(
            'tenant_id',
            'period',
            name='uq_usage_record_tenant_period'
        ),
    )

    def __repr__(self) -> str:
        return f"UsageRecord(tenant_id={self.tenant_id}, period={self.period})"

    @property
    def total_cost(self) -> Decimal:
        return (
            Decimal(self.transcription_cost or 0)
            + Decimal(self.embedding_cost or 0)
            + Decimal(self.storage_cost or 0)
        )
