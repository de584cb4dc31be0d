"""
Quota Ledger

Per-tenant storage / item / monthly-ingestion limits and the usage cost
ledger.

Two questions are answered here:
- "May this tenant admit another item?"  → check_quota() (read-only)
- "Record what a stage just cost."       → record_usage() (additive upsert)

check_quota() is called by the Ingestion Normalizer before an item exists.
record_usage() is called after each cost-incurring stage has committed, never
before, so a failed stage never charges.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.config import settings
from mediaflow.core.logging import get_logger
from mediaflow.db.base import utcnow
from mediaflow.models.media import MediaItem
from mediaflow.models.tenant import SubscriptionTier, Tenant, UsageRecord

logger = get_logger(__name__)


class QuotaExceededError(Exception):
    """Raised when admission would exceed the tenant's tier limits."""

    def __init__(self, reasons: List[str]):
        self.reasons = reasons
        super().__init__("; ".join(reasons) or "Quota exceeded")


class TenantNotFoundError(LookupError):
    """Raised for unknown (or inactive) tenant ids."""


# ========================================
# Tier Limits
# ========================================

UNLIMITED = -1

GB = 1024 ** 3


@dataclass(frozen=True)
class TierLimits:
    storage_bytes: int
    max_items: int
    monthly_items: int


TIER_LIMITS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.BASIC: TierLimits(storage_bytes=1 * GB, max_items=50, monthly_items=20),
    SubscriptionTier.PRO: TierLimits(storage_bytes=10 * GB, max_items=500, monthly_items=100),
    SubscriptionTier.ENTERPRISE: TierLimits(
        storage_bytes=100 * GB,
        max_items=UNLIMITED,
        monthly_items=UNLIMITED,
    ),
}

UPGRADE_SUGGESTION: Dict[SubscriptionTier, Optional[str]] = {
    SubscriptionTier.BASIC: "Pro",
    SubscriptionTier.PRO: "Enterprise",
    SubscriptionTier.ENTERPRISE: None,
}


# ========================================
# Cost Rates
# ========================================

class CostCategory(str, Enum):
    TRANSCRIPTION = "transcription"  # per audio minute
    EMBEDDING = "embedding"  # per 1K tokens
    STORAGE = "storage"  # per GB-month

    def __str__(self) -> str:
        return self.value


COST_RATES: Dict[CostCategory, Decimal] = {
    CostCategory.TRANSCRIPTION: Decimal("0.006"),
    CostCategory.EMBEDDING: Decimal("0.0001"),
    CostCategory.STORAGE: Decimal("0.021"),
}

_COST_PRECISION = Decimal("0.000001")


def estimate_cost(category: CostCategory, quantity: float) -> Decimal:
    """
    Estimate the cost of an operation.

    Args:
        category: Cost category
        quantity: minutes (transcription), tokens (embedding) or bytes
            stored for one month (storage)

    Returns:
        Cost in USD, rounded to 6 decimal places
    """
    if quantity < 0:
        raise ValueError(f"Cost quantity must be non-negative, got {quantity}")

    amount = Decimal(str(quantity))
    rate = COST_RATES[category]

    if category == CostCategory.EMBEDDING:
        amount = amount / Decimal(1000)
    elif category == CostCategory.STORAGE:
        amount = amount / Decimal(GB)

    return (amount * rate).quantize(_COST_PRECISION, rounding=ROUND_HALF_UP)


def format_bytes(num_bytes: int) -> str:
    """1536 -> '1.50 KB'"""
    if num_bytes == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}"


# ========================================
# Usage Deltas
# ========================================

@dataclass(frozen=True)
class UsageDeltas:
    """
    Additive usage increments for one ledger row.

    All values must be non-negative; the ledger only ever grows.
    """

    storage_bytes: int = 0
    items_count: int = 0
    processing_minutes: float = 0.0
    embedding_tokens: int = 0
    transcription_cost: Decimal = Decimal("0")
    embedding_cost: Decimal = Decimal("0")
    storage_cost: Decimal = Decimal("0")

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0:
                raise ValueError(f"Usage delta '{f.name}' must be non-negative, got {value}")

    def as_columns(self) -> Dict[str, object]:
        """Non-zero deltas keyed by UsageRecord column name."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}

    @classmethod
    def for_admission(cls, file_size_bytes: int = 0) -> "UsageDeltas":
        return cls(
            storage_bytes=file_size_bytes,
            items_count=1,
            storage_cost=estimate_cost(CostCategory.STORAGE, file_size_bytes),
        )

    @classmethod
    def for_transcription(cls, minutes: float) -> "UsageDeltas":
        return cls(
            processing_minutes=minutes,
            transcription_cost=estimate_cost(CostCategory.TRANSCRIPTION, minutes),
        )

    @classmethod
    def for_embedding(cls, tokens: int) -> "UsageDeltas":
        return cls(
            embedding_tokens=tokens,
            embedding_cost=estimate_cost(CostCategory.EMBEDDING, tokens),
        )


# ========================================
# Quota Check
# ========================================

@dataclass
class CurrentUsage:
    storage_bytes: int
    item_count: int
    monthly_count: int


@dataclass
class QuotaCheck:
    allowed: bool
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    quota_info: Dict = field(default_factory=dict)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _percent(used: int, limit: int) -> Optional[float]:
    if limit == UNLIMITED:
        return None
    if limit == 0:
        return 100.0
    return round(used / limit * 100, 2)


async def get_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


async def get_current_usage(
    db: AsyncSession,
    tenant_id: str,
    now: Optional[datetime] = None,
) -> CurrentUsage:
    """Storage, item count and this month's admissions from non-deleted items."""
    now = now or utcnow()

    totals = await db.execute(
        select(
            func.coalesce(func.sum(MediaItem.file_size_bytes), 0),
            func.count(MediaItem.id),
        ).where(
            MediaItem.tenant_id == tenant_id,
            MediaItem.is_deleted.is_(False),
        )
    )
    storage_bytes, item_count = totals.one()

    monthly_count = await db.scalar(
        select(func.count(MediaItem.id)).where(
            MediaItem.tenant_id == tenant_id,
            MediaItem.is_deleted.is_(False),
            MediaItem.created_at >= _month_start(now),
        )
    )

    return CurrentUsage(
        storage_bytes=int(storage_bytes or 0),
        item_count=int(item_count or 0),
        monthly_count=int(monthly_count or 0),
    )


def evaluate_quota(
    tier: SubscriptionTier,
    usage: CurrentUsage,
    proposed_bytes: int = 0,
) -> QuotaCheck:
    """
    Pure part of the quota check: usage + one more item against tier limits.

    Hard limits produce `reasons` (admission refused); crossing the warning
    (80%) or critical (90%) threshold of any limit produces `warnings` only.
    """
    if proposed_bytes < 0:
        raise ValueError("proposed_bytes must be non-negative")

    limits = TIER_LIMITS[tier]
    upgrade = UPGRADE_SUGGESTION[tier]
    upgrade_hint = f" Upgrade to {upgrade} for higher limits." if upgrade else ""

    projected_storage = usage.storage_bytes + proposed_bytes
    projected_items = usage.item_count + 1
    projected_monthly = usage.monthly_count + 1

    reasons: List[str] = []
    warnings: List[str] = []

    if limits.storage_bytes != UNLIMITED and projected_storage > limits.storage_bytes:
        reasons.append(
            f"Storage limit exceeded: {format_bytes(projected_storage)} of "
            f"{format_bytes(limits.storage_bytes)} would be used.{upgrade_hint}"
        )
    if limits.max_items != UNLIMITED and projected_items > limits.max_items:
        reasons.append(
            f"Item limit reached: {usage.item_count} of {limits.max_items} items.{upgrade_hint}"
        )
    if limits.monthly_items != UNLIMITED and projected_monthly > limits.monthly_items:
        reasons.append(
            f"Monthly upload limit reached: {usage.monthly_count} of "
            f"{limits.monthly_items} this month.{upgrade_hint}"
        )

    storage_pct = _percent(projected_storage, limits.storage_bytes)
    items_pct = _percent(projected_items, limits.max_items)
    monthly_pct = _percent(projected_monthly, limits.monthly_items)

    critical = settings.QUOTA_CRITICAL_THRESHOLD * 100
    warning = settings.QUOTA_WARNING_THRESHOLD * 100

    for label, pct in (("storage", storage_pct), ("item", items_pct), ("monthly upload", monthly_pct)):
        if pct is None or pct > 100:
            continue
        if pct >= critical:
            warnings.append(f"Critical: {pct:.0f}% of {label} quota used.{upgrade_hint}")
        elif pct >= warning:
            warnings.append(f"Approaching {label} limit: {pct:.0f}% used.")

    known = [p for p in (storage_pct, items_pct, monthly_pct) if p is not None]
    peak = max(known) if known else 0.0
    if peak >= critical:
        health = "critical"
    elif peak >= warning:
        health = "warning"
    else:
        health = "healthy"

    quota_info = {
        "tier": tier.value,
        "storage": {
            "used_bytes": usage.storage_bytes,
            "limit_bytes": limits.storage_bytes,
            "used_percent": _percent(usage.storage_bytes, limits.storage_bytes),
            "used_formatted": format_bytes(usage.storage_bytes),
        },
        "items": {
            "used": usage.item_count,
            "limit": limits.max_items,
            "used_percent": _percent(usage.item_count, limits.max_items),
        },
        "monthly_uploads": {
            "used": usage.monthly_count,
            "limit": limits.monthly_items,
            "used_percent": _percent(usage.monthly_count, limits.monthly_items),
        },
        "health_status": health,
        "needs_cleanup": (storage_pct or 0) >= critical,
        "upgrade_suggestion": upgrade,
    }

    return QuotaCheck(
        allowed=not reasons,
        reasons=reasons,
        warnings=warnings,
        quota_info=quota_info,
    )


async def check_quota(
    db: AsyncSession,
    tenant_id: str,
    proposed_bytes: int = 0,
    now: Optional[datetime] = None,
) -> QuotaCheck:
    """
    Check whether `tenant_id` may admit one more item of `proposed_bytes`.

    Reads only; running it twice against the same state gives the same
    answer.

    Raises:
        TenantNotFoundError: unknown tenant
    """
    tenant = await get_tenant(db, tenant_id)
    usage = await get_current_usage(db, tenant_id, now=now)
    result = evaluate_quota(tenant.tier, usage, proposed_bytes)

    if not result.allowed:
        logger.warning("quota_check_denied", tenant_id=tenant_id, reasons=result.reasons)
    elif result.warnings:
        logger.info("quota_check_warnings", tenant_id=tenant_id, warnings=result.warnings)

    return result


# ========================================
# Usage Recording
# ========================================

async def record_usage(
    db: AsyncSession,
    tenant_id: str,
    deltas: UsageDeltas,
    period: Optional[date] = None,
) -> None:
    """
    Add `deltas` to the tenant's ledger row for `period` (default: today UTC).

    The row is created lazily. Updates are `SET col = col + :delta` so
    concurrent writers never overwrite each other; a lost INSERT race is
    retried as an UPDATE. Commits.
    """
    period = period or utcnow().date()
    values = deltas.as_columns()
    if not values:
        return

    increment = (
        update(UsageRecord)
        .where(UsageRecord.tenant_id == tenant_id, UsageRecord.period == period)
        .values({name: getattr(UsageRecord, name) + value for name, value in values.items()})
        .execution_options(synchronize_session=False)
    )

    result = await db.execute(increment)
    if result.rowcount == 0:
        try:
            async with db.begin_nested():
                db.add(UsageRecord(tenant_id=tenant_id, period=period, **values))
        except IntegrityError:
            # Another writer created the row first
            await db.execute(increment)

    await db.commit()

    logger.info(
        "usage_recorded",
        tenant_id=tenant_id,
        period=period.isoformat(),
        **{name: str(value) for name, value in values.items()},
    )


async def get_usage_summary(
    db: AsyncSession,
    tenant_id: str,
    month: Optional[date] = None,
) -> Dict:
    """
    Aggregate a tenant's ledger rows for one calendar month.

    Returns:
        Totals per column plus total_cost, all costs as strings.
    """
    month = (month or utcnow().date()).replace(day=1)
    next_month = (month.replace(year=month.year + 1, month=1) if month.month == 12
                  else month.replace(month=month.month + 1))

    result = await db.execute(
        select(
            func.coalesce(func.sum(UsageRecord.storage_bytes), 0),
            func.coalesce(func.sum(UsageRecord.items_count), 0),
            func.coalesce(func.sum(UsageRecord.processing_minutes), 0),
            func.coalesce(func.sum(UsageRecord.embedding_tokens), 0),
            func.coalesce(func.sum(UsageRecord.transcription_cost), 0),
            func.coalesce(func.sum(UsageRecord.embedding_cost), 0),
            func.coalesce(func.sum(UsageRecord.storage_cost), 0),
        ).where(
            UsageRecord.tenant_id == tenant_id,
            UsageRecord.period >= month,
            UsageRecord.period < next_month,
        )
    )
    (storage_bytes, items_count, minutes, tokens,
     transcription_cost, embedding_cost, storage_cost) = result.one()

    costs = {
        "transcription": Decimal(str(transcription_cost)).quantize(_COST_PRECISION),
        "embedding": Decimal(str(embedding_cost)).quantize(_COST_PRECISION),
        "storage": Decimal(str(storage_cost)).quantize(_COST_PRECISION),
    }

    return {
        "tenant_id": tenant_id,
        "month": month.isoformat(),
        "storage_bytes": int(storage_bytes),
        "items_count": int(items_count),
        "processing_minutes": round(float(minutes), 2),
        "embedding_tokens": int(tokens),
        "costs": {name: str(value) for name, value in costs.items()},
        "total_cost": str(sum(costs.values())),
    }
