"""
Tests for the quota ledger.

This test module verifies:
1. Cost estimation per category
2. Tier limit evaluation (hard limits, warning thresholds, unlimited tiers)
3. Current usage aggregation from media items
4. Additive usage recording and the monthly summary
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from mediaflow.models.tenant import SubscriptionTier, UsageRecord
from mediaflow.services.quota_ledger import (
    GB,
    CostCategory,
    CurrentUsage,
    TenantNotFoundError,
    UsageDeltas,
    check_quota,
    estimate_cost,
    evaluate_quota,
    format_bytes,
    get_current_usage,
    get_usage_summary,
    record_usage,
)
from tests.conftest import NOW


class TestCostEstimation:

    def test_transcription_is_per_minute(self):
        assert estimate_cost(CostCategory.TRANSCRIPTION, 10) == Decimal("0.060000")

    def test_embedding_is_per_thousand_tokens(self):
        assert estimate_cost(CostCategory.EMBEDDING, 1000) == Decimal("0.000100")
        assert estimate_cost(CostCategory.EMBEDDING, 25000) == Decimal("0.002500")

    def test_storage_is_per_gb_month(self):
        assert estimate_cost(CostCategory.STORAGE, GB) == Decimal("0.021000")

    def test_zero_quantity_costs_nothing(self):
        assert estimate_cost(CostCategory.TRANSCRIPTION, 0) == Decimal("0")

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValueError):
            estimate_cost(CostCategory.EMBEDDING, -1)

    def test_format_bytes(self):
        assert format_bytes(0) == "0 Bytes"
        assert format_bytes(1536) == "1.50 KB"
        assert format_bytes(GB) == "1.00 GB"


class TestUsageDeltas:

    def test_negative_delta_rejected(self):
        with pytest.raises(ValueError, match="embedding_tokens"):
            UsageDeltas(embedding_tokens=-5)

    def test_as_columns_drops_zero_values(self):
        deltas = UsageDeltas.for_transcription(2.5)

        columns = deltas.as_columns()

        assert set(columns) == {"processing_minutes", "transcription_cost"}
        assert columns["transcription_cost"] == Decimal("0.015000")

    def test_admission_counts_one_item(self):
        deltas = UsageDeltas.for_admission(file_size_bytes=2048)

        assert deltas.items_count == 1
        assert deltas.storage_bytes == 2048


class TestEvaluateQuota:
    """Pure limit evaluation against a usage snapshot."""

    def test_fresh_tenant_is_allowed_without_warnings(self):
        result = evaluate_quota(SubscriptionTier.BASIC, CurrentUsage(0, 0, 0), proposed_bytes=1024)

        assert result.allowed
        assert result.reasons == []
        assert result.warnings == []
        assert result.quota_info["health_status"] == "healthy"
        assert result.quota_info["upgrade_suggestion"] == "Pro"

    def test_storage_limit_refuses_with_upgrade_hint(self):
        usage = CurrentUsage(storage_bytes=GB - 100, item_count=1, monthly_count=1)

        result = evaluate_quota(SubscriptionTier.BASIC, usage, proposed_bytes=1000)

        assert not result.allowed
        assert any("Storage limit exceeded" in reason for reason in result.reasons)
        assert all("Upgrade to Pro" in reason for reason in result.reasons)

    def test_item_limit_refuses(self):
        result = evaluate_quota(SubscriptionTier.BASIC, CurrentUsage(0, 50, 0))

        assert not result.allowed
        assert result.reasons == ["Item limit reached: 50 of 50 items. Upgrade to Pro for higher limits."]

    def test_monthly_limit_refuses(self):
        result = evaluate_quota(SubscriptionTier.PRO, CurrentUsage(0, 10, 100))

        assert not result.allowed
        assert "Monthly upload limit reached" in result.reasons[0]
        assert "Upgrade to Enterprise" in result.reasons[0]

    def test_warning_threshold(self):
        # 41 of 50 items after admission = 82%
        result = evaluate_quota(SubscriptionTier.BASIC, CurrentUsage(0, 40, 0))

        assert result.allowed
        assert result.warnings == ["Approaching item limit: 82% used."]
        assert result.quota_info["health_status"] == "warning"

    def test_critical_threshold(self):
        # 46 of 50 items after admission = 92%
        result = evaluate_quota(SubscriptionTier.BASIC, CurrentUsage(0, 45, 0))

        assert result.allowed
        assert result.warnings[0].startswith("Critical: 92% of item quota used.")
        assert result.quota_info["health_status"] == "critical"

    def test_enterprise_has_no_item_limits(self):
        result = evaluate_quota(SubscriptionTier.ENTERPRISE, CurrentUsage(0, 100_000, 10_000))

        assert result.allowed
        assert result.quota_info["items"]["used_percent"] is None
        assert result.quota_info["upgrade_suggestion"] is None

    def test_enterprise_storage_is_still_capped(self):
        result = evaluate_quota(SubscriptionTier.ENTERPRISE, CurrentUsage(100 * GB, 1, 1), proposed_bytes=1)

        assert not result.allowed
        assert "Upgrade to" not in result.reasons[0]

    def test_negative_proposed_bytes_rejected(self):
        with pytest.raises(ValueError):
            evaluate_quota(SubscriptionTier.BASIC, CurrentUsage(0, 0, 0), proposed_bytes=-1)


@pytest.mark.asyncio
class TestQuotaAgainstDatabase:

    async def test_unknown_tenant(self, db_session):
        with pytest.raises(TenantNotFoundError):
            await check_quota(db_session, "missing-tenant")

    async def test_current_usage_counts_live_items(self, db_session, tenant, make_media_item):
        await make_media_item(file_size_bytes=1000)
        await make_media_item(file_size_bytes=500, storage_path="b.mp4")
        await make_media_item(file_size_bytes=9999, storage_path="c.mp4", is_deleted=True)
        await make_media_item(age_minutes=60 * 24 * 40, file_size_bytes=250, storage_path="d.mp4")

        usage = await get_current_usage(db_session, tenant.id, now=NOW)

        assert usage.storage_bytes == 1750
        assert usage.item_count == 3
        # The 40-day-old item belongs to last month
        assert usage.monthly_count == 2

    async def test_check_quota_is_read_only(self, db_session, tenant, make_media_item):
        await make_media_item()

        first = await check_quota(db_session, tenant.id, proposed_bytes=10, now=NOW)
        second = await check_quota(db_session, tenant.id, proposed_bytes=10, now=NOW)

        assert first.allowed and second.allowed
        assert first.quota_info == second.quota_info
        rows = (await db_session.execute(select(UsageRecord))).scalars().all()
        assert rows == []


@pytest.mark.asyncio
class TestUsageRecording:

    async def test_first_event_creates_row_then_increments(self, db_session, tenant):
        period = NOW.date()

        await record_usage(db_session, tenant.id, UsageDeltas.for_transcription(2.0), period=period)
        await record_usage(db_session, tenant.id, UsageDeltas.for_transcription(3.0), period=period)
        await record_usage(db_session, tenant.id, UsageDeltas.for_embedding(1500), period=period)

        rows = (await db_session.execute(
            select(UsageRecord).where(UsageRecord.tenant_id == tenant.id)
        )).scalars().all()
        assert len(rows) == 1

        await db_session.refresh(rows[0])
        assert rows[0].processing_minutes == pytest.approx(5.0)
        assert rows[0].embedding_tokens == 1500

    async def test_empty_deltas_write_nothing(self, db_session, tenant):
        await record_usage(db_session, tenant.id, UsageDeltas(), period=NOW.date())

        rows = (await db_session.execute(select(UsageRecord))).scalars().all()
        assert rows == []

    async def test_monthly_summary(self, db_session, tenant):
        june = date(2025, 6, 1)
        await record_usage(db_session, tenant.id, UsageDeltas.for_admission(1024), period=june)
        await record_usage(db_session, tenant.id, UsageDeltas.for_transcription(2.0), period=june + timedelta(days=10))
        await record_usage(db_session, tenant.id, UsageDeltas.for_embedding(10_000), period=june + timedelta(days=10))
        # July must not leak into June
        await record_usage(db_session, tenant.id, UsageDeltas.for_transcription(50.0), period=date(2025, 7, 1))

        summary = await get_usage_summary(db_session, tenant.id, month=date(2025, 6, 20))

        assert summary["month"] == "2025-06-01"
        assert summary["items_count"] == 1
        assert summary["storage_bytes"] == 1024
        assert summary["processing_minutes"] == 2.0
        assert summary["embedding_tokens"] == 10_000
        assert summary["costs"]["transcription"] == "0.012000"
        assert summary["costs"]["embedding"] == "0.001000"
        assert Decimal(summary["total_cost"]) == (
            Decimal("0.012") + Decimal("0.001") + Decimal(summary["costs"]["storage"])
        )

    async def test_summary_for_month_without_usage(self, db_session, tenant):
        summary = await get_usage_summary(db_session, tenant.id, month=date(2025, 12, 5))

        assert summary["month"] == "2025-12-01"
        assert summary["items_count"] == 0
        assert Decimal(summary["total_cost"]) == Decimal("0")
