"""
Tenant quota endpoints.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Query

from mediaflow.db.deps import DBSession
from mediaflow.schemas.admin import QuotaResponse
from mediaflow.services.quota_ledger import check_quota, get_tenant, get_usage_summary

router = APIRouter(prefix="/tenants", tags=["Tenants"])


@router.get(
    "/{tenant_id}/quota",
    response_model=QuotaResponse,
    summary="Quota status and current-month usage",
)
async def tenant_quota(
    tenant_id: str,
    db: DBSession,
    month: Optional[date] = Query(None, description="Any day of the month to summarize"),
) -> QuotaResponse:
    """
    Would one more (empty) item be admitted, how close is the tenant to
    each limit, and what has this month cost so far.
    """
    tenant = await get_tenant(db, tenant_id)
    quota = await check_quota(db, tenant_id)
    usage = await get_usage_summary(db, tenant_id, month=month)

    return QuotaResponse(
        tenant_id=tenant.id,
        tier=str(tenant.tier.value),
        allowed=quota.allowed,
        reasons=quota.reasons,
        warnings=quota.warnings,
        quota=quota.quota_info,
        usage=usage,
    )
