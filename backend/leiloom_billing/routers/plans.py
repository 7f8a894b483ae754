"""プランAPI (一覧・選択可能プラン・期間プレビュー)"""
from datetime import date, datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends

from leiloom_billing.routers.deps import get_catalog, get_ledger, require_client
from leiloom_billing.schemas.subscription import EligiblePlanResponse, PeriodPreviewResponse, PlanResponse
from leiloom_billing.services import billing_period
from leiloom_billing.services.plan_catalog import PlanCatalog
from leiloom_billing.services.subscription_ledger import SubscriptionLedger, is_upgrade_over

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=list[PlanResponse])
async def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """有効プラン一覧"""
    plans = await catalog.list_active_plans()
    return [PlanResponse.model_validate(p) for p in plans]


@router.get("/eligible", response_model=list[EligiblePlanResponse])
async def list_eligible_plans(
    client_id: str = Depends(require_client),
    catalog: PlanCatalog = Depends(get_catalog),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """クライアントが選択可能なプラン (トライアル利用済みならトライアルを除外)"""
    plans = await catalog.list_eligible_plans(client_id)
    current = await ledger.get_current_entitlement(client_id)
    return [
        EligiblePlanResponse(
            **PlanResponse.model_validate(p).model_dump(),
            is_upgrade=is_upgrade_over(current, p),
        )
        for p in plans
    ]


@router.get("/{plan_id}/preview", response_model=PeriodPreviewResponse)
async def preview_period(
    plan_id: str,
    starts_at: Optional[Union[datetime, date]] = None,
    catalog: PlanCatalog = Depends(get_catalog),
):
    """開始日を選んだときの有効期限プレビュー"""
    plan = await catalog.get_plan(plan_id)
    start, expires = billing_period.preview_period(starts_at or catalog.ledger.clock(), plan)
    return PeriodPreviewResponse(
        plan_id=plan.id,
        duration_days=plan.duration_days,
        starts_at=start,
        expires_at=expires,
    )
