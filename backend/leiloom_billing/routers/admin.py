"""管理画面: クライアントへのプラン手動付与"""
from fastapi import APIRouter, Depends

from leiloom_billing.routers.deps import get_orchestrator, require_operator
from leiloom_billing.schemas.subscription import GrantPlanRequest, GrantPlanResponse, PeriodResponse
from leiloom_billing.services.subscription_orchestrator import SubscriptionOrchestrator

router = APIRouter(prefix="/api/admin/clients", tags=["admin-clients"])


@router.post("/{client_id}/plans", response_model=GrantPlanResponse)
async def grant_plan(
    client_id: str,
    req: GrantPlanRequest,
    operator_id: str = Depends(require_operator),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """決済なしでプランを付与し、その期間を現行にする"""
    enrollment, period = await orchestrator.grant_plan(
        client_id, req.plan_id, req.starts_at, operator_id=operator_id
    )
    return GrantPlanResponse(
        enrollment_id=enrollment.id,
        plan_id=enrollment.plan_id,
        period=PeriodResponse.model_validate(period),
    )
