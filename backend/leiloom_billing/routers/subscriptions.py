"""購読ルーター: 現行期間, プラン選択, 期間の再有効化"""
from fastapi import APIRouter, Depends

from leiloom_billing.core.logging import get_logger
from leiloom_billing.routers.deps import get_ledger, get_orchestrator, require_client
from leiloom_billing.schemas.subscription import (
    CurrentSubscriptionResponse,
    PeriodResponse,
    PlanSelectionResponse,
    SelectPlanRequest,
)
from leiloom_billing.services.subscription_ledger import SubscriptionLedger
from leiloom_billing.services.subscription_orchestrator import PlanSelection, SubscriptionOrchestrator

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = get_logger(__name__)


def _selection_response(selection: PlanSelection) -> PlanSelectionResponse:
    return PlanSelectionResponse(
        state=selection.state.value,
        plan_id=selection.plan_id,
        enrollment_id=selection.enrollment.id if selection.enrollment else None,
        period=PeriodResponse.model_validate(selection.period) if selection.period else None,
        payment_id=selection.intent.id if selection.intent else None,
        checkout_url=selection.checkout_url,
        external_reference=selection.external_reference,
        cancelled_payment_ids=selection.cancelled_payment_ids,
        history=[state.value for state, _ in selection.history],
    )


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    client_id: str = Depends(require_client),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """現行期間と状態表示 (トライアル終了間近・期限間近など)"""
    status = await ledger.get_plan_status(client_id)
    return CurrentSubscriptionResponse(
        status=status.kind.value,
        days_remaining=status.days_remaining,
        period=PeriodResponse.model_validate(status.period) if status.period else None,
    )


@router.get("/reactivatable", response_model=list[PeriodResponse])
async def list_reactivatable_periods(
    client_id: str = Depends(require_client),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """再有効化できる期間 (新しい順)"""
    periods = await ledger.get_reactivatable_periods(client_id)
    return [PeriodResponse.model_validate(p) for p in periods]


@router.post("/select", response_model=PlanSelectionResponse)
async def select_plan(
    req: SelectPlanRequest,
    client_id: str = Depends(require_client),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """プラン選択

    未決済の支払いがある場合は 409 と対象一覧を返す。
    利用者に確認したうえで confirm_supersede=true で再送する。
    """
    selection = await orchestrator.select_plan(
        client_id,
        req.plan_id,
        confirm_supersede=req.confirm_supersede,
        payment_method=req.payment_method,
        installments=req.installments,
        watch=req.watch,
    )
    return _selection_response(selection)


@router.post("/periods/{period_id}/reactivate", response_model=PeriodResponse)
async def reactivate_period(
    period_id: str,
    client_id: str = Depends(require_client),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """期限内の期間を現行に戻す"""
    period = await orchestrator.reactivate_period(client_id, period_id)
    return PeriodResponse.model_validate(period)
