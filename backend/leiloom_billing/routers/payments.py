"""決済ルーター: 未決済一覧, サマリー, 決済確定の待機"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from leiloom_billing.core.logging import get_logger
from leiloom_billing.routers.deps import get_orchestrator, get_payments, require_client
from leiloom_billing.schemas.subscription import PaymentResponse, PaymentSummaryResponse, PaymentWaitResponse
from leiloom_billing.services.pending_payments import PendingPaymentRegistry
from leiloom_billing.services.subscription_orchestrator import SubscriptionOrchestrator

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = get_logger(__name__)

# 切断確認の間隔 (秒)
DISCONNECT_CHECK_SECONDS = 1.0


@router.get("/pending", response_model=list[PaymentResponse])
async def list_pending_payments(
    client_id: str = Depends(require_client),
    payments: PendingPaymentRegistry = Depends(get_payments),
):
    """未決済 (PENDING / PROCESSING) の支払い"""
    pending = await payments.list_pending(client_id)
    return [PaymentResponse.from_intent(p) for p in pending]


@router.get("/summary", response_model=PaymentSummaryResponse)
async def get_payment_summary(
    client_id: str = Depends(require_client),
    payments: PendingPaymentRegistry = Depends(get_payments),
):
    summary = await payments.summarize(client_id)
    return PaymentSummaryResponse.model_validate(summary)


@router.get("/{payment_id}/wait", response_model=PaymentWaitResponse)
async def wait_for_payment(
    payment_id: str,
    request: Request,
    max_attempts: Optional[int] = Query(default=None, ge=1),
    client_id: str = Depends(require_client),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """決済の確定をロングポーリングで待つ

    クライアントが切断したら待機をやめる。ポーラーは他に待機者がいなければ止まる。
    """
    waiter = asyncio.create_task(orchestrator.await_confirmation(client_id, payment_id, max_attempts))
    try:
        while not waiter.done():
            if await request.is_disconnected():
                logger.info(f"クライアント切断のため待機を中止: client_id={client_id}, payment_id={payment_id}")
                waiter.cancel()
                await asyncio.wait({waiter})
                break
            await asyncio.wait({waiter}, timeout=DISCONNECT_CHECK_SECONDS)
    finally:
        if not waiter.done():
            waiter.cancel()

    # 切断、または選択のやり直しでポーラーが止められた
    if waiter.cancelled():
        return PaymentWaitResponse(payment_id=payment_id, attempts=0, refreshed=False, discarded=True)

    outcome = waiter.result()
    return PaymentWaitResponse(
        payment_id=outcome.intent_id,
        status=outcome.status,
        attempts=outcome.attempts,
        refreshed=outcome.refreshed,
        discarded=outcome.discarded,
    )
