"""共通依存関数: 呼び出し元の識別とサービス取得

認証は上流のゲートウェイで済んでおり、クライアントIDと操作者IDは
ヘッダーで渡される。
"""
from typing import Optional

from fastapi import Header, HTTPException, Request

from leiloom_billing.core.logging import bind_client
from leiloom_billing.services.pending_payments import PendingPaymentRegistry
from leiloom_billing.services.plan_catalog import PlanCatalog
from leiloom_billing.services.subscription_ledger import SubscriptionLedger
from leiloom_billing.services.subscription_orchestrator import SubscriptionOrchestrator


async def require_client(x_client_id: Optional[str] = Header(default=None)) -> str:
    """クライアントID必須。なければ401"""
    if not x_client_id:
        raise HTTPException(status_code=401, detail="クライアントが特定できません")
    bind_client(x_client_id)
    return x_client_id


async def require_operator(x_operator_id: Optional[str] = Header(default=None)) -> str:
    """管理画面の操作者ID必須。なければ403"""
    if not x_operator_id:
        raise HTTPException(status_code=403, detail="管理者権限が必要です")
    return x_operator_id


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_ledger(request: Request) -> SubscriptionLedger:
    return request.app.state.ledger


def get_payments(request: Request) -> PendingPaymentRegistry:
    return request.app.state.payments


def get_orchestrator(request: Request) -> SubscriptionOrchestrator:
    return request.app.state.orchestrator
