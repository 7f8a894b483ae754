"""Stripe API操作サービス (チェックアウトへの引き渡し)

決済ステータスの正本は台帳API。ここでは参照文字列と金額を渡して
Checkout Session を作るだけで、結果は台帳API側から読み戻す。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import stripe

from leiloom_billing.core.config import settings
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import PaymentIntent, PaymentMethod, PlanDefinition

logger = get_logger(__name__)

# Stripe Checkout が分割払いを受け付ける支払い方法
CARD_METHODS = (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD)


@dataclass(frozen=True)
class CheckoutHandoff:
    checkout_id: str
    url: Optional[str]
    external_reference: str


class CheckoutGateway(ABC):
    """決済ゲートウェイのインターフェース"""

    @abstractmethod
    async def create_checkout(self, intent: PaymentIntent, plan: PlanDefinition) -> CheckoutHandoff:
        """決済インテントのチェックアウトを開始"""


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY


def build_checkout_params(intent: PaymentIntent, plan: PlanDefinition, success_url: str, cancel_url: str) -> dict:
    """Checkout Session 作成パラメータ (金額は最小通貨単位のまま渡す)"""
    reference = intent.external_reference
    params = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": settings.CHECKOUT_CURRENCY,
                    "unit_amount": intent.total_amount,
                    "product_data": {
                        "name": plan.name,
                        "description": plan.description or plan.name,
                    },
                },
                "quantity": 1,
            }
        ],
        "client_reference_id": reference,
        "metadata": {
            "external_reference": reference,
            "payment_id": intent.id,
            "client_plan_id": intent.enrollment_id,
            "plan_id": plan.id,
        },
        "payment_intent_data": {"metadata": {"external_reference": reference}},
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    if intent.installment_count > 1 and intent.payment_method in CARD_METHODS:
        params["payment_method_options"] = {"card": {"installments": {"enabled": True}}}
    return params


class StripeCheckoutGateway(CheckoutGateway):
    def __init__(self, success_url: Optional[str] = None, cancel_url: Optional[str] = None):
        self.success_url = success_url or f"{settings.SITE_URL}/plans?checkout=success"
        self.cancel_url = cancel_url or f"{settings.SITE_URL}/plans?checkout=cancel"

    async def create_checkout(self, intent: PaymentIntent, plan: PlanDefinition) -> CheckoutHandoff:
        _init_stripe()
        params = build_checkout_params(intent, plan, self.success_url, self.cancel_url)
        session = await stripe.checkout.Session.create_async(**params)
        logger.info(
            f"Checkout Session作成: session={session.id}, payment_id={intent.id}, "
            f"amount={intent.total_amount}, installments={intent.installment_count}"
        )
        return CheckoutHandoff(
            checkout_id=session.id,
            url=session.url,
            external_reference=intent.external_reference,
        )
