from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator, model_validator

from leiloom_billing.models.base import LedgerModel, as_utc
from leiloom_billing.models.plan import PlanRef


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PIX = "PIX"
    BANK_SLIP = "BANK_SLIP"
    BANK_TRANSFER = "BANK_TRANSFER"


# 新プラン選択時にキャンセル対象となる未確定ステータス
IN_FLIGHT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

# ポーリングを終了するステータス
TERMINAL_STATUSES = (PaymentStatus.PAID, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)

EXTERNAL_REFERENCE_PREFIX = "payment_"


def external_reference_for(intent_id: str) -> str:
    """ゲートウェイのコールバックを決済に対応付ける参照文字列"""
    return f"{EXTERNAL_REFERENCE_PREFIX}{intent_id}"


def intent_id_from_reference(reference: str) -> Optional[str]:
    if not reference or not reference.startswith(EXTERNAL_REFERENCE_PREFIX):
        return None
    return reference[len(EXTERNAL_REFERENCE_PREFIX):] or None


class PaymentIntent(LedgerModel):
    """契約に紐づく決済の試行 (Payment)"""

    id: str
    enrollment_id: str = Field(alias="clientPlanId")
    client_id: Optional[str] = None
    total_amount: int = Field(ge=0)
    paid_amount: int = 0
    installment_count: int = Field(default=1, ge=1, alias="installments")
    payment_method: PaymentMethod = PaymentMethod.PIX
    status: PaymentStatus
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    absorbs_gateway_fee: bool = Field(default=False, alias="absorbTax")
    external_id: Optional[str] = None
    plan: Optional[PlanRef] = None

    @model_validator(mode="before")
    @classmethod
    def lift_embedded_plan(cls, data):
        # 台帳APIは clientPlan.plan にプラン情報を埋め込む
        if isinstance(data, dict) and "plan" not in data:
            client_plan = data.get("clientPlan") or {}
            if isinstance(client_plan, dict) and client_plan.get("plan"):
                data = {**data, "plan": client_plan["plan"]}
        return data

    @field_validator("due_date", "paid_at", "created_at")
    @classmethod
    def normalize_utc(cls, value):
        return as_utc(value)

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def references_trial(self) -> bool:
        return bool(self.plan and self.plan.is_trial)

    @property
    def external_reference(self) -> str:
        return external_reference_for(self.id)
