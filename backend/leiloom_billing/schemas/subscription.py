from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

from leiloom_billing.models import PaymentMethod, PaymentStatus


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int
    duration_days: int
    seat_limit: int
    is_trial: bool
    allow_installments: bool
    max_installments: int
    requires_payment: bool

    model_config = {"from_attributes": True}


class EligiblePlanResponse(PlanResponse):
    # 表示用のラベル。選択の可否には影響しない
    is_upgrade: bool = False


class PeriodPreviewResponse(BaseModel):
    plan_id: str
    duration_days: int
    starts_at: datetime
    expires_at: datetime


class PeriodResponse(BaseModel):
    id: str
    enrollment_id: str
    starts_at: datetime
    expires_at: datetime
    is_current: bool
    is_trial: bool
    was_confirmed: bool

    model_config = {"from_attributes": True}


class CurrentSubscriptionResponse(BaseModel):
    status: str
    days_remaining: Optional[int] = None
    period: Optional[PeriodResponse] = None


class SelectPlanRequest(BaseModel):
    plan_id: str
    confirm_supersede: bool = False
    payment_method: PaymentMethod = PaymentMethod.PIX
    installments: Optional[int] = Field(default=None, ge=1)
    watch: bool = True


class PlanSelectionResponse(BaseModel):
    state: str
    plan_id: str
    enrollment_id: Optional[str] = None
    period: Optional[PeriodResponse] = None
    payment_id: Optional[str] = None
    checkout_url: Optional[str] = None
    external_reference: Optional[str] = None
    cancelled_payment_ids: list[str] = []
    history: list[str] = []


class PaymentResponse(BaseModel):
    id: str
    enrollment_id: str
    total_amount: int
    paid_amount: int
    installment_count: int
    payment_method: PaymentMethod
    status: PaymentStatus
    due_date: Optional[datetime] = None
    plan_name: Optional[str] = None

    @classmethod
    def from_intent(cls, intent) -> "PaymentResponse":
        return cls(
            id=intent.id,
            enrollment_id=intent.enrollment_id,
            total_amount=intent.total_amount,
            paid_amount=intent.paid_amount,
            installment_count=intent.installment_count,
            payment_method=intent.payment_method,
            status=intent.status,
            due_date=intent.due_date,
            plan_name=intent.plan.name if intent.plan else None,
        )


class PaymentSummaryResponse(BaseModel):
    total_paid: int
    total_pending: int
    total_overdue: int
    paid_count: int
    pending_count: int
    overdue_count: int
    next_due_date: Optional[datetime] = None
    next_due_amount: Optional[int] = None

    model_config = {"from_attributes": True}


class PaymentWaitResponse(BaseModel):
    payment_id: str
    status: Optional[PaymentStatus] = None
    attempts: int
    refreshed: bool
    discarded: bool


class GrantPlanRequest(BaseModel):
    plan_id: str
    starts_at: Union[datetime, date]


class GrantPlanResponse(BaseModel):
    enrollment_id: str
    plan_id: str
    period: PeriodResponse
