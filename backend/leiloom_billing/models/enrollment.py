from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator, model_validator

from leiloom_billing.models.base import LedgerModel, as_utc
from leiloom_billing.models.plan import PlanDefinition


class Period(LedgerModel):
    """契約がアクセスを与える具体的な期間 (クライアントごとに現行は最大1件)"""

    id: str
    enrollment_id: str = Field(alias="clientPlanId")
    starts_at: datetime
    expires_at: datetime
    is_current: bool = False
    is_trial: bool = False
    was_confirmed: bool = False
    created_at: Optional[datetime] = Field(default=None, alias="createdOn")

    @field_validator("starts_at", "expires_at", "created_at")
    @classmethod
    def normalize_utc(cls, value):
        return as_utc(value)

    @model_validator(mode="after")
    def check_window(self):
        if self.starts_at >= self.expires_at:
            raise ValueError("startsAt は expiresAt より前である必要があります")
        return self

    def is_reactivatable(self, now: datetime) -> bool:
        """現行ではなく、まだ期限内の期間"""
        return not self.is_current and self.expires_at >= now


class Enrollment(LedgerModel):
    """クライアントとプランの紐付け (ClientPlan)。削除されず、新しい契約で置き換わる"""

    id: str
    client_id: str
    plan_id: str
    created_at: Optional[datetime] = Field(default=None, alias="createdOn")
    plan: Optional[PlanDefinition] = None
    periods: list[Period] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, value):
        return as_utc(value)

    @field_validator("periods")
    @classmethod
    def order_periods(cls, value):
        return sorted(value, key=lambda p: (p.starts_at, p.id))

    @property
    def current_period(self) -> Optional[Period]:
        return next((p for p in self.periods if p.is_current), None)
