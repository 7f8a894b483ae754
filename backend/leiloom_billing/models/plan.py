from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from leiloom_billing.models.base import LedgerModel, as_utc


class PlanDefinition(LedgerModel):
    """購入可能なプラン定義 (契約から参照された後は不変)"""

    id: str
    name: str
    description: Optional[str] = None
    price: int = Field(ge=0, description="価格 (最小通貨単位)")
    duration_days: int = Field(gt=0)
    seat_limit: int = Field(default=1, ge=1, alias="numberOfUsers")
    is_trial: bool = False
    allow_installments: bool = False
    max_installments: int = Field(default=1, ge=1)
    absorbs_gateway_fee: bool = Field(default=False, alias="absorbTax")
    is_active: bool = True
    created_at: Optional[datetime] = Field(default=None, alias="createdOn")

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, value):
        return as_utc(value)

    @property
    def requires_payment(self) -> bool:
        """トライアル・無料プラン以外は決済が必要"""
        return not self.is_trial and self.price > 0

    def clamp_installments(self, requested: Optional[int]) -> int:
        """分割回数をプランの上限に収める"""
        if not self.allow_installments:
            return 1
        if not requested or requested < 1:
            return 1
        return min(requested, self.max_installments)


class PlanRef(LedgerModel):
    """決済・契約に埋め込まれる簡易プラン情報"""

    id: Optional[str] = None
    name: Optional[str] = None
    price: Optional[int] = None
    is_trial: bool = False
    max_installments: int = 1
    seat_limit: int = Field(default=1, alias="numberOfUsers")
