"""購読台帳: クライアントの契約と期間に関する問い合わせ

状態はすべてリモートの台帳APIが正本。ここでは毎回取得し直し、
現行期間・再有効化可能な期間・トライアル利用履歴を判定する。
"""
import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from leiloom_billing.core.exceptions import PeriodExpiredError, PeriodMismatchError
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import Enrollment, PaymentIntent, PaymentStatus, Period, PlanDefinition
from leiloom_billing.models.base import utcnow
from leiloom_billing.services.ledger_api import LedgerApiClient

logger = get_logger(__name__)

TRIAL_ENDING_DAYS = 3
EXPIRING_SOON_DAYS = 7


class PlanStatusKind(str, Enum):
    NO_PLAN = "no-plan"
    TRIAL_ACTIVE = "trial-active"
    TRIAL_ENDING = "trial-ending"
    TRIAL_EXPIRED = "trial-expired"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring-soon"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CurrentEntitlement:
    """現行期間とその契約・プラン・支払総額"""
    period: Period
    enrollment: Optional[Enrollment]
    plan: Optional[PlanDefinition]
    total_amount: int


@dataclass(frozen=True)
class PlanStatus:
    kind: PlanStatusKind
    days_remaining: Optional[int] = None
    period: Optional[Period] = None


def is_upgrade_over(current: Optional[CurrentEntitlement], candidate: PlanDefinition) -> bool:
    """UI表示用の「アップグレード」判定 (認可には使わない)"""
    if current is None:
        return True
    if current.period.is_trial:
        return not candidate.is_trial
    if candidate.price > current.total_amount:
        return True
    current_seats = current.plan.seat_limit if current.plan else 1
    return candidate.seat_limit > current_seats


class SubscriptionLedger:
    def __init__(self, api: LedgerApiClient, clock: Callable[[], datetime] = utcnow):
        self.api = api
        self.clock = clock

    async def get_current_period(self, client_id: str) -> Optional[Period]:
        return await self.api.get_current_period(client_id)

    async def refresh(self, client_id: str) -> Optional[Period]:
        """決済確定後などに現行期間を取り直す"""
        period = await self.api.get_current_period(client_id)
        logger.info(
            f"台帳リフレッシュ: client_id={client_id}, "
            f"current_period={period.id if period else None}"
        )
        return period

    async def get_reactivatable_periods(self, client_id: str) -> list[Period]:
        """現行でなく、まだ期限内の期間 (新しい順)"""
        now = self.clock()
        periods = await self.api.list_reactivatable_periods(client_id)
        candidates = [p for p in periods if p.is_reactivatable(now)]
        return sorted(candidates, key=lambda p: (p.expires_at, p.starts_at), reverse=True)

    async def has_ever_held_trial(self, client_id: str) -> bool:
        """期間・契約・決済・現行期間のいずれかにトライアルの痕跡があれば True

        決済が完了していなくても、作成された時点でトライアルは使用済みとみなす。
        """
        enrollments, intents, current = await asyncio.gather(
            self.api.list_enrollments(client_id),
            self.api.list_payment_intents(client_id),
            self.api.get_current_period(client_id),
        )
        if current is not None and current.is_trial:
            return True
        for enrollment in enrollments:
            if enrollment.plan is not None and enrollment.plan.is_trial:
                return True
            if any(p.is_trial for p in enrollment.periods):
                return True
        return any(intent.references_trial for intent in intents)

    async def get_current_entitlement(self, client_id: str) -> Optional[CurrentEntitlement]:
        enrollments, intents = await asyncio.gather(
            self.api.list_enrollments(client_id),
            self.api.list_payment_intents(client_id),
        )
        current = _find_current(client_id, enrollments)
        if current is None:
            return None
        period, enrollment = current

        plan = enrollment.plan
        if plan is None:
            plan = await self.api.get_plan(enrollment.plan_id)

        total = _paid_total(enrollment.id, intents)
        if total is None:
            total = plan.price if plan else 0
        return CurrentEntitlement(period=period, enrollment=enrollment, plan=plan, total_amount=total)

    async def is_upgrade_candidate(self, client_id: str, plan: PlanDefinition) -> bool:
        current = await self.get_current_entitlement(client_id)
        return is_upgrade_over(current, plan)

    async def activate_reactivated_period(self, enrollment: Enrollment, period: Period) -> Period:
        """期限内の期間を再び現行にする

        以前の現行期間の解除と合わせて1回の有効化呼び出しで行い、
        現行期間が0件や2件に見える瞬間を作らない。
        """
        if period.enrollment_id != enrollment.id:
            raise PeriodMismatchError(period.id, enrollment.id)
        if period.expires_at < self.clock():
            raise PeriodExpiredError(period.id, period.expires_at)
        if period.is_current:
            logger.info(f"期間は既に現行: period_id={period.id}")
            return period

        activated = await self.api.activate_period(period.id)
        logger.info(
            f"期間再有効化: client_id={enrollment.client_id}, enrollment_id={enrollment.id}, "
            f"period_id={activated.id}, expires_at={activated.expires_at.isoformat()}"
        )
        return activated

    async def find_enrollment_for_period(self, client_id: str, period_id: str) -> Optional[tuple[Enrollment, Period]]:
        for enrollment in await self.api.list_enrollments(client_id):
            for period in enrollment.periods:
                if period.id == period_id:
                    return enrollment, period
        return None

    async def get_plan_status(self, client_id: str) -> PlanStatus:
        """ダッシュボードの状態表示 (トライアル残日数・期限間近など)"""
        period = await self.api.get_current_period(client_id)
        if period is None:
            return PlanStatus(PlanStatusKind.NO_PLAN)

        remaining = period.expires_at - self.clock()
        days = math.ceil(remaining.total_seconds() / 86400)

        if period.is_trial:
            if days <= 0:
                kind = PlanStatusKind.TRIAL_EXPIRED
            elif days <= TRIAL_ENDING_DAYS:
                kind = PlanStatusKind.TRIAL_ENDING
            else:
                kind = PlanStatusKind.TRIAL_ACTIVE
        elif days <= 0:
            kind = PlanStatusKind.EXPIRED
        elif days <= EXPIRING_SOON_DAYS:
            kind = PlanStatusKind.EXPIRING_SOON
        else:
            kind = PlanStatusKind.ACTIVE
        return PlanStatus(kind, days_remaining=max(days, 0), period=period)


def _find_current(client_id: str, enrollments: list[Enrollment]) -> Optional[tuple[Period, Enrollment]]:
    found = [(p, e) for e in enrollments for p in e.periods if p.is_current]
    if not found:
        return None
    if len(found) > 1:
        # ストア側の不変条件違反。最も新しく始まった期間を採用する
        logger.error(
            f"現行期間が複数存在: client_id={client_id}, "
            f"period_ids={[p.id for p, _ in found]}"
        )
        found.sort(key=lambda pair: pair[0].starts_at, reverse=True)
    return found[0]


def _paid_total(enrollment_id: str, intents: list[PaymentIntent]) -> Optional[int]:
    paid = [i for i in intents if i.enrollment_id == enrollment_id and i.status == PaymentStatus.PAID]
    if not paid:
        return None
    return sum(i.total_amount for i in paid)
