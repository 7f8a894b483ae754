"""プラン選択オーケストレーター

1回のプラン選択を明示的な状態遷移として進める:

    IDLE → VALIDATING → SUPERSEDING_PAYMENTS → CREATING_INTENT
         → AWAITING_CONFIRMATION → ACTIVATED | ABANDONED

トライアル・無料プランは CREATING_INTENT から直接 ACTIVATED。
失敗時は ABANDONED に遷移し、確定済みのリモート書き込みは巻き戻さない
(再度 select_plan を呼べば、途中で作られた未決済支払いをキャンセルしてやり直す)。
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from leiloom_billing.core.config import settings
from leiloom_billing.core.exceptions import (
    IntentCreationError,
    PeriodExpiredError,
    PeriodMismatchError,
    RemoteRequestError,
    SubscriptionError,
    SupersessionConfirmationRequired,
    TrialAlreadyUsedError,
)
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import Enrollment, PaymentIntent, PaymentMethod, PaymentStatus, Period, PlanDefinition
from leiloom_billing.models.base import utcnow
from leiloom_billing.services import billing_period
from leiloom_billing.services.ledger_api import LedgerApiClient
from leiloom_billing.services.payment_poller import PollerRegistry, PollOutcome
from leiloom_billing.services.pending_payments import PendingPaymentRegistry
from leiloom_billing.services.plan_catalog import PlanCatalog
from leiloom_billing.services.stripe_service import CheckoutGateway
from leiloom_billing.services.subscription_ledger import SubscriptionLedger

logger = get_logger(__name__)


class SelectionState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    SUPERSEDING_PAYMENTS = "SUPERSEDING_PAYMENTS"
    CREATING_INTENT = "CREATING_INTENT"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    ACTIVATED = "ACTIVATED"
    ABANDONED = "ABANDONED"


ALLOWED_TRANSITIONS = {
    SelectionState.IDLE: {SelectionState.VALIDATING},
    SelectionState.VALIDATING: {SelectionState.SUPERSEDING_PAYMENTS, SelectionState.ABANDONED},
    SelectionState.SUPERSEDING_PAYMENTS: {SelectionState.CREATING_INTENT, SelectionState.ABANDONED},
    SelectionState.CREATING_INTENT: {
        SelectionState.AWAITING_CONFIRMATION,
        SelectionState.ACTIVATED,
        SelectionState.ABANDONED,
    },
    SelectionState.AWAITING_CONFIRMATION: {SelectionState.ACTIVATED, SelectionState.ABANDONED},
    SelectionState.ACTIVATED: set(),
    SelectionState.ABANDONED: set(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class PlanSelection:
    """進行中 (または完了した) プラン選択の記録"""
    client_id: str
    plan_id: str
    state: SelectionState = SelectionState.IDLE
    history: list[tuple[SelectionState, datetime]] = field(default_factory=list)
    plan: Optional[PlanDefinition] = None
    enrollment: Optional[Enrollment] = None
    period: Optional[Period] = None
    intent: Optional[PaymentIntent] = None
    checkout_id: Optional[str] = None
    checkout_url: Optional[str] = None
    external_reference: Optional[str] = None
    cancelled_payment_ids: list[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.state in (SelectionState.ACTIVATED, SelectionState.ABANDONED)


class SubscriptionOrchestrator:
    def __init__(
        self,
        api: LedgerApiClient,
        catalog: PlanCatalog,
        ledger: SubscriptionLedger,
        payments: PendingPaymentRegistry,
        gateway: CheckoutGateway,
        pollers: PollerRegistry,
        clock: Callable[[], datetime] = utcnow,
        tz: Optional[ZoneInfo] = None,
        supersede_reason: Optional[str] = None,
    ):
        self.api = api
        self.catalog = catalog
        self.ledger = ledger
        self.payments = payments
        self.gateway = gateway
        self.pollers = pollers
        self.clock = clock
        self.tz = billing_period.client_timezone(tz)
        self.supersede_reason = supersede_reason or settings.SUPERSEDE_REASON

    def _move(self, selection: PlanSelection, to: SelectionState):
        if to not in ALLOWED_TRANSITIONS[selection.state]:
            raise InvalidTransitionError(f"{selection.state.value} → {to.value} は許可されていません")
        logger.info(
            f"プラン選択状態遷移: client_id={selection.client_id}, plan_id={selection.plan_id}, "
            f"{selection.state.value} → {to.value}"
        )
        selection.state = to
        selection.history.append((to, self.clock()))

    async def select_plan(
        self,
        client_id: str,
        plan_id: str,
        *,
        confirm_supersede: bool = False,
        payment_method: PaymentMethod = PaymentMethod.PIX,
        installments: Optional[int] = None,
        watch: bool = False,
    ) -> PlanSelection:
        """プランを選択して契約・期間・決済を作成

        未決済の支払いがあり confirm_supersede=False の場合は、何も変更せずに
        SupersessionConfirmationRequired を送出する (操作者の確認が必要)。
        """
        selection = PlanSelection(client_id=client_id, plan_id=plan_id)
        try:
            self._move(selection, SelectionState.VALIDATING)
            plan = await self._validate(client_id, plan_id)
            selection.plan = plan
            installment_count = plan.clamp_installments(installments)

            self._move(selection, SelectionState.SUPERSEDING_PAYMENTS)
            selection.cancelled_payment_ids = await self._supersede(client_id, confirm_supersede)

            self._move(selection, SelectionState.CREATING_INTENT)
            enrollment, period = await self._create_enrollment(client_id, plan, self.clock(), is_current=not plan.requires_payment)
            selection.enrollment = enrollment
            selection.period = period

            if not plan.requires_payment:
                self._move(selection, SelectionState.ACTIVATED)
                logger.info(
                    f"プラン即時有効化: client_id={client_id}, plan_id={plan.id}, "
                    f"is_trial={plan.is_trial}, period_id={period.id if period else None}"
                )
                return selection

            intent = await self._create_intent(enrollment, plan, installment_count, payment_method)
            selection.intent = intent
            selection.external_reference = intent.external_reference

            handoff = await self._hand_off(intent, plan, enrollment)
            selection.checkout_id = handoff.checkout_id
            selection.checkout_url = handoff.url

            self._move(selection, SelectionState.AWAITING_CONFIRMATION)
            self.pollers.track(client_id, intent.id)
            if watch:
                self.pollers.start(client_id, intent.id, detached=True)
            return selection
        except SubscriptionError as e:
            selection.error_kind = e.kind.value
            self._move(selection, SelectionState.ABANDONED)
            logger.warning(
                f"プラン選択中断: client_id={client_id}, plan_id={plan_id}, "
                f"error={e.kind.value}, message={e.message}"
            )
            raise

    async def _validate(self, client_id: str, plan_id: str) -> PlanDefinition:
        # 一覧はキャッシュで古い可能性があるため、確定時に取り直して再検証する
        plan = await self.catalog.get_plan(plan_id)
        if plan.is_trial and await self.ledger.has_ever_held_trial(client_id):
            raise TrialAlreadyUsedError(client_id, plan_id)
        return plan

    async def _supersede(self, client_id: str, confirmed: bool) -> list[str]:
        pending = await self.payments.list_pending(client_id)
        if pending and not confirmed:
            raise SupersessionConfirmationRequired(client_id, pending)

        self.pollers.cancel_client(client_id)
        if not pending:
            return []
        await self.payments.cancel_all(pending, self.supersede_reason)
        return [p.id for p in pending]

    async def _create_enrollment(
        self,
        client_id: str,
        plan: PlanDefinition,
        starts_at: datetime,
        is_current: bool,
    ) -> tuple[Enrollment, Optional[Period]]:
        expires_at = billing_period.compute_expiration(starts_at, plan.duration_days, self.tz)
        enrollment = await self.api.create_enrollment(
            client_id,
            plan.id,
            starts_at=starts_at,
            expires_at=expires_at,
            is_trial=plan.is_trial,
            is_current=is_current,
        )
        period = enrollment.periods[-1] if enrollment.periods else None
        if period is not None:
            billing_period.verify_expiration(period, plan.duration_days, self.tz)
        logger.info(
            f"契約作成: client_id={client_id}, enrollment_id={enrollment.id}, "
            f"plan_id={plan.id}, expires_at={expires_at.isoformat()}"
        )
        return enrollment, period

    async def _create_intent(
        self,
        enrollment: Enrollment,
        plan: PlanDefinition,
        installment_count: int,
        payment_method: PaymentMethod,
    ) -> PaymentIntent:
        try:
            intent = await self.api.create_payment_intent(
                enrollment.id,
                total_amount=plan.price,
                installments=installment_count,
                payment_method=payment_method,
                absorbs_gateway_fee=plan.absorbs_gateway_fee,
            )
        except SubscriptionError as e:
            logger.error(f"決済作成失敗: enrollment_id={enrollment.id}, error={e.message}")
            raise IntentCreationError(enrollment_id=enrollment.id) from e
        logger.info(
            f"決済作成: payment_id={intent.id}, enrollment_id={enrollment.id}, "
            f"amount={intent.total_amount}, installments={intent.installment_count}"
        )
        return intent

    async def _hand_off(self, intent: PaymentIntent, plan: PlanDefinition, enrollment: Enrollment):
        try:
            handoff = await self.gateway.create_checkout(intent, plan)
        except Exception as e:
            logger.error(f"チェックアウト作成失敗: payment_id={intent.id}, error={e}")
            raise IntentCreationError(
                "決済ページの作成に失敗しました", enrollment_id=enrollment.id, stage="checkout"
            ) from e

        # チェックアウトIDの記録に失敗しても、決済自体は外部参照で照合できる
        try:
            await self.api.record_checkout_reference(intent.id, handoff.checkout_id)
        except SubscriptionError as e:
            logger.warning(f"チェックアウトID記録失敗: payment_id={intent.id}, error={e.message}")
        return handoff

    async def await_confirmation(
        self,
        client_id: str,
        intent_id: str,
        max_attempts: Optional[int] = None,
    ) -> PollOutcome:
        """決済の確定を待つ (既存のポーラーがあれば合流する)"""
        intent = await self.api.get_payment_intent(intent_id)
        if intent.client_id and intent.client_id != client_id:
            raise RemoteRequestError("決済が見つかりません", status=404, path=f"/payments/{intent_id}")

        if intent.is_terminal:
            refreshed = False
            if intent.status == PaymentStatus.PAID:
                await self.ledger.refresh(client_id)
                refreshed = True
            self.pollers.untrack(client_id, intent_id)
            return PollOutcome(intent_id, intent.status, 0, refreshed=refreshed, intent=intent)

        handle = self.pollers.start(client_id, intent_id, max_attempts)
        return await self.pollers.wait(handle)

    async def settle(self, selection: PlanSelection, max_attempts: Optional[int] = None) -> PlanSelection:
        """確認待ちの選択を、決済結果に応じて ACTIVATED / ABANDONED に進める"""
        if selection.state != SelectionState.AWAITING_CONFIRMATION:
            return selection
        try:
            outcome = await self.await_confirmation(selection.client_id, selection.intent.id, max_attempts)
        except SubscriptionError as e:
            selection.error_kind = e.kind.value
            self._move(selection, SelectionState.ABANDONED)
            raise

        if outcome.status == PaymentStatus.PAID and not outcome.discarded:
            selection.period = await self.ledger.get_current_period(selection.client_id)
            self._move(selection, SelectionState.ACTIVATED)
        else:
            self._move(selection, SelectionState.ABANDONED)
        return selection

    async def reactivate_period(self, client_id: str, period_id: str) -> Period:
        found = await self.ledger.find_enrollment_for_period(client_id, period_id)
        if found is None:
            raise PeriodMismatchError(period_id, None)
        enrollment, period = found
        return await self.ledger.activate_reactivated_period(enrollment, period)

    async def grant_plan(
        self,
        client_id: str,
        plan_id: str,
        starts_at: Union[date, datetime],
        operator_id: Optional[str] = None,
    ) -> tuple[Enrollment, Period]:
        """管理画面からの手動付与: 決済なしで契約を作成し、その期間を現行にする"""
        plan = await self._validate(client_id, plan_id)
        start = billing_period.to_local(starts_at, self.tz)
        expires_at = billing_period.compute_expiration(start, plan.duration_days, self.tz)
        if expires_at < self.clock():
            raise PeriodExpiredError(None, expires_at)

        enrollment, period = await self._create_enrollment(client_id, plan, start, is_current=False)
        if period is None:
            raise RemoteRequestError("契約の期間が作成されませんでした", status=422, path="/client-plans")
        activated = await self.ledger.activate_reactivated_period(enrollment, period)
        logger.info(
            f"プラン手動付与: client_id={client_id}, plan_id={plan.id}, "
            f"period_id={activated.id}, operator_id={operator_id}"
        )
        return enrollment, activated
