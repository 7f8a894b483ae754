"""未決済支払いレジストリ

新しいプランを選択する前に、未確定 (PENDING / PROCESSING) の支払いを
列挙して一括キャンセルする。1件でも失敗したら選択処理は中断する。
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from leiloom_billing.core.exceptions import PendingPaymentCancellationError
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import PaymentIntent, PaymentStatus
from leiloom_billing.models.base import utcnow
from leiloom_billing.services.ledger_api import LedgerApiClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentSummary:
    """ポータルの支払いサマリー (金額は最小通貨単位)"""
    total_paid: int = 0
    total_pending: int = 0
    total_overdue: int = 0
    paid_count: int = 0
    pending_count: int = 0
    overdue_count: int = 0
    next_due_date: Optional[datetime] = None
    next_due_amount: Optional[int] = None
    pending_ids: list[str] = field(default_factory=list)


class PendingPaymentRegistry:
    def __init__(self, api: LedgerApiClient, clock: Callable[[], datetime] = utcnow):
        self.api = api
        self.clock = clock

    async def list_pending(self, client_id: str) -> list[PaymentIntent]:
        intents = await self.api.list_payment_intents(client_id)
        return [i for i in intents if i.is_in_flight]

    async def cancel_all(self, intents: list[PaymentIntent], reason: str):
        """すべて並行にキャンセルし、全件の完了を待ってから結果を判定"""
        if not intents:
            return

        results = await asyncio.gather(
            *(self.api.cancel_payment_intent(i.id, reason) for i in intents),
            return_exceptions=True,
        )

        failed, cancelled = [], []
        for intent, result in zip(intents, results):
            if isinstance(result, BaseException):
                logger.error(f"支払いキャンセル失敗: payment_id={intent.id}, error={result}")
                failed.append(intent.id)
            else:
                cancelled.append(intent.id)

        if failed:
            raise PendingPaymentCancellationError(failed, cancelled)

        logger.info(f"未決済支払いをキャンセル: payment_ids={cancelled}, reason={reason}")

    async def summarize(self, client_id: str) -> PaymentSummary:
        intents = await self.api.list_payment_intents(client_id)
        now = self.clock()

        paid = [i for i in intents if i.status == PaymentStatus.PAID]
        pending = [i for i in intents if i.is_in_flight]
        overdue = [
            i for i in intents
            if i.status == PaymentStatus.OVERDUE
            or (i.is_in_flight and i.due_date is not None and i.due_date < now)
        ]

        upcoming = sorted(
            (i for i in pending if i.due_date is not None and i.due_date >= now),
            key=lambda i: i.due_date,
        )
        next_intent = upcoming[0] if upcoming else None

        return PaymentSummary(
            total_paid=sum(i.paid_amount or i.total_amount for i in paid),
            total_pending=sum(i.total_amount - i.paid_amount for i in pending),
            total_overdue=sum(i.total_amount - i.paid_amount for i in overdue),
            paid_count=len(paid),
            pending_count=len(pending),
            overdue_count=len(overdue),
            next_due_date=next_intent.due_date if next_intent else None,
            next_due_amount=next_intent.total_amount if next_intent else None,
            pending_ids=[i.id for i in pending],
        )
