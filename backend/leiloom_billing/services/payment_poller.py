"""決済確定ポーリング

ゲートウェイのWebhookが台帳APIに届くまでの遅延を吸収するため、
決済インテントのステータスを一定間隔で読み直す。

- 1インテントにつきポーラーは1つだけ (PollerRegistry が管理)
- 追跡対象から外れたインテントの結果は破棄し、台帳を更新しない
- 呼び出し元が終了したら必ずキャンセルする (所有者より長生きしない)
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from leiloom_billing.core.config import settings
from leiloom_billing.core.exceptions import ConfirmationTimeoutError, TransportError
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import PaymentIntent, PaymentStatus, TERMINAL_STATUSES
from leiloom_billing.services.ledger_api import LedgerApiClient
from leiloom_billing.services.subscription_ledger import SubscriptionLedger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    intent_id: str
    status: Optional[PaymentStatus]
    attempts: int
    refreshed: bool = False
    discarded: bool = False
    intent: Optional[PaymentIntent] = None


class PaymentReconciliationPoller:
    def __init__(
        self,
        api: LedgerApiClient,
        interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.api = api
        self.interval = settings.PAYMENT_POLL_INTERVAL_SECONDS if interval is None else interval
        self.sleep = sleep

    async def run(
        self,
        intent_id: str,
        max_attempts: int,
        on_paid: Callable[[], Awaitable],
        is_tracked: Callable[[str], bool] = lambda _: True,
    ) -> PollOutcome:
        """終端ステータスまでポーリング

        通信エラーは上限回数に数えない。上限に達したら ConfirmationTimeoutError。
        """
        attempts = 0
        last_status = None

        while True:
            await self.sleep(self.interval)

            if not is_tracked(intent_id):
                return self._discard(intent_id, attempts, last_status)

            try:
                intent = await self.api.get_payment_intent(intent_id)
            except TransportError as e:
                logger.warning(f"決済ステータス取得失敗 (再試行): payment_id={intent_id}, error={e.message}")
                continue

            # 取得中に追跡が外れた場合も古い結果として捨てる
            if not is_tracked(intent_id):
                return self._discard(intent_id, attempts, intent.status)

            last_status = intent.status
            if intent.status == PaymentStatus.PAID:
                await on_paid()
                logger.info(f"決済確定: payment_id={intent_id}, attempts={attempts + 1}")
                return PollOutcome(intent_id, intent.status, attempts + 1, refreshed=True, intent=intent)

            if intent.status in TERMINAL_STATUSES:
                logger.info(f"決済終了 (未確定): payment_id={intent_id}, status={intent.status.value}")
                return PollOutcome(intent_id, intent.status, attempts + 1, intent=intent)

            attempts += 1
            if attempts >= max_attempts:
                logger.warning(
                    f"決済確認タイムアウト: payment_id={intent_id}, attempts={attempts}, "
                    f"last_status={intent.status.value}"
                )
                raise ConfirmationTimeoutError(intent_id, attempts, intent.status.value)

    @staticmethod
    def _discard(intent_id: str, attempts: int, status) -> PollOutcome:
        logger.info(f"追跡外の決済のため結果を破棄: payment_id={intent_id}")
        return PollOutcome(intent_id, status, attempts, discarded=True)


class PollHandle:
    """実行中ポーラーのハンドル

    待機者は PollerRegistry.wait() 経由で合流する。待機者が全員離れたら
    ポーラーを止める。ただし detached (select_plan の監視) のものは
    終端ステータスか cancel_client / close まで動き続ける。
    """

    def __init__(self, client_id: str, intent_id: str, task: asyncio.Task, detached: bool = False):
        self.client_id = client_id
        self.intent_id = intent_id
        self.task = task
        self.detached = detached
        self.waiters = 0
        self.cancel_requested = False

    def cancel(self):
        if not self.task.done():
            self.cancel_requested = True
            self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task.done()

    def __await__(self):
        return self.task.__await__()


class PollerRegistry:
    """インテントごとに1つのポーラーと、クライアントごとの確認待ち集合"""

    def __init__(
        self,
        poller: PaymentReconciliationPoller,
        ledger: SubscriptionLedger,
        max_attempts: Optional[int] = None,
    ):
        self.poller = poller
        self.ledger = ledger
        self.max_attempts = max_attempts or settings.PAYMENT_POLL_MAX_ATTEMPTS
        self._awaiting: dict[str, set[str]] = {}
        self._handles: dict[str, PollHandle] = {}

    def track(self, client_id: str, intent_id: str):
        self._awaiting.setdefault(client_id, set()).add(intent_id)

    def untrack(self, client_id: str, intent_id: str):
        intents = self._awaiting.get(client_id)
        if intents is None:
            return
        intents.discard(intent_id)
        if not intents:
            del self._awaiting[client_id]

    def is_awaiting(self, intent_id: str) -> bool:
        return any(intent_id in intents for intents in self._awaiting.values())

    def awaiting_for(self, client_id: str) -> set[str]:
        return set(self._awaiting.get(client_id, ()))

    def get_handle(self, intent_id: str) -> Optional[PollHandle]:
        handle = self._handles.get(intent_id)
        if handle is None or handle.done or handle.cancel_requested:
            return None
        return handle

    def start(
        self,
        client_id: str,
        intent_id: str,
        max_attempts: Optional[int] = None,
        detached: bool = False,
    ) -> PollHandle:
        """ポーラーを開始 (既に動いていればそのハンドルを返す)"""
        existing = self.get_handle(intent_id)
        if existing is not None:
            existing.detached = existing.detached or detached
            return existing

        self.track(client_id, intent_id)
        task = asyncio.create_task(
            self._watch(client_id, intent_id, max_attempts or self.max_attempts),
            name=f"payment-poller:{intent_id}",
        )
        handle = PollHandle(client_id, intent_id, task, detached=detached)
        self._handles[intent_id] = handle
        task.add_done_callback(lambda t: self._finish(client_id, intent_id, t))
        logger.info(f"決済ポーリング開始: client_id={client_id}, payment_id={intent_id}, detached={detached}")
        return handle

    async def wait(self, handle: PollHandle) -> PollOutcome:
        """ポーラーの結果を待つ

        待機者がキャンセルされてもポーラー本体には伝播しない。
        最後の待機者が離れたときだけ止める。
        """
        handle.waiters += 1
        try:
            return await asyncio.shield(handle.task)
        finally:
            handle.waiters -= 1
            if handle.waiters == 0 and not handle.detached and not handle.done:
                logger.info(f"待機者がいないため決済ポーリング停止: payment_id={handle.intent_id}")
                handle.cancel()

    async def _watch(self, client_id: str, intent_id: str, max_attempts: int) -> PollOutcome:
        return await self.poller.run(
            intent_id,
            max_attempts,
            on_paid=lambda: self.ledger.refresh(client_id),
            is_tracked=self.is_awaiting,
        )

    def _finish(self, client_id: str, intent_id: str, task: asyncio.Task):
        """ポーラー終了時 (正常・タイムアウト・キャンセル) の後始末"""
        # 後継のポーラーに差し替わっていれば、その追跡には触れない
        handle = self._handles.get(intent_id)
        if handle is not None and handle.task is task:
            del self._handles[intent_id]
            self.untrack(client_id, intent_id)
        self._log_result(task)

    def cancel_client(self, client_id: str) -> list[str]:
        """クライアントの確認待ちをすべて解除し、ポーラーを止める"""
        intent_ids = sorted(self._awaiting.pop(client_id, set()))
        for handle in list(self._handles.values()):
            if handle.client_id == client_id:
                handle.cancel()
                if handle.intent_id not in intent_ids:
                    intent_ids.append(handle.intent_id)
        if intent_ids:
            logger.info(f"決済ポーリング停止: client_id={client_id}, payment_ids={intent_ids}")
        return intent_ids

    async def close(self):
        """アプリ終了時に全ポーラーを停止"""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        self._handles.clear()
        self._awaiting.clear()

    @staticmethod
    def _log_result(task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"決済ポーリング終了 (エラー): task={task.get_name()}, error={error}")
