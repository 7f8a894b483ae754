"""プランカタログ (読み取り専用)"""
import json
from typing import Optional

from leiloom_billing.core.config import settings
from leiloom_billing.core.exceptions import PlanUnavailableError
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import PlanDefinition
from leiloom_billing.services.ledger_api import LedgerApiClient
from leiloom_billing.services.subscription_ledger import SubscriptionLedger

logger = get_logger(__name__)

CACHE_KEY = "plan_catalog:active"


def _creation_order(plan: PlanDefinition):
    # createdOn のないプランは末尾
    return (plan.created_at is None, plan.created_at or 0, plan.id)


class PlanCatalog:
    """有効プラン一覧と、クライアントごとの選択可能プラン

    一覧はRedisに短時間キャッシュしてよい (古くなり得るため、確定時は
    get_plan で取り直し、トライアル可否も再検証する)。
    """

    def __init__(
        self,
        api: LedgerApiClient,
        ledger: SubscriptionLedger,
        cache=None,
        cache_seconds: Optional[int] = None,
    ):
        self.api = api
        self.ledger = ledger
        self.cache = cache
        self.cache_seconds = settings.PLAN_CATALOG_CACHE_SECONDS if cache_seconds is None else cache_seconds

    async def list_active_plans(self) -> list[PlanDefinition]:
        """有効プランのみ、作成順"""
        plans = await self._read_cache()
        if plans is None:
            plans = await self.api.list_active_plans()
            await self._write_cache(plans)
        active = [p for p in plans if p.is_active]
        return sorted(active, key=_creation_order)

    async def list_eligible_plans(self, client_id: str) -> list[PlanDefinition]:
        """トライアル利用済みのクライアントにはトライアルプランを出さない"""
        plans = await self.list_active_plans()
        if not any(p.is_trial for p in plans):
            return plans
        if await self.ledger.has_ever_held_trial(client_id):
            return [p for p in plans if not p.is_trial]
        return plans

    async def get_plan(self, plan_id: str) -> PlanDefinition:
        """確定時に使う最新のプラン (キャッシュを通さない)"""
        plan = await self.api.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise PlanUnavailableError(plan_id)
        return plan

    async def invalidate(self):
        if self.cache is None:
            return
        try:
            await self.cache.delete(CACHE_KEY)
        except Exception as e:
            logger.warning(f"プランカタログキャッシュ削除失敗: {e}")

    async def _read_cache(self) -> Optional[list[PlanDefinition]]:
        if self.cache is None or self.cache_seconds <= 0:
            return None
        try:
            raw = await self.cache.get(CACHE_KEY)
        except Exception as e:
            logger.warning(f"プランカタログキャッシュ取得失敗: {e}")
            return None
        if not raw:
            return None
        return [PlanDefinition.model_validate(p) for p in json.loads(raw)]

    async def _write_cache(self, plans: list[PlanDefinition]):
        if self.cache is None or self.cache_seconds <= 0:
            return
        try:
            payload = json.dumps([p.to_api() for p in plans])
            await self.cache.set(CACHE_KEY, payload, ex=self.cache_seconds)
        except Exception as e:
            logger.warning(f"プランカタログキャッシュ保存失敗: {e}")
