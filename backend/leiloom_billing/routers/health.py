from fastapi import APIRouter, Request

from leiloom_billing.core.redis import check_redis_connection

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(request: Request):
    """ヘルスチェックエンドポイント"""
    ledger_ok = await request.app.state.ledger_api.ping()

    # キャッシュ無効時はRedisを確認しない
    cache = request.app.state.catalog.cache
    redis_ok = await check_redis_connection(cache) if cache is not None else None

    status = "ok" if (ledger_ok and redis_ok is not False) else "degraded"

    return {
        "status": status,
        "ledger": "connected" if ledger_ok else "disconnected",
        "redis": "disabled" if redis_ok is None else ("connected" if redis_ok else "disconnected"),
    }
