"""Redis (プランカタログの短期キャッシュ)

キャッシュは任意。PLAN_CATALOG_CACHE_SECONDS=0 なら接続しない。
"""
from typing import Optional

import redis.asyncio as aioredis

from leiloom_billing.core.config import settings
from leiloom_billing.core.logging import get_logger

logger = get_logger(__name__)

_pool: Optional[aioredis.ConnectionPool] = None


def open_cache() -> Optional[aioredis.Redis]:
    """キャッシュ用クライアントを作成 (無効なら None)"""
    global _pool
    if settings.PLAN_CATALOG_CACHE_SECONDS <= 0:
        logger.info("プランカタログキャッシュ無効")
        return None
    if _pool is None:
        _pool = aioredis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
        )
    return aioredis.Redis(connection_pool=_pool)


async def close_cache(client: Optional[aioredis.Redis]):
    global _pool
    if client is not None:
        await client.aclose()
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


async def check_redis_connection(client: aioredis.Redis) -> bool:
    """Redis接続チェック"""
    try:
        await client.ping()
        return True
    except Exception:
        return False
