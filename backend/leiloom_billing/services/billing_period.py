"""期間計算: 開始日 + 日数 → 有効期限

日数の加算はクライアントのローカルタイムゾーンの暦日で行い、
結果は比較・保存用にUTCへ正規化する (夏時間の切替で1日ずれないように)。
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from leiloom_billing.core.config import settings
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models.enrollment import Period
from leiloom_billing.models.plan import PlanDefinition

logger = get_logger(__name__)

DateLike = Union[date, datetime]


def client_timezone(tz: Optional[ZoneInfo] = None) -> ZoneInfo:
    return tz or ZoneInfo(settings.CLIENT_TIMEZONE)


def to_local(value: DateLike, tz: Optional[ZoneInfo] = None) -> datetime:
    """date / naive はローカル、aware はローカルへ変換"""
    tz = client_timezone(tz)
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=tz)
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def compute_expiration(start: DateLike, duration_days: int, tz: Optional[ZoneInfo] = None) -> datetime:
    """開始日時から duration_days 暦日後の有効期限 (UTC)"""
    if duration_days <= 0:
        raise ValueError(f"duration_days は正の値である必要があります: {duration_days}")
    local_start = to_local(start, tz)
    # 壁時計の日付だけを進め、オフセットは到着日のものを使う
    wall = local_start.replace(tzinfo=None) + timedelta(days=duration_days)
    local_end = wall.replace(tzinfo=local_start.tzinfo)
    return local_end.astimezone(timezone.utc)


def calendar_days_between(start: DateLike, end: DateLike, tz: Optional[ZoneInfo] = None) -> int:
    """ローカル暦日での日数差"""
    return (to_local(end, tz).date() - to_local(start, tz).date()).days


def preview_period(start: DateLike, plan: PlanDefinition, tz: Optional[ZoneInfo] = None) -> tuple[datetime, datetime]:
    """開始日を選んでいる間のプレビュー: (startsAt, expiresAt) をUTCで返す"""
    starts_at = to_local(start, tz).astimezone(timezone.utc)
    return starts_at, compute_expiration(start, plan.duration_days, tz)


def verify_expiration(period: Period, duration_days: int, tz: Optional[ZoneInfo] = None) -> bool:
    """サーバーが返した期間の expiresAt を検証 (ログのみ、強制しない)"""
    expected = compute_expiration(period.starts_at, duration_days, tz)
    if expected != period.expires_at:
        logger.warning(
            f"期間の有効期限が想定と不一致: period_id={period.id}, "
            f"expected={expected.isoformat()}, actual={period.expires_at.isoformat()}"
        )
        return False
    return True
