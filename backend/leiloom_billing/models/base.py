from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LedgerModel(BaseModel):
    """台帳APIのJSON (camelCase) を受ける不変モデルの基底"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """naive な日時はUTCとみなし、aware な日時はUTCへ変換"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
