from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
import uuid

from pydantic import BaseModel, Field


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Horodatage UTC avec fuseau (les JSON relus restent comparables)."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Date naïve -> considérée UTC; date avec fuseau -> convertie en UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TimeStamped(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()
