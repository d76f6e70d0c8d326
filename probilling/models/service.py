from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional
from .common import gen_id


class Service(BaseModel):
    """Service du catalogue (prix par défaut, TJM)."""
    id: str = Field(default_factory=gen_id)
    business_id: str
    code: Optional[str] = None
    name: str
    description: Optional[str] = None
    default_price_cents: Optional[int] = Field(default=None, ge=0)
    tjm_cents: Optional[int] = Field(default=None, ge=0)
    unit: str = "prestation"
    active: bool = True

    @property
    def label(self) -> str:
        return self.name or self.code or f"Service {self.id}"
