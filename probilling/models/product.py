from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional
from .common import gen_id


class Product(BaseModel):
  id: str = Field(default_factory=gen_id)
  business_id: str
  ref: str
  label: str
  price_cents: int = Field(default=0, ge=0)
  unit: str = "unité"
  active: bool = True
  description: Optional[str] = None
