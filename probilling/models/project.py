from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from enum import Enum
from datetime import datetime

from .common import gen_id, utcnow
from .line import BillingUnit


class DiscountType(str, Enum):
    NONE = "NONE"
    PERCENT = "PERCENT"
    AMOUNT = "AMOUNT"


class Project(BaseModel):
    id: str = Field(default_factory=gen_id)
    business_id: str
    client_id: Optional[str] = None
    name: str = ""
    # devis de référence (reporting uniquement)
    reference_quote_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ProjectService(BaseModel):
    """Service rattaché à un projet, avec prix/quantité/remise propres au projet."""
    id: str = Field(default_factory=gen_id)
    project_id: str
    service_id: Optional[str] = None
    title_override: Optional[str] = None
    description: Optional[str] = None
    quantity: int = 1
    price_cents: Optional[int] = Field(default=None, ge=0)  # None -> prix catalogue
    billing_unit: BillingUnit = BillingUnit.ONE_OFF
    unit_label: Optional[str] = None
    discount_type: DiscountType = DiscountType.NONE
    discount_value: Optional[int] = None
    position: int = 0

    model_config = ConfigDict(extra="ignore")


class ProjectBillingSummary(BaseModel):
    """Vue calculée à la demande, jamais persistée."""
    project_id: str
    business_id: str
    client_id: Optional[str] = None
    reference_quote_id: Optional[str] = None
    total_cents: int = 0
    deposit_percent: int = 0
    deposit_cents: int = 0
    balance_cents: int = 0
    already_invoiced_cents: int = 0
    already_paid_cents: int = 0
    remaining_to_invoice_cents: int = 0


class RecurringInvoiceCursor(BaseModel):
    project_service_id: str
    business_id: str
    last_generated_period_key: Optional[str] = None
    last_invoice_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
