from __future__ import annotations
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from typing import Dict, FrozenSet, List, Optional
from datetime import datetime
from enum import Enum

from .common import TimeStamped, gen_id, utcnow
from .line import DocumentLine, lines_total
from .quote import NOTE_MAX_LENGTH


class InvoiceKind(str, Enum):
    STANDARD = "STANDARD"
    QUOTE = "QUOTE"          # issue d'un devis signé
    STAGED = "STAGED"        # situation (pourcentage / montant)
    FINAL = "FINAL"          # solde du reste à facturer
    RECURRING = "RECURRING"  # abonnement mensuel


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

INVOICE_EDITABLE = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT})
INVOICE_DELETABLE = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED})

PAYMENT_TEXT_MAX_LENGTH = 200


class PaymentMethod(str, Enum):
    WIRE = "WIRE"
    CARD = "CARD"
    CASH = "CASH"
    CHECK = "CHECK"
    OTHER = "OTHER"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class Payment(BaseModel):
    """Règlement (éventuellement partiel) enregistré sur une facture."""

    id: str = Field(default_factory=gen_id)
    amount_cents: int = Field(gt=0)
    paid_at: datetime
    method: PaymentMethod = PaymentMethod.WIRE
    reference: Optional[str] = Field(default=None, max_length=PAYMENT_TEXT_MAX_LENGTH)
    note: Optional[str] = Field(default=None, max_length=PAYMENT_TEXT_MAX_LENGTH)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(extra="ignore")


class Invoice(TimeStamped):
    id: str = Field(default_factory=gen_id)
    business_id: str
    project_id: str
    client_id: Optional[str] = None
    source_quote_id: Optional[str] = None
    kind: InvoiceKind = InvoiceKind.STANDARD
    status: InvoiceStatus = InvoiceStatus.DRAFT
    number: Optional[str] = None

    issued_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    note: Optional[str] = None

    lines: List[DocumentLine] = Field(default_factory=list)
    total_cents: int = 0
    payments: List[Payment] = Field(default_factory=list)

    # factures récurrentes
    project_service_id: Optional[str] = None
    period_key: Optional[str] = None

    created_by: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def is_terminal(self) -> bool:
        return not INVOICE_TRANSITIONS[self.status]

    def can_transition(self, target: InvoiceStatus) -> bool:
        return target in INVOICE_TRANSITIONS[self.status]

    def recalc_totals(self) -> "Invoice":
        self.total_cents = lines_total(self.lines)
        return self

    # ---------- Règlements ---------- #

    def paid_cents(self) -> int:
        paid = sum(p.amount_cents for p in self.payments)
        # facture marquée PAID (manuellement ou sans règlement détaillé): réputée soldée
        if self.status == InvoiceStatus.PAID:
            return max(paid, self.total_cents)
        return paid

    def remaining_cents(self) -> int:
        return max(0, self.total_cents - self.paid_cents())

    def payment_status(self) -> PaymentStatus:
        paid = self.paid_cents()
        if paid <= 0:
            return PaymentStatus.UNPAID
        if paid >= self.total_cents:
            return PaymentStatus.PAID
        return PaymentStatus.PARTIAL


class InvoicePatch(BaseModel):
    issued_at: Optional[AwareDatetime] = None
    due_at: Optional[AwareDatetime] = None
    note: Optional[str] = Field(default=None, max_length=NOTE_MAX_LENGTH)
    lines: Optional[list] = None

    model_config = ConfigDict(extra="forbid")
