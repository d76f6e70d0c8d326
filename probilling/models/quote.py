from __future__ import annotations
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from typing import Dict, FrozenSet, List, Optional
from datetime import datetime
from enum import Enum

from .common import TimeStamped, gen_id
from probilling.services.amounts import percent_of
from .line import DocumentLine, lines_total

NOTE_MAX_LENGTH = 2000
CANCEL_REASON_MAX_LENGTH = 1000


class QuoteStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    SIGNED = "SIGNED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


QUOTE_TRANSITIONS: Dict[QuoteStatus, FrozenSet[QuoteStatus]] = {
    QuoteStatus.DRAFT: frozenset({QuoteStatus.SENT, QuoteStatus.CANCELLED}),
    QuoteStatus.SENT: frozenset({QuoteStatus.SIGNED, QuoteStatus.EXPIRED, QuoteStatus.CANCELLED}),
    QuoteStatus.SIGNED: frozenset(),
    QuoteStatus.EXPIRED: frozenset(),
    QuoteStatus.CANCELLED: frozenset(),
}

# statuts où dates / note restent modifiables
QUOTE_EDITABLE = frozenset({QuoteStatus.DRAFT, QuoteStatus.SENT})
QUOTE_DELETABLE = frozenset({QuoteStatus.DRAFT, QuoteStatus.CANCELLED})


class Quote(TimeStamped):
    id: str = Field(default_factory=gen_id)
    business_id: str
    project_id: str
    client_id: Optional[str] = None
    status: QuoteStatus = QuoteStatus.DRAFT
    number: Optional[str] = None  # attribué une seule fois, à la 1re sortie de DRAFT

    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    note: Optional[str] = None

    deposit_percent: int = 0
    lines: List[DocumentLine] = Field(default_factory=list)
    total_cents: int = 0
    deposit_cents: int = 0
    balance_cents: int = 0

    created_by: Optional[str] = None

    model_config = ConfigDict(extra="ignore")  # tolère d'anciennes clés dans les JSON

    # helpers
    def is_terminal(self) -> bool:
        return not QUOTE_TRANSITIONS[self.status]

    def can_transition(self, target: QuoteStatus) -> bool:
        return target in QUOTE_TRANSITIONS[self.status]

    def recalc_totals(self) -> "Quote":
        """Recalcule total / acompte / solde depuis les lignes."""
        total = lines_total(self.lines)
        deposit = percent_of(total, self.deposit_percent) if self.deposit_percent > 0 else 0
        self.total_cents = total
        self.deposit_cents = deposit
        self.balance_cents = total - deposit
        return self


class QuotePatch(BaseModel):
    """Modification partielle: seuls les champs fournis sont appliqués."""

    issued_at: Optional[AwareDatetime] = None
    expires_at: Optional[AwareDatetime] = None
    note: Optional[str] = Field(default=None, max_length=NOTE_MAX_LENGTH)
    lines: Optional[list] = None

    model_config = ConfigDict(extra="forbid")
