from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from probilling.config import BillingSettings
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    QUOTE = "QUOTE"
    INVOICE = "INVOICE"


class NumberingService(Protocol):
    def next_number(self, business_id: str, kind: DocumentKind, at: Optional[datetime] = None) -> str: ...


def build_number(prefix: str, sequence: int, at: Optional[datetime] = None) -> str:
    year = (at or datetime.now()).year
    clean = prefix if prefix.endswith("-") else f"{prefix}-"
    return f"{clean}{year}-{sequence:04d}"


class SequenceNumbering:
    """
    Compteurs par entreprise et par type de document (repo "sequences").
    À appeler dans store.atomic(): le compteur avance dans la même
    transaction que le document numéroté.
    """

    def __init__(self, store: BillingStore, settings: Optional[BillingSettings] = None) -> None:
        self.store = store
        self.settings = settings or BillingSettings()

    def _prefix(self, business_id: str, kind: DocumentKind) -> str:
        s = self.settings.for_business(business_id)
        return s.quote_prefix if kind == DocumentKind.QUOTE else s.invoice_prefix

    def next_number(self, business_id: str, kind: DocumentKind, at: Optional[datetime] = None) -> str:
        kind = DocumentKind(kind)
        seq_id = f"{business_id}:{kind.value}"
        with self.store.atomic():
            row = self.store.sequences.get_by_id(seq_id) or {"id": seq_id, "current_value": 0}
            row["current_value"] = int(row.get("current_value") or 0) + 1
            self.store.sequences.upsert(row)
        number = build_number(self._prefix(business_id, kind), row["current_value"], at)
        logger.debug("Numéro %s attribué (%s, entreprise %s)", number, kind.value, business_id)
        return number
