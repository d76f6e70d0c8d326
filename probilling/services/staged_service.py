from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Union

from probilling.errors import ExceedsRemaining, InvalidAmount, NothingToInvoice
from probilling.models.invoice import Invoice, InvoiceKind
from probilling.models.line import DocumentLine
from probilling.services.access import Actor, CapabilityChecker, require_admin
from probilling.services.amounts import amount_to_cents, format_cents, parse_percent, percent_of
from probilling.services.invoice_service import InvoiceService
from probilling.services.reference_service import BillingReferenceCoordinator
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


class StageMode(str, Enum):
    PERCENT = "PERCENT"
    AMOUNT = "AMOUNT"
    FINAL = "FINAL"


def _stage_label(mode: StageMode, value: Any) -> str:
    if mode == StageMode.FINAL:
        return "Facture finale"
    if mode == StageMode.PERCENT:
        return f"Situation de paiement ({parse_percent(value).normalize():f} %)"
    return "Situation de paiement"


class StagedInvoicingService:
    """
    Facturation par situations: pourcentage du total, montant fixe, ou solde.
    Seul chemin de création d'une facture partielle: la lecture du reste à
    facturer et l'insertion se font dans la même transaction.
    """

    def __init__(
        self,
        store: BillingStore,
        invoices: InvoiceService,
        reference: BillingReferenceCoordinator,
        capabilities: CapabilityChecker,
    ) -> None:
        self.store = store
        self.invoices = invoices
        self.reference = reference
        self.capabilities = capabilities

    def compute_amount(self, mode: StageMode, value: Any, total_cents: int, remaining_cents: int) -> int:
        if remaining_cents <= 0:
            raise NothingToInvoice("Aucun montant restant à facturer.")
        if mode == StageMode.FINAL:
            amount = remaining_cents
        elif mode == StageMode.PERCENT:
            amount = percent_of(total_cents, value)
        else:
            amount = amount_to_cents(value)
        if amount <= 0:
            raise InvalidAmount("Montant calculé nul.", mode=mode.value, value=value)
        if amount > remaining_cents:
            raise ExceedsRemaining(
                "Montant supérieur au reste à facturer.", amount_cents=amount, remaining_cents=remaining_cents
            )
        return amount

    def create_staged(
        self,
        actor: Actor,
        project_id: str,
        mode: Union[StageMode, str],
        value: Optional[Any] = None,
    ) -> Invoice:
        require_admin(self.capabilities, actor)
        try:
            mode = StageMode(mode)
        except ValueError:
            raise InvalidAmount(f"Mode inconnu: {mode!r}") from None

        with self.store.atomic():
            summary = self.reference.summary(actor.business_id, project_id)
            amount = self.compute_amount(
                mode, value, summary.total_cents, summary.remaining_to_invoice_cents
            )
            line = DocumentLine(label=_stage_label(mode, value), quantity=1, unit_price_cents=amount)
            inv = self.invoices.create_standalone(
                actor,
                project_id,
                [line],
                kind=InvoiceKind.FINAL if mode == StageMode.FINAL else InvoiceKind.STAGED,
            )

        logger.info(
            "Situation %s sur projet %s: %s (reste %s)",
            mode.value, project_id, format_cents(amount),
            format_cents(summary.remaining_to_invoice_cents - amount),
        )
        return inv
