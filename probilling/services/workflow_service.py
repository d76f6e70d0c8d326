from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from probilling.config import BillingSettings, default_data_dir
from probilling.models.invoice import Invoice
from probilling.models.quote import Quote
from probilling.services.access import Actor, CapabilityChecker, StaticCapabilities
from probilling.services.catalog_service import ProjectCatalog
from probilling.services.invoice_service import InvoiceService
from probilling.services.numbering_service import NumberingService, SequenceNumbering
from probilling.services.quote_service import QuoteService
from probilling.services.recurring_service import RecurringInvoiceGenerator
from probilling.services.reference_service import BillingReferenceCoordinator
from probilling.services.staged_service import StagedInvoicingService
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


class BillingWorkflow:
    """
    Câblage du noyau: un store partagé, puis catalogue, numérotation,
    devis, factures, situations, récurrences et devis de référence.
    """

    def __init__(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        *,
        settings: Optional[BillingSettings] = None,
        capabilities: Optional[CapabilityChecker] = None,
        store: Optional[BillingStore] = None,
        numbering: Optional[NumberingService] = None,
    ) -> None:
        if store is None:
            base = Path(data_dir) if data_dir is not None else default_data_dir()
            self.settings = settings or BillingSettings.load(base)
            store = BillingStore.open(base, backup_keep=self.settings.backup_keep)
            logger.info("Stockage facturation: %s", base)
        else:
            self.settings = settings or BillingSettings()
        self.store = store
        self.capabilities = capabilities or StaticCapabilities()

        self.catalog = ProjectCatalog(store, self.settings)
        self.numbering = numbering or SequenceNumbering(store, self.settings)
        self.quotes = QuoteService(store, self.catalog, self.numbering, self.capabilities, self.settings)
        self.invoices = InvoiceService(store, self.catalog, self.numbering, self.capabilities, self.settings)
        self.reference = BillingReferenceCoordinator(store, self.catalog, self.capabilities)
        self.staged = StagedInvoicingService(store, self.invoices, self.reference, self.capabilities)
        self.recurring = RecurringInvoiceGenerator(store, self.catalog, self.invoices, self.capabilities)

    @classmethod
    def in_memory(
        cls,
        *,
        settings: Optional[BillingSettings] = None,
        capabilities: Optional[CapabilityChecker] = None,
    ) -> "BillingWorkflow":
        return cls(store=BillingStore.in_memory(), settings=settings, capabilities=capabilities)

    # Signature client: devis signé + facture DRAFT, ou rien
    def sign_and_invoice(self, actor: Actor, quote_id: str, note: Optional[str] = None) -> tuple[Quote, Invoice]:
        with self.store.atomic():
            quote = self.quotes.mark_signed(actor, quote_id)
            inv = self.invoices.create_from_quote(actor, quote.id, note=note)
        return quote, inv
