from __future__ import annotations

import logging
from typing import Optional

from probilling.errors import NotFound
from probilling.models.invoice import Invoice, InvoiceStatus
from probilling.models.project import Project, ProjectBillingSummary
from probilling.services.access import Actor, CapabilityChecker, require_admin
from probilling.services.amounts import percent_of
from probilling.services.catalog_service import ProjectCatalog
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


class BillingReferenceCoordinator:
    """Devis de référence d'un projet (reporting) et synthèse de facturation."""

    def __init__(self, store: BillingStore, catalog: ProjectCatalog, capabilities: CapabilityChecker) -> None:
        self.store = store
        self.catalog = catalog
        self.capabilities = capabilities

    def _project(self, business_id: str, project_id: str) -> Project:
        project = self.catalog.get_project(business_id, project_id)
        if project is None:
            raise NotFound("Projet introuvable.", project_id=project_id)
        return project

    def set_reference_quote(self, actor: Actor, project_id: str, quote_id: str) -> Project:
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            project = self._project(actor.business_id, project_id)
            row = self.store.quotes.get_by_id(quote_id)
            if row is None or row.get("business_id") != actor.business_id or row.get("project_id") != project.id:
                raise NotFound("Devis introuvable pour ce projet.", quote_id=quote_id, project_id=project_id)
            project.reference_quote_id = quote_id
            self.catalog.save_project(project)
        logger.info("Projet %s: devis de référence %s", project_id, quote_id)
        return project

    def clear_reference_quote(self, actor: Actor, project_id: str) -> Project:
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            project = self._project(actor.business_id, project_id)
            project.reference_quote_id = None
            self.catalog.save_project(project)
        logger.info("Projet %s: devis de référence retiré", project_id)
        return project

    def summary(self, business_id: str, project_id: str) -> ProjectBillingSummary:
        """Agrégat recalculé à chaque appel (factures annulées exclues)."""
        project = self._project(business_id, project_id)
        pricing = self.catalog.price_project(business_id, project_id)
        total = pricing.total_cents if pricing else 0
        deposit_percent = pricing.deposit_percent if pricing else 0

        invoiced = paid = 0
        for d in self.store.invoices.find(
            lambda d: d.get("business_id") == business_id and d.get("project_id") == project_id
        ):
            if d.get("status") == InvoiceStatus.CANCELLED.value:
                continue
            inv = Invoice.model_validate(d)
            invoiced += inv.total_cents
            paid += inv.paid_cents()

        deposit = percent_of(total, deposit_percent) if total > 0 and deposit_percent > 0 else 0
        return ProjectBillingSummary(
            project_id=project.id,
            business_id=business_id,
            client_id=project.client_id,
            reference_quote_id=project.reference_quote_id,
            total_cents=total,
            deposit_percent=deposit_percent,
            deposit_cents=deposit,
            balance_cents=total - deposit,
            already_invoiced_cents=invoiced,
            already_paid_cents=paid,
            remaining_to_invoice_cents=max(0, total - invoiced),
        )
