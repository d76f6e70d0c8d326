from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional

from probilling.errors import AlreadyGenerated, Conflict, InvalidPeriod, NotFound, PreconditionFailed
from probilling.models.common import utcnow
from probilling.models.invoice import Invoice, InvoiceKind
from probilling.models.line import DESCRIPTION_MAX_LENGTH, LABEL_MAX_LENGTH, BillingUnit, DocumentLine
from probilling.models.project import RecurringInvoiceCursor
from probilling.services.access import Actor, CapabilityChecker, require_admin
from probilling.services.amounts import format_cents
from probilling.services.catalog_service import ProjectCatalog
from probilling.services.invoice_service import InvoiceService
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)

_PERIOD = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def period_key_for(d: date) -> str:
    """Clé de période mensuelle: "YYYY-MM"."""
    return f"{d.year:04d}-{d.month:02d}"


class RecurringInvoiceGenerator:
    """
    Une facture DRAFT par période et par service de projet mensuel.
    Le curseur (last_generated_period_key) est la seule source de vérité:
    lecture, contrôle et avance du curseur dans la même transaction.
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: ProjectCatalog,
        invoices: InvoiceService,
        capabilities: CapabilityChecker,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.invoices = invoices
        self.capabilities = capabilities

    def get_cursor(self, project_service_id: str) -> Optional[RecurringInvoiceCursor]:
        row = self.store.recurring_cursors.get_by_id(project_service_id)
        return RecurringInvoiceCursor.model_validate(row) if row else None

    def generate(self, actor: Actor, project_service_id: str, period_key: str) -> Invoice:
        require_admin(self.capabilities, actor)
        if not isinstance(period_key, str) or not _PERIOD.match(period_key):
            raise InvalidPeriod(f"Période invalide (YYYY-MM attendu): {period_key!r}", period_key=period_key)

        with self.store.atomic():
            found = self.catalog.get_project_service(actor.business_id, project_service_id)
            if found is None:
                raise NotFound("Service introuvable.", project_service_id=project_service_id)
            ps, project = found
            if ps.billing_unit != BillingUnit.MONTHLY:
                raise PreconditionFailed("Ce service n'est pas un abonnement mensuel.", project_service_id=ps.id)

            item = self.catalog.price_item(ps)
            if item.missing_price:
                raise PreconditionFailed("Prix manquant pour ce service.", project_service_id=ps.id)

            cursor = self.get_cursor(ps.id) or RecurringInvoiceCursor(
                project_service_id=ps.id, business_id=actor.business_id
            )
            last = cursor.last_generated_period_key
            if last == period_key:
                logger.warning("Service %s: période %s déjà facturée", ps.id, period_key)
                raise AlreadyGenerated(
                    "Une facture existe déjà pour cette période.",
                    project_service_id=ps.id, period_key=period_key, invoice_id=cursor.last_invoice_id,
                )
            if last is not None and period_key < last:
                raise Conflict(
                    "Période antérieure à la dernière facturée.", project_service_id=ps.id, period_key=period_key, last=last
                )

            description = f"Période {period_key}"
            if item.description:
                description = f"{item.description.strip()} - {description}"[:DESCRIPTION_MAX_LENGTH]
            line = DocumentLine(
                label=item.label[:LABEL_MAX_LENGTH],
                description=description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                service_ref=item.service_id,
                unit_label=item.unit_label,
                billing_unit=BillingUnit.MONTHLY,
            )
            inv = self.invoices.create_standalone(
                actor,
                project.id,
                [line],
                kind=InvoiceKind.RECURRING,
                project_service_id=ps.id,
                period_key=period_key,
            )

            cursor.last_generated_period_key = period_key
            cursor.last_invoice_id = inv.id
            cursor.updated_at = utcnow()
            self.store.recurring_cursors.upsert(cursor)

        logger.info(
            "Facture récurrente %s: service %s, période %s, %s",
            inv.id, ps.id, period_key, format_cents(inv.total_cents),
        )
        return inv
