# probilling/services/invoice_service.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from probilling.config import BillingSettings
from probilling.errors import Conflict, ExceedsRemaining, NotFound, PreconditionFailed
from probilling.models.common import as_utc, utcnow
from probilling.models.invoice import (
    INVOICE_DELETABLE,
    INVOICE_EDITABLE,
    Invoice,
    InvoiceKind,
    InvoicePatch,
    InvoiceStatus,
    PAYMENT_TEXT_MAX_LENGTH,
    Payment,
    PaymentMethod,
)
from probilling.models.line import DocumentLine, validate_lines
from probilling.models.quote import CANCEL_REASON_MAX_LENGTH, NOTE_MAX_LENGTH, Quote, QuoteStatus
from probilling.services.access import Actor, CapabilityChecker, require_admin
from probilling.services.amounts import amount_to_cents, format_cents
from probilling.services.catalog_service import ProjectCatalog
from probilling.services.numbering_service import DocumentKind, NumberingService
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


def _clean_note(note: Optional[str]) -> Optional[str]:
    txt = (note or "").strip()
    if len(txt) > NOTE_MAX_LENGTH:
        raise PreconditionFailed(f"Note trop longue ({NOTE_MAX_LENGTH} max).")
    return txt or None


def _clean_payment_text(value: Optional[str], label: str) -> Optional[str]:
    txt = (value or "").strip()
    if len(txt) > PAYMENT_TEXT_MAX_LENGTH:
        raise PreconditionFailed(f"{label} trop longue ({PAYMENT_TEXT_MAX_LENGTH} max).")
    return txt or None


# ---------- Service ----------
class InvoiceService:
    """
    Cycle de vie des factures:
      DRAFT -> SENT | CANCELLED ; SENT -> PAID | CANCELLED
    Les factures issues d'un devis en copient les lignes (copie indépendante).
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: ProjectCatalog,
        numbering: NumberingService,
        capabilities: CapabilityChecker,
        settings: Optional[BillingSettings] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.numbering = numbering
        self.capabilities = capabilities
        self.settings = settings or BillingSettings()

    # ----------- hydratation -----------
    def _load(self, business_id: str, invoice_id: str) -> Invoice:
        row = self.store.invoices.get_by_id(invoice_id)
        if row is None or row.get("business_id") != business_id:
            raise NotFound("Facture introuvable.", invoice_id=invoice_id)
        return Invoice.model_validate(row)

    def _save(self, inv: Invoice) -> Invoice:
        inv.touch()
        self.store.invoices.update(inv)
        return inv

    # ----------- CRUD/list -----------
    def get(self, business_id: str, invoice_id: str) -> Invoice:
        return self._load(business_id, invoice_id)

    def list_by_project(self, business_id: str, project_id: str) -> List[Invoice]:
        rows = self.store.invoices.find(
            lambda d: d.get("business_id") == business_id and d.get("project_id") == project_id
        )
        return sorted((Invoice.model_validate(d) for d in rows), key=lambda i: i.created_at)

    def list_by_quote(self, business_id: str, quote_id: str) -> List[Invoice]:
        rows = self.store.invoices.find(
            lambda d: d.get("business_id") == business_id and d.get("source_quote_id") == quote_id
        )
        return sorted((Invoice.model_validate(d) for d in rows), key=lambda i: i.created_at)

    def _default_due_at(self, business_id: str, base: datetime) -> datetime:
        return base + timedelta(days=self.settings.for_business(business_id).payment_terms_days)

    def _insert(self, inv: Invoice) -> Invoice:
        inv.recalc_totals()
        self.store.invoices.add(inv)
        logger.info(
            "Facture %s créée (%s, projet %s, %s)",
            inv.id, inv.kind.value, inv.project_id, format_cents(inv.total_cents),
        )
        return inv

    # ----------- création -----------
    def create_from_quote(self, actor: Actor, quote_id: str, note: Optional[str] = None) -> Invoice:
        """Facture DRAFT depuis un devis SIGNED. Le devis n'est pas modifié."""
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            row = self.store.quotes.get_by_id(quote_id)
            if row is None or row.get("business_id") != actor.business_id:
                raise NotFound("Devis introuvable.", quote_id=quote_id)
            quote = Quote.model_validate(row)
            if quote.status != QuoteStatus.SIGNED:
                raise Conflict("Le devis doit être signé.", status=quote.status.value)

            inv = Invoice(
                business_id=quote.business_id,
                project_id=quote.project_id,
                client_id=quote.client_id,
                source_quote_id=quote.id,
                kind=InvoiceKind.QUOTE,
                due_at=self._default_due_at(quote.business_id, utcnow()),
                note=_clean_note(note) if note is not None else quote.note,
                lines=[ln.copy_for() for ln in quote.lines],
                created_by=actor.id,
            )
            return self._insert(inv)

    def create_standalone(
        self,
        actor: Actor,
        project_id: str,
        lines: Sequence[Union[DocumentLine, Dict[str, Any]]],
        *,
        note: Optional[str] = None,
        kind: InvoiceKind = InvoiceKind.STANDARD,
        due_at: Optional[datetime] = None,
        issued_at: Optional[datetime] = None,
        project_service_id: Optional[str] = None,
        period_key: Optional[str] = None,
    ) -> Invoice:
        require_admin(self.capabilities, actor)
        bid = actor.business_id
        with self.store.atomic():
            project = self.catalog.get_project(bid, project_id)
            if project is None:
                raise NotFound("Projet introuvable.", project_id=project_id)
            valid = validate_lines(
                list(lines),
                allow_product_ref=True,
                service_exists=partial(self.catalog.has_service, bid),
                product_exists=partial(self.catalog.has_product, bid),
            )
            inv = Invoice(
                business_id=bid,
                project_id=project.id,
                client_id=project.client_id,
                kind=kind,
                issued_at=as_utc(issued_at),
                due_at=as_utc(due_at) or self._default_due_at(bid, utcnow()),
                note=_clean_note(note),
                lines=valid,
                project_service_id=project_service_id,
                period_key=period_key,
                created_by=actor.id,
            )
            return self._insert(inv)

    # ----------- transitions -----------
    def transition(
        self,
        actor: Actor,
        invoice_id: str,
        target: Union[InvoiceStatus, str],
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Invoice:
        require_admin(self.capabilities, actor)
        try:
            target = InvoiceStatus(target)
        except ValueError:
            raise Conflict(f"Statut inconnu: {target!r}") from None

        with self.store.atomic():
            inv = self._load(actor.business_id, invoice_id)
            previous = inv.status
            if not inv.can_transition(target):
                logger.warning("Facture %s: transition %s -> %s refusée", inv.id, previous.value, target.value)
                raise Conflict(
                    "Transition de statut refusée.", invoice_id=inv.id, current=previous.value, target=target.value
                )
            cancel_reason = (reason or "").strip() or None
            if cancel_reason and len(cancel_reason) > CANCEL_REASON_MAX_LENGTH:
                raise PreconditionFailed(f"Motif d'annulation trop long ({CANCEL_REASON_MAX_LENGTH} max).")

            now = as_utc(at) or utcnow()
            if inv.number is None:
                inv.number = self.numbering.next_number(inv.business_id, DocumentKind.INVOICE, at=inv.issued_at or now)

            if target == InvoiceStatus.SENT:
                inv.issued_at = inv.issued_at or now
                inv.due_at = inv.due_at or self._default_due_at(inv.business_id, inv.issued_at)
            elif target == InvoiceStatus.PAID:
                inv.paid_at = inv.paid_at or now
            elif target == InvoiceStatus.CANCELLED:
                inv.cancelled_at = now
                inv.cancel_reason = cancel_reason

            inv.status = target
            self._save(inv)

        logger.info("Facture %s (%s): %s -> %s", inv.id, inv.number, previous.value, target.value)
        return inv

    def mark_sent(self, actor: Actor, invoice_id: str, at: Optional[datetime] = None) -> Invoice:
        return self.transition(actor, invoice_id, InvoiceStatus.SENT, at=at)

    def mark_paid(self, actor: Actor, invoice_id: str, at: Optional[datetime] = None) -> Invoice:
        return self.transition(actor, invoice_id, InvoiceStatus.PAID, at=at)

    def cancel(self, actor: Actor, invoice_id: str, reason: Optional[str] = None) -> Invoice:
        return self.transition(actor, invoice_id, InvoiceStatus.CANCELLED, reason=reason)

    # ----------- règlements -----------
    def record_payment(
        self,
        actor: Actor,
        invoice_id: str,
        amount: Union[int, str],
        *,
        paid_at: Optional[datetime] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.WIRE,
        reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Invoice:
        """
        Enregistre un règlement (partiel ou total) sur une facture SENT.
        Le reste à payer est relu sous verrou; quand il tombe à zéro la
        facture passe PAID avec paid_at = date du dernier règlement.
        """
        require_admin(self.capabilities, actor)
        cents = amount_to_cents(amount)
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise PreconditionFailed(f"Moyen de paiement inconnu: {method!r}") from None
        reference = _clean_payment_text(reference, "Référence")
        note = _clean_payment_text(note, "Note")
        when = as_utc(paid_at) or utcnow()

        with self.store.atomic():
            inv = self._load(actor.business_id, invoice_id)
            if inv.status == InvoiceStatus.CANCELLED:
                raise Conflict("Facture annulée: règlement impossible.", invoice_id=inv.id)
            if inv.status == InvoiceStatus.DRAFT:
                raise Conflict("La facture doit être envoyée avant règlement.", invoice_id=inv.id)
            remaining = inv.remaining_cents()
            if remaining <= 0:
                raise Conflict("Facture déjà soldée.", invoice_id=inv.id)
            if cents > remaining:
                raise ExceedsRemaining(
                    "Montant supérieur au reste à payer.", amount_cents=cents, remaining_cents=remaining
                )

            inv.payments.append(
                Payment(
                    amount_cents=cents,
                    paid_at=when,
                    method=method,
                    reference=reference,
                    note=note,
                    created_by=actor.id,
                )
            )
            if inv.remaining_cents() == 0 and inv.status == InvoiceStatus.SENT:
                inv.status = InvoiceStatus.PAID
                inv.paid_at = when
            self._save(inv)

        logger.info(
            "Facture %s: règlement %s (%s), payé %s / %s",
            inv.id, format_cents(cents), method.value,
            format_cents(inv.paid_cents()), format_cents(inv.total_cents),
        )
        return inv

    def delete_payment(self, actor: Actor, invoice_id: str, payment_id: str) -> Invoice:
        """Retire un règlement saisi par erreur. Une facture PAID reste définitive."""
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            inv = self._load(actor.business_id, invoice_id)
            if inv.status != InvoiceStatus.SENT:
                raise Conflict("Règlements modifiables uniquement sur une facture envoyée.", status=inv.status.value)
            kept = [p for p in inv.payments if p.id != payment_id]
            if len(kept) == len(inv.payments):
                raise NotFound("Règlement introuvable.", payment_id=payment_id)
            inv.payments = kept
            self._save(inv)

        logger.info("Facture %s: règlement %s supprimé", inv.id, payment_id)
        return inv

    # ----------- édition -----------
    @staticmethod
    def _coerce_patch(patch: Union[InvoicePatch, Dict[str, Any]]) -> InvoicePatch:
        if isinstance(patch, InvoicePatch):
            return patch
        try:
            return InvoicePatch.model_validate(patch)
        except ValidationError as e:
            raise PreconditionFailed("Modification invalide.", errors=e.errors()) from e

    def edit(self, actor: Actor, invoice_id: str, patch: Union[InvoicePatch, Dict[str, Any]]) -> Invoice:
        require_admin(self.capabilities, actor)
        patch = self._coerce_patch(patch)
        fields = patch.model_fields_set
        if not fields:
            raise PreconditionFailed("Aucune modification.")

        with self.store.atomic():
            inv = self._load(actor.business_id, invoice_id)
            if inv.status not in INVOICE_EDITABLE:
                raise Conflict("Facture payée/annulée: modification interdite.", status=inv.status.value)
            if "lines" in fields:
                if inv.status != InvoiceStatus.DRAFT:
                    raise Conflict("Modification des lignes uniquement en brouillon.", status=inv.status.value)
                inv.lines = validate_lines(
                    patch.lines,
                    allow_product_ref=True,
                    service_exists=partial(self.catalog.has_service, inv.business_id),
                    product_exists=partial(self.catalog.has_product, inv.business_id),
                )
                inv.recalc_totals()
            if "issued_at" in fields:
                inv.issued_at = as_utc(patch.issued_at)
            if "due_at" in fields:
                inv.due_at = as_utc(patch.due_at)
            if "note" in fields:
                inv.note = (patch.note or "").strip() or None
            self._save(inv)

        logger.info("Facture %s modifiée (%s)", inv.id, ", ".join(sorted(fields)))
        return inv

    # ----------- suppression -----------
    def delete(self, actor: Actor, invoice_id: str) -> bool:
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            inv = self._load(actor.business_id, invoice_id)
            if inv.status not in INVOICE_DELETABLE:
                raise Conflict(
                    "Suppression autorisée uniquement pour les factures brouillons/annulées.", status=inv.status.value
                )
            self.store.invoices.delete(inv.id)

        logger.info("Facture %s supprimée", invoice_id)
        return True

