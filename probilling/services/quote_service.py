from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from probilling.config import BillingSettings
from probilling.errors import Conflict, NotFound, PreconditionFailed
from probilling.models.common import as_utc, utcnow
from probilling.models.line import DESCRIPTION_MAX_LENGTH, LABEL_MAX_LENGTH, DocumentLine, validate_lines
from probilling.models.quote import (
    CANCEL_REASON_MAX_LENGTH,
    NOTE_MAX_LENGTH,
    QUOTE_DELETABLE,
    QUOTE_EDITABLE,
    Quote,
    QuotePatch,
    QuoteStatus,
)
from probilling.services.access import Actor, CapabilityChecker, require_admin
from probilling.services.amounts import format_cents
from probilling.services.catalog_service import PricedItem, ProjectCatalog
from probilling.services.numbering_service import DocumentKind, NumberingService
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


# ---------- Helpers ---------- #

def _line_from_item(it: PricedItem) -> DocumentLine:
    desc = (it.description or "").strip()[:DESCRIPTION_MAX_LENGTH] or None
    return DocumentLine(
        label=it.label.strip()[:LABEL_MAX_LENGTH],
        description=desc,
        quantity=it.quantity,
        unit_price_cents=it.unit_price_cents,
        service_ref=it.service_id,
        unit_label=it.unit_label,
        billing_unit=it.billing_unit,
    )


def clean_cancel_reason(reason: Optional[str]) -> str:
    txt = (reason or "").strip()
    if not txt:
        raise PreconditionFailed("Motif d'annulation requis.")
    if len(txt) > CANCEL_REASON_MAX_LENGTH:
        raise PreconditionFailed(f"Motif d'annulation trop long ({CANCEL_REASON_MAX_LENGTH} max).")
    return txt


# ---------- Service ---------- #

class QuoteService:
    """
    Cycle de vie des devis:
      DRAFT -> SENT | CANCELLED ; SENT -> SIGNED | EXPIRED | CANCELLED
    Toute mutation: droits admin, puis relecture / validation / écriture
    dans une seule transaction store.atomic().
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

    # ----- Hydratation ----- #

    def _load(self, business_id: str, quote_id: str) -> Quote:
        row = self.store.quotes.get_by_id(quote_id)
        if row is None or row.get("business_id") != business_id:
            raise NotFound("Devis introuvable.", quote_id=quote_id)
        return Quote.model_validate(row)

    def _save(self, quote: Quote) -> Quote:
        quote.touch()
        self.store.quotes.update(quote)
        return quote

    # ----- Lecture ----- #

    def get(self, business_id: str, quote_id: str) -> Quote:
        return self._load(business_id, quote_id)

    def list_by_project(self, business_id: str, project_id: str) -> List[Quote]:
        rows = self.store.quotes.find(
            lambda d: d.get("business_id") == business_id and d.get("project_id") == project_id
        )
        quotes = [Quote.model_validate(d) for d in rows]
        return sorted(quotes, key=lambda q: q.created_at, reverse=True)

    # ----- Création ----- #

    def create(self, actor: Actor, project_id: str, note: Optional[str] = None) -> Quote:
        require_admin(self.capabilities, actor)
        bid = actor.business_id
        with self.store.atomic():
            pricing = self.catalog.price_project(bid, project_id)
            if pricing is None:
                raise NotFound("Projet introuvable.", project_id=project_id)
            if not pricing.items:
                raise PreconditionFailed("Aucun service chiffré sur le projet.", project_id=project_id)
            missing = pricing.missing_price_labels
            if missing:
                raise PreconditionFailed("Prix manquant pour certains services.", missing=missing)

            note = (note or "").strip() or None
            if note and len(note) > NOTE_MAX_LENGTH:
                raise PreconditionFailed(f"Note trop longue ({NOTE_MAX_LENGTH} max).")

            now = utcnow()
            settings = self.settings.for_business(bid)
            quote = Quote(
                business_id=bid,
                project_id=project_id,
                client_id=pricing.client_id,
                deposit_percent=pricing.deposit_percent,
                expires_at=now + timedelta(days=settings.quote_validity_days),
                note=note,
                lines=[_line_from_item(it) for it in pricing.items],
                created_by=actor.id,
            ).recalc_totals()
            self.store.quotes.add(quote)

        logger.info("Devis %s créé (projet %s, %s)", quote.id, project_id, format_cents(quote.total_cents))
        return quote

    # ----- Transitions ----- #

    def transition(
        self,
        actor: Actor,
        quote_id: str,
        target: Union[QuoteStatus, str],
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Quote:
        require_admin(self.capabilities, actor)
        try:
            target = QuoteStatus(target)
        except ValueError:
            raise Conflict(f"Statut inconnu: {target!r}") from None

        with self.store.atomic():
            quote = self._load(actor.business_id, quote_id)
            previous = quote.status
            if not quote.can_transition(target):
                logger.warning("Devis %s: transition %s -> %s refusée", quote.id, previous.value, target.value)
                raise Conflict(
                    "Transition de statut refusée.", quote_id=quote.id, current=previous.value, target=target.value
                )
            cancel_reason = clean_cancel_reason(reason) if target == QuoteStatus.CANCELLED else None

            now = as_utc(at) or utcnow()
            # numérotation: une seule fois, à la première sortie de DRAFT
            if quote.number is None:
                quote.number = self.numbering.next_number(
                    quote.business_id, DocumentKind.QUOTE, at=quote.issued_at or now
                )

            if target == QuoteStatus.SENT:
                quote.issued_at = quote.issued_at or now
            elif target == QuoteStatus.SIGNED:
                quote.signed_at = quote.signed_at or now
            elif target == QuoteStatus.CANCELLED:
                quote.cancelled_at = now
                quote.cancel_reason = cancel_reason

            quote.status = target
            self._save(quote)

            if target == QuoteStatus.SIGNED:
                self._set_project_reference(quote)
            elif target == QuoteStatus.CANCELLED:
                self._release_project_reference(quote)

        logger.info("Devis %s (%s): %s -> %s", quote.id, quote.number, previous.value, target.value)
        return quote

    def mark_sent(self, actor: Actor, quote_id: str, at: Optional[datetime] = None) -> Quote:
        return self.transition(actor, quote_id, QuoteStatus.SENT, at=at)

    def mark_signed(self, actor: Actor, quote_id: str, at: Optional[datetime] = None) -> Quote:
        return self.transition(actor, quote_id, QuoteStatus.SIGNED, at=at)

    def mark_expired(self, actor: Actor, quote_id: str) -> Quote:
        return self.transition(actor, quote_id, QuoteStatus.EXPIRED)

    def cancel(self, actor: Actor, quote_id: str, reason: Optional[str]) -> Quote:
        return self.transition(actor, quote_id, QuoteStatus.CANCELLED, reason=reason)

    # ----- Devis de référence du projet ----- #

    def _set_project_reference(self, quote: Quote) -> None:
        project = self.catalog.get_project(quote.business_id, quote.project_id)
        if project is not None and project.reference_quote_id != quote.id:
            project.reference_quote_id = quote.id
            self.catalog.save_project(project)

    def _release_project_reference(self, quote: Quote) -> None:
        project = self.catalog.get_project(quote.business_id, quote.project_id)
        if project is None or project.reference_quote_id != quote.id:
            return
        signed = [
            q for q in self.list_by_project(quote.business_id, quote.project_id)
            if q.status == QuoteStatus.SIGNED and q.id != quote.id
        ]
        signed.sort(key=lambda q: as_utc(q.signed_at or q.issued_at or q.created_at), reverse=True)
        project.reference_quote_id = signed[0].id if signed else None
        self.catalog.save_project(project)

    # ----- Edition ----- #

    @staticmethod
    def _coerce_patch(patch: Union[QuotePatch, Dict[str, Any]]) -> QuotePatch:
        if isinstance(patch, QuotePatch):
            return patch
        try:
            return QuotePatch.model_validate(patch)
        except ValidationError as e:
            raise PreconditionFailed("Modification invalide.", errors=e.errors()) from e

    def edit(self, actor: Actor, quote_id: str, patch: Union[QuotePatch, Dict[str, Any]]) -> Quote:
        require_admin(self.capabilities, actor)
        patch = self._coerce_patch(patch)
        fields = patch.model_fields_set
        if not fields:
            raise PreconditionFailed("Aucune modification.")

        with self.store.atomic():
            quote = self._load(actor.business_id, quote_id)
            if quote.status not in QUOTE_EDITABLE:
                raise Conflict("Devis signé/annulé/expiré: modification interdite.", status=quote.status.value)
            if "lines" in fields:
                if quote.status != QuoteStatus.DRAFT:
                    raise Conflict("Modification des lignes uniquement en brouillon.", status=quote.status.value)
                quote.lines = validate_lines(
                    patch.lines,
                    allow_product_ref=False,
                    service_exists=partial(self.catalog.has_service, quote.business_id),
                )
                quote.recalc_totals()
            if "issued_at" in fields:
                quote.issued_at = as_utc(patch.issued_at)
            if "expires_at" in fields:
                quote.expires_at = as_utc(patch.expires_at)
            if "note" in fields:
                quote.note = (patch.note or "").strip() or None
            self._save(quote)

        logger.info("Devis %s modifié (%s)", quote.id, ", ".join(sorted(fields)))
        return quote

    # ----- Suppression ----- #

    def delete(self, actor: Actor, quote_id: str) -> bool:
        require_admin(self.capabilities, actor)
        with self.store.atomic():
            quote = self._load(actor.business_id, quote_id)
            linked = self.store.invoices.find(lambda d: d.get("source_quote_id") == quote.id)
            if linked:
                raise Conflict("Impossible de supprimer: facture liée.", invoices=[d.get("id") for d in linked])
            if quote.status not in QUOTE_DELETABLE:
                raise Conflict(
                    "Suppression autorisée uniquement pour les devis brouillons/annulés.", status=quote.status.value
                )
            self.store.quotes.delete(quote.id)
            project = self.catalog.get_project(quote.business_id, quote.project_id)
            if project is not None and project.reference_quote_id == quote.id:
                project.reference_quote_id = None
                self.catalog.save_project(project)

        logger.info("Devis %s supprimé", quote_id)
        return True
