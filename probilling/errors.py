"""Erreurs typées du noyau de facturation.

Toutes les erreurs métier dérivent de ``BillingError`` et sont levées avant
toute écriture. ``StorageError`` est réservée aux pannes d'infrastructure
(fichier illisible, disque plein...) et n'est volontairement pas une
``BillingError``.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base des erreurs métier."""

    code = "billing_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details


class Forbidden(BillingError):
    """L'acteur n'a pas la capacité admin/owner sur l'entreprise."""

    code = "forbidden"


class NotFound(BillingError):
    """Document, projet ou service inexistant (ou hors de l'entreprise)."""

    code = "not_found"


class Conflict(BillingError):
    """Opération illégale pour le statut courant du document."""

    code = "conflict"


class AlreadyGenerated(Conflict):
    """Une facture récurrente existe déjà pour cette période."""

    code = "already_generated"


class PreconditionFailed(BillingError):
    """Précondition métier non remplie (aucun service, prix manquant...)."""

    code = "precondition_failed"


class InvalidPeriod(PreconditionFailed):
    code = "invalid_period"


class InvalidAmount(BillingError):
    code = "invalid_amount"


class InvalidLines(InvalidAmount):
    """Une ou plusieurs lignes invalides.

    ``errors`` est une liste de ``{"index", "field", "message"}`` couvrant
    toutes les lignes fautives, pas seulement la première.
    """

    code = "invalid_lines"

    def __init__(self, errors: Optional[List[Dict[str, Any]]] = None, message: str = "") -> None:
        self.errors: List[Dict[str, Any]] = list(errors or [])
        super().__init__(message or "Lignes invalides.", errors=self.errors)


class InvalidPercent(BillingError):
    code = "invalid_percent"


class ExceedsRemaining(BillingError):
    """Le montant demandé dépasse le reste à facturer (projet) ou à payer (facture)."""

    code = "exceeds_remaining"


class NothingToInvoice(BillingError):
    code = "nothing_to_invoice"


class StorageError(Exception):
    """Panne de persistance (I/O, JSON corrompu à l'écriture...)."""
