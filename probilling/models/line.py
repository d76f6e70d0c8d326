from __future__ import annotations
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from probilling.errors import BillingError, InvalidLines
from probilling.services.amounts import parse_decimal_to_cents
from .common import gen_id

LABEL_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000


class BillingUnit(str, Enum):
    ONE_OFF = "ONE_OFF"
    MONTHLY = "MONTHLY"


class DocumentLine(BaseModel):
    """Ligne chiffrée partagée par devis et factures (snapshot, pas de lien vivant)."""

    id: str = Field(default_factory=gen_id)
    label: str = Field(min_length=1, max_length=LABEL_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    quantity: int = Field(default=1, ge=1, strict=True)
    unit_price_cents: int = Field(default=0, ge=0, strict=True)
    total_cents: int = 0
    service_ref: Optional[str] = None
    product_ref: Optional[str] = None  # factures uniquement
    unit_label: Optional[str] = None
    billing_unit: BillingUnit = BillingUnit.ONE_OFF

    @field_validator("label", mode="before")
    @classmethod
    def _strip_label(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @model_validator(mode="after")
    def _recompute_total(self) -> "DocumentLine":
        # total toujours dérivé, jamais fourni par l'appelant
        object.__setattr__(self, "total_cents", self.quantity * self.unit_price_cents)
        return self

    def copy_for(self) -> "DocumentLine":
        """Copie indépendante (nouvel id), pour devis -> facture."""
        return self.model_copy(update={"id": gen_id()})


def line_total(line: DocumentLine) -> int:
    return line.quantity * line.unit_price_cents


def lines_total(lines: Iterable[DocumentLine]) -> int:
    return sum(line_total(ln) for ln in lines)


# ---------- Validation partagée devis / facture ---------- #

def _normalize_line_payload(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, DocumentLine):
        return raw.model_dump()
    if not isinstance(raw, dict):
        raise TypeError("ligne non structurée")
    d = dict(raw)
    d.pop("total_cents", None)
    # prix saisi en euros ("18,50") -> centimes
    if "unit_price_cents" not in d and d.get("unit_price") not in (None, ""):
        d["unit_price_cents"] = parse_decimal_to_cents(d.pop("unit_price"))
    else:
        d.pop("unit_price", None)
    return d


def validate_lines(
    raw_lines: Any,
    *,
    allow_product_ref: bool = False,
    service_exists: Optional[Callable[[str], bool]] = None,
    product_exists: Optional[Callable[[str], bool]] = None,
) -> List[DocumentLine]:
    """
    Valide un jeu complet de lignes. Tout ou rien: la moindre ligne invalide
    lève InvalidLines avec la liste de toutes les erreurs rencontrées.
    """
    if not isinstance(raw_lines, (list, tuple)):
        raise InvalidLines([{"index": None, "field": "lines", "message": "lines doit être une liste"}])
    if not raw_lines:
        raise InvalidLines([{"index": None, "field": "lines", "message": "au moins une ligne requise"}])

    errors: List[Dict[str, Any]] = []
    out: List[DocumentLine] = []
    for idx, raw in enumerate(raw_lines):
        try:
            payload = _normalize_line_payload(raw)
            line = DocumentLine.model_validate(payload)
        except TypeError as e:
            errors.append({"index": idx, "field": None, "message": str(e)})
            continue
        except BillingError as e:
            errors.append({"index": idx, "field": "unit_price", "message": e.message})
            continue
        except ValidationError as e:
            for err in e.errors():
                loc = err.get("loc") or (None,)
                errors.append({"index": idx, "field": str(loc[0]) if loc[0] is not None else None, "message": err.get("msg")})
            continue

        if line.product_ref and not allow_product_ref:
            errors.append({"index": idx, "field": "product_ref", "message": "produit interdit sur un devis"})
        elif line.product_ref and product_exists is not None and not product_exists(line.product_ref):
            errors.append({"index": idx, "field": "product_ref", "message": "produit inconnu"})
        if line.service_ref and service_exists is not None and not service_exists(line.service_ref):
            errors.append({"index": idx, "field": "service_ref", "message": "service inconnu"})
        out.append(line)

    if errors:
        raise InvalidLines(errors)
    return out
