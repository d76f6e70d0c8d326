from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from probilling.errors import InvalidAmount, InvalidPercent


# ---------- Helpers ---------- #

_NOISE = re.compile(r"[\s  €$]|EUR", re.IGNORECASE)
_NUMBER = re.compile(r"^\d*(?:[.,]\d*)?$")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_decimal(val: Any) -> Decimal | None:
    """Normalise une saisie utilisateur ("1 234,50 €", "12.5", 12) en Decimal."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, Decimal):
        return val if val.is_finite() else None
    if isinstance(val, int):
        return Decimal(val)
    if isinstance(val, float):
        d = Decimal(str(val))
        return d if d.is_finite() else None
    s = _NOISE.sub("", str(val))
    if s.startswith("-"):
        return Decimal(-1)  # signalé comme négatif par l'appelant
    if not s or not _NUMBER.match(s) or s in (".", ","):
        return None
    try:
        return Decimal(s.replace(",", "."))
    except (InvalidOperation, ValueError):
        return None


# ---------- API ---------- #

def parse_decimal_to_cents(value: Any) -> int:
    """
    Convertit un montant "humain" en centimes.
    Accepte "12,50" / "12.50" / "1 234,5 €" / Decimal / int (en euros).
    Refuse vide, non numérique, négatif. Arrondi au centime le plus proche.
    """
    d = _to_decimal(value)
    if d is None:
        raise InvalidAmount(f"Montant invalide: {value!r}", value=value)
    if d < 0:
        raise InvalidAmount(f"Montant négatif: {value!r}", value=value)
    return _round_half_up(d * 100)


def amount_to_cents(value: Any) -> int:
    """Montant strictement positif: entier en centimes, ou saisie décimale ("250,00") convertie."""
    if isinstance(value, bool) or value is None:
        raise InvalidAmount("Montant requis.", value=value)
    if isinstance(value, int):
        cents = value
    elif isinstance(value, str):
        cents = parse_decimal_to_cents(value)
    else:
        raise InvalidAmount(f"Montant invalide: {value!r}", value=value)
    if cents <= 0:
        raise InvalidAmount("Le montant doit être supérieur à 0.", value=value)
    return cents


def parse_percent(value: Any) -> Decimal:
    """Pourcentage dans ]0, 100] sinon InvalidPercent."""
    d = _to_decimal(value)
    if d is None or d <= 0 or d > 100:
        raise InvalidPercent(f"Le pourcentage doit être compris entre 0 (exclu) et 100: {value!r}", value=value)
    return d


def percent_of(total_cents: int, percent: Any) -> int:
    """round(total × percent / 100), percent dans ]0, 100]."""
    p = parse_percent(percent)
    return _round_half_up(Decimal(int(total_cents)) * p / Decimal(100))


def format_cents(cents: int | None, currency: str = "€") -> str:
    try:
        c = int(cents or 0)
    except (TypeError, ValueError):
        c = 0
    sign = "-" if c < 0 else ""
    c = abs(c)
    return f"{sign}{c // 100}.{c % 100:02d} {currency}"
