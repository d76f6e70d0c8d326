from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "PROBILLING_DATA_DIR"
SETTINGS_FILENAME = "settings.json"


def default_data_dir() -> Path:
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(env).expanduser()
    return Path.cwd() / "data"


class BusinessSettings(BaseModel):
    """Réglages de facturation d'une entreprise."""

    default_deposit_percent: int = Field(default=30, ge=0, le=100)
    quote_prefix: str = Field(default="DEV", min_length=1)
    invoice_prefix: str = Field(default="FAC", min_length=1)
    quote_validity_days: int = Field(default=30, ge=0)
    payment_terms_days: int = Field(default=30, ge=0)

    model_config = ConfigDict(extra="ignore")


class BillingSettings(BusinessSettings):
    """
    Réglages globaux (data/settings.json) + surcharges par entreprise:
      {"default_deposit_percent": 30, "businesses": {"<id>": {"invoice_prefix": "F"}}}
    """

    backup_keep: int = Field(default=5, ge=0)
    businesses: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    def for_business(self, business_id: Optional[str]) -> BusinessSettings:
        base = self.model_dump(include=set(BusinessSettings.model_fields))
        overrides = self.businesses.get(str(business_id), {}) if business_id is not None else {}
        return BusinessSettings.model_validate({**base, **overrides})

    @classmethod
    def load(cls, data_dir: Optional[Union[str, Path]] = None) -> "BillingSettings":
        path = Path(data_dir or default_data_dir()) / SETTINGS_FILENAME
        if not path.exists():
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("settings.json illisible (%s), réglages par défaut", e)
            return cls()
        if not isinstance(raw, dict):
            logger.warning("settings.json: objet JSON attendu, réglages par défaut")
            return cls()
        # valeurs invalides -> ValidationError, on ne masque pas une mauvaise config
        return cls.model_validate(raw)
