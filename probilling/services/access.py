from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol, Set, Tuple

from pydantic import BaseModel, ConfigDict

from probilling.errors import Forbidden

logger = logging.getLogger(__name__)


class Actor(BaseModel):
    """Qui agit, et pour quelle entreprise. Passé explicitement à chaque appel."""

    id: str
    business_id: str

    model_config = ConfigDict(frozen=True)


class CapabilityChecker(Protocol):
    def has_admin_capability(self, actor_id: str, business_id: str) -> bool: ...


class StaticCapabilities:
    """Table (acteur, entreprise) des admins/owners. Suffit au câblage et aux tests."""

    def __init__(self, admins: Optional[Iterable[Tuple[str, str]]] = None) -> None:
        self._admins: Set[Tuple[str, str]] = {(str(a), str(b)) for a, b in (admins or [])}

    def grant(self, actor_id: str, business_id: str) -> None:
        self._admins.add((str(actor_id), str(business_id)))

    def revoke(self, actor_id: str, business_id: str) -> None:
        self._admins.discard((str(actor_id), str(business_id)))

    def has_admin_capability(self, actor_id: str, business_id: str) -> bool:
        return (str(actor_id), str(business_id)) in self._admins


def require_admin(checker: CapabilityChecker, actor: Actor) -> None:
    if not checker.has_admin_capability(actor.id, actor.business_id):
        logger.warning("Refus: acteur %s sans droit admin sur %s", actor.id, actor.business_id)
        raise Forbidden("Droits admin requis.", actor_id=actor.id, business_id=actor.business_id)
