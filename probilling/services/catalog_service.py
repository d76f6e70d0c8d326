from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field

from probilling.config import BillingSettings
from probilling.models.line import BillingUnit
from probilling.models.product import Product
from probilling.models.project import DiscountType, Project, ProjectService
from probilling.models.service import Service
from probilling.storage.repo import Repository
from probilling.storage.store import BillingStore

logger = logging.getLogger(__name__)


# ----------------- Modèles de lecture ----------------- #

class PriceResolution(BaseModel):
    unit_price_cents: int = 0
    source: str = "missing"  # project | default | tjm | missing
    missing_price: bool = True


class PricedItem(BaseModel):
    project_service_id: str
    service_id: Optional[str] = None
    label: str
    description: Optional[str] = None
    quantity: int = 1
    unit_price_cents: int = 0
    total_cents: int = 0
    billing_unit: BillingUnit = BillingUnit.ONE_OFF
    unit_label: Optional[str] = None
    missing_price: bool = False


class ProjectPricing(BaseModel):
    project_id: str
    business_id: str
    client_id: Optional[str] = None
    deposit_percent: int = 0
    total_cents: int = 0
    items: List[PricedItem] = Field(default_factory=list)

    @property
    def missing_price_labels(self) -> List[str]:
        return [it.label for it in self.items if it.missing_price]


T = TypeVar("T", bound=BaseModel)


# ----------------- Prix ----------------- #

def resolve_unit_price(ps: ProjectService, service: Optional[Service]) -> PriceResolution:
    """Priorité: prix projet -> prix catalogue -> TJM -> manquant."""
    if ps.price_cents is not None:
        return PriceResolution(unit_price_cents=ps.price_cents, source="project", missing_price=False)
    if service is not None and service.default_price_cents is not None:
        return PriceResolution(unit_price_cents=service.default_price_cents, source="default", missing_price=False)
    if service is not None and service.tjm_cents is not None:
        return PriceResolution(unit_price_cents=service.tjm_cents, source="tjm", missing_price=False)
    return PriceResolution()


def apply_discount(unit_price_cents: int, discount_type: DiscountType, discount_value: Optional[int]) -> int:
    if discount_value is None:
        return unit_price_cents
    if discount_type == DiscountType.PERCENT:
        bounded = min(100, max(0, int(discount_value)))
        return unit_price_cents * (100 - bounded) // 100
    if discount_type == DiscountType.AMOUNT:
        return max(0, unit_price_cents - max(0, int(discount_value)))
    return unit_price_cents


# ----------------- Catalogue projet ----------------- #

class ProjectCatalog:
    """
    Lecture projets / services de projet / catalogue, et chiffrage.
    Le CRUD catalogue est hors périmètre: add_* servent au câblage et aux tests.
    """

    def __init__(self, store: BillingStore, settings: Optional[BillingSettings] = None) -> None:
        self.store = store
        self.settings = settings or BillingSettings()

    # ---------- Helpers (hydratation objets) ---------- #

    @staticmethod
    def _hydrate(d: Optional[Dict[str, Any]], model: Type[T]) -> Optional[T]:
        if d is None:
            return None
        return model.model_validate(d)

    def _add(self, repo: Repository, obj: T) -> T:
        with self.store.atomic():
            repo.add(obj)
        return obj

    # ---------- Services / produits ---------- #

    def add_service(self, s: Service) -> Service:
        return self._add(self.store.services, s)

    def get_service(self, service_id: Optional[str]) -> Optional[Service]:
        if not service_id:
            return None
        return self._hydrate(self.store.services.get_by_id(service_id), Service)

    def list_services(self, business_id: str) -> List[Service]:
        rows = self.store.services.find(lambda d: d.get("business_id") == business_id)
        return [Service.model_validate(d) for d in rows]

    def has_service(self, business_id: str, service_id: str) -> bool:
        s = self.get_service(service_id)
        return s is not None and s.business_id == business_id

    def add_product(self, p: Product) -> Product:
        return self._add(self.store.products, p)

    def has_product(self, business_id: str, product_id: str) -> bool:
        p = self._hydrate(self.store.products.get_by_id(product_id), Product)
        return p is not None and p.business_id == business_id and p.active

    # ---------- Projets ---------- #

    def add_project(self, project: Project) -> Project:
        return self._add(self.store.projects, project)

    def get_project(self, business_id: str, project_id: str) -> Optional[Project]:
        p = self._hydrate(self.store.projects.get_by_id(project_id), Project)
        if p is None or p.business_id != business_id:
            return None
        return p

    def save_project(self, project: Project) -> Project:
        with self.store.atomic():
            self.store.projects.update(project)
        return project

    def add_project_service(self, ps: ProjectService) -> ProjectService:
        return self._add(self.store.project_services, ps)

    def update_project_service(self, ps: ProjectService) -> ProjectService:
        with self.store.atomic():
            self.store.project_services.update(ps)
        return ps

    def list_project_services(self, project_id: str) -> List[ProjectService]:
        rows = self.store.project_services.find(lambda d: d.get("project_id") == project_id)
        items = [ProjectService.model_validate(d) for d in rows]
        return sorted(items, key=lambda ps: ps.position)

    def get_project_service(self, business_id: str, project_service_id: str) -> Optional[Tuple[ProjectService, Project]]:
        ps = self._hydrate(self.store.project_services.get_by_id(project_service_id), ProjectService)
        if ps is None:
            return None
        project = self.get_project(business_id, ps.project_id)
        if project is None:
            return None
        return ps, project

    # ---------- Chiffrage ---------- #

    def price_item(self, ps: ProjectService) -> PricedItem:
        service = self.get_service(ps.service_id)
        resolved = resolve_unit_price(ps, service)
        qty = ps.quantity if ps.quantity and ps.quantity > 0 else 1
        unit = apply_discount(resolved.unit_price_cents, ps.discount_type, ps.discount_value)
        label = (ps.title_override or "").strip() or (service.label if service else "") or "Service"
        unit_label = ps.unit_label or ("/mois" if ps.billing_unit == BillingUnit.MONTHLY else None)
        return PricedItem(
            project_service_id=ps.id,
            service_id=ps.service_id,
            label=label,
            description=ps.description,
            quantity=qty,
            unit_price_cents=unit,
            total_cents=unit * qty,
            billing_unit=ps.billing_unit,
            unit_label=unit_label,
            missing_price=resolved.missing_price,
        )

    def price_project(self, business_id: str, project_id: str) -> Optional[ProjectPricing]:
        project = self.get_project(business_id, project_id)
        if project is None:
            return None
        items = [self.price_item(ps) for ps in self.list_project_services(project_id)]
        return ProjectPricing(
            project_id=project.id,
            business_id=business_id,
            client_id=project.client_id,
            deposit_percent=self.settings.for_business(business_id).default_deposit_percent,
            total_cents=sum(it.total_cents for it in items),
            items=items,
        )
