"""Fixtures partagées: workflow en mémoire, acteur admin, projet chiffré."""
import pytest

from probilling.models.project import Project, ProjectService
from probilling.models.line import BillingUnit
from probilling.models.service import Service
from probilling.services.access import Actor, StaticCapabilities
from probilling.services.workflow_service import BillingWorkflow

BUSINESS_ID = "biz-1"


@pytest.fixture
def actor():
    return Actor(id="user-admin", business_id=BUSINESS_ID)


@pytest.fixture
def outsider():
    """Membre de l'entreprise sans droit admin."""
    return Actor(id="user-viewer", business_id=BUSINESS_ID)


@pytest.fixture
def capabilities(actor):
    return StaticCapabilities(admins=[(actor.id, actor.business_id)])


@pytest.fixture
def workflow(capabilities):
    return BillingWorkflow.in_memory(capabilities=capabilities)


@pytest.fixture
def service(workflow):
    return workflow.catalog.add_service(
        Service(business_id=BUSINESS_ID, code="DEV", name="Développement", default_price_cents=5000)
    )


@pytest.fixture
def project(workflow):
    return workflow.catalog.add_project(Project(business_id=BUSINESS_ID, client_id="client-1", name="Site vitrine"))


@pytest.fixture
def project_service(workflow, project, service):
    """2 x 50,00 € : total projet 10 000 centimes."""
    return workflow.catalog.add_project_service(
        ProjectService(project_id=project.id, service_id=service.id, quantity=2, position=1)
    )


@pytest.fixture
def monthly_service(workflow, project):
    return workflow.catalog.add_project_service(
        ProjectService(
            project_id=project.id,
            title_override="Maintenance",
            price_cents=3000,
            billing_unit=BillingUnit.MONTHLY,
            position=2,
        )
    )


@pytest.fixture
def draft_quote(workflow, actor, project_service):
    return workflow.quotes.create(actor, project_service.project_id)


@pytest.fixture
def signed_quote(workflow, actor, draft_quote):
    workflow.quotes.mark_sent(actor, draft_quote.id)
    return workflow.quotes.mark_signed(actor, draft_quote.id)


@pytest.fixture
def make_line():
    def _make(label="Ligne", quantity=1, unit_price_cents=1000, **extra):
        return {"label": label, "quantity": quantity, "unit_price_cents": unit_price_cents, **extra}

    return _make
