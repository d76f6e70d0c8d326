"""Tests de la génération des factures mensuelles."""
from datetime import date

import pytest

from probilling.errors import AlreadyGenerated, Conflict, Forbidden, InvalidPeriod, NotFound, PreconditionFailed
from probilling.models.invoice import InvoiceKind, InvoiceStatus
from probilling.models.project import DiscountType, Project, ProjectService
from probilling.services.recurring_service import period_key_for


class TestPeriodKey:
    def test_format(self):
        assert period_key_for(date(2025, 3, 17)) == "2025-03"
        assert period_key_for(date(2025, 12, 1)) == "2025-12"


class TestGenerate:
    def test_creates_draft_invoice(self, workflow, actor, monthly_service):
        inv = workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        assert inv.status == InvoiceStatus.DRAFT
        assert inv.kind == InvoiceKind.RECURRING
        assert inv.period_key == "2025-01"
        assert inv.project_service_id == monthly_service.id
        assert inv.total_cents == 3000
        ln = inv.lines[0]
        assert ln.label == "Maintenance"
        assert ln.description == "Période 2025-01"
        assert ln.unit_label == "/mois"

    def test_same_period_twice(self, workflow, actor, monthly_service):
        """Deux appels pour la même période: une seule facture."""
        first = workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        with pytest.raises(AlreadyGenerated) as exc:
            workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        assert isinstance(exc.value, Conflict)
        assert exc.value.details["invoice_id"] == first.id
        invoices = workflow.invoices.list_by_project(actor.business_id, monthly_service.project_id)
        assert [i.id for i in invoices] == [first.id]

    def test_cursor_advances(self, workflow, actor, monthly_service):
        workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        inv = workflow.recurring.generate(actor, monthly_service.id, "2025-02")
        cursor = workflow.recurring.get_cursor(monthly_service.id)
        assert cursor.last_generated_period_key == "2025-02"
        assert cursor.last_invoice_id == inv.id

    def test_past_period(self, workflow, actor, monthly_service):
        workflow.recurring.generate(actor, monthly_service.id, "2025-05")
        with pytest.raises(Conflict):
            workflow.recurring.generate(actor, monthly_service.id, "2025-04")

    def test_deleting_the_invoice_does_not_free_the_period(self, workflow, actor, monthly_service):
        inv = workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        workflow.invoices.delete(actor, inv.id)
        with pytest.raises(AlreadyGenerated):
            workflow.recurring.generate(actor, monthly_service.id, "2025-01")

    def test_current_price_and_discount(self, workflow, actor, monthly_service):
        monthly_service.discount_type = DiscountType.PERCENT
        monthly_service.discount_value = 10
        workflow.catalog.update_project_service(monthly_service)
        inv = workflow.recurring.generate(actor, monthly_service.id, "2025-01")
        assert inv.total_cents == 2700

    @pytest.mark.parametrize("key", ["2025-13", "2025-1", "25-01", "2025/01", "", None])
    def test_invalid_period(self, workflow, actor, monthly_service, key):
        with pytest.raises(InvalidPeriod):
            workflow.recurring.generate(actor, monthly_service.id, key)
        assert workflow.recurring.get_cursor(monthly_service.id) is None


class TestPreconditions:
    def test_one_off_service(self, workflow, actor, project_service):
        with pytest.raises(PreconditionFailed):
            workflow.recurring.generate(actor, project_service.id, "2025-01")

    def test_missing_price(self, workflow, actor, project):
        ps = workflow.catalog.add_project_service(
            ProjectService(project_id=project.id, title_override="Hébergement", billing_unit="MONTHLY")
        )
        with pytest.raises(PreconditionFailed):
            workflow.recurring.generate(actor, ps.id, "2025-01")

    def test_unknown_service(self, workflow, actor):
        with pytest.raises(NotFound):
            workflow.recurring.generate(actor, "nope", "2025-01")

    def test_other_business(self, workflow, actor):
        foreign = workflow.catalog.add_project(Project(business_id="biz-2"))
        ps = workflow.catalog.add_project_service(
            ProjectService(project_id=foreign.id, price_cents=100, billing_unit="MONTHLY")
        )
        with pytest.raises(NotFound):
            workflow.recurring.generate(actor, ps.id, "2025-01")

    def test_forbidden(self, workflow, outsider, monthly_service):
        with pytest.raises(Forbidden):
            workflow.recurring.generate(outsider, monthly_service.id, "2025-01")
