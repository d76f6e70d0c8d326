"""Tests de la facturation par situations."""
import pytest

from probilling.errors import ExceedsRemaining, Forbidden, InvalidAmount, InvalidPercent, NotFound, NothingToInvoice
from probilling.models.invoice import InvoiceKind, InvoiceStatus
from probilling.services.staged_service import StageMode


@pytest.fixture
def pid(project_service):
    """Projet chiffré à 10 000 centimes."""
    return project_service.project_id


class TestFinal:
    def test_final_then_nothing_left(self, workflow, actor, pid):
        """Scénario: FINAL facture le total, toute demande suivante échoue."""
        inv = workflow.staged.create_staged(actor, pid, StageMode.FINAL)
        assert inv.total_cents == 10000
        assert inv.kind == InvoiceKind.FINAL
        assert inv.status == InvoiceStatus.DRAFT
        assert inv.lines[0].label == "Facture finale"

        for mode, value in ((StageMode.FINAL, None), (StageMode.PERCENT, 10), (StageMode.AMOUNT, 100)):
            with pytest.raises(NothingToInvoice):
                workflow.staged.create_staged(actor, pid, mode, value)

    def test_final_takes_the_remainder(self, workflow, actor, pid):
        workflow.staged.create_staged(actor, pid, StageMode.PERCENT, 30)
        inv = workflow.staged.create_staged(actor, pid, "FINAL")
        assert inv.total_cents == 7000
        assert workflow.reference.summary(actor.business_id, pid).remaining_to_invoice_cents == 0


class TestPercent:
    def test_percent_of_total(self, workflow, actor, pid):
        inv = workflow.staged.create_staged(actor, pid, StageMode.PERCENT, 30)
        assert inv.total_cents == 3000
        assert inv.kind == InvoiceKind.STAGED
        assert inv.lines[0].label == "Situation de paiement (30 %)"
        assert inv.lines[0].quantity == 1

    def test_percent_is_computed_on_total_not_remaining(self, workflow, actor, pid):
        workflow.staged.create_staged(actor, pid, StageMode.PERCENT, 50)
        inv = workflow.staged.create_staged(actor, pid, StageMode.PERCENT, "25,5")
        assert inv.total_cents == 2550

    def test_hundred_percent_after_partial(self, workflow, actor, pid):
        """100 % alors qu'une partie est déjà facturée: dépassement."""
        workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 1)
        with pytest.raises(ExceedsRemaining):
            workflow.staged.create_staged(actor, pid, StageMode.PERCENT, 100)

    @pytest.mark.parametrize("value", [0, 101, "abc", None])
    def test_bad_percent(self, workflow, actor, pid, value):
        with pytest.raises(InvalidPercent):
            workflow.staged.create_staged(actor, pid, StageMode.PERCENT, value)

    def test_percent_rounding_to_zero(self, workflow, actor, pid):
        """Un pourcentage trop petit donne 0 centime: refusé, aucune facture écrite."""
        with pytest.raises(InvalidAmount):
            workflow.staged.create_staged(actor, pid, StageMode.PERCENT, "0.001")
        assert workflow.invoices.list_by_project(actor.business_id, pid) == []


class TestAmount:
    def test_integer_cents(self, workflow, actor, pid):
        inv = workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 2500)
        assert inv.total_cents == 2500
        assert inv.lines[0].label == "Situation de paiement"

    def test_decimal_string(self, workflow, actor, pid):
        inv = workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, "12,50")
        assert inv.total_cents == 1250

    @pytest.mark.parametrize("value", [0, -5, None, "abc", 1.5, True])
    def test_bad_amount(self, workflow, actor, pid, value):
        with pytest.raises(InvalidAmount):
            workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, value)

    def test_exceeds_remaining(self, workflow, actor, pid):
        """Le montant facturé ne dépasse jamais le reste à facturer."""
        workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 6000)
        with pytest.raises(ExceedsRemaining) as exc:
            workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 4001)
        assert exc.value.details == {"amount_cents": 4001, "remaining_cents": 4000}
        assert len(workflow.invoices.list_by_project(actor.business_id, pid)) == 1

    def test_cancelled_invoices_free_the_amount(self, workflow, actor, pid):
        inv = workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 10000)
        workflow.invoices.cancel(actor, inv.id)
        again = workflow.staged.create_staged(actor, pid, StageMode.AMOUNT, 10000)
        assert again.total_cents == 10000


class TestGuards:
    def test_unknown_mode(self, workflow, actor, pid):
        with pytest.raises(InvalidAmount):
            workflow.staged.create_staged(actor, pid, "HALF")

    def test_forbidden(self, workflow, outsider, pid):
        with pytest.raises(Forbidden):
            workflow.staged.create_staged(outsider, pid, StageMode.FINAL)

    def test_unknown_project(self, workflow, actor):
        with pytest.raises(NotFound):
            workflow.staged.create_staged(actor, "nope", StageMode.FINAL)

    def test_project_without_total(self, workflow, actor, project):
        with pytest.raises(NothingToInvoice):
            workflow.staged.create_staged(actor, project.id, StageMode.FINAL)
