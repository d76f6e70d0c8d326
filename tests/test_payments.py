"""Tests des règlements de factures: partiels, soldés, trop-perçus."""
from datetime import datetime, timezone

import pytest

from probilling.errors import Conflict, ExceedsRemaining, Forbidden, InvalidAmount, NotFound, PreconditionFailed
from probilling.models.invoice import InvoiceStatus, PaymentMethod, PaymentStatus
from probilling.models.project import Project
from probilling.services.workflow_service import BillingWorkflow


@pytest.fixture
def sent_invoice(workflow, actor, project, make_line):
    """Facture envoyée de 100,00 €."""
    inv = workflow.invoices.create_standalone(actor, project.id, [make_line("Prestation", 1, 10000)])
    return workflow.invoices.mark_sent(actor, inv.id)


class TestRecordPayment:
    def test_partial_payment(self, workflow, actor, sent_invoice):
        inv = workflow.invoices.record_payment(actor, sent_invoice.id, 4000, method="CARD", reference="TX-1")
        assert inv.status == InvoiceStatus.SENT
        assert inv.paid_at is None
        assert inv.paid_cents() == 4000
        assert inv.remaining_cents() == 6000
        assert inv.payment_status() == PaymentStatus.PARTIAL
        assert inv.payments[0].method == PaymentMethod.CARD
        assert inv.payments[0].reference == "TX-1"
        assert inv.payments[0].created_by == actor.id

    def test_full_payment_marks_paid(self, workflow, actor, sent_invoice):
        """Le règlement qui solde la facture la passe PAID, daté du règlement."""
        when = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)
        workflow.invoices.record_payment(actor, sent_invoice.id, "60,00")
        inv = workflow.invoices.record_payment(actor, sent_invoice.id, 4000, paid_at=when)
        assert inv.status == InvoiceStatus.PAID
        assert inv.paid_at == when
        assert inv.payment_status() == PaymentStatus.PAID
        assert [p.amount_cents for p in inv.payments] == [6000, 4000]

    def test_naive_paid_at_is_utc(self, workflow, actor, sent_invoice):
        inv = workflow.invoices.record_payment(actor, sent_invoice.id, 10000, paid_at=datetime(2025, 1, 1))
        assert inv.paid_at == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_overpayment_rejected(self, workflow, actor, sent_invoice):
        workflow.invoices.record_payment(actor, sent_invoice.id, 7000)
        with pytest.raises(ExceedsRemaining) as exc:
            workflow.invoices.record_payment(actor, sent_invoice.id, 3001)
        assert exc.value.details["remaining_cents"] == 3000
        assert len(workflow.invoices.get(actor.business_id, sent_invoice.id).payments) == 1

    def test_paid_invoice_rejects_payment(self, workflow, actor, sent_invoice):
        workflow.invoices.mark_paid(actor, sent_invoice.id)
        with pytest.raises(Conflict):
            workflow.invoices.record_payment(actor, sent_invoice.id, 100)

    def test_cancelled_invoice_rejected(self, workflow, actor, sent_invoice):
        workflow.invoices.cancel(actor, sent_invoice.id, "erreur de saisie")
        with pytest.raises(Conflict):
            workflow.invoices.record_payment(actor, sent_invoice.id, 1000)

    def test_draft_invoice_rejected(self, workflow, actor, project, make_line):
        inv = workflow.invoices.create_standalone(actor, project.id, [make_line()])
        with pytest.raises(Conflict):
            workflow.invoices.record_payment(actor, inv.id, 500)

    @pytest.mark.parametrize("amount", [0, -100, "0", "abc", "", None, True, 12.5])
    def test_bad_amount(self, workflow, actor, sent_invoice, amount):
        with pytest.raises(InvalidAmount):
            workflow.invoices.record_payment(actor, sent_invoice.id, amount)

    def test_unknown_method(self, workflow, actor, sent_invoice):
        with pytest.raises(PreconditionFailed):
            workflow.invoices.record_payment(actor, sent_invoice.id, 1000, method="BITCOIN")

    def test_reference_too_long(self, workflow, actor, sent_invoice):
        with pytest.raises(PreconditionFailed):
            workflow.invoices.record_payment(actor, sent_invoice.id, 1000, reference="x" * 201)

    def test_forbidden(self, workflow, outsider, sent_invoice):
        with pytest.raises(Forbidden):
            workflow.invoices.record_payment(outsider, sent_invoice.id, 1000)

    def test_unknown_invoice(self, workflow, actor):
        with pytest.raises(NotFound):
            workflow.invoices.record_payment(actor, "nope", 1000)


class TestDeletePayment:
    def test_delete_payment(self, workflow, actor, sent_invoice):
        inv = workflow.invoices.record_payment(actor, sent_invoice.id, 2500)
        inv = workflow.invoices.delete_payment(actor, inv.id, inv.payments[0].id)
        assert inv.payments == []
        assert inv.payment_status() == PaymentStatus.UNPAID

    def test_unknown_payment(self, workflow, actor, sent_invoice):
        with pytest.raises(NotFound):
            workflow.invoices.delete_payment(actor, sent_invoice.id, "nope")

    def test_paid_invoice_is_final(self, workflow, actor, sent_invoice):
        inv = workflow.invoices.record_payment(actor, sent_invoice.id, 10000)
        with pytest.raises(Conflict):
            workflow.invoices.delete_payment(actor, inv.id, inv.payments[0].id)


class TestPaymentStatus:
    def test_unpaid_by_default(self, sent_invoice):
        assert sent_invoice.payment_status() == PaymentStatus.UNPAID
        assert sent_invoice.remaining_cents() == sent_invoice.total_cents

    def test_marked_paid_without_payments_counts_as_settled(self, workflow, actor, sent_invoice):
        inv = workflow.invoices.mark_paid(actor, sent_invoice.id)
        assert inv.paid_cents() == inv.total_cents
        assert inv.payment_status() == PaymentStatus.PAID

    def test_summary_includes_partial_payments(self, workflow, actor, project_service):
        pid = project_service.project_id
        inv = workflow.staged.create_staged(actor, pid, "AMOUNT", 4000)
        workflow.invoices.mark_sent(actor, inv.id)
        workflow.invoices.record_payment(actor, inv.id, 1500)
        s = workflow.reference.summary(actor.business_id, pid)
        assert s.already_invoiced_cents == 4000
        assert s.already_paid_cents == 1500


class TestPersistence:
    def test_payments_survive_reopen(self, tmp_path, capabilities, actor, make_line):
        wf = BillingWorkflow(tmp_path, capabilities=capabilities)
        project = wf.catalog.add_project(Project(business_id=actor.business_id, name="Chantier"))
        inv = wf.invoices.create_standalone(actor, project.id, [make_line("Pose", 1, 5000)])
        wf.invoices.mark_sent(actor, inv.id)
        wf.invoices.record_payment(actor, inv.id, 2000, method=PaymentMethod.CHECK)

        reopened = BillingWorkflow(tmp_path, capabilities=capabilities)
        loaded = reopened.invoices.get(actor.business_id, inv.id)
        assert loaded.paid_cents() == 2000
        assert loaded.payments[0].method == PaymentMethod.CHECK
        assert loaded.payments[0].paid_at.tzinfo is not None
