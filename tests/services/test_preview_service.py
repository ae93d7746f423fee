"""
Tests for previews: blocked results, collected errors, and the guarantee
that a preview reports exactly what the matching commit does.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_engines.resolution import ResolutionRequest, Strategy
from ledger_kernel.domain.dtos import RecordType
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import CreditNotFoundError


@pytest.fixture
def paid_invoice(ledger, client):
    receivable = ledger.receivable(client.id, 1000)
    payment = ledger.payment(receivable.id, 1000)
    return receivable, payment


def reduce_to(receivable, amount, expected_version=None):
    return Mutation(
        MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal(amount),
        expected_version=expected_version,
    )


class TestBlockedPreview:
    def test_conflict_without_request_lists_options(self, reconciliation_engine, paid_invoice):
        receivable, _ = paid_invoice
        preview = reconciliation_engine.preview(reduce_to(receivable, "800"))

        assert preview.blocked
        assert [e["code"] for e in preview.errors] == ["unresolved_conflict"]
        assert preview.conflict.gap == Decimal("200")
        assert preview.consequences is None

        body = preview.to_dict()
        assert body["conflict"]["surplus"] == Decimal("200")
        options = body["resolution_options"]
        assert options["convert_surplus_to_credit"]["recommended"] is True
        assert options["convert_surplus_to_credit"]["available"] is True
        assert set(options) == {
            "auto_reduce_payments",
            "auto_reduce_latest",
            "convert_surplus_to_credit",
            "manual_resolution",
        }

    def test_request_without_conflict(self, reconciliation_engine, paid_invoice):
        receivable, _ = paid_invoice
        preview = reconciliation_engine.preview(
            reduce_to(receivable, "1200"),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )
        assert [e["code"] for e in preview.errors] == ["nothing_to_resolve"]

    def test_stale_version_reported_with_current_state(self, reconciliation_engine, paid_invoice):
        receivable, _ = paid_invoice
        preview = reconciliation_engine.preview(
            reduce_to(receivable, "1200", expected_version=7)
        )

        (error,) = preview.errors
        assert error["code"] == "concurrent_modification"
        assert error["details"]["current_version"] == 1
        assert error["details"]["current_data"]["amount"] == Decimal("1000")

    def test_validation_error_collected(self, reconciliation_engine, ledger, client):
        credit = ledger.credit(client.id, 100)
        receivable = ledger.receivable(client.id, 500)
        allocation = ledger.allocation(credit.id, receivable.id, 50)

        preview = reconciliation_engine.preview(
            Mutation(MutationType.ALLOCATION_AMOUNT, allocation.id, Decimal("150"))
        )

        assert preview.check is None
        (error,) = preview.errors
        assert error["code"] == "over_allocation"
        assert error["details"]["limited_by"] == "credit"

    def test_unknown_target_raises(self, reconciliation_engine):
        with pytest.raises(CreditNotFoundError):
            reconciliation_engine.preview(
                Mutation(MutationType.CREDIT_DELETE, uuid4())
            )


class TestPreviewMatchesCommit:
    def test_surplus_conversion(self, reconciliation_engine, ledger, client, paid_invoice):
        receivable, _ = paid_invoice
        mutation = reduce_to(receivable, "800", expected_version=1)
        request = ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT)

        preview = reconciliation_engine.preview(mutation, request)
        assert not preview.blocked
        result = reconciliation_engine.commit(mutation, request)

        assert preview.consequences.to_dict() == result.consequences.to_dict()
        assert preview.warnings == result.warnings

    def test_task_cascade(self, reconciliation_engine, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000, prepaid_amount=300, expense_amount=200)
        ledger.approve(task.id)
        mutation = Mutation(MutationType.TASK_AMOUNT, task.id, Decimal("1500"))

        preview = reconciliation_engine.preview(mutation)
        result = reconciliation_engine.commit(mutation)

        assert preview.consequences.to_dict() == result.consequences.to_dict()
        (change,) = preview.consequences.commissions_affected
        assert change["new_amount"] == Decimal("130")

    def test_preview_writes_nothing(self, reconciliation_engine, ledger, client, paid_invoice):
        receivable, payment = paid_invoice
        before = ledger.snapshot(client.id)

        reconciliation_engine.preview(
            reduce_to(receivable, "800"),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )

        after = ledger.snapshot(client.id)
        assert after.credits == before.credits == {}
        assert after.payments[payment.id].amount == Decimal("1000")
        assert ledger.version(RecordType.RECEIVABLE, receivable.id) == 1

    def test_preview_logged(self, reconciliation_engine, captured_logs, paid_invoice):
        receivable, _ = paid_invoice
        reconciliation_engine.preview(reduce_to(receivable, "800"))

        (record,) = [r for r in captured_logs() if r["message"] == "mutation_previewed"]
        assert record["blocked"] is True
        assert record["error_codes"] == ["unresolved_conflict"]
