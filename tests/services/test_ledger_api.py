"""
Tests for LedgerApi: status codes and response bodies at the boundary.

Each API call runs in its own session, so state is read back through the
``ledger`` builder after every call.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.dtos import RecordType
from ledger_services.api import LedgerApi
from ledger_services.cascade_executor import CascadeExecutor


@pytest.fixture
def api(session_factory, test_actor_id, deterministic_clock, ledger_config):
    return LedgerApi(
        session_factory, test_actor_id, clock=deterministic_clock, config=ledger_config,
    )


@pytest.fixture
def allocated_credit(ledger, client):
    credit = ledger.credit(client.id, 1000)
    receivable = ledger.receivable(client.id, 1000)
    allocation = ledger.allocation(credit.id, receivable.id, 600)
    return credit, receivable, allocation


@pytest.fixture
def paid_invoice(ledger, client):
    receivable = ledger.receivable(client.id, 1000)
    payment = ledger.payment(receivable.id, 1000)
    return receivable, payment


class TestConflictResponses:
    def test_credit_reduction_returns_409_with_options(self, api, allocated_credit):
        credit, _, allocation = allocated_credit
        status, body = api.update_credit(str(credit.id), "500", expected_version=1)

        assert status == 409
        assert body["code"] == "credit_reduction_conflict"
        data = body["data"]
        assert data["target_id"] == str(credit.id)
        assert data["deficit"] == Decimal("100")
        assert data["allocations"][0]["id"] == str(allocation.id)
        options = data["resolution_options"]
        assert options["manual_resolution"]["available"] is True
        assert options["convert_surplus_to_credit"]["available"] is False
        assert options["convert_surplus_to_credit"]["reason"] == (
            "only applies to receivable and payment overpayments"
        )

    def test_overpayment_code(self, api, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.update_receivable(str(receivable.id), "800")
        assert status == 409
        assert body["code"] == "overpayment_detected"
        assert body["data"]["surplus"] == Decimal("200")

    def test_receivable_deletion_code(self, api, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.delete_receivable(str(receivable.id))
        assert status == 409
        assert body["code"] == "deletion_conflict_financial_records_exist"

    def test_payment_overpayment_code(self, api, ledger, client):
        receivable = ledger.receivable(client.id, 1000)
        payment = ledger.payment(receivable.id, 900)
        status, body = api.update_payment(str(payment.id), "1100")
        assert status == 409
        assert body["code"] == "payment_overpayment_detected"


class TestCommittedResponses:
    def test_manual_credit_reduction(self, api, ledger, client, allocated_credit):
        credit, _, allocation = allocated_credit
        status, body = api.resolve_credit_reduction(
            str(credit.id),
            "500",
            [{"allocation_id": str(allocation.id), "action": "reduce_allocation", "new_amount": "500"}],
            expected_version=1,
        )

        assert status == 200
        assert body["status"] == "ok"
        data = body["data"]
        assert data["target"] == f"credit:{credit.id}"
        assert data["target_version"] == 2
        assert data["consequences"]["target_summary"]["new_amount"] == Decimal("500")
        assert ledger.snapshot(client.id).allocated_amount(credit.id) == Decimal("500")

    def test_auto_resolve_overpayment(self, api, ledger, client, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.auto_resolve_overpayment(
            str(receivable.id), "800", "convert_surplus_to_credit", expected_version=1,
        )

        assert status == 200
        (credit_id,) = body["data"]["created_credit_ids"]
        snapshot = ledger.snapshot(client.id)
        assert str(next(iter(snapshot.credits))) == credit_id
        assert snapshot.balance_of(client.id) == Decimal("-200")

    def test_receivable_deletion_with_decisions(self, api, ledger, client, paid_invoice):
        receivable, payment = paid_invoice
        status, body = api.resolve_receivable_deletion(
            str(receivable.id),
            payment_decisions=[{"payment_id": str(payment.id), "action": "delete"}],
        )

        assert status == 200
        assert body["data"]["target_version"] is None
        assert ledger.snapshot(client.id).receivables == {}

    def test_payment_increase_with_conversion(self, api, ledger, client):
        receivable = ledger.receivable(client.id, 1000)
        payment = ledger.payment(receivable.id, 900)
        status, body = api.update_payment(
            str(payment.id), "1100", resolution_type="convert_surplus_to_credit",
        )

        assert status == 200
        snapshot = ledger.snapshot(client.id)
        assert snapshot.payments[payment.id].amount == Decimal("1000")
        assert [c.amount for c in snapshot.credits.values()] == [Decimal("100")]

    def test_delete_allocation(self, api, ledger, client, allocated_credit):
        credit, receivable, allocation = allocated_credit
        status, _ = api.delete_allocation(str(allocation.id))

        assert status == 200
        snapshot = ledger.snapshot(client.id)
        assert snapshot.allocations == {}
        assert snapshot.credit_remaining(credit.id) == Decimal("1000")
        assert snapshot.remaining_amount(receivable.id) == Decimal("1000")

    def test_task_amount_cascade(self, api, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000, expense_amount=200)
        ledger.approve(task.id)

        status, body = api.cascade_task_amount(str(task.id), "1200", expected_version=2)

        assert status == 200
        (change,) = body["data"]["consequences"]["commissions_affected"]
        assert change["commission_difference"] == Decimal("20")
        assert change["commission_id"] == str(ledger.snapshot(client.id).commission_for_task(task.id).id)


class TestErrorResponses:
    def test_incomplete_plan_states_uncovered_amount(self, api, ledger, client, paid_invoice):
        receivable, payment = paid_invoice
        status, body = api.resolve_overpayment(
            str(receivable.id),
            "800",
            payment_decisions=[{"payment_id": str(payment.id), "action": "reduce_to_900"}],
        )

        assert status == 422
        assert body["code"] == "incomplete_resolution"
        assert body["details"]["uncovered"] == Decimal("100")
        assert ledger.snapshot(client.id).payments[payment.id].amount == Decimal("1000")

    def test_unknown_record(self, api):
        status, body = api.delete_payment(str(uuid4()))
        assert status == 404
        assert body["code"] == "payment_not_found"

    def test_malformed_id(self, api):
        status, body = api.delete_credit("not-a-uuid")
        assert status == 422
        assert body["code"] == "invalid_mutation"

    def test_negative_amount(self, api, allocated_credit):
        credit, _, _ = allocated_credit
        status, body = api.update_credit(str(credit.id), "-1")
        assert status == 422
        assert body["code"] == "invalid_amount"
        assert body["details"]["field"] == "new_amount"

    def test_unknown_strategy(self, api, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.auto_resolve_overpayment(str(receivable.id), "800", "magic")
        assert status == 422
        assert body["code"] == "strategy_unavailable"

    def test_over_allocation(self, api, ledger, client):
        credit = ledger.credit(client.id, 100)
        receivable = ledger.receivable(client.id, 500)
        allocation = ledger.allocation(credit.id, receivable.id, 100)
        status, body = api.update_allocation(str(allocation.id), "150")
        assert status == 422
        assert body["code"] == "over_allocation"

    def test_stale_version_returns_current_record(self, api, ledger, paid_invoice):
        receivable, _ = paid_invoice
        assert api.update_receivable(str(receivable.id), "1200", expected_version=1)[0] == 200

        status, body = api.update_receivable(str(receivable.id), "1300", expected_version=1)

        assert status == 409
        assert body["code"] == "concurrent_modification"
        assert body["details"]["current_version"] == 2
        assert body["data"]["amount"] == Decimal("1200")
        assert body["data"]["id"] == str(receivable.id)
        assert ledger.version(RecordType.RECEIVABLE, receivable.id) == 2

    def test_drift_is_a_server_error(self, api, ledger, client, paid_invoice, monkeypatch):
        receivable, _ = paid_invoice
        monkeypatch.setattr(CascadeExecutor, "_sync_transactions", lambda self, before, after: None)

        status, body = api.auto_resolve_overpayment(
            str(receivable.id), "800", "convert_surplus_to_credit",
        )

        assert status == 500
        assert body["code"] == "cascade_drift"
        assert ledger.snapshot(client.id).credits == {}


class TestValidation:
    def test_blocked_preview_is_200_with_errors(self, api, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.validate_invoice(str(receivable.id), "800")

        assert status == 200
        assert body["errors"][0]["code"] == "unresolved_conflict"
        assert body["conflict"]["surplus"] == Decimal("200")
        assert body["resolution_options"]["convert_surplus_to_credit"]["recommended"] is True
        assert body["consequences"] is None

    def test_preview_with_strategy(self, api, ledger, client, paid_invoice):
        receivable, _ = paid_invoice
        status, body = api.validate_invoice(
            str(receivable.id), "800", resolution_type="convert_surplus_to_credit",
        )

        assert status == 200
        assert body["errors"] == []
        assert body["consequences"]["credits_created"][0]["amount"] == Decimal("200")
        assert ledger.snapshot(client.id).credits == {}

    def test_preview_with_decisions(self, api, paid_invoice):
        receivable, payment = paid_invoice
        status, body = api.validate_invoice(
            str(receivable.id),
            "800",
            decisions=[{"id": str(payment.id), "action": "reduce_to_800"}],
        )
        assert status == 200
        assert body["errors"] == []

    def test_credit_deletion_preview(self, api, allocated_credit):
        credit, _, _ = allocated_credit
        status, body = api.validate_credit(str(credit.id), delete=True)
        assert status == 200
        assert body["conflict"]["kind"] == "credit_deletion"

    def test_task_preview(self, api, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000)
        status, body = api.validate_task(str(task.id), "prepaid_amount", "400")
        assert status == 200
        assert body["consequences"]["task_impact"]["new_final_invoice"] == Decimal("600")

    def test_unknown_task_field(self, api, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000)
        status, body = api.validate_task(str(task.id), "discount", "5")
        assert status == 422
        assert body["code"] == "invalid_mutation"
