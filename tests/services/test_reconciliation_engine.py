"""
End-to-end tests for the checked mutation protocol through ReconciliationEngine.

Covers:
- Credit reduction with a manual allocation decision
- Receivable reduction with surplus converted to credit
- Receivable deletion with manual and automatic resolution
- Task cascade (final invoice, commission, employee balance)
- Idempotent retries, rollback on failure and drift detection
- Structured log records of a commit
"""

from decimal import Decimal

import pytest

from ledger_engines.resolution import (
    Decision,
    DecisionAction,
    ResolutionRequest,
    Strategy,
)
from ledger_kernel.domain.dtos import CommissionStatus, ReceivableStatus, RecordType
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import (
    CascadeDriftError,
    IncompleteResolutionError,
    InvalidMutationError,
    NothingToResolveError,
    UnresolvedConflictError,
)
from ledger_services.cascade_executor import CascadeExecutor


def manual(*decisions):
    return ResolutionRequest(Strategy.MANUAL_RESOLUTION, tuple(decisions))


@pytest.fixture
def allocated_credit(ledger, client):
    """Credit 1000 with 600 allocated to an invoice of 1000."""
    credit = ledger.credit(client.id, 1000)
    receivable = ledger.receivable(client.id, 1000)
    allocation = ledger.allocation(credit.id, receivable.id, 600)
    return credit, receivable, allocation


@pytest.fixture
def paid_invoice(ledger, client):
    """Invoice 1000 paid in full by one payment."""
    receivable = ledger.receivable(client.id, 1000)
    payment = ledger.payment(receivable.id, 1000)
    return receivable, payment


class TestCreditReduction:
    def test_commit_without_plan_is_refused(self, reconciliation_engine, ledger, client, allocated_credit):
        credit, _, _ = allocated_credit
        mutation = Mutation(MutationType.CREDIT_AMOUNT, credit.id, Decimal("500"), expected_version=1)

        with pytest.raises(UnresolvedConflictError) as exc_info:
            reconciliation_engine.commit(mutation)

        assert exc_info.value.conflict.deficit == Decimal("100")
        snapshot = ledger.snapshot(client.id)
        assert snapshot.credits[credit.id].amount == Decimal("1000")
        assert ledger.version(RecordType.CREDIT, credit.id) == 1

    def test_reduce_allocation_resolves_deficit(self, reconciliation_engine, ledger, client, allocated_credit):
        credit, receivable, allocation = allocated_credit
        mutation = Mutation(MutationType.CREDIT_AMOUNT, credit.id, Decimal("500"), expected_version=1)

        result = reconciliation_engine.commit(
            mutation,
            manual(Decision(allocation.id, DecisionAction.REDUCE_ALLOCATION, Decimal("500"))),
        )

        assert result.target_version == 2
        snapshot = ledger.snapshot(client.id)
        assert snapshot.credits[credit.id].amount == Decimal("500")
        assert snapshot.allocated_amount(credit.id) == Decimal("500")
        assert snapshot.remaining_amount(receivable.id) == Decimal("500")
        assert snapshot.status(receivable.id) == ReceivableStatus.PARTIALLY_PAID
        # invoice 1000 against a credit of 500
        assert snapshot.balance_of(client.id) == Decimal("500")
        assert ledger.version(RecordType.ALLOCATION, allocation.id) == 2
        assert ledger.version(RecordType.RECEIVABLE, receivable.id) == 1

    def test_incomplete_plan_changes_nothing(self, reconciliation_engine, ledger, client, allocated_credit):
        credit, _, allocation = allocated_credit
        mutation = Mutation(MutationType.CREDIT_AMOUNT, credit.id, Decimal("500"))

        with pytest.raises(IncompleteResolutionError) as exc_info:
            reconciliation_engine.commit(
                mutation,
                manual(Decision(allocation.id, DecisionAction.REDUCE_ALLOCATION, Decimal("550"))),
            )

        assert exc_info.value.uncovered == Decimal("50")
        snapshot = ledger.snapshot(client.id)
        assert snapshot.credits[credit.id].amount == Decimal("1000")
        assert snapshot.allocated_amount(credit.id) == Decimal("600")

    def test_reduction_within_allocated_needs_no_plan(self, reconciliation_engine, ledger, client, allocated_credit):
        credit, _, _ = allocated_credit
        result = reconciliation_engine.commit(
            Mutation(MutationType.CREDIT_AMOUNT, credit.id, Decimal("700"))
        )
        assert result.plan is None
        assert ledger.snapshot(client.id).credits[credit.id].amount == Decimal("700")


class TestSurplusToCredit:
    def test_convert_surplus_keeps_money(self, reconciliation_engine, ledger, client, paid_invoice):
        receivable, payment = paid_invoice
        before = ledger.snapshot(client.id)

        result = reconciliation_engine.commit(
            Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("800"), expected_version=1),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )

        after = ledger.snapshot(client.id)
        assert after.receivables[receivable.id].amount == Decimal("800")
        assert after.payments[payment.id].amount == Decimal("800")
        assert after.remaining_amount(receivable.id) == Decimal("0")
        (credit,) = after.credits.values()
        assert credit.amount == Decimal("200")
        assert result.created_credit_ids == (credit.id,)
        assert before.balance_of(client.id) == Decimal("0")
        assert after.balance_of(client.id) == Decimal("-200")
        assert after.funds_received() == before.funds_received() == Decimal("1000")

    def test_retry_of_applied_plan_is_rejected(self, reconciliation_engine, ledger, client, paid_invoice):
        """A second identical request fails and leaves the first result alone."""
        receivable, _ = paid_invoice
        mutation = Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("800"))
        request = ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT)
        reconciliation_engine.commit(mutation, request)
        first = ledger.snapshot(client.id)

        with pytest.raises(NothingToResolveError):
            reconciliation_engine.commit(mutation, request)

        second = ledger.snapshot(client.id)
        assert len(second.credits) == 1
        assert second.balance_of(client.id) == first.balance_of(client.id)
        assert ledger.version(RecordType.RECEIVABLE, receivable.id) == 2

    def test_payment_increase_capped_with_credit(self, reconciliation_engine, ledger, client):
        receivable = ledger.receivable(client.id, 1000)
        ledger.payment(receivable.id, 600)
        edited = ledger.payment(receivable.id, 400)

        result = reconciliation_engine.commit(
            Mutation(MutationType.PAYMENT_AMOUNT, edited.id, Decimal("500")),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )

        snapshot = ledger.snapshot(client.id)
        assert snapshot.payments[edited.id].amount == Decimal("400")
        assert [c.amount for c in snapshot.credits.values()] == [Decimal("100")]
        assert len(result.created_credit_ids) == 1

    def test_unallocating_frees_the_credit_without_losing_it(self, reconciliation_engine, ledger, client):
        credit = ledger.credit(client.id, 500)
        receivable = ledger.receivable(client.id, 1000)
        ledger.payment(receivable.id, 500)
        allocation = ledger.allocation(credit.id, receivable.id, 500)
        before = ledger.snapshot(client.id)

        reconciliation_engine.commit(
            Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("500")),
            manual(Decision(allocation.id, DecisionAction.DELETE_ALLOCATION)),
        )

        after = ledger.snapshot(client.id)
        assert allocation.id not in after.allocations
        assert after.credits[credit.id].amount == Decimal("500")
        assert after.credit_remaining(credit.id) == Decimal("500")
        assert after.status(receivable.id) == ReceivableStatus.PAID
        assert after.balance_of(client.id) == Decimal("-500")
        assert after.funds_received() == before.funds_received()


class TestReceivableDeletion:
    @pytest.fixture
    def split_payments(self, ledger, client):
        receivable = ledger.receivable(client.id, 1000)
        first = ledger.payment(receivable.id, 300)
        second = ledger.payment(receivable.id, 700)
        return receivable, first, second

    def test_manual_delete_removes_everything(self, reconciliation_engine, ledger, client, split_payments):
        receivable, first, second = split_payments

        result = reconciliation_engine.commit(
            Mutation(MutationType.RECEIVABLE_DELETE, receivable.id),
            manual(
                Decision(first.id, DecisionAction.DELETE),
                Decision(second.id, DecisionAction.DELETE),
            ),
        )

        assert result.target_version is None
        snapshot = ledger.snapshot(client.id)
        assert snapshot.receivables == {}
        assert snapshot.payments == {}
        assert snapshot.transactions == {}
        assert snapshot.balance_of(client.id) == Decimal("0")

    def test_convert_keeps_payments_as_credit(self, reconciliation_engine, ledger, client, split_payments):
        receivable, _, _ = split_payments

        reconciliation_engine.commit(
            Mutation(MutationType.RECEIVABLE_DELETE, receivable.id),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )

        snapshot = ledger.snapshot(client.id)
        assert snapshot.payments == {}
        assert [c.amount for c in snapshot.credits.values()] == [Decimal("1000")]
        assert snapshot.balance_of(client.id) == Decimal("-1000")

    def test_unpaid_receivable_deleted_directly(self, reconciliation_engine, ledger, client):
        receivable = ledger.receivable(client.id, 400)
        reconciliation_engine.commit(Mutation(MutationType.RECEIVABLE_DELETE, receivable.id))
        snapshot = ledger.snapshot(client.id)
        assert snapshot.receivables == {}
        assert snapshot.balance_of(client.id) == Decimal("0")


class TestTaskCascade:
    @pytest.fixture
    def approved_task(self, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000, expense_amount=200)
        ledger.approve(task.id)
        return task

    def test_amount_change_recomputes_commission(self, reconciliation_engine, ledger, client, employee, approved_task):
        result = reconciliation_engine.cascade_task(
            approved_task.id, amount=Decimal("1200"), expected_version=2,
        )

        (change,) = result.consequences.commissions_affected
        assert change["commission_difference"] == Decimal("20")
        snapshot = ledger.snapshot(client.id)
        commission = snapshot.commission_for_task(approved_task.id)
        assert commission.net_earning == Decimal("1000")
        assert commission.amount == Decimal("100")
        assert snapshot.receivable_for_task(approved_task.id).amount == Decimal("1200")
        assert snapshot.balance_of(employee.id) == Decimal("-100")
        assert result.target_version == 3

    def test_settled_commission_still_recomputed_with_warning(self, reconciliation_engine, ledger, records, client, approved_task):
        commission = ledger.snapshot(client.id).commission_for_task(approved_task.id)
        records.settle_commission(commission.id)
        ledger.session.commit()

        result = reconciliation_engine.cascade_task(approved_task.id, amount=Decimal("1200"))

        assert any("already settled" in w for w in result.warnings)
        commission = ledger.snapshot(client.id).commission_for_task(approved_task.id)
        assert commission.status == CommissionStatus.SETTLED
        assert commission.amount == Decimal("100")

    def test_prepaid_change_rewrites_transactions(self, reconciliation_engine, ledger, client, approved_task):
        reconciliation_engine.cascade_task(approved_task.id, prepaid_amount=Decimal("250"))

        snapshot = ledger.snapshot(client.id)
        assert snapshot.receivable_for_task(approved_task.id).amount == Decimal("750")
        prepaid = snapshot.transactions_for_source(approved_task.id)
        assert sorted(t.amount for t in prepaid) == [Decimal("250"), Decimal("250")]
        assert snapshot.balance_of(client.id) == Decimal("750")

    def test_exactly_one_field_required(self, reconciliation_engine, approved_task):
        with pytest.raises(InvalidMutationError):
            reconciliation_engine.cascade_task(approved_task.id)
        with pytest.raises(InvalidMutationError):
            reconciliation_engine.cascade_task(
                approved_task.id, amount=Decimal("1"), expense_amount=Decimal("1"),
            )

    def test_final_invoice_below_paid_needs_plan(self, reconciliation_engine, ledger, client, employee):
        task = ledger.task(client.id, employee.id, 1000)
        receivable = ledger.snapshot(client.id).receivable_for_task(task.id)
        ledger.payment(receivable.id, 1000)

        with pytest.raises(UnresolvedConflictError):
            reconciliation_engine.cascade_task(task.id, amount=Decimal("800"))

        reconciliation_engine.cascade_task(
            task.id,
            amount=Decimal("800"),
            request=ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )
        snapshot = ledger.snapshot(client.id)
        assert snapshot.receivable_for_task(task.id).amount == Decimal("800")
        assert snapshot.paid_amount(receivable.id) == Decimal("800")
        assert [c.amount for c in snapshot.credits.values()] == [Decimal("200")]


class TestFailureHandling:
    def test_drift_rolls_back(self, reconciliation_engine, ledger, client, paid_invoice, monkeypatch):
        receivable, payment = paid_invoice
        monkeypatch.setattr(CascadeExecutor, "_sync_transactions", lambda self, before, after: None)

        with pytest.raises(CascadeDriftError):
            reconciliation_engine.commit(
                Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("800")),
                ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
            )

        snapshot = ledger.snapshot(client.id)
        assert snapshot.receivables[receivable.id].amount == Decimal("1000")
        assert snapshot.payments[payment.id].amount == Decimal("1000")
        assert snapshot.credits == {}
        assert ledger.version(RecordType.RECEIVABLE, receivable.id) == 1

    def test_commit_logs_share_correlation_id(self, reconciliation_engine, captured_logs, paid_invoice):
        receivable, _ = paid_invoice
        reconciliation_engine.commit(
            Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("800")),
            ResolutionRequest(Strategy.CONVERT_SURPLUS_TO_CREDIT),
        )

        logs = captured_logs()
        started = next(r for r in logs if r["message"] == "mutation_commit_started")
        completed = next(r for r in logs if r["message"] == "mutation_commit_completed")
        assert started["correlation_id"] == completed["correlation_id"]
        assert started["mutation_type"] == "receivable_amount"
        assert started["strategy"] == "convert_surplus_to_credit"
        assert any(r["message"] == "cascade_record_created" for r in logs)

    def test_failed_commit_logs_error_code(self, reconciliation_engine, captured_logs, paid_invoice):
        receivable, _ = paid_invoice
        with pytest.raises(UnresolvedConflictError):
            reconciliation_engine.commit(
                Mutation(MutationType.RECEIVABLE_AMOUNT, receivable.id, Decimal("800"))
            )

        failed = next(r for r in captured_logs() if r["message"] == "mutation_commit_failed")
        assert failed["level"] == "ERROR"
        assert failed["exc_code"] == "UNRESOLVED_CONFLICT"
