"""
Cascade Projection -- the state a mutation plus its plan would produce.

Responsibility:
    Applies a mutation and its resolution plan to an in-memory copy of the
    client's ``LedgerSnapshot``: per-dependent decisions, the target update,
    the task cascade (final invoice, prepaid transactions, net earning and
    commission) and the balance recomputation.  Returns the projected
    snapshot plus a ``Consequences`` report comparing before and after.

Architecture position:
    Engines -- pure calculation layer.  Used verbatim by the preview service
    (report only) and by the cascade executor (which materializes the
    projected snapshot and then verifies the database against it), so a
    dry run and a commit of the same plan report identical consequences.

Invariants enforced:
    - Every ledger transaction is keyed by (kind, source); its amount is
      always rewritten from its source record, never adjusted by delta.
    - Party balances are ``old balance - old transactions + new
      transactions`` for the party, equivalent to a full recompute.
    - Deleting a parent removes its residual children (allocations of a
      deleted credit, payments and allocations of a deleted receivable).
    - Consequences never contain identifiers of records that do not exist
      yet.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID, uuid4

from ledger_engines.resolution import DecisionAction, ResolutionPlan
from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import ZERO, clamp_zero, display_amount, is_material
from ledger_kernel.domain.dtos import (
    CommissionStatus,
    CreditInfo,
    LedgerSnapshot,
    PartyType,
    PaymentInfo,
    TransactionInfo,
    TransactionKind,
)
from ledger_kernel.domain.mutations import Mutation, MutationType


@dataclass(frozen=True)
class Consequences:
    """Structured before/after report of one mutation and its plan."""

    target_summary: dict[str, Any]
    dependent_changes: list[dict[str, Any]] = field(default_factory=list)
    invoice_impact: list[dict[str, Any]] = field(default_factory=list)
    credit_impact: list[dict[str, Any]] = field(default_factory=list)
    credits_created: list[dict[str, Any]] = field(default_factory=list)
    payments_created: list[dict[str, Any]] = field(default_factory=list)
    transaction_changes: list[dict[str, Any]] = field(default_factory=list)
    commissions_affected: list[dict[str, Any]] = field(default_factory=list)
    balance_recalculations: list[dict[str, Any]] = field(default_factory=list)
    task_impact: dict[str, Any] | None = None
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_summary": self.target_summary,
            "dependent_changes": self.dependent_changes,
            "invoice_impact": self.invoice_impact,
            "credit_impact": self.credit_impact,
            "credits_created": self.credits_created,
            "payments_created": self.payments_created,
            "transaction_changes": self.transaction_changes,
            "commissions_affected": self.commissions_affected,
            "balance_recalculations": self.balance_recalculations,
            "task_impact": self.task_impact,
            "messages": self.messages,
        }


@dataclass(frozen=True)
class Projection:
    before: LedgerSnapshot
    after: LedgerSnapshot
    consequences: Consequences
    warnings: tuple[str, ...] = ()


_TASK_FIELDS: dict[MutationType, str] = {
    MutationType.TASK_AMOUNT: "amount",
    MutationType.TASK_PREPAID: "prepaid_amount",
    MutationType.TASK_EXPENSE: "expense_amount",
}

_TARGET_AMOUNT_COLLECTIONS = {
    MutationType.CREDIT_AMOUNT: "credits",
    MutationType.RECEIVABLE_AMOUNT: "receivables",
    MutationType.PAYMENT_AMOUNT: "payments",
    MutationType.ALLOCATION_AMOUNT: "allocations",
    MutationType.CREDIT_DELETE: "credits",
    MutationType.RECEIVABLE_DELETE: "receivables",
    MutationType.PAYMENT_DELETE: "payments",
    MutationType.ALLOCATION_DELETE: "allocations",
}


class _Working:
    """Mutable copy of a snapshot's record maps."""

    def __init__(self, snapshot: LedgerSnapshot, new_id: Callable[[], UUID]):
        self.snapshot = snapshot
        self.new_id = new_id
        self.credits = dict(snapshot.credits)
        self.allocations = dict(snapshot.allocations)
        self.receivables = dict(snapshot.receivables)
        self.payments = dict(snapshot.payments)
        self.tasks = dict(snapshot.tasks)
        self.commissions = dict(snapshot.commissions)
        self.transactions = dict(snapshot.transactions)
        self.created_credits: list[CreditInfo] = []
        self.created_payments: list[tuple[PaymentInfo, UUID]] = []

    # -- transactions --------------------------------------------------

    def find_txn(self, kind: TransactionKind, source_id: UUID) -> TransactionInfo | None:
        for txn in self.transactions.values():
            if txn.kind == kind and txn.source_id == source_id:
                return txn
        return None

    def set_txn(
        self,
        kind: TransactionKind,
        source_id: UUID,
        party_id: UUID,
        amount: Decimal,
        on: date,
        keep_zero: bool = True,
    ) -> None:
        debit, credit = (amount, ZERO) if kind.is_debit else (ZERO, amount)
        existing = self.find_txn(kind, source_id)
        if existing is not None:
            if amount == ZERO and not keep_zero:
                del self.transactions[existing.id]
            elif existing.debit != debit or existing.credit != credit:
                self.transactions[existing.id] = replace(existing, debit=debit, credit=credit)
            return
        if amount == ZERO and not keep_zero:
            return
        txn_id = self.new_id()
        self.transactions[txn_id] = TransactionInfo(
            id=txn_id,
            party_id=party_id,
            kind=kind,
            source_id=source_id,
            debit=debit,
            credit=credit,
            transaction_on=on,
        )

    def drop_txns(self, source_id: UUID) -> None:
        for txn_id in [t.id for t in self.transactions.values() if t.source_id == source_id]:
            del self.transactions[txn_id]

    # -- records -------------------------------------------------------

    def set_payment(self, payment_id: UUID, amount: Decimal) -> None:
        payment = replace(self.payments[payment_id], amount=amount)
        self.payments[payment_id] = payment
        client_id = self.receivables[payment.receivable_id].client_id
        self.set_txn(TransactionKind.PAYMENT, payment_id, client_id, amount, payment.paid_on)

    def remove_payment(self, payment_id: UUID) -> None:
        self.payments.pop(payment_id, None)
        self.drop_txns(payment_id)

    def set_allocation(self, allocation_id: UUID, amount: Decimal) -> None:
        self.allocations[allocation_id] = replace(self.allocations[allocation_id], amount=amount)

    def remove_allocation(self, allocation_id: UUID) -> None:
        self.allocations.pop(allocation_id, None)

    def set_credit(self, credit_id: UUID, amount: Decimal) -> None:
        credit = replace(self.credits[credit_id], amount=amount)
        self.credits[credit_id] = credit
        self.set_txn(
            TransactionKind.CREDIT_RECEIVED, credit_id, credit.client_id, amount, credit.received_on
        )

    def remove_credit(self, credit_id: UUID) -> None:
        self.credits.pop(credit_id, None)
        self.drop_txns(credit_id)
        for alloc_id in [a.id for a in self.allocations.values() if a.credit_id == credit_id]:
            self.remove_allocation(alloc_id)

    def set_receivable(self, receivable_id: UUID, amount: Decimal) -> None:
        receivable = replace(self.receivables[receivable_id], amount=amount)
        self.receivables[receivable_id] = receivable
        self.set_txn(
            TransactionKind.INVOICE, receivable_id, receivable.client_id, amount, receivable.issued_on
        )

    def remove_receivable(self, receivable_id: UUID) -> None:
        self.receivables.pop(receivable_id, None)
        self.drop_txns(receivable_id)
        for pay_id in [p.id for p in self.payments.values() if p.receivable_id == receivable_id]:
            self.remove_payment(pay_id)
        for alloc_id in [a.id for a in self.allocations.values() if a.receivable_id == receivable_id]:
            self.remove_allocation(alloc_id)

    def add_credit(self, client_id: UUID, amount: Decimal, description: str, on: date) -> None:
        credit = CreditInfo(
            id=self.new_id(),
            client_id=client_id,
            amount=amount,
            received_on=on,
            sequence=0,
            version=1,
            description=description,
        )
        self.credits[credit.id] = credit
        self.created_credits.append(credit)
        self.set_txn(TransactionKind.CREDIT_RECEIVED, credit.id, client_id, amount, on)

    def add_payment(
        self,
        receivable_id: UUID,
        amount: Decimal,
        method: str,
        on: date,
        note: str,
        source_id: UUID,
    ) -> None:
        payment = PaymentInfo(
            id=self.new_id(),
            receivable_id=receivable_id,
            amount=amount,
            method=method,
            paid_on=on,
            sequence=0,
            version=1,
            note=note,
        )
        self.payments[payment.id] = payment
        self.created_payments.append((payment, source_id))
        client_id = self.receivables[receivable_id].client_id
        self.set_txn(TransactionKind.PAYMENT, payment.id, client_id, amount, on)

    def freeze(self) -> LedgerSnapshot:
        before = self.snapshot
        parties = {}
        for party_id, party in before.parties.items():
            old = sum(
                (t.signed_amount for t in before.transactions.values() if t.party_id == party_id),
                ZERO,
            )
            new = sum(
                (t.signed_amount for t in self.transactions.values() if t.party_id == party_id),
                ZERO,
            )
            parties[party_id] = replace(party, balance=party.balance - old + new)
        return LedgerSnapshot(
            client_id=before.client_id,
            parties=parties,
            credits=self.credits,
            allocations=self.allocations,
            receivables=self.receivables,
            payments=self.payments,
            tasks=self.tasks,
            commissions=self.commissions,
            transactions=self.transactions,
        )


class CascadeProjector:
    """
    Pure projection of a mutation and its plan.

    Contract:
        ``project`` assumes the plan was compiled against the same snapshot
        and that the mutation passed the invariant checker.  ``new_id``
        supplies identifiers for created credits, payments and
        transactions; the executor persists records under those ids.
    """

    @traced_engine("cascade_projector", "1.0", fingerprint_fields=("mutation", "plan"))
    def project(
        self,
        *,
        snapshot: LedgerSnapshot,
        mutation: Mutation,
        plan: ResolutionPlan | None,
        today: date,
        new_id: Callable[[], UUID] = uuid4,
    ) -> Projection:
        work = _Working(snapshot, new_id)

        if plan is not None:
            self._apply_plan(work, plan, today)

        self._apply_target(work, mutation, plan)

        commission_changes: list[dict[str, Any]] = []
        task_impact = None
        if mutation.mutation_type.is_task_change:
            task_impact, commission_changes = self._task_cascade(
                work, snapshot, mutation.target_id, today
            )

        after = work.freeze()
        return self._report(
            snapshot, after, work, mutation, plan, task_impact, commission_changes
        )

    # -----------------------------------------------------------------
    # Application
    # -----------------------------------------------------------------

    def _apply_plan(self, work: _Working, plan: ResolutionPlan, today: date) -> None:
        for step in plan.changed_steps():
            dep = step.dependent
            if dep.is_payment:
                if step.new_amount == ZERO:
                    work.remove_payment(dep.record_id)
                else:
                    work.set_payment(dep.record_id, step.new_amount)
                continue

            if step.action == DecisionAction.CONVERT_TO_PAYMENT:
                work.remove_allocation(dep.record_id)
                work.add_payment(
                    dep.receivable_id,
                    dep.amount,
                    step.payment_method,
                    dep.dated_on,
                    f"Converted from allocation {dep.record_id}",
                    dep.record_id,
                )
            elif step.new_amount == ZERO:
                work.remove_allocation(dep.record_id)
            else:
                work.set_allocation(dep.record_id, step.new_amount)

        if is_material(plan.credit_to_create, ZERO):
            work.add_credit(
                work.snapshot.client_id,
                plan.credit_to_create,
                f"Surplus from {plan.target_type.value} {plan.target_id}",
                today,
            )

    def _apply_target(self, work: _Working, mutation: Mutation, plan: ResolutionPlan | None) -> None:
        mtype, target = mutation.mutation_type, mutation.target_id
        amount = mutation.proposed_amount
        if plan is not None and plan.target_amount is not None and plan.target_id == target:
            amount = plan.target_amount

        if mtype == MutationType.CREDIT_AMOUNT:
            work.set_credit(target, amount)
        elif mtype == MutationType.CREDIT_DELETE:
            work.remove_credit(target)
        elif mtype == MutationType.RECEIVABLE_AMOUNT:
            work.set_receivable(target, amount)
        elif mtype == MutationType.RECEIVABLE_DELETE:
            work.remove_receivable(target)
        elif mtype == MutationType.PAYMENT_AMOUNT:
            work.set_payment(target, amount)
        elif mtype == MutationType.PAYMENT_DELETE:
            work.remove_payment(target)
        elif mtype == MutationType.ALLOCATION_AMOUNT:
            work.set_allocation(target, amount)
        elif mtype == MutationType.ALLOCATION_DELETE:
            work.remove_allocation(target)
        else:
            task = work.tasks[target]
            work.tasks[target] = replace(task, **{_TASK_FIELDS[mtype]: amount})

    def _task_cascade(
        self,
        work: _Working,
        before: LedgerSnapshot,
        task_id: UUID,
        today: date,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        old_task, task = before.tasks[task_id], work.tasks[task_id]

        receivable = before.receivable_for_task(task_id)
        if receivable is not None and receivable.id in work.receivables:
            work.set_receivable(receivable.id, task.final_invoice_amount)

        prepaid_txn = work.find_txn(TransactionKind.TASK_PREPAID, task_id)
        on = prepaid_txn.transaction_on if prepaid_txn else (
            receivable.issued_on if receivable else today
        )
        for kind in (TransactionKind.TASK_PREPAID, TransactionKind.TASK_PREPAID_RECEIVED):
            work.set_txn(kind, task_id, task.client_id, task.prepaid_amount, on, keep_zero=False)

        changes = []
        commission = before.commission_for_task(task_id) if task.is_approved else None
        if commission is not None:
            net = task.net_earning
            new_amount = clamp_zero(net * commission.rate)
            work.commissions[commission.id] = replace(
                commission, net_earning=net, amount=new_amount
            )
            txn = work.find_txn(TransactionKind.COMMISSION, commission.id)
            work.set_txn(
                TransactionKind.COMMISSION, commission.id, commission.employee_id,
                new_amount, txn.transaction_on if txn else today,
            )
            changes.append({
                "commission_id": commission.id,
                "task_id": task_id,
                "employee_id": commission.employee_id,
                "status": commission.status.value,
                "rate": commission.rate,
                "old_net_earning": commission.net_earning,
                "new_net_earning": net,
                "old_amount": commission.amount,
                "new_amount": new_amount,
                "commission_difference": new_amount - commission.amount,
            })

        impact = {
            "task_id": task_id,
            "status": task.status.value,
            "old_amount": old_task.amount,
            "new_amount": task.amount,
            "old_prepaid_amount": old_task.prepaid_amount,
            "new_prepaid_amount": task.prepaid_amount,
            "old_expense_amount": old_task.expense_amount,
            "new_expense_amount": task.expense_amount,
            "old_final_invoice": old_task.final_invoice_amount,
            "new_final_invoice": task.final_invoice_amount,
            "receivable_id": receivable.id if receivable else None,
        }
        return impact, changes

    # -----------------------------------------------------------------
    # Report
    # -----------------------------------------------------------------

    def _target_summary(
        self,
        before: LedgerSnapshot,
        after: LedgerSnapshot,
        mutation: Mutation,
    ) -> dict[str, Any]:
        mtype = mutation.mutation_type
        if mtype.is_task_change:
            field_name = _TASK_FIELDS[mtype]
            record = before.tasks[mutation.target_id]
            old = getattr(record, field_name)
            new = getattr(after.tasks[mutation.target_id], field_name)
        else:
            field_name = "amount"
            collection = _TARGET_AMOUNT_COLLECTIONS[mtype]
            record = getattr(before, collection)[mutation.target_id]
            old = record.amount
            moved = getattr(after, collection).get(mutation.target_id)
            new = moved.amount if moved is not None else None
        return {
            "record_type": mutation.target_type.value,
            "record_id": mutation.target_id,
            "action": "delete" if mtype.is_delete else "update",
            "field": field_name,
            "old_amount": old,
            "new_amount": new,
            "version": record.version,
        }

    def _report(
        self,
        before: LedgerSnapshot,
        after: LedgerSnapshot,
        work: _Working,
        mutation: Mutation,
        plan: ResolutionPlan | None,
        task_impact: dict[str, Any] | None,
        commission_changes: list[dict[str, Any]],
    ) -> Projection:
        messages: list[str] = []
        warnings: list[str] = []

        summary = self._target_summary(before, after, mutation)
        if summary["action"] == "delete":
            messages.append(
                f"{summary['record_type'].capitalize()} {mutation.target_id} "
                f"({summary['old_amount']}) will be deleted"
            )
        else:
            messages.append(
                f"{summary['record_type'].capitalize()} {mutation.target_id} "
                f"{summary['field']} {summary['old_amount']} -> {summary['new_amount']}"
            )

        dependent_changes = []
        if plan is not None:
            for step in plan.changed_steps():
                dependent_changes.append(step.to_dict())
                dep = step.dependent
                messages.append(
                    f"{dep.record_type.value.capitalize()} {dep.record_id}: "
                    f"{step.action.value} ({dep.amount} -> {step.new_amount})"
                )

        invoice_impact = []
        for receivable in sorted(before.receivables.values(), key=lambda r: (r.issued_on, r.sequence)):
            old_paid = before.paid_amount(receivable.id)
            moved = after.receivables.get(receivable.id)
            new_amount = moved.amount if moved else None
            new_paid = after.paid_amount(receivable.id) if moved else ZERO
            if moved is not None and new_amount == receivable.amount and new_paid == old_paid:
                continue
            old_status = before.status(receivable.id)
            new_status = after.status(receivable.id) if moved else None
            invoice_impact.append({
                "receivable_id": receivable.id,
                "deleted": moved is None,
                "old_amount": receivable.amount,
                "new_amount": new_amount,
                "old_paid_amount": old_paid,
                "new_paid_amount": new_paid,
                "old_remaining_amount": receivable.amount - old_paid,
                "new_remaining_amount": (new_amount - new_paid) if moved else None,
                "old_status": old_status.value,
                "new_status": new_status.value if new_status else None,
            })
            if new_status is not None and new_status != old_status:
                warnings.append(
                    f"Invoice {receivable.id} status will change from "
                    f"{old_status.value} to {new_status.value}"
                )

        credit_impact = []
        for credit in sorted(before.credits.values(), key=lambda c: (c.received_on, c.sequence)):
            old_alloc = before.allocated_amount(credit.id)
            moved = after.credits.get(credit.id)
            new_alloc = after.allocated_amount(credit.id) if moved else ZERO
            if moved is not None and moved.amount == credit.amount and new_alloc == old_alloc:
                continue
            credit_impact.append({
                "credit_id": credit.id,
                "deleted": moved is None,
                "old_amount": credit.amount,
                "new_amount": moved.amount if moved else None,
                "old_allocated_amount": old_alloc,
                "new_allocated_amount": new_alloc,
                "old_remaining_amount": credit.amount - old_alloc,
                "new_remaining_amount": (moved.amount - new_alloc) if moved else None,
            })

        credits_created = [
            {
                "client_id": c.client_id,
                "amount": c.amount,
                "description": c.description,
                "received_on": c.received_on,
            }
            for c in work.created_credits
        ]
        for created in credits_created:
            warnings.append(f"A client credit of {display_amount(created['amount'])} will be created")
            messages.append(f"New client credit: {display_amount(created['amount'])}")

        payments_created = [
            {
                "receivable_id": p.receivable_id,
                "amount": p.amount,
                "method": p.method,
                "paid_on": p.paid_on,
                "source_allocation_id": source_id,
            }
            for p, source_id in work.created_payments
        ]
        for created in payments_created:
            warnings.append(
                f"Allocation {created['source_allocation_id']} will become a payment "
                f"of {display_amount(created['amount'])}"
            )

        for change in commission_changes:
            messages.append(
                f"Commission for task {change['task_id']}: {change['old_amount']} -> "
                f"{change['new_amount']} ({change['commission_difference']:+})"
            )
            if change["status"] == CommissionStatus.SETTLED.value and change["commission_difference"] != ZERO:
                warnings.append(
                    f"Commission {change['commission_id']} is already settled; the "
                    f"difference of {display_amount(change['commission_difference'])} must be settled separately"
                )

        balance_recalculations = []
        for party_id, party in before.parties.items():
            new_balance = after.parties[party_id].balance
            if new_balance == party.balance:
                continue
            balance_recalculations.append({
                "party_id": party_id,
                "party_type": party.party_type.value,
                "old_balance": party.balance,
                "new_balance": new_balance,
                "difference": new_balance - party.balance,
            })
            label = "Client" if party.party_type == PartyType.CLIENT else "Employee"
            messages.append(f"{label} {party.name} balance {party.balance} -> {new_balance}")
        balance_recalculations.sort(key=lambda b: (b["party_type"], str(b["party_id"])))

        consequences = Consequences(
            target_summary=summary,
            dependent_changes=dependent_changes,
            invoice_impact=invoice_impact,
            credit_impact=credit_impact,
            credits_created=credits_created,
            payments_created=payments_created,
            transaction_changes=self._transaction_changes(before, after),
            commissions_affected=commission_changes,
            balance_recalculations=balance_recalculations,
            task_impact=task_impact,
            messages=messages,
        )
        return Projection(
            before=before,
            after=after,
            consequences=consequences,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _transaction_changes(before: LedgerSnapshot, after: LedgerSnapshot) -> list[dict[str, Any]]:
        existing_sources = (
            set(before.credits) | set(before.receivables) | set(before.payments)
            | set(before.tasks) | set(before.commissions)
        )
        changes = []
        for txn_id in set(before.transactions) | set(after.transactions):
            old = before.transactions.get(txn_id)
            new = after.transactions.get(txn_id)
            if old is not None and new is not None and old.signed_amount == new.signed_amount:
                continue
            ref = new or old
            changes.append({
                "kind": ref.kind.value,
                "party_id": ref.party_id,
                "source_id": ref.source_id if ref.source_id in existing_sources else None,
                "action": "delete" if new is None else ("create" if old is None else "update"),
                "old_amount": old.amount if old else None,
                "new_amount": new.amount if new else None,
            })
        changes.sort(key=lambda c: (
            c["action"], c["kind"], str(c["source_id"] or ""), str(c["party_id"]),
            c["new_amount"] if c["new_amount"] is not None else ZERO,
        ))
        return changes
