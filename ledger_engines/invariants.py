"""
Invariant Checker -- decides whether a proposed mutation keeps the ledger
consistent.

Responsibility:
    Given a ``Mutation`` and the client's ``LedgerSnapshot``, return either
    ``ok`` or a structured ``Conflict`` naming the gap (deficit or surplus)
    and every dependent record that could absorb it.  Task changes are never
    conflicts; they return the recompute scope of the cascade instead.

Architecture position:
    Engines -- pure calculation layer.  Zero I/O, no session, no clock.
    Called by the preview service and by the cascade executor, which re-runs
    it against freshly locked data immediately before committing.

Invariants enforced:
    - Credit: sum(live allocations) <= amount.
    - Receivable: sum(live payments) + sum(live allocations) <= amount.
    - Every comparison absorbs the configured tolerance (0.01 by default).

Failure modes:
    - Malformed mutations raise ValidationError subclasses
      (``AmountExceedsTaskTotalError``, ``OverAllocationError``).
    - Unknown targets raise the matching ``RecordNotFoundError``.
    - A violated invariant is NOT an exception: it is returned as a
      ``Conflict``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import (
    AMOUNT_TOLERANCE,
    ZERO,
    clamp_zero,
    exceeds,
    is_material,
    total,
)
from ledger_kernel.domain.dtos import (
    AllocationInfo,
    LedgerSnapshot,
    PaymentInfo,
    RecordType,
    TransactionKind,
)
from ledger_kernel.domain.mutations import Mutation, MutationType
from ledger_kernel.exceptions import (
    AllocationNotFoundError,
    AmountExceedsTaskTotalError,
    CreditNotFoundError,
    OverAllocationError,
    PaymentNotFoundError,
    ReceivableNotFoundError,
    TaskNotFoundError,
)


class ConflictKind(str, Enum):
    CREDIT_REDUCTION = "credit_reduction"
    CREDIT_DELETION = "credit_deletion"
    RECEIVABLE_OVERPAYMENT = "receivable_overpayment"
    RECEIVABLE_DELETION = "receivable_deletion"
    PAYMENT_OVERPAYMENT = "payment_overpayment"

    @property
    def api_code(self) -> str:
        return _API_CODES[self]

    @property
    def is_credit_conflict(self) -> bool:
        return self in (ConflictKind.CREDIT_REDUCTION, ConflictKind.CREDIT_DELETION)

    @property
    def gap_name(self) -> str:
        return "deficit" if self.is_credit_conflict else "surplus"


_API_CODES: dict[ConflictKind, str] = {
    ConflictKind.CREDIT_REDUCTION: "credit_reduction_conflict",
    ConflictKind.CREDIT_DELETION: "credit_deletion_conflict",
    ConflictKind.RECEIVABLE_OVERPAYMENT: "overpayment_detected",
    ConflictKind.RECEIVABLE_DELETION: "deletion_conflict_financial_records_exist",
    ConflictKind.PAYMENT_OVERPAYMENT: "payment_overpayment_detected",
}


@dataclass(frozen=True, slots=True)
class Dependent:
    """A payment or allocation that can absorb part of a conflict's gap."""

    record_type: RecordType
    record_id: UUID
    amount: Decimal
    dated_on: date
    sequence: int
    version: int
    receivable_id: UUID
    credit_id: UUID | None = None
    method: str | None = None

    @property
    def is_payment(self) -> bool:
        return self.record_type == RecordType.PAYMENT

    @property
    def is_allocation(self) -> bool:
        return self.record_type == RecordType.ALLOCATION

    @property
    def lifo_key(self) -> tuple[date, int]:
        return (self.dated_on, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.record_id,
            "amount": self.amount,
            "receivable_id": self.receivable_id,
            "version": self.version,
        }
        if self.is_payment:
            data["method"] = self.method
            data["paid_on"] = self.dated_on
        else:
            data["credit_id"] = self.credit_id
            data["allocated_on"] = self.dated_on
        return data

    @classmethod
    def from_payment(cls, payment: PaymentInfo) -> Dependent:
        return cls(
            record_type=RecordType.PAYMENT,
            record_id=payment.id,
            amount=payment.amount,
            dated_on=payment.paid_on,
            sequence=payment.sequence,
            version=payment.version,
            receivable_id=payment.receivable_id,
            method=payment.method,
        )

    @classmethod
    def from_allocation(cls, allocation: AllocationInfo) -> Dependent:
        return cls(
            record_type=RecordType.ALLOCATION,
            record_id=allocation.id,
            amount=allocation.amount,
            dated_on=allocation.allocated_on,
            sequence=allocation.sequence,
            version=allocation.version,
            receivable_id=allocation.receivable_id,
            credit_id=allocation.credit_id,
        )


@dataclass(frozen=True, slots=True)
class Conflict:
    """
    A mutation that would break a ledger invariant.

    Contract:
        ``gap`` is the deficit (credit conflicts) or surplus (receivable and
        payment conflicts) a resolution plan must remove.  ``linked_amount``
        is the allocated amount of the credit or the total paid on the
        receivable.  ``dependents`` are ordered oldest first.
    """

    kind: ConflictKind
    target_type: RecordType
    target_id: UUID
    current_amount: Decimal
    proposed_amount: Decimal | None
    linked_amount: Decimal
    gap: Decimal
    dependents: tuple[Dependent, ...] = ()
    receivable_id: UUID | None = None

    @property
    def deficit(self) -> Decimal:
        return self.gap if self.kind.is_credit_conflict else ZERO

    @property
    def surplus(self) -> Decimal:
        return ZERO if self.kind.is_credit_conflict else self.gap

    @property
    def is_deletion(self) -> bool:
        return self.kind in (ConflictKind.CREDIT_DELETION, ConflictKind.RECEIVABLE_DELETION)

    @property
    def absorbable(self) -> Decimal:
        """What removing every dependent entirely would cover."""
        return total(d.amount for d in self.dependents)

    def dependent(self, record_id: UUID) -> Dependent | None:
        for dep in self.dependents:
            if dep.record_id == record_id:
                return dep
        return None

    def lifo(self) -> tuple[Dependent, ...]:
        """Dependents newest first (date, then sequence)."""
        return tuple(sorted(self.dependents, key=lambda d: d.lifo_key, reverse=True))

    def payments(self) -> tuple[Dependent, ...]:
        return tuple(d for d in self.dependents if d.is_payment)

    def allocations(self) -> tuple[Dependent, ...]:
        return tuple(d for d in self.dependents if d.is_allocation)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "current_amount": self.current_amount,
            "new_amount": self.proposed_amount,
        }
        if self.kind.is_credit_conflict:
            data["allocated_amount"] = self.linked_amount
            data["deficit"] = self.gap
        else:
            data["receivable_id"] = self.receivable_id
            data["total_paid"] = self.linked_amount
            data["surplus"] = self.gap
            data["payments"] = [d.to_dict() for d in self.payments()]
        data["allocations"] = [d.to_dict() for d in self.allocations()]
        return data


@dataclass(frozen=True, slots=True)
class RecomputeScope:
    """
    Records a task change will recompute.

    ``linked_conflict`` is set when the new final invoice amount falls below
    what is already paid against it; it needs a resolution plan like any
    receivable overpayment.
    """

    task_id: UUID
    field: str
    old_value: Decimal
    new_value: Decimal
    old_final_invoice: Decimal
    new_final_invoice: Decimal
    receivable_id: UUID | None
    commission_id: UUID | None
    transaction_ids: tuple[UUID, ...] = ()
    linked_conflict: Conflict | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "old_final_invoice": self.old_final_invoice,
            "new_final_invoice": self.new_final_invoice,
            "receivable_id": self.receivable_id,
            "commission_id": self.commission_id,
            "transaction_ids": list(self.transaction_ids),
            "linked_conflict": (
                self.linked_conflict.to_dict() if self.linked_conflict else None
            ),
        }


@dataclass(frozen=True, slots=True)
class CheckResult:
    ok: bool
    conflict: Conflict | None = None
    recompute: RecomputeScope | None = None

    @property
    def pending_conflict(self) -> Conflict | None:
        """The conflict a plan must resolve, direct or linked through a task."""
        if self.conflict is not None:
            return self.conflict
        if self.recompute is not None:
            return self.recompute.linked_conflict
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "conflict": self.conflict.to_dict() if self.conflict else None,
            "recompute": self.recompute.to_dict() if self.recompute else None,
        }


_OK = CheckResult(ok=True)

_TASK_FIELDS: dict[MutationType, str] = {
    MutationType.TASK_AMOUNT: "amount",
    MutationType.TASK_PREPAID: "prepaid_amount",
    MutationType.TASK_EXPENSE: "expense_amount",
}


class InvariantChecker:
    """
    Pure checker for proposed mutations.

    Contract:
        ``check(mutation=..., snapshot=...)`` never mutates its inputs and
        returns the same result for the same inputs.

    Non-goals:
        - Does NOT compare versions; that happens inside the committing
          transaction.
    """

    def __init__(self, tolerance: Decimal = AMOUNT_TOLERANCE):
        self._tol = tolerance

    @traced_engine("invariant_checker", "1.0", fingerprint_fields=("mutation",))
    def check(self, *, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        handler = {
            MutationType.CREDIT_AMOUNT: self._credit_change,
            MutationType.CREDIT_DELETE: self._credit_change,
            MutationType.RECEIVABLE_AMOUNT: self._receivable_change,
            MutationType.RECEIVABLE_DELETE: self._receivable_change,
            MutationType.PAYMENT_AMOUNT: self._payment_change,
            MutationType.PAYMENT_DELETE: self._payment_change,
            MutationType.ALLOCATION_AMOUNT: self._allocation_change,
            MutationType.ALLOCATION_DELETE: self._allocation_change,
            MutationType.TASK_AMOUNT: self._task_change,
            MutationType.TASK_PREPAID: self._task_change,
            MutationType.TASK_EXPENSE: self._task_change,
        }[mutation.mutation_type]
        return handler(mutation, snapshot)

    # -----------------------------------------------------------------
    # Credits
    # -----------------------------------------------------------------

    def _credit_change(self, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        credit = snapshot.credits.get(mutation.target_id)
        if credit is None:
            raise CreditNotFoundError(str(mutation.target_id))
        allocated = snapshot.allocated_amount(credit.id)

        if mutation.mutation_type.is_delete:
            if not is_material(allocated, self._tol):
                return _OK
            kind, proposed, gap = ConflictKind.CREDIT_DELETION, None, allocated
        else:
            proposed = mutation.proposed_amount
            if not exceeds(allocated, proposed, self._tol):
                return _OK
            kind, gap = ConflictKind.CREDIT_REDUCTION, allocated - proposed

        return CheckResult(
            ok=False,
            conflict=Conflict(
                kind=kind,
                target_type=RecordType.CREDIT,
                target_id=credit.id,
                current_amount=credit.amount,
                proposed_amount=proposed,
                linked_amount=allocated,
                gap=gap,
                dependents=tuple(
                    Dependent.from_allocation(a)
                    for a in snapshot.allocations_for_credit(credit.id)
                ),
            ),
        )

    # -----------------------------------------------------------------
    # Receivables
    # -----------------------------------------------------------------

    def _receivable_dependents(
        self,
        snapshot: LedgerSnapshot,
        receivable_id: UUID,
        exclude: UUID | None = None,
    ) -> tuple[Dependent, ...]:
        deps = [
            Dependent.from_payment(p)
            for p in snapshot.payments_for_receivable(receivable_id)
            if p.id != exclude
        ]
        deps.extend(
            Dependent.from_allocation(a)
            for a in snapshot.allocations_for_receivable(receivable_id)
        )
        return tuple(sorted(deps, key=lambda d: d.lifo_key))

    def receivable_overpayment(
        self,
        snapshot: LedgerSnapshot,
        receivable_id: UUID,
        new_amount: Decimal,
    ) -> Conflict | None:
        """Conflict raised by setting a receivable to ``new_amount``, if any."""
        receivable = snapshot.receivables[receivable_id]
        paid = snapshot.paid_amount(receivable_id)
        if not exceeds(paid, new_amount, self._tol):
            return None
        return Conflict(
            kind=ConflictKind.RECEIVABLE_OVERPAYMENT,
            target_type=RecordType.RECEIVABLE,
            target_id=receivable_id,
            current_amount=receivable.amount,
            proposed_amount=new_amount,
            linked_amount=paid,
            gap=paid - new_amount,
            dependents=self._receivable_dependents(snapshot, receivable_id),
            receivable_id=receivable_id,
        )

    def _receivable_change(self, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        receivable = snapshot.receivables.get(mutation.target_id)
        if receivable is None:
            raise ReceivableNotFoundError(str(mutation.target_id))

        if not mutation.mutation_type.is_delete:
            conflict = self.receivable_overpayment(
                snapshot, receivable.id, mutation.proposed_amount
            )
            return _OK if conflict is None else CheckResult(ok=False, conflict=conflict)

        dependents = self._receivable_dependents(snapshot, receivable.id)
        if not dependents:
            return _OK
        paid = snapshot.paid_amount(receivable.id)
        return CheckResult(
            ok=False,
            conflict=Conflict(
                kind=ConflictKind.RECEIVABLE_DELETION,
                target_type=RecordType.RECEIVABLE,
                target_id=receivable.id,
                current_amount=receivable.amount,
                proposed_amount=None,
                linked_amount=paid,
                gap=paid,
                dependents=dependents,
                receivable_id=receivable.id,
            ),
        )

    # -----------------------------------------------------------------
    # Payments and allocations
    # -----------------------------------------------------------------

    def _payment_change(self, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        payment = snapshot.payments.get(mutation.target_id)
        if payment is None:
            raise PaymentNotFoundError(str(mutation.target_id))
        if mutation.mutation_type.is_delete or mutation.proposed_amount <= payment.amount:
            return _OK

        receivable = snapshot.receivables[payment.receivable_id]
        new_paid = (
            snapshot.paid_amount(receivable.id) - payment.amount + mutation.proposed_amount
        )
        if not exceeds(new_paid, receivable.amount, self._tol):
            return _OK
        return CheckResult(
            ok=False,
            conflict=Conflict(
                kind=ConflictKind.PAYMENT_OVERPAYMENT,
                target_type=RecordType.PAYMENT,
                target_id=payment.id,
                current_amount=payment.amount,
                proposed_amount=mutation.proposed_amount,
                linked_amount=new_paid,
                gap=new_paid - receivable.amount,
                dependents=self._receivable_dependents(
                    snapshot, receivable.id, exclude=payment.id
                ),
                receivable_id=receivable.id,
            ),
        )

    def _allocation_change(self, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        allocation = snapshot.allocations.get(mutation.target_id)
        if allocation is None:
            raise AllocationNotFoundError(str(mutation.target_id))
        if mutation.mutation_type.is_delete or mutation.proposed_amount <= allocation.amount:
            return _OK

        increase = mutation.proposed_amount - allocation.amount
        credit_room = clamp_zero(snapshot.credit_remaining(allocation.credit_id))
        if exceeds(increase, credit_room, self._tol):
            raise OverAllocationError(
                mutation.proposed_amount, allocation.amount + credit_room, "credit"
            )
        receivable_room = clamp_zero(snapshot.remaining_amount(allocation.receivable_id))
        if exceeds(increase, receivable_room, self._tol):
            raise OverAllocationError(
                mutation.proposed_amount, allocation.amount + receivable_room, "receivable"
            )
        return _OK

    # -----------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------

    def _task_change(self, mutation: Mutation, snapshot: LedgerSnapshot) -> CheckResult:
        task = snapshot.tasks.get(mutation.target_id)
        if task is None:
            raise TaskNotFoundError(str(mutation.target_id))

        field_name = _TASK_FIELDS[mutation.mutation_type]
        new_value = mutation.proposed_amount
        amount, prepaid = task.amount, task.prepaid_amount
        if mutation.mutation_type == MutationType.TASK_AMOUNT:
            amount = new_value
        elif mutation.mutation_type == MutationType.TASK_PREPAID:
            prepaid = new_value
        if exceeds(prepaid, amount, ZERO):
            raise AmountExceedsTaskTotalError(str(task.id), amount, prepaid)

        receivable = snapshot.receivable_for_task(task.id)
        commission = snapshot.commission_for_task(task.id) if task.is_approved else None

        transaction_ids = [t.id for t in snapshot.transactions_for_source(task.id)]
        linked = None
        if receivable is not None:
            transaction_ids.extend(
                t.id for t in snapshot.transactions_for_source(receivable.id)
                if t.kind == TransactionKind.INVOICE
            )
            linked = self.receivable_overpayment(snapshot, receivable.id, amount - prepaid)
        if commission is not None:
            transaction_ids.extend(t.id for t in snapshot.transactions_for_source(commission.id))

        return CheckResult(
            ok=True,
            recompute=RecomputeScope(
                task_id=task.id,
                field=field_name,
                old_value=getattr(task, field_name),
                new_value=new_value,
                old_final_invoice=task.final_invoice_amount,
                new_final_invoice=amount - prepaid,
                receivable_id=receivable.id if receivable else None,
                commission_id=commission.id if commission else None,
                transaction_ids=tuple(transaction_ids),
                linked_conflict=linked,
            ),
        )
