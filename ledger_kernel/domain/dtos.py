"""
Domain DTOs -- Frozen snapshots of ledger records.

Responsibility:
    Immutable views of every ledger record plus ``LedgerSnapshot``, the
    per-client bundle the pure engines reason over.  Derived figures
    (allocated, paid, remaining, status, net earning) are computed from the
    snapshot on demand and never stored.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Built by
    ``ledger_kernel.selectors.ledger_selector``; consumed by
    ``ledger_engines``.

Invariants enforced:
    - Snapshots contain live (non-deleted) records only.
    - Receivable status is always derived from amount vs paid, never read
      from storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Mapping
from uuid import UUID

from ledger_kernel.domain.amounts import AMOUNT_TOLERANCE, ZERO, exceeds, is_material, total


class RecordType(str, Enum):
    """Kinds of ledger records a mutation or dependent can reference."""

    PARTY = "party"
    CREDIT = "credit"
    ALLOCATION = "allocation"
    RECEIVABLE = "receivable"
    PAYMENT = "payment"
    TASK = "task"
    COMMISSION = "commission"
    TRANSACTION = "transaction"


class PartyType(str, Enum):
    CLIENT = "client"
    EMPLOYEE = "employee"


class ReceivableStatus(str, Enum):
    """Derived payment status of a receivable."""

    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class TaskStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class TransactionKind(str, Enum):
    """Ledger transaction kinds and the record each one is sourced from."""

    INVOICE = "invoice"  # client debit, source: receivable
    PAYMENT = "payment"  # client credit, source: payment
    CREDIT_RECEIVED = "credit_received"  # client credit, source: credit
    TASK_PREPAID = "task_prepaid"  # client debit, source: task
    TASK_PREPAID_RECEIVED = "task_prepaid_received"  # client credit, source: task
    COMMISSION = "commission"  # employee credit, source: commission

    @property
    def is_debit(self) -> bool:
        return self in (TransactionKind.INVOICE, TransactionKind.TASK_PREPAID)

    @property
    def source_type(self) -> RecordType:
        return _TRANSACTION_SOURCES[self]


_TRANSACTION_SOURCES: dict[TransactionKind, RecordType] = {
    TransactionKind.INVOICE: RecordType.RECEIVABLE,
    TransactionKind.PAYMENT: RecordType.PAYMENT,
    TransactionKind.CREDIT_RECEIVED: RecordType.CREDIT,
    TransactionKind.TASK_PREPAID: RecordType.TASK,
    TransactionKind.TASK_PREPAID_RECEIVED: RecordType.TASK,
    TransactionKind.COMMISSION: RecordType.COMMISSION,
}


def derive_status(
    amount: Decimal,
    paid: Decimal,
    tolerance: Decimal = AMOUNT_TOLERANCE,
) -> ReceivableStatus:
    """Derive receivable status from its amount and what is paid against it."""
    if not is_material(paid, tolerance):
        return ReceivableStatus.UNPAID if is_material(amount, tolerance) else ReceivableStatus.PAID
    if exceeds(amount, paid, tolerance):
        return ReceivableStatus.PARTIALLY_PAID
    return ReceivableStatus.PAID


@dataclass(frozen=True, slots=True)
class PartyInfo:
    id: UUID
    party_type: PartyType
    name: str
    commission_rate: Decimal | None
    balance: Decimal


@dataclass(frozen=True, slots=True)
class CreditInfo:
    id: UUID
    client_id: UUID
    amount: Decimal
    received_on: date
    sequence: int
    version: int
    description: str = ""


@dataclass(frozen=True, slots=True)
class AllocationInfo:
    id: UUID
    credit_id: UUID
    receivable_id: UUID
    amount: Decimal
    allocated_on: date
    sequence: int
    version: int
    description: str = ""


@dataclass(frozen=True, slots=True)
class ReceivableInfo:
    id: UUID
    client_id: UUID
    amount: Decimal
    issued_on: date
    sequence: int
    version: int
    task_id: UUID | None = None
    description: str = ""


@dataclass(frozen=True, slots=True)
class PaymentInfo:
    id: UUID
    receivable_id: UUID
    amount: Decimal
    method: str
    paid_on: date
    sequence: int
    version: int
    note: str = ""


@dataclass(frozen=True, slots=True)
class TaskInfo:
    id: UUID
    client_id: UUID
    employee_id: UUID
    amount: Decimal
    prepaid_amount: Decimal
    expense_amount: Decimal
    status: TaskStatus
    sequence: int
    version: int
    description: str = ""

    @property
    def final_invoice_amount(self) -> Decimal:
        return self.amount - self.prepaid_amount

    @property
    def net_earning(self) -> Decimal:
        return self.amount - self.expense_amount

    @property
    def is_approved(self) -> bool:
        return self.status == TaskStatus.APPROVED


@dataclass(frozen=True, slots=True)
class CommissionInfo:
    id: UUID
    task_id: UUID
    employee_id: UUID
    rate: Decimal
    net_earning: Decimal
    amount: Decimal
    status: CommissionStatus


@dataclass(frozen=True, slots=True)
class TransactionInfo:
    id: UUID
    party_id: UUID
    kind: TransactionKind
    source_id: UUID
    debit: Decimal
    credit: Decimal
    transaction_on: date

    @property
    def amount(self) -> Decimal:
        return self.debit if self.kind.is_debit else self.credit

    @property
    def signed_amount(self) -> Decimal:
        """Contribution to the party balance (debit minus credit)."""
        return self.debit - self.credit


def _by_date_and_sequence(record) -> tuple:
    for attr in ("allocated_on", "paid_on", "received_on", "issued_on"):
        if hasattr(record, attr):
            return (getattr(record, attr), record.sequence)
    return (date.min, record.sequence)


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Every live record of one client, plus the employees on its tasks.

    Contract:
        Mappings hold non-deleted records only.  ``parties`` carries the
        balance recomputed from all of each party's transactions (employees
        included, even though their other clients' records are absent).
    """

    client_id: UUID
    parties: Mapping[UUID, PartyInfo] = field(default_factory=dict)
    credits: Mapping[UUID, CreditInfo] = field(default_factory=dict)
    allocations: Mapping[UUID, AllocationInfo] = field(default_factory=dict)
    receivables: Mapping[UUID, ReceivableInfo] = field(default_factory=dict)
    payments: Mapping[UUID, PaymentInfo] = field(default_factory=dict)
    tasks: Mapping[UUID, TaskInfo] = field(default_factory=dict)
    commissions: Mapping[UUID, CommissionInfo] = field(default_factory=dict)
    transactions: Mapping[UUID, TransactionInfo] = field(default_factory=dict)

    # -----------------------------------------------------------------
    # Relationship lookups (ordered oldest first)
    # -----------------------------------------------------------------

    def allocations_for_credit(self, credit_id: UUID) -> tuple[AllocationInfo, ...]:
        return tuple(sorted(
            (a for a in self.allocations.values() if a.credit_id == credit_id),
            key=_by_date_and_sequence,
        ))

    def allocations_for_receivable(self, receivable_id: UUID) -> tuple[AllocationInfo, ...]:
        return tuple(sorted(
            (a for a in self.allocations.values() if a.receivable_id == receivable_id),
            key=_by_date_and_sequence,
        ))

    def payments_for_receivable(self, receivable_id: UUID) -> tuple[PaymentInfo, ...]:
        return tuple(sorted(
            (p for p in self.payments.values() if p.receivable_id == receivable_id),
            key=_by_date_and_sequence,
        ))

    def receivable_for_task(self, task_id: UUID) -> ReceivableInfo | None:
        for receivable in self.receivables.values():
            if receivable.task_id == task_id:
                return receivable
        return None

    def commission_for_task(self, task_id: UUID) -> CommissionInfo | None:
        for commission in self.commissions.values():
            if commission.task_id == task_id:
                return commission
        return None

    def transactions_for_source(self, source_id: UUID) -> tuple[TransactionInfo, ...]:
        return tuple(t for t in self.transactions.values() if t.source_id == source_id)

    # -----------------------------------------------------------------
    # Derived figures
    # -----------------------------------------------------------------

    def allocated_amount(self, credit_id: UUID) -> Decimal:
        return total(a.amount for a in self.allocations_for_credit(credit_id))

    def credit_remaining(self, credit_id: UUID) -> Decimal:
        return self.credits[credit_id].amount - self.allocated_amount(credit_id)

    def paid_amount(self, receivable_id: UUID) -> Decimal:
        return (
            total(p.amount for p in self.payments_for_receivable(receivable_id))
            + total(a.amount for a in self.allocations_for_receivable(receivable_id))
        )

    def remaining_amount(self, receivable_id: UUID) -> Decimal:
        return self.receivables[receivable_id].amount - self.paid_amount(receivable_id)

    def status(self, receivable_id: UUID, tolerance: Decimal = AMOUNT_TOLERANCE) -> ReceivableStatus:
        return derive_status(
            self.receivables[receivable_id].amount,
            self.paid_amount(receivable_id),
            tolerance,
        )

    def funds_received(self) -> Decimal:
        """Money the client has handed over: live payments plus live credits."""
        return (
            total(p.amount for p in self.payments.values())
            + total(c.amount for c in self.credits.values())
        )

    def balance_of(self, party_id: UUID) -> Decimal:
        party = self.parties.get(party_id)
        return party.balance if party is not None else ZERO
