"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read access to ledger records.  Builds the per-client
    ``LedgerSnapshot`` the pure engines reason over, resolves which client a
    record belongs to, and recomputes party balances from transactions.
Architecture position: Kernel > Selectors.  Imports models and domain DTOs.

Invariants enforced:
    - Soft-deleted rows never reach a snapshot.
    - Balances are always ``sum(debit) - sum(credit)`` over live transactions,
      read fresh from the database; ``Party.cached_balance`` is never used as
      an input.

Failure modes:
    - ``RecordNotFoundError`` subclasses for unknown or deleted ids.
"""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select

from ledger_kernel.domain.dtos import (
    AllocationInfo,
    CommissionInfo,
    CommissionStatus,
    CreditInfo,
    LedgerSnapshot,
    PartyInfo,
    PartyType,
    PaymentInfo,
    ReceivableInfo,
    RecordType,
    TaskInfo,
    TaskStatus,
    TransactionInfo,
    TransactionKind,
)
from ledger_kernel.exceptions import (
    AllocationNotFoundError,
    CreditNotFoundError,
    PartyNotFoundError,
    PaymentNotFoundError,
    ReceivableNotFoundError,
    RecordNotFoundError,
    TaskNotFoundError,
)
from ledger_kernel.models import (
    Allocation,
    Commission,
    Credit,
    LedgerTransaction,
    Party,
    Payment,
    Receivable,
    Task,
)
from ledger_kernel.selectors.base import BaseSelector

MODEL_FOR: dict[RecordType, type] = {
    RecordType.PARTY: Party,
    RecordType.CREDIT: Credit,
    RecordType.ALLOCATION: Allocation,
    RecordType.RECEIVABLE: Receivable,
    RecordType.PAYMENT: Payment,
    RecordType.TASK: Task,
    RecordType.COMMISSION: Commission,
    RecordType.TRANSACTION: LedgerTransaction,
}

_NOT_FOUND: dict[RecordType, type[RecordNotFoundError]] = {
    RecordType.PARTY: PartyNotFoundError,
    RecordType.CREDIT: CreditNotFoundError,
    RecordType.ALLOCATION: AllocationNotFoundError,
    RecordType.RECEIVABLE: ReceivableNotFoundError,
    RecordType.PAYMENT: PaymentNotFoundError,
    RecordType.TASK: TaskNotFoundError,
}


def _dec(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def not_found(record_type: RecordType, record_id: UUID) -> RecordNotFoundError:
    return _NOT_FOUND.get(record_type, RecordNotFoundError)(str(record_id))


# ---------------------------------------------------------------------------
# ORM -> DTO
# ---------------------------------------------------------------------------


def party_to_dto(party: Party, balance: Decimal) -> PartyInfo:
    return PartyInfo(
        id=party.id,
        party_type=PartyType(party.party_type),
        name=party.name,
        commission_rate=party.commission_rate,
        balance=balance,
    )


def credit_to_dto(credit: Credit) -> CreditInfo:
    return CreditInfo(
        id=credit.id,
        client_id=credit.client_id,
        amount=_dec(credit.amount),
        received_on=credit.received_on,
        sequence=credit.sequence,
        version=credit.version,
        description=credit.description,
    )


def allocation_to_dto(allocation: Allocation) -> AllocationInfo:
    return AllocationInfo(
        id=allocation.id,
        credit_id=allocation.credit_id,
        receivable_id=allocation.receivable_id,
        amount=_dec(allocation.amount),
        allocated_on=allocation.allocated_on,
        sequence=allocation.sequence,
        version=allocation.version,
        description=allocation.description,
    )


def receivable_to_dto(receivable: Receivable) -> ReceivableInfo:
    return ReceivableInfo(
        id=receivable.id,
        client_id=receivable.client_id,
        amount=_dec(receivable.amount),
        issued_on=receivable.issued_on,
        sequence=receivable.sequence,
        version=receivable.version,
        task_id=receivable.task_id,
        description=receivable.description,
    )


def payment_to_dto(payment: Payment) -> PaymentInfo:
    return PaymentInfo(
        id=payment.id,
        receivable_id=payment.receivable_id,
        amount=_dec(payment.amount),
        method=payment.method,
        paid_on=payment.paid_on,
        sequence=payment.sequence,
        version=payment.version,
        note=payment.note,
    )


def task_to_dto(task: Task) -> TaskInfo:
    return TaskInfo(
        id=task.id,
        client_id=task.client_id,
        employee_id=task.employee_id,
        amount=_dec(task.amount),
        prepaid_amount=_dec(task.prepaid_amount),
        expense_amount=_dec(task.expense_amount),
        status=TaskStatus(task.status),
        sequence=task.sequence,
        version=task.version,
        description=task.description,
    )


def commission_to_dto(commission: Commission) -> CommissionInfo:
    return CommissionInfo(
        id=commission.id,
        task_id=commission.task_id,
        employee_id=commission.employee_id,
        rate=_dec(commission.rate),
        net_earning=_dec(commission.net_earning),
        amount=_dec(commission.amount),
        status=CommissionStatus(commission.status),
    )


def transaction_to_dto(txn: LedgerTransaction) -> TransactionInfo:
    return TransactionInfo(
        id=txn.id,
        party_id=txn.party_id,
        kind=TransactionKind(txn.kind),
        source_id=txn.source_id,
        debit=_dec(txn.debit),
        credit=_dec(txn.credit),
        transaction_on=txn.transaction_on,
    )


_TO_DTO = {
    RecordType.CREDIT: credit_to_dto,
    RecordType.ALLOCATION: allocation_to_dto,
    RecordType.RECEIVABLE: receivable_to_dto,
    RecordType.PAYMENT: payment_to_dto,
    RecordType.TASK: task_to_dto,
    RecordType.COMMISSION: commission_to_dto,
    RecordType.TRANSACTION: transaction_to_dto,
}


class LedgerSelector(BaseSelector[Party]):
    """
    Read-side queries over the ledger tables.

    Contract:
        Every method except ``get_live`` returns DTOs or plain values;
        ``get_live`` returns the ORM row for writers.  Nothing is flushed.
    """

    # -----------------------------------------------------------------
    # Single records
    # -----------------------------------------------------------------

    def get_live(self, record_type: RecordType, record_id: UUID) -> Any:
        """Return the live ORM row or raise the matching not-found error."""
        model = MODEL_FOR[record_type]
        row = self.session.get(model, record_id)
        if row is None or getattr(row, "deleted_at", None) is not None:
            raise not_found(record_type, record_id)
        return row

    def get_info(self, record_type: RecordType, record_id: UUID) -> Any:
        """DTO for a live record."""
        row = self.get_live(record_type, record_id)
        if record_type == RecordType.PARTY:
            return party_to_dto(row, self.party_balance(row.id))
        return _TO_DTO[record_type](row)

    def record_data(self, record_type: RecordType, record_id: UUID) -> dict[str, Any]:
        """Current field values of a record, for concurrency error payloads."""
        return asdict(self.get_info(record_type, record_id))

    def client_id_for(self, record_type: RecordType, record_id: UUID) -> UUID:
        """Resolve the client that owns a credit, receivable, payment, allocation or task."""
        row = self.get_live(record_type, record_id)
        if record_type in (RecordType.CREDIT, RecordType.RECEIVABLE, RecordType.TASK):
            return row.client_id
        if record_type == RecordType.PAYMENT:
            return self.session.get(Receivable, row.receivable_id).client_id
        if record_type == RecordType.ALLOCATION:
            return self.session.get(Credit, row.credit_id).client_id
        if record_type == RecordType.PARTY:
            return row.id
        raise not_found(record_type, record_id)

    # -----------------------------------------------------------------
    # Balances
    # -----------------------------------------------------------------

    def party_balance(self, party_id: UUID) -> Decimal:
        """``sum(debit) - sum(credit)`` over the party's live transactions."""
        debit, credit = self.session.execute(
            select(
                func.coalesce(func.sum(LedgerTransaction.debit), 0),
                func.coalesce(func.sum(LedgerTransaction.credit), 0),
            ).where(
                LedgerTransaction.party_id == party_id,
                LedgerTransaction.deleted_at.is_(None),
            )
        ).one()
        return _dec(debit) - _dec(credit)

    def party_balances(self, party_ids: Iterable[UUID]) -> dict[UUID, Decimal]:
        return {party_id: self.party_balance(party_id) for party_id in party_ids}

    # -----------------------------------------------------------------
    # Snapshot
    # -----------------------------------------------------------------

    def client_snapshot(self, client_id: UUID) -> LedgerSnapshot:
        """
        Every live record of one client plus the employees on its tasks.

        Raises:
            PartyNotFoundError: client id unknown.
        """
        client = self.session.get(Party, client_id)
        if client is None:
            raise PartyNotFoundError(str(client_id))

        credits = self.session.execute(
            select(Credit).where(
                Credit.client_id == client_id,
                Credit.deleted_at.is_(None),
            )
        ).scalars().all()

        client_credit_ids = select(Credit.id).where(Credit.client_id == client_id)
        allocations = self.session.execute(
            select(Allocation).where(
                Allocation.credit_id.in_(client_credit_ids),
                Allocation.deleted_at.is_(None),
            )
        ).scalars().all()

        receivables = self.session.execute(
            select(Receivable).where(
                Receivable.client_id == client_id,
                Receivable.deleted_at.is_(None),
            )
        ).scalars().all()

        client_receivable_ids = select(Receivable.id).where(Receivable.client_id == client_id)
        payments = self.session.execute(
            select(Payment).where(
                Payment.receivable_id.in_(client_receivable_ids),
                Payment.deleted_at.is_(None),
            )
        ).scalars().all()

        tasks = self.session.execute(
            select(Task).where(
                Task.client_id == client_id,
                Task.deleted_at.is_(None),
            )
        ).scalars().all()

        client_task_ids = select(Task.id).where(Task.client_id == client_id)
        commissions = self.session.execute(
            select(Commission).where(Commission.task_id.in_(client_task_ids))
        ).scalars().all()

        commission_ids = [c.id for c in commissions]
        transactions = self.session.execute(
            select(LedgerTransaction).where(
                or_(
                    LedgerTransaction.party_id == client_id,
                    LedgerTransaction.source_id.in_(commission_ids),
                ),
                LedgerTransaction.deleted_at.is_(None),
            )
        ).scalars().all()

        party_ids = {client_id} | {t.employee_id for t in tasks}
        parties = {}
        for party_id in party_ids:
            party = self.session.get(Party, party_id)
            parties[party_id] = party_to_dto(party, self.party_balance(party_id))

        return LedgerSnapshot(
            client_id=client_id,
            parties=parties,
            credits={c.id: credit_to_dto(c) for c in credits},
            allocations={a.id: allocation_to_dto(a) for a in allocations},
            receivables={r.id: receivable_to_dto(r) for r in receivables},
            payments={p.id: payment_to_dto(p) for p in payments},
            tasks={t.id: task_to_dto(t) for t in tasks},
            commissions={c.id: commission_to_dto(c) for c in commissions},
            transactions={t.id: transaction_to_dto(t) for t in transactions},
        )
