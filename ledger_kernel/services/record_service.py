"""
RecordService -- creation of ledger records with their transactions.

Responsibility:
    Explicit operator actions that bring records into existence: parties,
    credits, receivables, payments, credit allocations, tasks, task
    approval and commission settlement.  Each action validates the
    invariants that concern a new record, writes the ledger transactions
    the record implies and refreshes the cached balance of every party it
    touched.

Architecture position:
    Kernel > Services -- imperative shell.  Edits and deletions of existing
    records do NOT go through here; they pass through the checked-mutation
    protocol (``ledger_services.reconciliation_engine``).

Invariants enforced:
    - Allocations never exceed their credit's remaining amount or their
      receivable's remaining amount.
    - Payments never exceed their receivable's remaining amount; with
      ``excess_to_credit`` the excess becomes a new client credit instead.
    - A task's prepaid amount never exceeds its billable amount.
    - Every record carries a ledger-wide sequence number.

Failure modes:
    - ValidationError subclasses for malformed input; nothing is flushed.
    - RecordNotFoundError subclasses for unknown or deleted references.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.amounts import ZERO, clamp_zero, exceeds, is_material, to_amount
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import (
    AllocationInfo,
    CommissionInfo,
    CommissionStatus,
    CreditInfo,
    PartyInfo,
    PartyType,
    PaymentInfo,
    ReceivableInfo,
    RecordType,
    TaskInfo,
    TaskStatus,
    TransactionKind,
)
from ledger_kernel.exceptions import (
    AmountExceedsTaskTotalError,
    InvalidAmountError,
    InvalidMutationError,
    InvalidPartyError,
    OverAllocationError,
    OverpaymentError,
)
from ledger_kernel.logging_config import get_logger
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
from ledger_kernel.selectors.ledger_selector import (
    LedgerSelector,
    allocation_to_dto,
    commission_to_dto,
    credit_to_dto,
    party_to_dto,
    payment_to_dto,
    receivable_to_dto,
    task_to_dto,
)
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.record")

DEFAULT_COMMISSION_RATE = Decimal("0.10")


@dataclass(frozen=True, slots=True)
class PaymentReceipt:
    """Outcome of ``record_payment``: the payment and any excess credit."""

    payment: PaymentInfo | None
    excess_credit: CreditInfo | None = None


def _positive(value: Any, field: str) -> Decimal:
    amount = to_amount(value, field)
    if amount == ZERO:
        raise InvalidAmountError(field, value, "must be positive")
    return amount


class RecordService(BaseService[Party]):
    """
    Writer for new ledger records.

    Contract:
        Every public method flushes and returns a DTO of what it created.

    Non-goals:
        - Does NOT commit.
        - Does NOT edit or delete existing amounts.
    """

    def __init__(
        self,
        session,
        actor_id: UUID,
        clock: Clock | None = None,
        default_commission_rate: Decimal = DEFAULT_COMMISSION_RATE,
    ):
        super().__init__(session, actor_id, clock)
        self._sequences = SequenceService(session)
        self._selector = LedgerSelector(session)
        self._default_commission_rate = default_commission_rate

    # -----------------------------------------------------------------
    # Parties
    # -----------------------------------------------------------------

    def create_party(
        self,
        party_type: PartyType | str,
        name: str,
        commission_rate: Decimal | None = None,
    ) -> PartyInfo:
        party_type = PartyType(party_type)
        if commission_rate is not None:
            commission_rate = to_amount(commission_rate, "commission_rate")
        party = Party(
            party_type=party_type.value,
            name=name,
            commission_rate=commission_rate,
            cached_balance=ZERO,
            created_by_id=self.actor_id,
        )
        self.session.add(party)
        self.session.flush()
        logger.info(
            "party_created",
            extra={"party_id": str(party.id), "party_type": party_type.value},
        )
        return party_to_dto(party, ZERO)

    def _party(self, party_id: UUID, expected: PartyType) -> Party:
        party = self._selector.get_live(RecordType.PARTY, party_id)
        if party.party_type != expected.value:
            raise InvalidPartyError(str(party_id), expected.value, str(party.party_type))
        return party

    # -----------------------------------------------------------------
    # Transactions and balances
    # -----------------------------------------------------------------

    def post_transaction(
        self,
        party_id: UUID,
        kind: TransactionKind,
        source_type: RecordType,
        source_id: UUID,
        amount: Decimal,
        transaction_on: date,
        description: str = "",
        transaction_id: UUID | None = None,
    ) -> LedgerTransaction:
        """Add one debit or credit line; the side follows the kind."""
        txn = LedgerTransaction(
            party_id=party_id,
            kind=kind.value,
            source_type=source_type.value,
            source_id=source_id,
            debit=amount if kind.is_debit else ZERO,
            credit=ZERO if kind.is_debit else amount,
            transaction_on=transaction_on,
            description=description,
            created_by_id=self.actor_id,
        )
        if transaction_id is not None:
            txn.id = transaction_id
        self.session.add(txn)
        return txn

    def refresh_balances(self, party_ids: Iterable[UUID]) -> dict[UUID, Decimal]:
        """Rewrite ``cached_balance`` from the transaction sums."""
        self.session.flush()
        balances: dict[UUID, Decimal] = {}
        for party_id in party_ids:
            balance = self._selector.party_balance(party_id)
            party = self.session.get(Party, party_id)
            party.cached_balance = balance
            party.updated_by_id = self.actor_id
            balances[party_id] = balance
        self.session.flush()
        return balances

    def next_sequence(self) -> int:
        return self._sequences.next_value()

    def lock_client(self, client_id: UUID) -> None:
        """
        Take the client row lock (SELECT ... FOR UPDATE).

        Every writer that validates against a client's remaining amounts
        holds this lock from the read to the commit, so two callers cannot
        both spend the same remaining amount.
        """
        self.session.execute(
            select(Party.id).where(Party.id == client_id).with_for_update()
        )

    # -----------------------------------------------------------------
    # Credits
    # -----------------------------------------------------------------

    def record_credit(
        self,
        client_id: UUID,
        amount: Decimal,
        description: str = "",
        received_on: date | None = None,
    ) -> CreditInfo:
        amount = _positive(amount, "amount")
        self._party(client_id, PartyType.CLIENT)
        received_on = received_on or self.clock.today()

        credit = Credit(
            client_id=client_id,
            amount=amount,
            description=description,
            received_on=received_on,
            sequence=self.next_sequence(),
            created_by_id=self.actor_id,
        )
        self.session.add(credit)
        self.session.flush()
        self.post_transaction(
            client_id, TransactionKind.CREDIT_RECEIVED, RecordType.CREDIT,
            credit.id, amount, received_on, description,
        )
        self.refresh_balances([client_id])
        logger.info(
            "credit_recorded",
            extra={"credit_id": str(credit.id), "client_id": str(client_id), "amount": amount},
        )
        return credit_to_dto(credit)

    def apply_credit(
        self,
        credit_id: UUID,
        receivable_id: UUID,
        amount: Decimal | None = None,
        allocated_on: date | None = None,
        description: str = "",
    ) -> AllocationInfo:
        """
        Allocate part of a credit to a receivable.

        ``amount`` defaults to whatever both sides can absorb.

        Raises:
            OverAllocationError: amount above the credit's or the
                receivable's remaining amount.
        """
        credit = self._selector.get_live(RecordType.CREDIT, credit_id)
        receivable = self._selector.get_live(RecordType.RECEIVABLE, receivable_id)
        if credit.client_id != receivable.client_id:
            raise InvalidMutationError(
                "apply_credit", "credit and receivable belong to different clients"
            )

        self.lock_client(credit.client_id)
        snapshot = self._selector.client_snapshot(credit.client_id)
        credit_remaining = clamp_zero(snapshot.credit_remaining(credit_id))
        receivable_remaining = clamp_zero(snapshot.remaining_amount(receivable_id))

        if amount is None:
            amount = min(credit_remaining, receivable_remaining)
            if not is_material(amount):
                raise OverAllocationError(amount, ZERO, "credit and receivable")
        else:
            amount = _positive(amount, "amount")
        if exceeds(amount, credit_remaining):
            raise OverAllocationError(amount, credit_remaining, "credit")
        if exceeds(amount, receivable_remaining):
            raise OverAllocationError(amount, receivable_remaining, "receivable")

        allocation = Allocation(
            credit_id=credit_id,
            receivable_id=receivable_id,
            amount=amount,
            allocated_on=allocated_on or self.clock.today(),
            description=description,
            sequence=self.next_sequence(),
            created_by_id=self.actor_id,
        )
        self.session.add(allocation)
        self.session.flush()
        logger.info(
            "credit_applied",
            extra={
                "allocation_id": str(allocation.id),
                "credit_id": str(credit_id),
                "receivable_id": str(receivable_id),
                "amount": amount,
            },
        )
        return allocation_to_dto(allocation)

    # -----------------------------------------------------------------
    # Receivables and payments
    # -----------------------------------------------------------------

    def create_receivable(
        self,
        client_id: UUID,
        amount: Decimal,
        description: str = "",
        issued_on: date | None = None,
        task_id: UUID | None = None,
    ) -> ReceivableInfo:
        amount = to_amount(amount, "amount")
        self._party(client_id, PartyType.CLIENT)
        issued_on = issued_on or self.clock.today()

        receivable = Receivable(
            client_id=client_id,
            task_id=task_id,
            amount=amount,
            description=description,
            issued_on=issued_on,
            sequence=self.next_sequence(),
            created_by_id=self.actor_id,
        )
        self.session.add(receivable)
        self.session.flush()
        self.post_transaction(
            client_id, TransactionKind.INVOICE, RecordType.RECEIVABLE,
            receivable.id, amount, issued_on, description,
        )
        self.refresh_balances([client_id])
        logger.info(
            "receivable_created",
            extra={"receivable_id": str(receivable.id), "client_id": str(client_id), "amount": amount},
        )
        return receivable_to_dto(receivable)

    def record_payment(
        self,
        receivable_id: UUID,
        amount: Decimal,
        method: str = "cash",
        paid_on: date | None = None,
        note: str = "",
        excess_to_credit: bool = False,
    ) -> PaymentReceipt:
        """
        Record money received against a receivable.

        Raises:
            OverpaymentError: amount above the remaining amount and
                ``excess_to_credit`` not set.
        """
        amount = _positive(amount, "amount")
        receivable = self._selector.get_live(RecordType.RECEIVABLE, receivable_id)
        self.lock_client(receivable.client_id)
        snapshot = self._selector.client_snapshot(receivable.client_id)
        remaining = clamp_zero(snapshot.remaining_amount(receivable_id))
        paid_on = paid_on or self.clock.today()

        to_pay, excess = amount, ZERO
        if exceeds(amount, remaining):
            if not excess_to_credit:
                raise OverpaymentError(str(receivable_id), amount, remaining)
            to_pay, excess = remaining, amount - remaining

        payment_dto = None
        if is_material(to_pay):
            payment = Payment(
                receivable_id=receivable_id,
                amount=to_pay,
                method=method,
                paid_on=paid_on,
                note=note,
                sequence=self.next_sequence(),
                created_by_id=self.actor_id,
            )
            self.session.add(payment)
            self.session.flush()
            self.post_transaction(
                receivable.client_id, TransactionKind.PAYMENT, RecordType.PAYMENT,
                payment.id, to_pay, paid_on, note,
            )
            self.refresh_balances([receivable.client_id])
            payment_dto = payment_to_dto(payment)
            logger.info(
                "payment_recorded",
                extra={"payment_id": str(payment.id), "receivable_id": str(receivable_id), "amount": to_pay},
            )

        credit_dto = None
        if is_material(excess):
            credit_dto = self.record_credit(
                receivable.client_id,
                excess,
                description=f"Overpayment on receivable {receivable_id}",
                received_on=paid_on,
            )
            logger.info(
                "payment_excess_converted_to_credit",
                extra={"receivable_id": str(receivable_id), "excess": excess},
            )

        return PaymentReceipt(payment=payment_dto, excess_credit=credit_dto)

    # -----------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------

    def create_task(
        self,
        client_id: UUID,
        employee_id: UUID,
        amount: Decimal,
        prepaid_amount: Decimal = ZERO,
        expense_amount: Decimal = ZERO,
        issued_on: date | None = None,
        description: str = "",
    ) -> TaskInfo:
        """
        Create a task with its final invoice and prepaid transactions.

        Raises:
            AmountExceedsTaskTotalError: prepaid above the task amount.
        """
        amount = to_amount(amount, "amount")
        prepaid_amount = to_amount(prepaid_amount, "prepaid_amount")
        expense_amount = to_amount(expense_amount, "expense_amount")
        self._party(client_id, PartyType.CLIENT)
        self._party(employee_id, PartyType.EMPLOYEE)
        if exceeds(prepaid_amount, amount, ZERO):
            raise AmountExceedsTaskTotalError("new", amount, prepaid_amount)
        issued_on = issued_on or self.clock.today()

        task = Task(
            client_id=client_id,
            employee_id=employee_id,
            amount=amount,
            prepaid_amount=prepaid_amount,
            expense_amount=expense_amount,
            status=TaskStatus.PENDING.value,
            description=description,
            sequence=self.next_sequence(),
            created_by_id=self.actor_id,
        )
        self.session.add(task)
        self.session.flush()

        if prepaid_amount > ZERO:
            self.post_transaction(
                client_id, TransactionKind.TASK_PREPAID, RecordType.TASK,
                task.id, prepaid_amount, issued_on, description,
            )
            self.post_transaction(
                client_id, TransactionKind.TASK_PREPAID_RECEIVED, RecordType.TASK,
                task.id, prepaid_amount, issued_on, description,
            )
        self.create_receivable(
            client_id,
            amount - prepaid_amount,
            description=description or f"Final invoice for task {task.id}",
            issued_on=issued_on,
            task_id=task.id,
        )
        logger.info(
            "task_created",
            extra={
                "task_id": str(task.id),
                "client_id": str(client_id),
                "employee_id": str(employee_id),
                "amount": amount,
                "prepaid_amount": prepaid_amount,
            },
        )
        return task_to_dto(task)

    def approve_task(self, task_id: UUID) -> CommissionInfo:
        """Approve a task and book the employee's pending commission."""
        task = self._selector.get_live(RecordType.TASK, task_id)
        if task.status == TaskStatus.APPROVED.value:
            raise InvalidMutationError("approve_task", f"task {task_id} is already approved")

        employee = self._party(task.employee_id, PartyType.EMPLOYEE)
        rate = employee.commission_rate
        if rate is None:
            rate = self._default_commission_rate
        net_earning = task.amount - task.expense_amount
        amount = clamp_zero(net_earning * rate)

        task.status = TaskStatus.APPROVED.value
        task.updated_by_id = self.actor_id
        task.bump_version()

        commission = Commission(
            task_id=task.id,
            employee_id=employee.id,
            rate=rate,
            net_earning=net_earning,
            amount=amount,
            created_by_id=self.actor_id,
        )
        self.session.add(commission)
        self.session.flush()
        self.post_transaction(
            employee.id, TransactionKind.COMMISSION, RecordType.COMMISSION,
            commission.id, amount, self.clock.today(),
            f"Commission for task {task.id}",
        )
        self.refresh_balances([employee.id])
        logger.info(
            "task_approved",
            extra={
                "task_id": str(task.id),
                "commission_id": str(commission.id),
                "net_earning": net_earning,
                "commission": amount,
            },
        )
        return commission_to_dto(commission)

    def settle_commission(self, commission_id: UUID) -> CommissionInfo:
        """
        Mark a commission as paid out to the employee.

        The commission transaction stays as booked.  Later task changes
        still recompute the commission, and the preview warns that the
        difference has to be settled separately.
        """
        commission = self._selector.get_live(RecordType.COMMISSION, commission_id)
        if commission.status == CommissionStatus.SETTLED.value:
            raise InvalidMutationError(
                "settle_commission", f"commission {commission_id} is already settled"
            )
        commission.status = CommissionStatus.SETTLED.value
        commission.updated_by_id = self.actor_id
        self.session.flush()
        logger.info(
            "commission_settled",
            extra={
                "commission_id": str(commission.id),
                "employee_id": str(commission.employee_id),
                "amount": commission.amount,
            },
        )
        return commission_to_dto(commission)
