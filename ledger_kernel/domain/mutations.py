"""
Mutations -- the proposed edits that pass through the checked protocol.

Responsibility:
    Names every edit an operator can make to an existing ledger record and
    validates the shape of its payload (amount required for amount edits,
    absent for deletions, always a non-negative Decimal).

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ledger_kernel.domain.amounts import to_amount
from ledger_kernel.domain.dtos import RecordType
from ledger_kernel.exceptions import InvalidMutationError


class MutationType(str, Enum):
    CREDIT_AMOUNT = "credit_amount"
    CREDIT_DELETE = "credit_delete"
    RECEIVABLE_AMOUNT = "receivable_amount"
    RECEIVABLE_DELETE = "receivable_delete"
    PAYMENT_AMOUNT = "payment_amount"
    PAYMENT_DELETE = "payment_delete"
    ALLOCATION_AMOUNT = "allocation_amount"
    ALLOCATION_DELETE = "allocation_delete"
    TASK_AMOUNT = "task_amount"
    TASK_PREPAID = "task_prepaid"
    TASK_EXPENSE = "task_expense"

    @property
    def target_type(self) -> RecordType:
        return _TARGET_TYPES[self]

    @property
    def is_delete(self) -> bool:
        return self.value.endswith("_delete")

    @property
    def is_task_change(self) -> bool:
        return self.target_type == RecordType.TASK


_TARGET_TYPES: dict[MutationType, RecordType] = {
    MutationType.CREDIT_AMOUNT: RecordType.CREDIT,
    MutationType.CREDIT_DELETE: RecordType.CREDIT,
    MutationType.RECEIVABLE_AMOUNT: RecordType.RECEIVABLE,
    MutationType.RECEIVABLE_DELETE: RecordType.RECEIVABLE,
    MutationType.PAYMENT_AMOUNT: RecordType.PAYMENT,
    MutationType.PAYMENT_DELETE: RecordType.PAYMENT,
    MutationType.ALLOCATION_AMOUNT: RecordType.ALLOCATION,
    MutationType.ALLOCATION_DELETE: RecordType.ALLOCATION,
    MutationType.TASK_AMOUNT: RecordType.TASK,
    MutationType.TASK_PREPAID: RecordType.TASK,
    MutationType.TASK_EXPENSE: RecordType.TASK,
}


@dataclass(frozen=True, slots=True)
class Mutation:
    """
    A proposed edit to one ledger record.

    Contract:
        ``expected_version`` is the caller's last-known version of the target;
        None skips the optimistic check (internal callers only).
    """

    mutation_type: MutationType
    target_id: UUID
    proposed_amount: Decimal | None = None
    expected_version: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.mutation_type, MutationType):
            object.__setattr__(self, "mutation_type", MutationType(self.mutation_type))
        if self.mutation_type.is_delete:
            if self.proposed_amount is not None:
                raise InvalidMutationError(
                    self.mutation_type.value, "deletions take no proposed amount"
                )
            return
        if self.proposed_amount is None:
            raise InvalidMutationError(self.mutation_type.value, "proposed amount is required")
        field_name = "new_prepaid" if self.mutation_type == MutationType.TASK_PREPAID else "new_amount"
        object.__setattr__(self, "proposed_amount", to_amount(self.proposed_amount, field_name))

    @property
    def target_type(self) -> RecordType:
        return self.mutation_type.target_type

    @property
    def target_ref(self) -> str:
        return f"{self.target_type.value}:{self.target_id}"
