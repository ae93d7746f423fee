"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Operators make financial decisions from error explanations, so every failure
must name concrete amounts and records.  Callers catch by type, read a
machine-readable ``code`` and use structured attributes; they never parse
messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- AmountExceedsTaskTotalError
    |   +-- OverAllocationError
    |   +-- OverpaymentError
    |   +-- InvalidMutationError
    |   +-- InvalidDecisionError
    |   +-- StrategyUnavailableError
    |   +-- InvalidPartyError
    |
    +-- RecordNotFoundError
    |   +-- PartyNotFoundError
    |   +-- CreditNotFoundError
    |   +-- AllocationNotFoundError
    |   +-- ReceivableNotFoundError
    |   +-- PaymentNotFoundError
    |   +-- TaskNotFoundError
    |
    +-- ResolutionError
    |   +-- IncompleteResolutionError
    |   +-- NothingToResolveError
    |   +-- UnresolvedConflictError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- CascadeError
        +-- CascadeDriftError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|-----------------------------------
Validation   | INVALID_AMOUNT                | Negative / missing / non-decimal
             | AMOUNT_EXCEEDS_TASK_TOTAL     | Prepaid above task amount
             | OVER_ALLOCATION               | Allocation above credit/receivable
             | OVERPAYMENT                   | Payment above receivable remaining
             | INVALID_MUTATION              | Mutation not valid for the target
             | INVALID_DECISION              | Decision outside the closed set
             | STRATEGY_UNAVAILABLE          | Strategy not offered for conflict
             | INVALID_PARTY                 | Party of the wrong type for role
-------------|-------------------------------|-----------------------------------
Not found    | *_NOT_FOUND                   | Unknown or deleted record id
-------------|-------------------------------|-----------------------------------
Resolution   | INCOMPLETE_RESOLUTION         | Plan leaves part of the gap open
             | NOTHING_TO_RESOLVE            | Plan sent but no conflict remains
             | UNRESOLVED_CONFLICT           | Commit attempted without a plan
-------------|-------------------------------|-----------------------------------
Concurrency  | CONCURRENT_MODIFICATION       | Stored version != expected version
-------------|-------------------------------|-----------------------------------
Cascade      | CASCADE_DRIFT                 | Recomputed state != projection

Invariant violations themselves are NOT exceptions: the checker returns a
structured ``Conflict``.  ``UnresolvedConflictError`` only wraps that object
when a caller tries to commit through it.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "LEDGER_KERNEL_ERROR"


# Validation errors


class ValidationError(LedgerKernelError):
    """Malformed input, rejected before any state change."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is negative, missing, or not representable as a decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, value: Any, reason: str = "must be a non-negative decimal"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class AmountExceedsTaskTotalError(ValidationError):
    """Prepaid amount larger than the task's billable amount."""

    code: str = "AMOUNT_EXCEEDS_TASK_TOTAL"

    def __init__(self, task_id: str, task_amount: Decimal, prepaid_amount: Decimal):
        self.task_id = task_id
        self.task_amount = task_amount
        self.prepaid_amount = prepaid_amount
        super().__init__(
            f"Prepaid amount {prepaid_amount} exceeds task {task_id} "
            f"amount {task_amount}"
        )


class OverAllocationError(ValidationError):
    """Allocation larger than what its credit or receivable can absorb."""

    code: str = "OVER_ALLOCATION"

    def __init__(self, requested: Decimal, available: Decimal, limited_by: str):
        self.requested = requested
        self.available = available
        self.limited_by = limited_by
        super().__init__(
            f"Allocation of {requested} exceeds {limited_by} available "
            f"amount {available}"
        )


class OverpaymentError(ValidationError):
    """Payment larger than the receivable's remaining amount."""

    code: str = "OVERPAYMENT"

    def __init__(self, receivable_id: str, amount: Decimal, remaining: Decimal):
        self.receivable_id = receivable_id
        self.amount = amount
        self.remaining = remaining
        self.excess = amount - remaining
        super().__init__(
            f"Payment of {amount} exceeds receivable {receivable_id} "
            f"remaining amount {remaining} by {self.excess}"
        )


class InvalidMutationError(ValidationError):
    """Mutation type or payload does not fit the target record."""

    code: str = "INVALID_MUTATION"

    def __init__(self, mutation_type: str, reason: str):
        self.mutation_type = mutation_type
        self.reason = reason
        super().__init__(f"Invalid {mutation_type} mutation: {reason}")


class InvalidDecisionError(ValidationError):
    """Per-dependent decision outside the closed set or malformed."""

    code: str = "INVALID_DECISION"

    def __init__(self, dependent_id: str, action: str, reason: str):
        self.dependent_id = dependent_id
        self.action = action
        self.reason = reason
        super().__init__(
            f"Invalid decision {action!r} for {dependent_id}: {reason}"
        )


class StrategyUnavailableError(ValidationError):
    """Strategy is not applicable to this conflict."""

    code: str = "STRATEGY_UNAVAILABLE"

    def __init__(self, strategy: str, conflict_kind: str):
        self.strategy = strategy
        self.conflict_kind = conflict_kind
        super().__init__(
            f"Strategy {strategy} is not available for {conflict_kind} conflicts"
        )


class InvalidPartyError(ValidationError):
    """Party exists but has the wrong type for the role it is given."""

    code: str = "INVALID_PARTY"

    def __init__(self, party_id: str, expected_type: str, actual_type: str):
        self.party_id = party_id
        self.expected_type = expected_type
        self.actual_type = actual_type
        super().__init__(
            f"Party {party_id} is a {actual_type}, expected a {expected_type}"
        )


# Not-found errors


class RecordNotFoundError(LedgerKernelError):
    """Record id unknown or already deleted."""

    code: str = "RECORD_NOT_FOUND"
    record_type: str = "record"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"{self.record_type.capitalize()} {record_id} not found")


class PartyNotFoundError(RecordNotFoundError):
    code: str = "PARTY_NOT_FOUND"
    record_type: str = "party"


class CreditNotFoundError(RecordNotFoundError):
    code: str = "CREDIT_NOT_FOUND"
    record_type: str = "credit"


class AllocationNotFoundError(RecordNotFoundError):
    code: str = "ALLOCATION_NOT_FOUND"
    record_type: str = "allocation"


class ReceivableNotFoundError(RecordNotFoundError):
    code: str = "RECEIVABLE_NOT_FOUND"
    record_type: str = "receivable"


class PaymentNotFoundError(RecordNotFoundError):
    code: str = "PAYMENT_NOT_FOUND"
    record_type: str = "payment"


class TaskNotFoundError(RecordNotFoundError):
    code: str = "TASK_NOT_FOUND"
    record_type: str = "task"


# Resolution errors


class ResolutionError(LedgerKernelError):
    """Base exception for resolution-plan errors."""

    code: str = "RESOLUTION_ERROR"


class IncompleteResolutionError(ResolutionError):
    """Plan does not remove enough to cover the deficit or surplus."""

    code: str = "INCOMPLETE_RESOLUTION"

    def __init__(self, conflict_kind: str, gap: Decimal, covered: Decimal):
        self.conflict_kind = conflict_kind
        self.gap = gap
        self.covered = covered
        self.uncovered = gap - covered
        super().__init__(
            f"Resolution covers {covered} of {gap} for {conflict_kind}; "
            f"{self.uncovered} remains uncovered"
        )


class NothingToResolveError(ResolutionError):
    """A plan was supplied but the mutation no longer conflicts."""

    code: str = "NOTHING_TO_RESOLVE"

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(
            f"No conflict remains on {target_type} {target_id}; "
            "the resolution was already applied or is no longer needed"
        )


class UnresolvedConflictError(ResolutionError):
    """Commit attempted for a conflicting mutation without a plan."""

    code: str = "UNRESOLVED_CONFLICT"

    def __init__(self, conflict: Any):
        self.conflict = conflict
        super().__init__(
            f"{conflict.kind.value} conflict on {conflict.target_type} "
            f"{conflict.target_id}: gap of {conflict.gap} must be resolved"
        )


# Concurrency errors


class ConcurrencyError(LedgerKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """Stored record version differs from the caller's last-known version."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        current_version: int,
        current_data: dict[str, Any] | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.current_data = current_data or {}
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently: expected "
            f"version {expected_version}, found {current_version}"
        )


# Cascade errors


class CascadeError(LedgerKernelError):
    """Base exception for cascade execution failures."""

    code: str = "CASCADE_ERROR"


class CascadeDriftError(CascadeError):
    """State recomputed after the cascade differs from the projected state."""

    code: str = "CASCADE_DRIFT"

    def __init__(self, record_ref: str, field: str, projected: Any, actual: Any):
        self.record_ref = record_ref
        self.field = field
        self.projected = projected
        self.actual = actual
        super().__init__(
            f"Cascade drift on {record_ref}.{field}: projected {projected}, "
            f"recomputed {actual}"
        )
