"""
Module: ledger_kernel.models.task
Responsibility: ORM persistence for billable tasks and the commissions
    computed from approved ones.
Architecture position: Kernel > Models.

Invariants enforced:
    - prepaid_amount <= amount (validated by writers).
    - A task has at most one live receivable (its final invoice, for
      ``amount - prepaid_amount``).
    - An approved task has exactly one commission with
      ``net_earning = amount - expense_amount`` and
      ``amount = net_earning * rate``; both are rewritten by the cascade
      whenever the task's amount, prepaid or expense changes.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import LedgerRecord, TrackedBase, UUIDString
from ledger_kernel.domain.dtos import CommissionStatus, TaskStatus


class Task(LedgerRecord):
    """Work done for a client by an employee, carrying a billable amount."""

    __tablename__ = "tasks"

    __table_args__ = (
        Index("idx_task_client", "client_id"),
        Index("idx_task_employee", "employee_id"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    prepaid_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    expense_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    status: Mapped[TaskStatus] = mapped_column(
        String(20),
        nullable=False,
        default=TaskStatus.PENDING.value,
    )

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )


class Commission(TrackedBase):
    """Pending commission owed to the employee responsible for a task."""

    __tablename__ = "commissions"

    __table_args__ = (
        Index("idx_commission_task", "task_id"),
        Index("idx_commission_employee", "employee_id"),
    )

    task_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tasks.id"),
        nullable=False,
    )

    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    rate: Mapped[Decimal] = mapped_column(nullable=False)

    net_earning: Mapped[Decimal] = mapped_column(nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[CommissionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=CommissionStatus.PENDING.value,
    )
