"""
Module: ledger_kernel.models.receivable
Responsibility: ORM persistence for receivables (invoices) and the payments
    recorded against them.
Architecture position: Kernel > Models.

Invariants enforced (by the writers, re-checked on every commit):
    - sum(live payments) + sum(live allocations) <= receivable.amount.
    - ``paid_amount``, ``remaining_amount`` and status are never stored.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import LedgerRecord, UUIDString


class Receivable(LedgerRecord):
    """An amount billed to a client, optionally derived from a task."""

    __tablename__ = "receivables"

    __table_args__ = (
        Index("idx_receivable_client", "client_id"),
        Index("idx_receivable_task", "task_id"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    task_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("tasks.id"),
        nullable=True,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )

    issued_on: Mapped[date] = mapped_column(nullable=False)


class Payment(LedgerRecord):
    """Money received against one receivable."""

    __tablename__ = "payments"

    __table_args__ = (
        Index("idx_payment_receivable", "receivable_id"),
    )

    receivable_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("receivables.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    method: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    paid_on: Mapped[date] = mapped_column(nullable=False)

    note: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )
