"""
Module: ledger_kernel.models.credit
Responsibility: ORM persistence for client credits (pre-paid standing
    balances) and the allocations that apply them to receivables.
Architecture position: Kernel > Models.

Invariants enforced (by the writers, re-checked on every commit):
    - sum(live allocations on a credit) <= credit.amount.
    - ``allocated_amount`` is never stored; selectors derive it.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import LedgerRecord, UUIDString


class Credit(LedgerRecord):
    """Money a client handed over in advance, drawable by future invoices."""

    __tablename__ = "credits"

    __table_args__ = (
        Index("idx_credit_client", "client_id"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )

    received_on: Mapped[date] = mapped_column(nullable=False)


class Allocation(LedgerRecord):
    """Part of a credit applied to one receivable."""

    __tablename__ = "allocations"

    __table_args__ = (
        Index("idx_allocation_credit", "credit_id"),
        Index("idx_allocation_receivable", "receivable_id"),
    )

    credit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("credits.id"),
        nullable=False,
    )

    receivable_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("receivables.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    allocated_on: Mapped[date] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )
