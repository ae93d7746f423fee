"""
Module: ledger_kernel.models.transaction
Responsibility: ORM persistence for account ledger transactions -- the source
    of truth for every party balance.
Architecture position: Kernel > Models.

Invariants enforced:
    - Exactly one of debit/credit is non-zero.
    - Each (kind, source_id) pair has at most one live row; the cascade
      rewrites that row when its source record changes and soft-deletes it
      when the source is deleted.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.dtos import RecordType, TransactionKind


class LedgerTransaction(TrackedBase):
    """One debit or credit line on a party's account."""

    __tablename__ = "ledger_transactions"

    __table_args__ = (
        Index("idx_transaction_party", "party_id"),
        Index("idx_transaction_source", "source_id", "kind"),
    )

    party_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parties.id"),
        nullable=False,
    )

    kind: Mapped[TransactionKind] = mapped_column(
        String(30),
        nullable=False,
    )

    source_type: Mapped[RecordType] = mapped_column(
        String(20),
        nullable=False,
    )

    source_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    debit: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    credit: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    transaction_on: Mapped[date] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
    )

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
