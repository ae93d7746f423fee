"""
Module: ledger_kernel.models.party
Responsibility: ORM persistence for client and employee accounts.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain enums only.

Invariants enforced:
    - ``cached_balance`` is a cache.  It is rewritten from
      ``sum(debit) - sum(credit)`` over the party's live transactions on every
      commit that touches them, and is never read as a source of truth.
    - ``commission_rate`` applies to employees only; tasks approved for an
      employee without a rate use the configured default.
"""

from decimal import Decimal

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase
from ledger_kernel.domain.dtos import PartyType


class Party(TrackedBase):
    """A client or employee the company holds a running balance with."""

    __tablename__ = "parties"

    __table_args__ = (
        Index("idx_party_type", "party_type"),
    )

    party_type: Mapped[PartyType] = mapped_column(
        String(20),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    commission_rate: Mapped[Decimal | None] = mapped_column(
        nullable=True,
    )

    cached_balance: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    @property
    def is_client(self) -> bool:
        return self.party_type == PartyType.CLIENT

    @property
    def is_employee(self) -> bool:
        return self.party_type == PartyType.EMPLOYEE

    def __repr__(self) -> str:
        return f"<Party {self.party_type}:{self.name}>"
