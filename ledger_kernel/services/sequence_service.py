"""
SequenceService -- monotonic sequence allocation via a locked counter row.

Responsibility:
    Hands out strictly increasing numbers for ledger records.  The number
    orders records that share a business date, so "most recent first"
    (LIFO) resolution is deterministic across payments and allocations
    alike.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by RecordService and the cascade executor whenever a ledger
    record is created.

Invariants enforced:
    - One ledger-wide counter, so sequences are comparable across tables.
    - The aggregate-max-plus-one pattern is never used; the locked counter
      row is the only source of the next value.
    - The increment is only visible after the caller's transaction commits.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from ledger_kernel.db.base import Base
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """Named counter row; locked on every increment."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - ``SELECT ... FOR UPDATE`` serializes concurrent allocations for the
          same counter.
        - Rolled-back transactions return their values.

    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    LEDGER_RECORD = "ledger_record"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str = LEDGER_RECORD) -> int:
        """
        Lock the counter row, increment it and return the new value.

        A missing counter is created on first use.
        """
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str = LEDGER_RECORD) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def initialize_sequences(self) -> None:
        """Create the well-known counters.  Called during database setup."""
        existing = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == self.LEDGER_RECORD)
        ).scalar_one_or_none()

        if existing is None:
            self._session.add(SequenceCounter(name=self.LEDGER_RECORD, current_value=0))

        self._session.flush()
